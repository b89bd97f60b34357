"""Event handlers for watched API objects."""

from __future__ import annotations

import enum
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Optional

log = logging.getLogger(__name__)


class EventType(str, enum.Enum):
    """The kind of change a watch reported."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


@dataclass(frozen=True)
class DeletedFinalStateUnknown:
    """A deleted object whose final state was missed; ``obj`` is the last state seen."""

    key: str
    obj: Any


AddOrUpdateFunc = Callable[[Any, Any, EventType], None]
DeleteFunc = Callable[[Any], None]


@dataclass
class ResourceEventHandlers:
    """Callbacks for added, updated and deleted objects; any of them may be absent."""

    on_add: Optional[Callable[[Any], None]] = None
    on_update: Optional[Callable[[Any, Any], None]] = None
    on_delete: Optional[Callable[[Any], None]] = None


def informer_funcs(
    obj_type: Any,
    add_or_update_func: Optional[AddOrUpdateFunc],
    delete_func: Optional[DeleteFunc],
) -> ResourceEventHandlers:
    """Build handlers that route add and update events to one function.

    ``add_or_update_func`` is called as ``(current, old, event_type)``; ``old`` is
    None for additions. ``delete_func`` receives only objects of ``obj_type``
    (a class, or an instance of it); tombstones are unwrapped, and anything of
    another type is logged and dropped.
    """
    expected = obj_type if isinstance(obj_type, type) else type(obj_type)
    handlers = ResourceEventHandlers()

    if add_or_update_func is not None:

        def on_add(obj: Any) -> None:
            add_or_update_func(obj, None, EventType.ADDED)

        def on_update(old: Any, cur: Any) -> None:
            add_or_update_func(cur, old, EventType.MODIFIED)

        handlers.on_add = on_add
        handlers.on_update = on_update

    if delete_func is not None:

        def on_delete(obj: Any) -> None:
            if type(obj) is not expected:
                if not isinstance(obj, DeletedFinalStateUnknown):
                    log.error("Couldn't get object from tombstone: %r", obj)
                    return
                obj = obj.obj
                if type(obj) is not expected:
                    log.error(
                        "Tombstone contained object, expected resource type: %s but got: %s",
                        expected.__name__,
                        type(obj).__name__,
                    )
                    return
            delete_func(obj)

        handlers.on_delete = on_delete

    return handlers