"""Reporting several errors at once."""

from __future__ import annotations

from collections.abc import Iterable


class AggregateError(Exception):
    """Several errors reported together.

    The individual errors are kept, in order, in ``errors``. The message is the
    message of the single error, or a bracketed, comma-separated list of the
    distinct messages when there are several.
    """

    def __init__(self, errors: Iterable[BaseException]) -> None:
        self.errors: list[BaseException] = list(errors)
        super().__init__(self._message())

    def _message(self) -> str:
        messages: list[str] = []
        for error in self.errors:
            text = str(error)
            if text not in messages:
                messages.append(text)
        if len(messages) == 1:
            return messages[0]
        return "[" + ", ".join(messages) + "]"

    def __str__(self) -> str:
        return self._message()


def raise_aggregate(errors: Iterable[BaseException]) -> None:
    """Raise an AggregateError holding ``errors`` if there are any."""
    collected = list(errors)
    if collected:
        raise AggregateError(collected)