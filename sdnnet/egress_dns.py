"""Keeping egress network policies in step with the DNS names they mention."""

from __future__ import annotations

import ipaddress
import logging
import os
import queue
import threading
import time
from dataclasses import dataclass
from typing import Any, Union

from sdnnet.dns import DNS, DNS_MAP_TRACE_THRESHOLD, DNSResponseNotification, _log_if_long
from sdnnet.network_types import EgressNetworkPolicy
from sdnnet.validation import IPAddress, IPNetwork

log = logging.getLogger(__name__)

DEFAULT_RESOLVER_CONFIG = "/etc/resolv.conf"
# How long to sleep, in seconds, when no name is scheduled.
_IDLE_WAIT = 30 * 60.0

_ADDED = object()
_STOP = object()


@dataclass(frozen=True)
class EgressDNSUpdate:
    """A policy whose DNS-derived addresses changed."""

    uid: str
    namespace: str


class EgressDNS:
    """Tracks which policies use which DNS names and reports when addresses change.

    Run ``sync`` in a thread; each change is delivered on ``updates`` as a list of
    EgressDNSUpdate for the policies that use the changed name.
    """

    def __init__(self, dns: Any) -> None:
        self._lock = threading.Lock()
        self._dns = dns
        self._dns_names_to_policies: dict[str, set[str]] = {}
        self._namespaces: dict[str, str] = {}
        self._events: queue.Queue[object] = queue.Queue()
        self.updates: queue.Queue[list[EgressDNSUpdate]] = queue.Queue()

    @classmethod
    def create(
        cls,
        ipv4: bool,
        ipv6: bool,
        resolver_config_file: Union[str, os.PathLike] = DEFAULT_RESOLVER_CONFIG,
    ) -> "EgressDNS":
        """Create an EgressDNS backed by a real resolver; raises ValueError on bad settings."""
        try:
            dns = DNS(resolver_config_file, ipv4, ipv6)
        except ValueError as err:
            log.error("%s", err)
            raise
        return cls(dns)

    def add(self, policy: EgressNetworkPolicy) -> None:
        """Start tracking the DNS names used by ``policy``."""
        uid = policy.metadata.uid
        with self._lock:
            for rule in policy.egress:
                name = rule.to.dns_name
                if not name:
                    continue
                uids = self._dns_names_to_policies.get(name)
                if uids is None:
                    self._dns_names_to_policies[name] = {uid}
                    try:
                        self._dns.add(name)
                    except LookupError as err:
                        log.error("%s", err)
                    self._events.put(_ADDED)
                else:
                    uids.add(uid)
            self._namespaces[uid] = policy.metadata.namespace

    def delete(self, policy: EgressNetworkPolicy) -> None:
        """Stop tracking ``policy``; names no other policy uses are dropped."""
        uid = policy.metadata.uid
        with self._lock:
            for rule in policy.egress:
                name = rule.to.dns_name
                if not name:
                    continue
                uids = self._dns_names_to_policies.get(name)
                if uids is None:
                    continue
                uids.discard(uid)
                if not uids:
                    self._dns.delete(name)
                    del self._dns_names_to_policies[name]
            self._namespaces.pop(uid, None)

    def sync(self) -> None:
        """Refresh names as they fall due until ``stop`` is called."""
        duration = 0.0
        while True:
            scheduled = self._dns.get_next_query_time()
            if scheduled is None:
                duration = _IDLE_WAIT
            else:
                when, name = scheduled
                now = time.time()
                if when > now:
                    duration = when - now
                else:
                    try:
                        self._dns.set_updating(name)
                    except KeyError as err:
                        log.error("%s", err)
                    threading.Thread(target=self._update, args=(name,), daemon=True).start()

            # Wait for the next query time, a reply, or a newly added name.
            try:
                event = self._events.get(timeout=max(duration, 0.0))
            except queue.Empty:
                continue
            if event is _STOP:
                return
            if isinstance(event, DNSResponseNotification):
                self._handle_dns_response(event)

    def stop(self) -> None:
        """Make ``sync`` return."""
        log.debug("Stopping EgressDNS")
        self._events.put(_STOP)

    def get_ips(self, dns_name: str) -> list[IPAddress]:
        """Return the addresses currently known for ``dns_name``."""
        with self._lock:
            return self._dns.get(dns_name).ips

    def get_net_cidrs(self, dns_name: str) -> list[IPNetwork]:
        """Return the addresses known for ``dns_name`` as single-host networks."""
        return [
            ipaddress.ip_network(f"{ip}/{ip.max_prefixlen}") for ip in self.get_ips(dns_name)
        ]

    def _update(self, dns_name: str) -> None:
        changed = False
        try:
            changed = self._dns.update(dns_name)
        except LookupError as err:
            log.error("Unable to update ip addresses for %r: %s", dns_name, err)
        with _log_if_long(
            f"Update egressDNS response channel for {dns_name!r}", DNS_MAP_TRACE_THRESHOLD
        ):
            self._events.put(DNSResponseNotification(name=dns_name, changed=changed))

    def _handle_dns_response(self, response: DNSResponseNotification) -> None:
        with _log_if_long(
            f"Handle DNS response notification for {response.name!r}", DNS_MAP_TRACE_THRESHOLD
        ):
            if response.changed:
                self.updates.put(self._get_egress_dns_updates(response.name))

    def _get_egress_dns_updates(self, dns_name: str) -> list[EgressDNSUpdate]:
        with self._lock:
            uids = self._dns_names_to_policies.get(dns_name)
            if uids is None:
                log.debug("Didn't find any entry for dns name: %s in the dns map.", dns_name)
                return []
            return [EgressDNSUpdate(uid, self._namespaces.get(uid, "")) for uid in uids]