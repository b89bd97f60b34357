"""Resolving and tracking the addresses behind DNS names."""

from __future__ import annotations

import contextlib
import ipaddress
import logging
import os
import threading
import time
from collections.abc import Iterable, Iterator, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Optional, Union

import dns.exception
import dns.message
import dns.query
import dns.rcode
import dns.rdatatype

from sdnnet.validation import IPAddress, _parse_ip

log = logging.getLogger(__name__)

# TTL in seconds used when a reply carries no usable TTL.
DEFAULT_TTL = 30.0
# Grace periods, in seconds, before warning about slow operations.
DNS_MAP_TRACE_THRESHOLD = 0.1
DNS_QUERY_TRACE_THRESHOLD = 0.35
DEFAULT_QUERY_TIMEOUT = 5.0
DEFAULT_DNS_PORT = "53"

_SHORT_TTL = 30.0
_LONG_TTL = 30 * 60.0


@contextlib.contextmanager
def _log_if_long(description: str, threshold: float) -> Iterator[None]:
    start = time.monotonic()
    try:
        yield
    finally:
        elapsed = time.monotonic() - start
        if elapsed > threshold:
            log.warning("%s took %.3fs", description, elapsed)


@dataclass
class DNSValue:
    """What is known about one DNS name."""

    # All IP addresses for the name
    ips: list[IPAddress] = field(default_factory=list)
    # Time-to-live in seconds
    ttl: float = 0.0
    # Wall-clock time (seconds since the epoch) at which to query again
    next_query_time: Optional[float] = None
    # Set while an add or update is in flight, so the name is not scheduled
    updating: bool = False


@dataclass(frozen=True)
class DNSResponseNotification:
    """Reports that a query for a name was answered, and whether its addresses changed."""

    name: str
    changed: bool


def read_resolver_config(path: Union[str, os.PathLike]) -> tuple[list[str], str]:
    """Read a resolv.conf file, returning its nameservers and the default port.

    Raises OSError if the file cannot be read.
    """
    servers: list[str] = []
    with open(path, encoding="utf-8") as handle:
        for line in handle:
            fields = line.split()
            if not fields or fields[0].startswith(("#", ";")):
                continue
            if fields[0] == "nameserver" and len(fields) > 1:
                servers.append(fields[1])
    return servers, DEFAULT_DNS_PORT


def _split_host_port(address: str) -> Optional[tuple[str, str]]:
    """Split "host:port" or "[host]:port"; None if there is no port."""
    if address.startswith("["):
        end = address.find("]")
        if end < 0 or address[end + 1 : end + 2] != ":":
            return None
        return address[1:end], address[end + 2 :]
    if address.count(":") != 1:
        return None
    host, _, port = address.partition(":")
    return host, port


def _join_host_port(host: str, port: str) -> str:
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def _is_ipv6_string(text: str) -> bool:
    ip = _parse_ip(text)
    return ip is not None and ip.version == 6


def fixup_nameservers(
    nameservers: Iterable[str], default_port: str, ipv4: bool, ipv6: bool
) -> list[str]:
    """Give every nameserver a port and keep those of a supported address family.

    If no nameserver matches a supported family, all of them are returned.
    """
    good: list[str] = []
    bad: list[str] = []
    for server in nameservers:
        split = _split_host_port(server)
        if split is not None:
            ip_text = split[0]
        else:
            ip_text = server
            server = _join_host_port(server, default_port)
        supported = ipv6 if _is_ipv6_string(ip_text) else ipv4
        (good if supported else bad).append(server)
    return good or bad


def normalize_ttl(ttl: float) -> float:
    """Bound a TTL, in seconds, to the refresh interval actually used.

    Short TTLs are kept; TTLs of 30 minutes or more are refreshed every 30
    minutes; everything in between is refreshed every 30 seconds.
    """
    if ttl < _SHORT_TTL:
        return ttl
    if ttl >= _LONG_TTL:
        return _LONG_TTL
    return _SHORT_TTL


def _canonical(ip: IPAddress) -> IPAddress:
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


def ips_equal(old_ips: Sequence[IPAddress], new_ips: Sequence[IPAddress]) -> bool:
    """Return whether both lists have the same length and every old address is in the new list."""
    if len(old_ips) != len(new_ips):
        return False
    new = {_canonical(ip) for ip in new_ips}
    return all(_canonical(ip) in new for ip in old_ips)


def remove_duplicate_ips(ips: Iterable[IPAddress]) -> list[IPAddress]:
    """Return the distinct addresses, ordered by their text form."""
    unique_texts = sorted({str(_canonical(ip)) for ip in ips})
    return [ipaddress.ip_address(text) for text in unique_texts]


class DNS:
    """A thread-safe table of DNS names, their addresses and when to refresh them."""

    def __init__(
        self,
        resolver_config_file: Union[str, os.PathLike],
        ipv4: bool,
        ipv6: bool,
        timeout: float = DEFAULT_QUERY_TIMEOUT,
    ) -> None:
        if not ipv4 and not ipv6:
            raise ValueError("must support at least one of IPv4 or IPv6")
        try:
            servers, port = read_resolver_config(resolver_config_file)
        except OSError as err:
            raise ValueError(f"cannot initialize the resolver: {err}") from err

        self._lock = threading.Lock()
        self._dns_map: dict[str, DNSValue] = {}
        self._nameservers = fixup_nameservers(servers, port, ipv4, ipv6)
        self._ipv4 = ipv4
        self._ipv6 = ipv6
        self.timeout = timeout

    @property
    def nameservers(self) -> list[str]:
        """The nameservers queried, as host:port."""
        return list(self._nameservers)

    def size(self) -> int:
        """Return the number of tracked names."""
        with self._lock:
            return len(self._dns_map)

    def get(self, dns_name: str) -> DNSValue:
        """Return a copy of what is known about ``dns_name`` (empty if untracked)."""
        with self._lock:
            res = self._dns_map.get(dns_name)
            if res is None:
                return DNSValue()
            return DNSValue(ips=list(res.ips), ttl=res.ttl, next_query_time=res.next_query_time)

    def add(self, dns_name: str) -> None:
        """Resolve ``dns_name`` and start tracking it; raises LookupError on failure."""
        # Resolution blocks, so it happens before taking the lock.
        ips, ttl = self._get_ips_and_min_ttl(dns_name)
        with _log_if_long(f"Update resolved DNS record {dns_name!r}", DNS_MAP_TRACE_THRESHOLD):
            with self._lock:
                self._dns_map[dns_name] = DNSValue(updating=True)
                self._update_dns_value(dns_name, ips, ttl)

    def delete(self, dns_name: str) -> None:
        """Stop tracking ``dns_name``."""
        with _log_if_long(f"Delete DNS record {dns_name!r}", DNS_MAP_TRACE_THRESHOLD):
            with self._lock:
                self._dns_map.pop(dns_name, None)

    def set_updating(self, dns_name: str) -> None:
        """Mark ``dns_name`` as being refreshed; raises KeyError if it is not tracked."""
        with _log_if_long(f"SetUpdating DNS record {dns_name!r}", DNS_MAP_TRACE_THRESHOLD):
            with self._lock:
                res = self._dns_map.get(dns_name)
                if res is None:
                    raise KeyError(f"DNS value not found in dnsMap for domain: {dns_name!r}")
                res.updating = True

    def update(self, dns_name: str) -> bool:
        """Resolve ``dns_name`` again and return whether its addresses changed.

        On failure the next query time is still pushed back, then LookupError is raised.
        """
        error: Optional[LookupError] = None
        ips: list[IPAddress] = []
        ttl = DEFAULT_TTL
        try:
            ips, ttl = self._get_ips_and_min_ttl(dns_name)
        except LookupError as err:
            error = err

        with _log_if_long(f"Update resolved DNS record {dns_name!r}", DNS_MAP_TRACE_THRESHOLD):
            with self._lock:
                if error is not None:
                    self._update_next_query_time(dns_name)
                    raise error
                return self._update_dns_value(dns_name, ips, ttl)

    def get_next_query_time(self) -> Optional[tuple[float, str]]:
        """Return the earliest (time, name) due for a query, ignoring names being updated.

        Returns None when nothing is scheduled.
        """
        with self._lock:
            best: Optional[tuple[float, str]] = None
            for name, res in self._dns_map.items():
                if res.updating or res.next_query_time is None:
                    continue
                if best is None or res.next_query_time < best[0]:
                    best = (res.next_query_time, name)
            return best

    def _update_next_query_time(self, dns_name: str) -> None:
        res = self._dns_map.get(dns_name)
        if res is None:
            log.error("DNS value not found in dnsMap for domain: %r", dns_name)
            return
        res.next_query_time = time.time() + res.ttl
        res.updating = False

    def _update_dns_value(self, dns_name: str, ips: list[IPAddress], ttl: float) -> bool:
        res = self._dns_map.get(dns_name)
        if res is None:
            log.error("DNS value not found in dnsMap for domain: %r", dns_name)
            return False
        changed = not ips_equal(res.ips, ips)
        res.ips = ips
        res.ttl = normalize_ttl(ttl)
        res.next_query_time = time.time() + res.ttl
        res.updating = False
        return changed

    def _do_one_query(
        self, server: str, domain: str, rdtype: dns.rdatatype.RdataType
    ) -> tuple[list[IPAddress], float]:
        split = _split_host_port(server)
        host, port = split if split is not None else (server, DEFAULT_DNS_PORT)
        try:
            query = dns.message.make_query(domain, rdtype)
            response = dns.query.udp(query, host, timeout=self.timeout, port=int(port))
        except (dns.exception.DNSException, OSError, ValueError) as err:
            raise LookupError(f"query to {server} failed: {err}") from err

        if response.rcode() != dns.rcode.NOERROR:
            raise LookupError(
                f"failed to get a valid answer: {dns.rcode.to_text(response.rcode())}"
            )

        ips: list[IPAddress] = []
        ttl = DEFAULT_TTL
        for rrset in response.answer:
            if 0 < rrset.ttl < ttl:
                ttl = float(rrset.ttl)
            if rrset.rdtype == rdtype:
                ips.extend(ipaddress.ip_address(rdata.address) for rdata in rrset)
        return ips, ttl

    def _query_server(self, nameserver: str, domain: str) -> tuple[list[IPAddress], float]:
        if self._ipv4 and not self._ipv6:
            return self._do_one_query(nameserver, domain, dns.rdatatype.A)
        if self._ipv6 and not self._ipv4:
            return self._do_one_query(nameserver, domain, dns.rdatatype.AAAA)

        ips: list[IPAddress] = []
        ttl = DEFAULT_TTL
        errors: list[LookupError] = []
        with ThreadPoolExecutor(max_workers=2) as pool:
            futures = [
                pool.submit(self._do_one_query, nameserver, domain, rdtype)
                for rdtype in (dns.rdatatype.A, dns.rdatatype.AAAA)
            ]
            for future in as_completed(futures):
                try:
                    found, found_ttl = future.result()
                except LookupError as err:
                    errors.append(err)
                    continue
                ips.extend(found)
                ttl = min(ttl, found_ttl)
        if not ips and errors:
            raise errors[0]
        return ips, ttl

    def _get_ips_and_min_ttl(self, domain: str) -> tuple[list[IPAddress], float]:
        with _log_if_long(f"DNS resolution for {domain!r}", DNS_QUERY_TRACE_THRESHOLD):
            ips: list[IPAddress] = []
            ttl = DEFAULT_TTL
            last_error: Optional[LookupError] = None
            for server in self._nameservers:
                try:
                    ips, ttl = self._query_server(server, domain)
                except LookupError as err:
                    ips, last_error = [], err
                    continue
                last_error = None
                if ips:
                    break

            if not ips:
                if last_error is not None:
                    raise LookupError(
                        f"IP address not found for domain {domain!r}: {last_error}"
                    ) from last_error
                raise LookupError(f"IP address not found for domain {domain!r}")
            return remove_duplicate_ips(ips), ttl


@dataclass
class FakeDNSReply:
    """A scripted reply for FakeDNS."""

    name: str
    ips: list[IPAddress] = field(default_factory=list)
    # Not honoured; kept so replies look like real entries.
    ttl: float = 0.0
    has_been_updated: bool = False
    next_query_time: float = 0.0
    delay: float = 0.0


class FakeDNS:
    """A stand-in for DNS that plays back scripted replies in order.

    Calls that would change a real table are recorded in ``calls`` as
    (operation, name) pairs instead of being acted on.
    """

    def __init__(self, replies: Iterable[FakeDNSReply]) -> None:
        self._lock = threading.Lock()
        self._replies = list(replies)
        self.calls: list[tuple[str, str]] = []

    def _record(self, operation: str, dns_name: str) -> None:
        with self._lock:
            self.calls.append((operation, dns_name))

    def add(self, dns_name: str) -> None:
        """Record the name without resolving it."""
        self._record("add", dns_name)

    def size(self) -> int:
        """Always zero: nothing is tracked."""
        return 0

    def get(self, dns_name: str) -> DNSValue:
        """Always an empty value."""
        return DNSValue()

    def delete(self, dns_name: str) -> None:
        """Record the deletion; nothing is tracked, so nothing is removed."""
        self._record("delete", dns_name)

    def set_updating(self, dns_name: str) -> None:
        """Record the mark; it has no effect on scheduling."""
        self._record("set_updating", dns_name)

    def update(self, dns_name: str) -> bool:
        """Consume the next unused reply for the name; any reply counts as a change."""
        delay = 0.0
        changed = False
        with self._lock:
            for reply in self._replies:
                if reply.name == dns_name and not reply.has_been_updated:
                    reply.has_been_updated = True
                    delay = reply.delay
                    changed = True
                    break
        time.sleep(delay)
        return changed

    def get_next_query_time(self) -> Optional[tuple[float, str]]:
        """Return the (time, name) of the first unused reply, or None."""
        with self._lock:
            for reply in self._replies:
                if not reply.has_been_updated:
                    return reply.next_query_time, reply.name
            return None