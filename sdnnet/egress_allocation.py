"""State of egress IPs, nodes and namespaces, and automatic egress IP allocation."""

from __future__ import annotations

import threading
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Optional

from sdnnet.validation import IPAddress, IPNetwork, _parse_ip


@dataclass(frozen=True)
class EgressIPAssignment:
    """An egress IP in use by a namespace, and the node hosting it."""

    node_ip: str
    egress_ip: str


@dataclass(eq=False)
class NodeEgress:
    """Egress configuration of one node."""

    node_name: str
    node_ip: str
    sdn_ip: str = ""
    requested_ips: set[str] = field(default_factory=set)
    requested_cidrs: set[str] = field(default_factory=set)
    parsed_cidrs: dict[str, Optional[IPNetwork]] = field(default_factory=dict)
    offline: bool = False

    def hosts(self, ip: Optional[IPAddress]) -> bool:
        """Return whether ``ip`` lies within one of the node's egress CIDRs."""
        if ip is None:
            return False
        return any(net is not None and ip in net for net in self.parsed_cidrs.values())


@dataclass(eq=False)
class NamespaceEgress:
    """Egress configuration and current egress state of one namespace."""

    vnid: int
    requested_ips: list[str] = field(default_factory=list)
    should_drop_traffic: bool = False
    active_egress_ips: list[EgressIPAssignment] = field(default_factory=list)


@dataclass(eq=False)
class EgressIPInfo:
    """One egress IP, the nodes offering it and the namespaces requesting it."""

    ip: str
    nodes: list[NodeEgress] = field(default_factory=list)
    namespaces: list[NamespaceEgress] = field(default_factory=list)
    assigned_node_ip: str = ""
    assigned_vnid: int = 0
    parsed: Optional[IPAddress] = field(init=False, default=None)

    def __post_init__(self) -> None:
        self.parsed = _parse_ip(self.ip)


def active_egress_ips_the_same(
    old_eips: Sequence[EgressIPAssignment], new_eips: Sequence[EgressIPAssignment]
) -> bool:
    """Return whether both lists have the same length and every old entry is in the new one."""
    if len(old_eips) != len(new_eips):
        return False
    return all(old in new_eips for old in old_eips)


Allocation = dict[str, list[str]]


class EgressIPAllocator:
    """Holds egress state and decides which node each auto-allocated egress IP goes to."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self.nodes: dict[str, NodeEgress] = {}
        self.nodes_by_node_ip: dict[str, NodeEgress] = {}
        self.namespaces_by_vnid: dict[int, NamespaceEgress] = {}
        self.egress_ips: dict[str, EgressIPInfo] = {}
        self.update_egress_cidrs = False

    def _find_egress_ip_allocation(
        self, ip: Optional[IPAddress], allocation: Allocation
    ) -> tuple[str, bool]:
        """Pick the least-loaded online node whose CIDRs hold ``ip``.

        The flag tells whether more than one node could host it.
        """
        best_node = ""
        other_nodes = False
        for node in self.nodes.values():
            if node.offline or not node.hosts(ip):
                continue
            if best_node:
                other_nodes = True
                if len(allocation.get(best_node, [])) < len(allocation.get(node.node_name, [])):
                    continue
            best_node = node.node_name
        return best_node, other_nodes

    def _make_empty_allocation(self) -> tuple[Allocation, set[str]]:
        allocation: Allocation = {}
        already_allocated: set[str] = set()
        # Egress IPs that must not be auto-assigned; this also unassigns them
        # if they were auto-assigned before.
        for egress_ip, eip in self.egress_ips.items():
            if not eip.namespaces:
                already_allocated.add(egress_ip)
            elif len(eip.nodes) > 1 or len(eip.namespaces) > 1:
                already_allocated.add(egress_ip)
            elif len(eip.namespaces) == 1 and len(eip.namespaces[0].requested_ips) > 1:
                already_allocated.add(egress_ip)
        return allocation, already_allocated

    def _allocate_existing_egress_ips(
        self, allocation: Allocation, already_allocated: set[str]
    ) -> bool:
        removed = False
        for node in self.nodes.values():
            if node.parsed_cidrs:
                allocation[node.node_name] = []
        # Keep each active egress IP on its node if it still fits there.
        for egress_ip, eip in self.egress_ips.items():
            if not eip.assigned_node_ip or egress_ip in already_allocated:
                continue
            node = eip.nodes[0]
            if node.hosts(eip.parsed) and not node.offline:
                allocation.setdefault(node.node_name, []).append(egress_ip)
            else:
                removed = True
            # Even an IP leaving its node cannot move until the next reallocation.
            already_allocated.add(egress_ip)
        return removed

    def _allocate_new_egress_ips(self, allocation: Allocation, already_allocated: set[str]) -> None:
        # First the pending IPs that only one node can take.
        for egress_ip, eip in self.egress_ips.items():
            if egress_ip in already_allocated:
                continue
            node_name, other_nodes = self._find_egress_ip_allocation(eip.parsed, allocation)
            if node_name and not other_nodes:
                allocation.setdefault(node_name, []).append(egress_ip)
                already_allocated.add(egress_ip)
        # Then whatever else can be placed.
        for egress_ip, eip in self.egress_ips.items():
            if egress_ip in already_allocated:
                continue
            node_name, _ = self._find_egress_ip_allocation(eip.parsed, allocation)
            if node_name:
                allocation.setdefault(node_name, []).append(egress_ip)

    def reallocate_egress_ips(self) -> Allocation:
        """Return a map from node name to the egress IPs auto-allocated to it."""
        with self._lock:
            allocation, already_allocated = self._make_empty_allocation()
            removed = self._allocate_existing_egress_ips(allocation, already_allocated)
            self._allocate_new_egress_ips(allocation, already_allocated)
            if removed:
                # Apply the removals first; balance is checked on the next call.
                return allocation

            # Compare with an allocation from scratch to see whether things have
            # become too unbalanced (e.g. a node came back after being emptied).
            full, full_allocated = self._make_empty_allocation()
            self._allocate_new_egress_ips(full, full_allocated)

            empty_nodes = [
                node_name
                for node_name, full_ips in full.items()
                if len(allocation.get(node_name, [])) < len(full_ips) // 2
            ]

            if empty_nodes:
                # Leave out the IPs the fresh allocation gave to the "empty" nodes so
                # they are dropped now and reassigned, for balance, later.
                allocation, already_allocated = self._make_empty_allocation()
                for node_name in empty_nodes:
                    already_allocated.update(full[node_name])
                self._allocate_existing_egress_ips(allocation, already_allocated)
                self._allocate_new_egress_ips(allocation, already_allocated)
                self.update_egress_cidrs = True

            return allocation