"""Tracking egress IP claims by nodes and namespaces and telling a watcher what to do."""

from __future__ import annotations

import abc
import errno
import logging
import socket
from collections.abc import Sequence
from typing import Any, Optional

from sdnnet.common import generate_default_gateway, host_subnet_to_string
from sdnnet.egress_allocation import (
    EgressIPAllocator,
    EgressIPAssignment,
    EgressIPInfo,
    NamespaceEgress,
    NodeEgress,
    active_egress_ips_the_same,
)
from sdnnet.errors import AggregateError
from sdnnet.informers import EventType, ResourceEventHandlers, informer_funcs
from sdnnet.network_types import HostSubnet, NetNamespace
from sdnnet.validation import IPNetwork, _parse_cidr, validate_host_subnet_egress

log = logging.getLogger(__name__)

_DISCARD_PORT = 9


class EgressIPWatcher(abc.ABC):
    """Receives the egress changes decided by an EgressIPTracker."""

    @abc.abstractmethod
    def synced(self) -> None:
        """Called once the initial state has been loaded."""

    @abc.abstractmethod
    def claim_egress_ip(self, vnid: int, egress_ip: str, node_ip: str) -> None:
        """Start hosting ``egress_ip`` on ``node_ip`` for namespace ``vnid``."""

    @abc.abstractmethod
    def release_egress_ip(self, egress_ip: str, node_ip: str) -> None:
        """Stop hosting ``egress_ip`` on ``node_ip``."""

    @abc.abstractmethod
    def set_namespace_egress_normal(self, vnid: int) -> None:
        """Let namespace ``vnid`` send traffic out normally."""

    @abc.abstractmethod
    def set_namespace_egress_dropped(self, vnid: int) -> None:
        """Drop the egress traffic of namespace ``vnid``."""

    @abc.abstractmethod
    def set_namespace_egress_via_egress_ips(
        self, vnid: int, active_egress_ips: Sequence[EgressIPAssignment]
    ) -> None:
        """Send the egress traffic of namespace ``vnid`` through the given egress IPs."""

    @abc.abstractmethod
    def update_egress_cidrs(self) -> None:
        """Egress IPs may need to be reallocated."""


def _parse_network_or_none(cidr: str) -> Optional[IPNetwork]:
    try:
        return _parse_cidr(cidr)[1]
    except ValueError:
        return None


class EgressIPTracker(EgressIPAllocator):
    """Follows HostSubnet and NetNamespace egress settings and drives a watcher."""

    def __init__(self, watcher: EgressIPWatcher) -> None:
        super().__init__()
        self.watcher = watcher
        self.nodes_with_cidrs = 0
        self._changed_egress_ips: dict[EgressIPInfo, None] = {}
        self._changed_namespaces: dict[NamespaceEgress, None] = {}

    # Event handlers

    def host_subnet_handlers(self) -> ResourceEventHandlers:
        """Handlers to attach to a HostSubnet watch."""
        return informer_funcs(
            HostSubnet, self.handle_add_or_update_host_subnet, self.handle_delete_host_subnet
        )

    def net_namespace_handlers(self) -> ResourceEventHandlers:
        """Handlers to attach to a NetNamespace watch."""
        return informer_funcs(
            NetNamespace,
            self.handle_add_or_update_net_namespace,
            self.handle_delete_net_namespace,
        )

    def handle_add_or_update_host_subnet(
        self, obj: HostSubnet, old: Any, event_type: EventType
    ) -> None:
        """Apply an added or modified HostSubnet, ignoring invalid ones."""
        log.debug("Watch %s event for HostSubnet %r", event_type.value, obj.metadata.name)
        try:
            validate_host_subnet_egress(obj)
        except AggregateError as err:
            log.error("Ignoring invalid HostSubnet %s: %s", host_subnet_to_string(obj), err)
            return
        self.update_host_subnet_egress(obj)

    def handle_delete_host_subnet(self, obj: HostSubnet) -> None:
        """Forget the egress settings of a deleted HostSubnet."""
        log.debug("Watch %s event for HostSubnet %r", EventType.DELETED.value, obj.metadata.name)
        hs = obj.deep_copy()
        hs.egress_cidrs = []
        hs.egress_ips = []
        self.update_host_subnet_egress(hs)

    def handle_add_or_update_net_namespace(
        self, obj: NetNamespace, old: Any, event_type: EventType
    ) -> None:
        """Apply an added or modified NetNamespace."""
        log.debug("Watch %s event for NetNamespace %r", event_type.value, obj.metadata.name)
        self.update_net_namespace_egress(obj)

    def handle_delete_net_namespace(self, obj: NetNamespace) -> None:
        """Forget the egress settings of a deleted NetNamespace."""
        log.debug(
            "Watch %s event for NetNamespace %r", EventType.DELETED.value, obj.metadata.name
        )
        self.delete_net_namespace_egress(obj.net_id)

    # Bookkeeping

    def _ensure_egress_ip_info(self, egress_ip: str) -> EgressIPInfo:
        eg = self.egress_ips.get(egress_ip)
        if eg is None:
            eg = EgressIPInfo(ip=egress_ip)
            self.egress_ips[egress_ip] = eg
        return eg

    def _egress_ip_changed(self, eg: EgressIPInfo) -> None:
        self._changed_egress_ips[eg] = None
        for ns in eg.namespaces:
            self._changed_namespaces[ns] = None

    def _add_node_egress_ip(self, node: NodeEgress, egress_ip: str) -> None:
        eg = self._ensure_egress_ip_info(egress_ip)
        eg.nodes.append(node)
        self._egress_ip_changed(eg)

    def _delete_node_egress_ip(self, node: NodeEgress, egress_ip: str) -> None:
        eg = self.egress_ips.get(egress_ip)
        if eg is None:
            return
        for i, candidate in enumerate(eg.nodes):
            if candidate is node:
                self._egress_ip_changed(eg)
                del eg.nodes[i]
                return

    def _add_namespace_egress_ip(self, ns: NamespaceEgress, egress_ip: str) -> None:
        eg = self._ensure_egress_ip_info(egress_ip)
        eg.namespaces.append(ns)
        self._egress_ip_changed(eg)

    def _delete_namespace_egress_ip(self, ns: NamespaceEgress, egress_ip: str) -> None:
        eg = self.egress_ips.get(egress_ip)
        if eg is None:
            return
        for i, candidate in enumerate(eg.namespaces):
            if candidate is ns:
                self._egress_ip_changed(eg)
                del eg.namespaces[i]
                return

    # Updates

    def update_host_subnet_egress(self, hs: HostSubnet) -> None:
        """Apply the egress IPs and egress CIDRs of a HostSubnet."""
        with self._lock:
            sdn_ip = ""
            if hs.subnet:
                try:
                    sdn_ip = str(generate_default_gateway(_parse_cidr(hs.subnet)[1]))
                except ValueError as err:
                    log.error("could not parse HostSubnet %r CIDR: %s", hs.metadata.name, err)

            uid = hs.metadata.uid
            has_egress = bool(hs.egress_ips or hs.egress_cidrs)
            node = self.nodes.get(uid)
            if node is None:
                if not has_egress:
                    return
                node = NodeEgress(node_name=hs.host, node_ip=hs.host_ip, sdn_ip=sdn_ip)
                self.nodes[uid] = node
                self.nodes_by_node_ip[hs.host_ip] = node
            elif not has_egress:
                del self.nodes[uid]
                self.nodes_by_node_ip.pop(node.node_ip, None)

            new_cidrs = set(hs.egress_cidrs)
            if node.requested_cidrs != new_cidrs:
                if not hs.egress_cidrs:
                    self.nodes_with_cidrs -= 1
                elif not node.requested_cidrs:
                    self.nodes_with_cidrs += 1
                node.requested_cidrs = new_cidrs
                node.parsed_cidrs = {cidr: _parse_network_or_none(cidr) for cidr in hs.egress_cidrs}
                self.update_egress_cidrs = True

            if node.node_ip != hs.host_ip:
                # Old mappings must be cleaned up and synced before the node IP changes.
                moved: list[str] = []
                for ip in sorted(node.requested_ips):
                    eg = self.egress_ips.get(ip)
                    if eg is not None and eg.assigned_node_ip == node.node_ip:
                        moved.append(ip)
                        self._delete_node_egress_ip(node, ip)
                self._sync_egress_ips()

                self.nodes_by_node_ip.pop(node.node_ip, None)
                node.node_ip = hs.host_ip
                self.nodes_by_node_ip[node.node_ip] = node

                for ip in moved:
                    self._add_node_egress_ip(node, ip)

            old_requested = node.requested_ips
            node.requested_ips = set(hs.egress_ips)
            for ip in sorted(node.requested_ips - old_requested):
                self._add_node_egress_ip(node, ip)
            for ip in sorted(old_requested - node.requested_ips):
                self._delete_node_egress_ip(node, ip)

            self._sync_egress_ips()

    def update_net_namespace_egress(self, netns: NetNamespace) -> None:
        """Apply the egress IPs requested by a NetNamespace."""
        with self._lock:
            ns = self.namespaces_by_vnid.get(netns.net_id)
            if ns is None:
                if not netns.egress_ips:
                    return
                ns = NamespaceEgress(vnid=netns.net_id)
                self.namespaces_by_vnid[netns.net_id] = ns
            elif not netns.egress_ips:
                del self.namespaces_by_vnid[netns.net_id]

            old_requested = set(ns.requested_ips)
            ns.requested_ips = list(netns.egress_ips)
            new_requested = set(ns.requested_ips)

            for ip in sorted(new_requested - old_requested):
                self._add_namespace_egress_ip(ns, ip)
            for ip in sorted(old_requested - new_requested):
                self._delete_namespace_egress_ip(ns, ip)

            # Unchanged IPs still count as changed, so reorderings and
            # duplicates are processed correctly.
            for ip in sorted(new_requested & old_requested):
                eg = self.egress_ips.get(ip)
                if eg is not None:
                    self._egress_ip_changed(eg)

            self._sync_egress_ips()

    def delete_net_namespace_egress(self, vnid: int) -> None:
        """Drop all egress IPs of namespace ``vnid``."""
        self.update_net_namespace_egress(NetNamespace(net_id=vnid))

    # Synchronisation

    def _check_egress_ip_active(self, eg: EgressIPInfo) -> bool:
        """Return whether ``eg`` can be used; raise ValueError on a conflict."""
        if not eg.nodes or not eg.namespaces:
            return False
        if len(eg.nodes) > 1:
            raise ValueError(
                f"Multiple nodes ({eg.nodes[0].node_ip}, {eg.nodes[1].node_ip}) "
                f"claiming EgressIP {eg.ip}"
            )
        if len(eg.namespaces) > 1:
            raise ValueError(
                f"Multiple namespaces ({eg.namespaces[0].vnid}, {eg.namespaces[1].vnid}) "
                f"claiming EgressIP {eg.ip}"
            )
        for ip in eg.namespaces[0].requested_ips:
            eg2 = self.egress_ips.get(ip)
            if (
                eg2 is not None
                and eg2 is not eg
                and len(eg2.nodes) == 1
                and eg2.nodes[0] is eg.nodes[0]
            ):
                raise ValueError(
                    f"Multiple EgressIPs ({eg.ip}, {eg2.ip}) for VNID "
                    f"{eg.namespaces[0].vnid} on node {eg.nodes[0].node_ip}"
                )
        return True

    def _sync_egress_ips(self) -> None:
        changed_egress_ips = list(self._changed_egress_ips)
        self._changed_egress_ips = {}
        changed_namespaces = list(self._changed_namespaces)
        self._changed_namespaces = {}

        for eg in changed_egress_ips:
            try:
                active = self._check_egress_ip_active(eg)
            except ValueError as err:
                log.error("%s", err)
                active = False
            self._sync_egress_node_state(eg, active)

        for ns in changed_namespaces:
            self._sync_egress_namespace_state(ns)

        for eg in changed_egress_ips:
            if not eg.namespaces and not eg.nodes:
                self.egress_ips.pop(eg.ip, None)

        if self.update_egress_cidrs:
            self.update_egress_cidrs = False
            if self.nodes_with_cidrs > 0:
                self.watcher.update_egress_cidrs()

    def _sync_egress_node_state(self, eg: EgressIPInfo, active: bool) -> None:
        if active and eg.assigned_node_ip != eg.nodes[0].node_ip:
            log.debug("Assigning egress IP %s to node %s", eg.ip, eg.nodes[0].node_ip)
            eg.assigned_node_ip = eg.nodes[0].node_ip
            self.watcher.claim_egress_ip(eg.namespaces[0].vnid, eg.ip, eg.assigned_node_ip)
        elif not active and eg.assigned_node_ip:
            log.debug("Removing egress IP %s from node %s", eg.ip, eg.assigned_node_ip)
            self.watcher.release_egress_ip(eg.ip, eg.assigned_node_ip)
            eg.assigned_node_ip = ""

        if not eg.assigned_node_ip:
            self.update_egress_cidrs = True

    def _sync_egress_namespace_state(self, ns: NamespaceEgress) -> None:
        if not ns.requested_ips:
            if ns.active_egress_ips or ns.should_drop_traffic:
                ns.active_egress_ips = []
                ns.should_drop_traffic = False
                self.watcher.set_namespace_egress_normal(ns.vnid)
            return

        active: list[EgressIPAssignment] = []
        for ip in ns.requested_ips:
            eg = self.egress_ips.get(ip)
            if eg is None:
                continue
            if len(eg.namespaces) > 1:
                log.debug(
                    "VNID %d gets no egress due to multiply-assigned egress IP %s", ns.vnid, eg.ip
                )
                active = []
                break
            if not eg.assigned_node_ip:
                log.debug("VNID %d cannot use unassigned egress IP %s", ns.vnid, eg.ip)
            elif len(ns.requested_ips) > 1 and eg.nodes[0].offline:
                log.debug(
                    "VNID %d cannot use egress IP %s on offline node %s",
                    ns.vnid,
                    eg.ip,
                    eg.assigned_node_ip,
                )
            else:
                active.append(EgressIPAssignment(node_ip=eg.assigned_node_ip, egress_ip=eg.ip))

        if active:
            if not active_egress_ips_the_same(ns.active_egress_ips, active):
                ns.active_egress_ips = active
                ns.should_drop_traffic = False
                self.watcher.set_namespace_egress_via_egress_ips(ns.vnid, list(active))
        elif not ns.should_drop_traffic:
            ns.active_egress_ips = []
            ns.should_drop_traffic = True
            self.watcher.set_namespace_egress_dropped(ns.vnid)

    # Node liveness

    def set_node_offline(self, node_ip: str, offline: bool) -> None:
        """Mark the node with ``node_ip`` offline or back online."""
        with self._lock:
            node = self.nodes_by_node_ip.get(node_ip)
            if node is None:
                return
            node.offline = offline
            for ip in sorted(node.requested_ips):
                eg = self.egress_ips.get(ip)
                if eg is not None:
                    self._egress_ip_changed(eg)
            if node.requested_cidrs:
                self.update_egress_cidrs = True
            self._sync_egress_ips()

    def _lookup_node_ip(self, ip: str) -> str:
        with self._lock:
            node = self.nodes_by_node_ip.get(ip)
            if node is not None:
                return node.sdn_ip
            return ip

    def ping(self, ip: str, timeout: float) -> bool:
        """Guess whether the node at ``ip`` is online.

        A TCP connection to the discard port is attempted; a timeout or "no route
        to host" means offline, anything else (even a refusal) means online.
        """
        # A public node IP is replaced by the node's SDN IP.
        ip = self._lookup_node_ip(ip)
        try:
            with socket.create_connection((ip, _DISCARD_PORT), timeout=timeout):
                pass
        except socket.timeout:
            return False
        except OSError as err:
            if err.errno == errno.EHOSTUNREACH:
                return False
        return True