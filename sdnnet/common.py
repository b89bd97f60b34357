"""Cluster network parsing and consistency checks shared by master, node and proxy."""

from __future__ import annotations

import ipaddress
import json
import logging
import socket
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from ipaddress import IPv4Address
from typing import Optional

import psutil

from sdnnet.errors import raise_aggregate
from sdnnet.network_types import ClusterNetwork, HostSubnet, Pod, Service
from sdnnet.validation import (
    IPAddress,
    IPNetwork,
    _parse_cidr,
    _parse_ip,
    cidrs_overlap,
    parse_cidr_mask,
)

log = logging.getLogger(__name__)

DEFAULT_VXLAN_PORT = 4789
DEFAULT_MTU = 1450
_MAX_ERRORS = 10


def _quote(text: str) -> str:
    return json.dumps(text, ensure_ascii=False)


def host_subnet_to_string(subnet: HostSubnet) -> str:
    """Describe a HostSubnet in one line."""
    return (
        f"{subnet.metadata.name} (host: {_quote(subnet.host)}, ip: {_quote(subnet.host_ip)}, "
        f"subnet: {_quote(subnet.subnet)})"
    )


def cluster_network_to_string(n: ClusterNetwork) -> str:
    """Describe a ClusterNetwork in one line."""
    return (
        f"{n.metadata.name} (network: {_quote(n.network)}, hostSubnetBits: {n.host_subnet_length}, "
        f"serviceNetwork: {_quote(n.service_network)}, pluginName: {_quote(n.plugin_name)})"
    )


@dataclass
class ParsedClusterNetworkEntry:
    """One parsed cluster network CIDR."""

    cluster_cidr: IPNetwork
    host_subnet_length: int


def cluster_network_list_contains(
    cluster_networks: Iterable[ParsedClusterNetworkEntry], ipaddr: Optional[IPAddress]
) -> Optional[IPNetwork]:
    """Return the first cluster CIDR containing ``ipaddr``, or None."""
    if ipaddr is None:
        return None
    for entry in cluster_networks:
        if ipaddr in entry.cluster_cidr:
            return entry.cluster_cidr
    return None


@dataclass
class ParsedClusterNetwork:
    """A ClusterNetwork with its addresses parsed."""

    cluster_networks: list[ParsedClusterNetworkEntry] = field(default_factory=list)
    service_network: Optional[IPNetwork] = None
    plugin_name: str = ""
    vxlan_port: int = DEFAULT_VXLAN_PORT
    mtu: int = DEFAULT_MTU

    def validate_node_ip(self, node_ip: str) -> None:
        """Raise ValueError if ``node_ip`` cannot serve as a node address."""
        if node_ip in ("", "127.0.0.1"):
            raise ValueError(f"invalid node IP {_quote(node_ip)}")

        # A node IP inside the cluster network could cause a routing loop.
        ipaddr = _parse_ip(node_ip)
        if ipaddr is None:
            raise ValueError(f"failed to parse node IP {node_ip}")

        conflicting = cluster_network_list_contains(self.cluster_networks, ipaddr)
        if conflicting is not None:
            raise ValueError(f"node IP {node_ip} conflicts with cluster network {conflicting}")
        if self.service_network is not None and ipaddr in self.service_network:
            raise ValueError(f"node IP {node_ip} conflicts with service network {self.service_network}")

    def check_host_networks(self, host_ip_nets: Iterable[IPNetwork]) -> None:
        """Raise AggregateError if any host network overlaps the cluster or service networks."""
        errors: list[Exception] = []
        for ip_net in host_ip_nets:
            for entry in self.cluster_networks:
                if cidrs_overlap(ip_net, entry.cluster_cidr):
                    errors.append(
                        ValueError(
                            f"cluster IP: {entry.cluster_cidr.network_address} "
                            f"conflicts with host network: {ip_net}"
                        )
                    )
            if self.service_network is not None and cidrs_overlap(ip_net, self.service_network):
                errors.append(
                    ValueError(f"service IP: {self.service_network} conflicts with host network: {ip_net}")
                )
        raise_aggregate(errors)

    def check_cluster_objects(
        self,
        subnets: Iterable[HostSubnet],
        pods: Iterable[Pod],
        services: Iterable[Service],
    ) -> None:
        """Raise AggregateError if existing objects fall outside the configured networks.

        At most ten problems are reported, followed by a truncation notice.
        """
        errors: list[Exception] = []

        for subnet in subnets:
            try:
                subnet_ip, _ = _parse_cidr(subnet.subnet)
            except ValueError:
                errors.append(ValueError(f"failed to parse network address: {subnet.subnet}"))
            else:
                if cluster_network_list_contains(self.cluster_networks, subnet_ip) is None:
                    errors.append(
                        ValueError(
                            f"existing node subnet: {subnet.subnet} is not part of any cluster network CIDR"
                        )
                    )
            if len(errors) >= _MAX_ERRORS:
                break

        for pod in pods:
            if pod.host_network or not pod.pod_ip:
                continue
            if cluster_network_list_contains(self.cluster_networks, _parse_ip(pod.pod_ip)) is None:
                errors.append(
                    ValueError(
                        f"existing pod {pod.metadata.namespace}:{pod.metadata.name} with IP "
                        f"{pod.pod_ip} is not part of cluster network"
                    )
                )
                if len(errors) >= _MAX_ERRORS:
                    break

        for svc in services:
            svc_ip = _parse_ip(svc.cluster_ip)
            if svc_ip is not None and (self.service_network is None or svc_ip not in self.service_network):
                errors.append(
                    ValueError(
                        f"existing service {svc.metadata.namespace}:{svc.metadata.name} with IP "
                        f"{svc.cluster_ip} is not part of service network {self.service_network}"
                    )
                )
                if len(errors) >= _MAX_ERRORS:
                    break

        if len(errors) >= _MAX_ERRORS:
            errors.append(ValueError("too many errors... truncating"))
        raise_aggregate(errors)


def _parse_lenient(cidr: str, what: str, field_name: str) -> IPNetwork:
    try:
        return parse_cidr_mask(cidr)
    except ValueError:
        try:
            _, network = _parse_cidr(cidr)
        except ValueError as err:
            raise ValueError(f"failed to parse {what} CIDR {cidr}: {err}") from err
        log.warning(
            "Configured %s value %s is invalid; treating it as %s",
            field_name,
            _quote(cidr),
            _quote(str(network)),
        )
        return network


def parse_cluster_network(cn: ClusterNetwork) -> ParsedClusterNetwork:
    """Parse a ClusterNetwork, accepting CIDRs with host bits set after a warning."""
    entries = [
        ParsedClusterNetworkEntry(
            cluster_cidr=_parse_lenient(entry.cidr, "ClusterNetwork", "clusterNetworks"),
            host_subnet_length=entry.host_subnet_length,
        )
        for entry in cn.cluster_networks
    ]
    service_network = _parse_lenient(cn.service_network, "ServiceNetwork", "serviceNetworkCIDR")
    return ParsedClusterNetwork(
        cluster_networks=entries,
        service_network=service_network,
        plugin_name=cn.plugin_name,
        vxlan_port=cn.vxlan_port if cn.vxlan_port is not None else DEFAULT_VXLAN_PORT,
        mtu=cn.mtu if cn.mtu is not None else DEFAULT_MTU,
    )


def generate_default_gateway(sna: IPNetwork) -> IPv4Address:
    """Return the default gateway address (the .1 address) of an IPv4 subnet."""
    if sna.version != 4:
        raise ValueError(f"not an IPv4 subnet: {sna}")
    return IPv4Address(int(sna.network_address) | 0x1)


def get_host_ip_networks(
    skip_interfaces: Sequence[str] = (),
) -> tuple[list[IPNetwork], list[IPAddress]]:
    """Return the IPv4 networks and addresses of the host's interfaces.

    Interfaces named in ``skip_interfaces`` and loopback addresses are left out.
    """
    skip = set(skip_interfaces)
    host_nets: list[IPNetwork] = []
    host_ips: list[IPAddress] = []
    errors: list[Exception] = []

    for name, addrs in psutil.net_if_addrs().items():
        if name in skip:
            continue
        for addr in addrs:
            if addr.family != socket.AF_INET:
                continue
            try:
                iface = ipaddress.ip_interface(f"{addr.address}/{addr.netmask or 32}")
            except ValueError as err:
                errors.append(err)
                continue
            if iface.ip.is_loopback or iface.version != 4:
                continue
            host_nets.append(iface.network)
            host_ips.append(iface.ip)

    raise_aggregate(errors)
    return host_nets, host_ips