"""Validation of network API objects and CIDR helpers."""

from __future__ import annotations

import ipaddress
import json
from ipaddress import IPv4Address, IPv6Address, IPv4Network, IPv6Network
from typing import Any, Optional, Union

from sdnnet.errors import raise_aggregate
from sdnnet.network_types import (
    ASSIGN_HOST_SUBNET_ANNOTATION,
    CLUSTER_NETWORK_DEFAULT,
    ClusterNetwork,
    HostSubnet,
    ObjectMeta,
)

IPAddress = Union[IPv4Address, IPv6Address]
IPNetwork = Union[IPv4Network, IPv6Network]


def _format_value(value: Any) -> str:
    if isinstance(value, str):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


class FieldError(ValueError):
    """A problem with one field of an API object."""

    INVALID = "Invalid value"
    REQUIRED = "Required value"
    FORBIDDEN = "Forbidden"

    def __init__(self, error_type: str, path: str, value: Any, detail: str) -> None:
        self.error_type = error_type
        self.path = path
        self.value = value
        self.detail = detail
        super().__init__(str(self))

    @classmethod
    def invalid(cls, path: str, value: Any, detail: str) -> "FieldError":
        return cls(cls.INVALID, path, value, detail)

    @classmethod
    def required(cls, path: str, detail: str) -> "FieldError":
        return cls(cls.REQUIRED, path, None, detail)

    @classmethod
    def forbidden(cls, path: str, detail: str) -> "FieldError":
        return cls(cls.FORBIDDEN, path, None, detail)

    def __str__(self) -> str:
        body = self.error_type
        if self.error_type == self.INVALID:
            body = f"{body}: {_format_value(self.value)}"
        if self.detail:
            body = f"{body}: {self.detail}"
        return f"{self.path}: {body}"


def _parse_address(text: str) -> Optional[IPAddress]:
    if not text or "%" in text:
        return None
    try:
        return ipaddress.ip_address(text)
    except ValueError:
        return None


def _parse_ip(text: str) -> Optional[IPAddress]:
    """Parse an IP address, returning None if it is not one.

    IPv4-mapped IPv6 addresses are returned as IPv4 addresses.
    """
    ip = _parse_address(text)
    if isinstance(ip, IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


def _parse_cidr(cidr: str) -> tuple[IPAddress, IPNetwork]:
    """Parse "address/prefix" into the address and its (masked) network."""
    address, sep, prefix = cidr.partition("/")
    ip = _parse_address(address)
    if (
        not sep
        or ip is None
        or not (prefix.isascii() and prefix.isdigit())
        or int(prefix) > ip.max_prefixlen
    ):
        raise ValueError(f"invalid CIDR address: {cidr}")
    return ip, ipaddress.ip_network(f"{ip}/{int(prefix)}", strict=False)


def parse_cidr_mask(cidr: str) -> IPNetwork:
    """Parse a CIDR that must be given in canonical form (no host bits set)."""
    ip, network = _parse_cidr(cidr)
    if ip != network.network_address:
        raise ValueError(
            f"CIDR network specification {_format_value(cidr)} is not in canonical form "
            f"(should be {network.network_address}/{network.prefixlen} "
            f"or {ip}/{network.max_prefixlen}?)"
        )
    return network


def cidrs_overlap(cidr1: IPNetwork, cidr2: IPNetwork) -> bool:
    """Return whether either network contains the other's base address."""
    return cidr2.network_address in cidr1 or cidr1.network_address in cidr2


def _validate_cidr_v4(cidr: str) -> IPNetwork:
    network = parse_cidr_mask(cidr)
    if network.version != 4:
        raise ValueError("must be an IPv4 network")
    return network


def _validate_ipv4(ip_text: str) -> IPAddress:
    ip = _parse_ip(ip_text)
    if ip is None:
        raise ValueError("invalid IP address")
    if ip.version != 4:
        raise ValueError("must be an IPv4 address")
    return ip


def _validate_object_meta(meta: ObjectMeta) -> list[FieldError]:
    """Check the metadata of a cluster-scoped object."""
    errors: list[FieldError] = []
    if not meta.name:
        errors.append(FieldError.required("metadata.name", "name or generateName is required"))
    else:
        if meta.name in (".", ".."):
            errors.append(FieldError.invalid("metadata.name", meta.name, f"may not be '{meta.name}'"))
        for illegal in ("/", "%"):
            if illegal in meta.name:
                errors.append(
                    FieldError.invalid("metadata.name", meta.name, f"may not contain '{illegal}'")
                )
    if meta.namespace:
        errors.append(FieldError.forbidden("metadata.namespace", "not allowed on this type"))
    return errors


def validate_cluster_network(cluster_net: ClusterNetwork) -> None:
    """Check a ClusterNetwork, raising AggregateError with every problem found."""
    errors = _validate_object_meta(cluster_net.metadata)
    tested_cidrs: list[IPNetwork] = []

    service_net: Optional[IPNetwork]
    try:
        service_net = _validate_cidr_v4(cluster_net.service_network)
    except ValueError as err:
        service_net = None
        errors.append(FieldError.invalid("serviceNetwork", cluster_net.service_network, str(err)))

    if not cluster_net.cluster_networks:
        # Legacy ClusterNetwork: the old fields must be set.
        if cluster_net.network == "":
            errors.append(
                FieldError.required("network", "network must be set (if clusterNetworks is empty)")
            )
        elif cluster_net.host_subnet_length == 0:
            errors.append(
                FieldError.required(
                    "hostsubnetlength", "hostsubnetlength must be set (if clusterNetworks is empty)"
                )
            )
        else:
            cluster_ip_net: Optional[IPNetwork]
            try:
                cluster_ip_net = _validate_cidr_v4(cluster_net.network)
            except ValueError as err:
                cluster_ip_net = None
                errors.append(FieldError.invalid("network", cluster_net.network, str(err)))
            if cluster_ip_net is not None:
                host_bits = cluster_ip_net.max_prefixlen - cluster_ip_net.prefixlen
                if cluster_net.host_subnet_length > host_bits:
                    errors.append(
                        FieldError.invalid(
                            "hostsubnetlength",
                            cluster_net.host_subnet_length,
                            "subnet length is too large for cidr",
                        )
                    )
                elif cluster_net.host_subnet_length < 2:
                    errors.append(
                        FieldError.invalid(
                            "hostsubnetlength",
                            cluster_net.host_subnet_length,
                            "subnet length must be at least 2",
                        )
                    )
                if service_net is not None and cidrs_overlap(cluster_ip_net, service_net):
                    errors.append(
                        FieldError.invalid(
                            "serviceNetwork",
                            cluster_net.service_network,
                            "service network overlaps with cluster network",
                        )
                    )
    else:
        first = cluster_net.cluster_networks[0]
        if cluster_net.metadata.name == CLUSTER_NETWORK_DEFAULT:
            if cluster_net.network != first.cidr:
                errors.append(
                    FieldError.invalid(
                        "network",
                        cluster_net.network,
                        "network must be identical to clusterNetworks[0].cidr",
                    )
                )
            if cluster_net.host_subnet_length != first.host_subnet_length:
                errors.append(
                    FieldError.invalid(
                        "hostsubnetlength",
                        cluster_net.host_subnet_length,
                        "hostsubnetlength must be identical to clusterNetworks[0].hostSubnetLength",
                    )
                )
        elif cluster_net.network != "" or cluster_net.host_subnet_length != 0:
            if (
                cluster_net.network != first.cidr
                or cluster_net.host_subnet_length != first.host_subnet_length
            ):
                errors.append(
                    FieldError.invalid(
                        "clusterNetworks[0]",
                        first,
                        "network and hostsubnetlength must be unset or identical to clusterNetworks[0]",
                    )
                )

    for i, entry in enumerate(cluster_net.cluster_networks):
        path = f"clusterNetworks[{i}]"
        try:
            cluster_ip_net = _validate_cidr_v4(entry.cidr)
        except ValueError as err:
            errors.append(FieldError.invalid(f"{path}.cidr", entry.cidr, str(err)))
            continue
        host_bits = cluster_ip_net.max_prefixlen - cluster_ip_net.prefixlen
        if entry.host_subnet_length > host_bits:
            errors.append(
                FieldError.invalid(
                    f"{path}.hostSubnetLength",
                    entry.host_subnet_length,
                    "subnet length is too large for clusterNetwork ",
                )
            )
        elif entry.host_subnet_length < 2:
            errors.append(
                FieldError.invalid(
                    f"{path}.hostSubnetLength",
                    entry.host_subnet_length,
                    "subnet length must be at least 2",
                )
            )

        for tested in tested_cidrs:
            if cidrs_overlap(cluster_ip_net, tested):
                errors.append(
                    FieldError.invalid(
                        f"{path}.cidr",
                        entry.cidr,
                        f"cidr range overlaps with another cidr {_format_value(str(tested))}",
                    )
                )
        tested_cidrs.append(cluster_ip_net)

        if service_net is not None and cidrs_overlap(cluster_ip_net, service_net):
            errors.append(
                FieldError.invalid(
                    "serviceNetwork",
                    cluster_net.service_network,
                    f"service network overlaps with cluster network cidr: {cluster_ip_net}",
                )
            )

    if cluster_net.vxlan_port is not None and not 1 <= cluster_net.vxlan_port <= 65535:
        errors.append(
            FieldError.invalid(
                "vxlanPort", cluster_net.vxlan_port, "must be between 1 and 65535, inclusive"
            )
        )

    raise_aggregate(errors)


def validate_host_subnet(hs: HostSubnet) -> None:
    """Check the system-maintained fields of a HostSubnet."""
    errors = _validate_object_meta(hs.metadata)

    if hs.host != hs.metadata.name:
        errors.append(
            FieldError.invalid(
                "host", hs.host, f"must be the same as metadata.name: {_format_value(hs.metadata.name)}"
            )
        )

    if hs.subnet == "":
        if ASSIGN_HOST_SUBNET_ANNOTATION not in hs.metadata.annotations:
            errors.append(FieldError.invalid("subnet", hs.subnet, "field cannot be empty"))
    else:
        try:
            _validate_cidr_v4(hs.subnet)
        except ValueError as err:
            errors.append(FieldError.invalid("subnet", hs.subnet, str(err)))

    # This should be IPv4, but some clusters may still carry IPv6 values.
    if _parse_ip(hs.host_ip) is None:
        errors.append(FieldError.invalid("hostIP", hs.host_ip, "invalid IP address"))

    raise_aggregate(errors)


def validate_host_subnet_egress(hs: HostSubnet) -> None:
    """Check the user-maintained egress fields of a HostSubnet."""
    errors = _validate_object_meta(hs.metadata)

    for i, egress_ip in enumerate(hs.egress_ips):
        try:
            _validate_ipv4(egress_ip)
        except ValueError as err:
            errors.append(FieldError.invalid(f"egressIPs[{i}]", egress_ip, str(err)))

    for i, egress_cidr in enumerate(hs.egress_cidrs):
        try:
            _validate_cidr_v4(egress_cidr)
        except ValueError as err:
            errors.append(FieldError.invalid(f"egressCIDRs[{i}]", egress_cidr, str(err)))

    raise_aggregate(errors)