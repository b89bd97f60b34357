"""Network API objects used by the SDN code."""

from __future__ import annotations

import copy
import enum
from dataclasses import dataclass, field
from typing import Optional

CLUSTER_NETWORK_DEFAULT = "default"
ASSIGN_HOST_SUBNET_ANNOTATION = "pod.network.openshift.io/assign-subnet"


@dataclass
class ObjectMeta:
    """Identity of an API object."""

    name: str = ""
    namespace: str = ""
    uid: str = ""
    annotations: dict[str, str] = field(default_factory=dict)


@dataclass
class HostSubnet:
    """The subnet and egress configuration assigned to one node."""

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    host: str = ""
    host_ip: str = ""
    subnet: str = ""
    egress_ips: list[str] = field(default_factory=list)
    egress_cidrs: list[str] = field(default_factory=list)

    def deep_copy(self) -> "HostSubnet":
        """Return an independent copy."""
        return copy.deepcopy(self)


@dataclass
class ClusterNetworkEntry:
    """One cluster network CIDR and the size of node subnets within it."""

    cidr: str = ""
    host_subnet_length: int = 0


@dataclass
class ClusterNetwork:
    """Cluster-wide network configuration."""

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    network: str = ""
    host_subnet_length: int = 0
    service_network: str = ""
    plugin_name: str = ""
    cluster_networks: list[ClusterNetworkEntry] = field(default_factory=list)
    vxlan_port: Optional[int] = None
    mtu: Optional[int] = None


@dataclass
class NetNamespace:
    """The network identity of a namespace."""

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    net_name: str = ""
    net_id: int = 0
    egress_ips: list[str] = field(default_factory=list)


@dataclass
class Pod:
    """The parts of a pod that network checks look at."""

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    host_network: bool = False
    pod_ip: str = ""


@dataclass
class Service:
    """The parts of a service that network checks look at."""

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    cluster_ip: str = ""


class EgressNetworkPolicyRuleType(str, enum.Enum):
    """Whether an egress rule allows or denies traffic."""

    ALLOW = "Allow"
    DENY = "Deny"


@dataclass
class EgressNetworkPolicyPeer:
    """The destination of an egress rule: a CIDR or a DNS name."""

    cidr_selector: str = ""
    dns_name: str = ""


@dataclass
class EgressNetworkPolicyRule:
    """A single egress rule."""

    type: EgressNetworkPolicyRuleType = EgressNetworkPolicyRuleType.ALLOW
    to: EgressNetworkPolicyPeer = field(default_factory=EgressNetworkPolicyPeer)


@dataclass
class EgressNetworkPolicy:
    """Egress rules for a namespace."""

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    egress: list[EgressNetworkPolicyRule] = field(default_factory=list)