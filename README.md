# sdnnet

Building blocks for a software-defined cluster network: parsing and
validating cluster network configuration, checking host networks and existing
cluster objects against it, resolving the DNS names used by egress network
policies, and deciding which node hosts each egress IP.

## Installation

```
pip install sdnnet
```

For running the tests:

```
pip install "sdnnet[test]"
pytest
```

## The objects

`sdnnet.network_types` holds plain dataclasses for the objects the rest of the
package works on: `ObjectMeta`, `HostSubnet` (with `deep_copy`),
`ClusterNetworkEntry`, `ClusterNetwork`, `NetNamespace`, `Pod`, `Service`,
`EgressNetworkPolicy`, `EgressNetworkPolicyRule`, `EgressNetworkPolicyPeer`
and the `EgressNetworkPolicyRuleType` enum (`ALLOW`, `DENY`).

## Errors

Checks that can find several problems at once raise
`sdnnet.errors.AggregateError`. Its `errors` attribute lists the individual
errors in order; its message is the single message, or a bracketed,
comma-separated list of the distinct messages. `raise_aggregate(errors)`
raises one only when the list is not empty.

## Cluster network configuration

`sdnnet.common.parse_cluster_network` turns a `ClusterNetwork` into a
`ParsedClusterNetwork`, using VXLAN port 4789 and MTU 1450 when they are not
set. A CIDR with host bits set (such as `10.128.0.1/14`) is accepted with a
logged warning and treated as its network; a CIDR that cannot be parsed at all
raises `ValueError`.

```python
from sdnnet.network_types import ClusterNetwork, ClusterNetworkEntry
from sdnnet.common import parse_cluster_network, generate_default_gateway
from sdnnet.validation import parse_cidr_mask

cn = ClusterNetwork(
    cluster_networks=[ClusterNetworkEntry(cidr="10.128.0.0/14", host_subnet_length=9)],
    service_network="172.30.0.0/16",
)
parsed = parse_cluster_network(cn)
parsed.validate_node_ip("192.168.1.10")   # raises ValueError on a conflict

generate_default_gateway(parse_cidr_mask("10.1.0.0/24"))  # IPv4Address('10.1.0.1')
```

`ParsedClusterNetwork` also offers:

- `check_host_networks(host_ip_nets)`: raises `AggregateError` if a host
  network overlaps a cluster network or the service network.
- `check_cluster_objects(subnets, pods, services)`: raises `AggregateError`
  for node subnets, pod IPs and service IPs outside the configured networks.
  Host-network pods and pods without an IP are skipped; at most ten problems
  are reported, followed by "too many errors... truncating".

Other helpers: `cluster_network_list_contains`, `host_subnet_to_string`,
`cluster_network_to_string`, and `get_host_ip_networks(skip_interfaces)`,
which returns the non-loopback IPv4 networks and addresses of the local
interfaces (read through psutil), leaving out the named interfaces.

## Validation

`sdnnet.validation` provides `validate_cluster_network`,
`validate_host_subnet` and `validate_host_subnet_egress`. Each raises an
`AggregateError` of `FieldError`s when something is wrong: CIDRs must be IPv4
and in canonical form (`parse_cidr_mask` rejects `10.20.0.1/16`), host subnet
lengths must be at least 2 and fit in their network, cluster networks must not
overlap each other or the service network (`cidrs_overlap`), the VXLAN port
must be 1–65535, and a host subnet's `host` must equal its name and its
subnet may be empty only with the `pod.network.openshift.io/assign-subnet`
annotation. Object names must be present, not `.` or `..`, and free of `/`
and `%`; a namespace is not allowed.

## DNS for egress network policies

`sdnnet.dns.DNS(resolver_config_file, ipv4, ipv6, timeout=5.0)` reads the
nameservers from a resolv.conf-style file (`read_resolver_config`), gives
each a port and prefers those of a supported address family
(`fixup_nameservers`). It keeps, per name, the resolved addresses, the TTL and
the time the name should next be queried:

- `add(name)` resolves and starts tracking a name; `update(name)` resolves
  it again and returns whether the addresses changed. Both raise
  `LookupError` when no address is found.
- `get`, `delete`, `size`, `set_updating` and `get_next_query_time`
  (the earliest `(time, name)` due, or `None`) manage the table.

With both families enabled, A and AAAA queries run in parallel. TTLs go
through `normalize_ttl`: under 30 seconds they are kept, from 30 seconds to
under 30 minutes they become 30 seconds, and longer ones are capped at
30 minutes. `ips_equal` and `remove_duplicate_ips` compare and deduplicate
address lists. `FakeDNS` with `FakeDNSReply` entries plays back scripted
replies for testing.

`sdnnet.egress_dns.EgressDNS` follows the DNS names referenced by
`EgressNetworkPolicy` objects (`add`, `delete`). Run `sync()` in a thread: it
re-resolves names as they fall due and puts a list of `EgressDNSUpdate`
(policy uid and namespace) on the `updates` queue for every name whose
addresses changed. `stop()` ends the loop. `get_ips` and `get_net_cidrs`
return a name's current addresses, the latter as single-host networks.
`EgressDNS.create(ipv4, ipv6)` builds one on `/etc/resolv.conf`.

## Egress IP tracking

`sdnnet.egressip.EgressIPTracker(watcher)` follows the egress settings of
`HostSubnet` and `NetNamespace` objects (`update_host_subnet_egress`,
`update_net_namespace_egress`, `delete_net_namespace_egress`) and calls an
`EgressIPWatcher` subclass when an egress IP is claimed or released on a node,
when a namespace's egress goes normally, is dropped, or goes via a set of
`EgressIPAssignment`s, and when egress CIDRs may need reallocating. An egress
IP claimed by two nodes or two namespaces is not used. `set_node_offline`
marks a node down or up, and `ping(ip, timeout)` guesses whether a node is
online by connecting to its discard port.

`reallocate_egress_ips()` (from `sdnnet.egress_allocation.EgressIPAllocator`)
returns a map from node name to the egress IPs automatically placed on it,
using each node's egress CIDRs and keeping the load balanced.

`host_subnet_handlers()` and `net_namespace_handlers()` return
`ResourceEventHandlers` built by `sdnnet.informers.informer_funcs`, with
`on_add`, `on_update` and `on_delete` callbacks; deletions arriving as
`DeletedFinalStateUnknown` are unwrapped.

## What the package does not do

It is a library only: there is no command to run. It does not connect to a
cluster API server or watch objects itself; you feed it objects and events.
It does not create interfaces, routes or firewall rules, and the watcher
callbacks are where any such action would have to be taken.