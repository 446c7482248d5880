"""
Security topology resolution.

Rules are additive allowances: there is no deny rule, and anything not
explicitly allowed is denied. A connection from a source to a destination
group needs an ingress rule on the destination and, for protocols with
return traffic, an egress allowance on the source group.
"""
import ipaddress
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set, Tuple, Union

from stackgraph.errors import SecurityViolationDetected
from stackgraph.models.resource import Kind, Literal, Reference, Resource, parse_port_range
from stackgraph.models.state import Status

_OPEN_CIDRS = {"0.0.0.0/0", "::/0"}
# Protocols whose replies do not need an egress allowance on the source.
_STATELESS = {"icmp"}
# Kinds whose resources join security groups from within network segments.
MEMBER_KINDS = (Kind.COMPUTE_SERVICE, Kind.INSTANCE, Kind.DATA_STORE, Kind.LOAD_BALANCER)


class Decision(str, Enum):
    ALLOW = "allow"
    DENY  = "deny"


@dataclass(frozen=True)
class Rule:
    rule_id: str
    group: str
    peer: str
    peer_is_group: bool
    protocol: str
    port_from: int
    port_to: int
    direction: str

    def covers(self, port: int, protocol: str) -> bool:
        if self.protocol != "all" and self.protocol != protocol:
            return False
        return self.port_from <= port <= self.port_to

    def matches_peer(self, candidate: str, groups: Set[str],
                     placement: Optional[Dict[str, List[str]]] = None) -> bool:
        if self.peer_is_group:
            return candidate == self.peer
        if self.peer in _OPEN_CIDRS:
            return True
        if candidate in groups:
            # a group sits wherever its members are placed
            cidrs = (placement or {}).get(candidate, [])
            return any(_within(cidr, self.peer) for cidr in cidrs)
        return _within(candidate, self.peer)

    @property
    def port_label(self) -> str:
        if self.port_from == 0 and self.port_to == 65535:
            return "all"
        if self.port_from == self.port_to:
            return str(self.port_from)
        return f"{self.port_from}-{self.port_to}"


def _within(candidate: str, cidr: str) -> bool:
    try:
        net = ipaddress.ip_network(candidate, strict=False)
        return net.subnet_of(ipaddress.ip_network(cidr, strict=False))
    except (ValueError, TypeError):
        return False


def normalize_rule(resource: Resource, segments: Dict[str, str]) -> Rule:
    group = resource.attributes["group"]
    peer = resource.attributes["peer"]
    if isinstance(peer, Reference) and peer.resource_id in segments:
        peer_value, peer_is_group = segments[peer.resource_id], False
    elif isinstance(peer, Reference):
        peer_value, peer_is_group = peer.resource_id, True
    else:
        peer_value = str(peer.value if isinstance(peer, Literal) else peer)
        peer_is_group = False
    lo, hi = parse_port_range(resource.literal("port"))
    return Rule(
        rule_id=resource.id,
        group=group.resource_id,
        peer=peer_value,
        peer_is_group=peer_is_group,
        protocol=str(resource.literal("protocol")).lower(),
        port_from=lo,
        port_to=hi,
        direction=resource.literal("direction"),
    )


class ReachabilityMatrix:
    def __init__(self, rules: List[Rule], groups: Dict[str, bool],
                 placement: Optional[Dict[str, List[str]]] = None):
        self.rules = rules
        # group id -> allow_all_outbound
        self.groups = groups
        # group id -> CIDRs of the segments its members are placed in
        self.placement = placement or {}
        self._ingress: Dict[str, List[Rule]] = {}
        self._egress: Dict[str, List[Rule]] = {}
        for r in rules:
            bucket = self._ingress if r.direction == "ingress" else self._egress
            bucket.setdefault(r.group, []).append(r)

    def _egress_permits(self, source: str, destination: str, port: int, protocol: str) -> bool:
        if source not in self.groups:
            # CIDRs and segments are outside any group's egress policy
            return True
        if self.groups[source]:
            return True
        return any(
            r.covers(port, protocol) and r.matches_peer(destination, set(self.groups), self.placement)
            for r in self._egress.get(source, [])
        )

    def decision(self, source: str, destination: str, port: int, protocol: str = "tcp") -> Decision:
        protocol = protocol.lower()
        if destination not in self.groups:
            return Decision.DENY
        names = set(self.groups)
        ingress = any(
            r.covers(port, protocol) and r.matches_peer(source, names, self.placement)
            for r in self._ingress.get(destination, [])
        )
        if not ingress:
            return Decision.DENY
        if protocol not in _STATELESS and not self._egress_permits(source, destination, port, protocol):
            return Decision.DENY
        return Decision.ALLOW

    def allows(self, source: str, destination: str, port: int, protocol: str = "tcp") -> bool:
        return self.decision(source, destination, port, protocol) == Decision.ALLOW

    def __getitem__(self, key: Tuple[str, str, int, str]) -> Decision:
        source, destination, port, protocol = key
        return self.decision(source, destination, port, protocol)

    def ingress_rules(self, destination: str) -> List[Rule]:
        return list(self._ingress.get(destination, []))

    def rows(self) -> List[dict]:
        """One row per ingress allowance, with the effective decision for its first port."""
        out = []
        for dest in sorted(self._ingress):
            for r in self._ingress[dest]:
                proto = "tcp" if r.protocol == "all" else r.protocol
                out.append({
                    "rule": r.rule_id,
                    "source": r.peer,
                    "destination": dest,
                    "port": r.port_label,
                    "protocol": r.protocol,
                    "decision": self.decision(r.peer, dest, r.port_from, proto).value,
                })
        return out


def _group_map(groups: Union[Dict[str, bool], Iterable[Resource], None],
               rules: List[Rule]) -> Dict[str, bool]:
    if groups is None:
        # every group the rules mention, with egress restricted
        inferred: Dict[str, bool] = {}
        for r in rules:
            inferred.setdefault(r.group, False)
            if r.peer_is_group:
                inferred.setdefault(r.peer, False)
        return inferred
    if isinstance(groups, dict):
        return dict(groups)
    return {g.id: bool(g.literal("allow_all_outbound", False)) for g in groups}


def _segment_map(segments: Union[Dict[str, str], Iterable[Resource], None]) -> Dict[str, str]:
    if segments is None:
        return {}
    if isinstance(segments, dict):
        return dict(segments)
    return {s.id: s.literal("cidr") for s in segments}


# (segment attribute, group attribute) pairs on resources that join groups
_MEMBERSHIP = (("segments", "security_groups"), ("segment", "security_group"))


def _placement_map(members: Union[Dict[str, List[str]], Iterable[Resource], None],
                   segment_cidrs: Dict[str, str]) -> Dict[str, List[str]]:
    if members is None:
        return {}
    if isinstance(members, dict):
        return {g: list(cidrs) for g, cidrs in members.items()}
    placement: Dict[str, List[str]] = {}
    for member in members:
        for segment_attr, group_attr in _MEMBERSHIP:
            cidrs = [segment_cidrs[s] for s in _ref_ids(member, segment_attr) if s in segment_cidrs]
            for group in _ref_ids(member, group_attr):
                bucket = placement.setdefault(group, [])
                bucket.extend(c for c in cidrs if c not in bucket)
    return placement


def resolve(rules: Iterable[Resource], groups=None, segments=None, members=None) -> ReachabilityMatrix:
    """
    Resolve declared SecurityRule resources into a default-deny reachability matrix.

    groups maps group ids to allow_all_outbound, or is a list of SecurityGroup
    resources; when omitted it is inferred from the rules with egress
    restricted. segments maps segment ids to CIDRs so segment peers become
    address ranges, and members (placed resources, or group id -> CIDRs)
    lets a group source match those ranges through its members' segments.
    """
    segment_cidrs = _segment_map(segments)
    normalized = [normalize_rule(r, segment_cidrs) for r in rules if r.kind == Kind.SECURITY_RULE]
    return ReachabilityMatrix(
        normalized,
        _group_map(groups, normalized),
        _placement_map(members, segment_cidrs),
    )


def _members(graph) -> List[Resource]:
    return [r for r in graph if r.kind in MEMBER_KINDS]


def resolve_declared(graph) -> ReachabilityMatrix:
    """Matrix for every security resource declared in the graph, applied or not."""
    return resolve(
        graph.of_kind(Kind.SECURITY_RULE),
        graph.of_kind(Kind.SECURITY_GROUP),
        graph.of_kind(Kind.NETWORK_SEGMENT),
        _members(graph),
    )


def resolve_applied(graph, store) -> ReachabilityMatrix:
    """Matrix built only from security resources that are applied in the store."""
    def applied(r: Resource) -> bool:
        return store.status(r.id) == Status.APPLIED

    return resolve(
        [r for r in graph.of_kind(Kind.SECURITY_RULE) if applied(r)],
        [g for g in graph.of_kind(Kind.SECURITY_GROUP) if applied(g)],
        graph.of_kind(Kind.NETWORK_SEGMENT),
        _members(graph),
    )


def _ref_ids(resource: Optional[Resource], attribute: str) -> List[str]:
    if resource is None:
        return []
    val = resource.attributes.get(attribute)
    refs = val if isinstance(val, list) else [val]
    return [r.resource_id for r in refs if isinstance(r, Reference)]


def validate_targets(graph, store, matrix: ReachabilityMatrix, placements) -> List[SecurityViolationDetected]:
    """
    Check every registered target is still reachable from its load balancer.

    Returns one violation per target group whose load balancer groups cannot
    reach any of the service groups on the target port.
    """
    violations: List[SecurityViolationDetected] = []
    for tg in graph.of_kind(Kind.TARGET_GROUP):
        if store.status(tg.id) != Status.APPLIED:
            continue
        placement = placements.get(tg.id) if placements is not None else None
        registered = [t.target_id for t in placement.live_targets()] if placement else []
        if not registered:
            continue

        listener = graph.nodes.get(tg.reference("listener").resource_id)
        lb_ref = listener.reference("load_balancer") if listener else None
        lb = graph.nodes.get(lb_ref.resource_id) if lb_ref else None
        service = graph.nodes.get(tg.reference("service").resource_id)

        sources = _ref_ids(lb, "security_groups")
        destinations = _ref_ids(service, "security_groups")
        port = parse_port_range(tg.literal("port"))[0]
        reachable = any(matrix.allows(s, d, port, "tcp") for s in sources for d in destinations)
        if not reachable:
            violations.append(SecurityViolationDetected(
                tg.id,
                ",".join(sources) or "-",
                ",".join(destinations) or "-",
                port,
                "tcp",
                registered,
            ))
    return violations
