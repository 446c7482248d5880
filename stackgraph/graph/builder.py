"""
Dependency graph construction and topological ordering.
"""
import ipaddress
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Optional, Set

from stackgraph.errors import CyclicDependency, DuplicateExportName, DuplicateId, InvalidAttribute
from stackgraph.models.resource import Kind, Reference, Resource, Stack

_UNVISITED = 0
_VISITING  = 1
_DONE      = 2


@dataclass
class Graph:
    nodes: Dict[str, Resource]
    edges: Dict[str, List[str]]
    order: List[str]
    name: str = "stack"
    _dependents: Dict[str, List[str]] = field(default_factory=dict, repr=False)

    def __post_init__(self):
        rev: Dict[str, List[str]] = {n: [] for n in self.nodes}
        for src in self.order:
            for dst in self.edges[src]:
                rev[dst].append(src)
        self._dependents = rev
        self._index = {n: i for i, n in enumerate(self.order)}

    def __getitem__(self, resource_id: str) -> Resource:
        return self.nodes[resource_id]

    def __contains__(self, resource_id: str) -> bool:
        return resource_id in self.nodes

    def __iter__(self) -> Iterator[Resource]:
        for n in self.order:
            yield self.nodes[n]

    def __len__(self) -> int:
        return len(self.nodes)

    def index(self, resource_id: str) -> int:
        return self._index[resource_id]

    def dependencies(self, resource_id: str) -> List[str]:
        return list(self.edges[resource_id])

    def dependents(self, resource_id: str) -> List[str]:
        return list(self._dependents[resource_id])

    def transitive_dependents(self, resource_id: str) -> List[str]:
        seen: Set[str] = set()
        pending = list(self._dependents[resource_id])
        while pending:
            n = pending.pop()
            if n in seen:
                continue
            seen.add(n)
            pending.extend(self._dependents[n])
        return sorted(seen, key=self.index)

    def of_kind(self, kind: Kind) -> List[Resource]:
        return [r for r in self if r.kind == kind]


def _check_references(nodes: Dict[str, Resource]) -> None:
    for r in nodes.values():
        for ref in r.references:
            target = nodes.get(ref.resource_id)
            if target is None:
                raise InvalidAttribute(r.id, str(ref), f"references undeclared resource '{ref.resource_id}'")
            problem = _path_problem(target, ref.path)
            if problem:
                raise InvalidAttribute(r.id, str(ref), f"{target.kind.value} '{target.id}' {problem}")


def _path_problem(target: Resource, path: str) -> Optional[str]:
    """Walk a reference path through what the target will expose once applied."""
    head, *rest = path.split(".")
    schema = target.schema
    if head in schema.generated:
        if not rest:
            return None
        if head not in schema.shapes:
            return f"attribute '{head}' has no '{'.'.join(rest)}'"
        keys = schema.shapes[head]
        if keys is None:
            return None
        if rest[0] not in keys or len(rest) > 1:
            return f"attribute '{head}' has no '{'.'.join(rest)}' (expected one of: {', '.join(keys)})"
        return None
    if head not in target.attributes:
        return f"has no attribute '{head}'"

    cur = target.attributes[head]
    walked = head
    for part in rest:
        if isinstance(cur, Reference):
            # the rest of the path is checked where that reference points
            return None
        if isinstance(cur, dict) and part in cur:
            cur = cur[part]
        elif isinstance(cur, list) and part.isdigit() and int(part) < len(cur):
            cur = cur[int(part)]
        else:
            return f"attribute '{walked}' has no '{part}'"
        walked = f"{walked}.{part}"
    return None


def _ref_kind(nodes: Dict[str, Resource], ref: Optional[Reference]) -> Optional[Kind]:
    if ref is None:
        return None
    return nodes[ref.resource_id].kind


def _check_security_rules(nodes: Dict[str, Resource]) -> None:
    for r in nodes.values():
        if r.kind != Kind.SECURITY_RULE:
            continue
        if _ref_kind(nodes, r.reference("group")) != Kind.SECURITY_GROUP:
            raise InvalidAttribute(r.id, "group", "must reference a SecurityGroup")
        peer = r.reference("peer")
        if peer is not None and _ref_kind(nodes, peer) not in (Kind.SECURITY_GROUP, Kind.NETWORK_SEGMENT):
            raise InvalidAttribute(r.id, "peer", "must reference a SecurityGroup or NetworkSegment, or be a CIDR")


def _check_segments(nodes: Dict[str, Resource]) -> None:
    siblings: Dict[str, List[Resource]] = defaultdict(list)
    for r in nodes.values():
        if r.kind == Kind.NETWORK_SEGMENT:
            net = r.reference("network")
            siblings[net.resource_id if net else ""].append(r)

    for network_id, segments in siblings.items():
        parent = nodes.get(network_id)
        parent_cidr = parent.literal("cidr") if parent is not None else None
        parent_net = ipaddress.ip_network(parent_cidr) if isinstance(parent_cidr, str) else None

        seen: List[tuple] = []
        for seg in segments:
            cidr = seg.literal("cidr")
            if not isinstance(cidr, str):
                continue
            net = ipaddress.ip_network(cidr)
            if parent_net is not None and (net.version != parent_net.version or not net.subnet_of(parent_net)):
                raise InvalidAttribute(seg.id, "cidr", f"{cidr} is outside network '{network_id}' ({parent_cidr})")
            for other_id, other in seen:
                if net.version == other.version and net.overlaps(other):
                    raise InvalidAttribute(seg.id, "cidr", f"{cidr} overlaps sibling segment '{other_id}' ({other})")
            seen.append((seg.id, net))


def _check_listeners(nodes: Dict[str, Resource]) -> None:
    overriding: Dict[str, str] = {}
    for r in nodes.values():
        if r.kind != Kind.TARGET_GROUP:
            continue
        listener = r.reference("listener")
        if _ref_kind(nodes, listener) != Kind.LISTENER:
            raise InvalidAttribute(r.id, "listener", "must reference a Listener")
        if _ref_kind(nodes, r.reference("service")) != Kind.COMPUTE_SERVICE:
            raise InvalidAttribute(r.id, "service", "must reference a ComputeService")
        if r.literal("path_pattern") is not None:
            continue
        if listener.resource_id in overriding:
            raise InvalidAttribute(
                r.id, "listener",
                f"listener '{listener.resource_id}' already forwards to '{overriding[listener.resource_id]}'; "
                "add a path_pattern to route alongside it",
            )
        overriding[listener.resource_id] = r.id


def export_names(resources: Iterable[Resource]) -> Dict[str, str]:
    """Map export name to output id, failing on a collision."""
    owners: Dict[str, List[str]] = defaultdict(list)
    for r in resources:
        if r.kind == Kind.OUTPUT:
            owners[r.literal("export_name") or r.id].append(r.id)
    for name, ids in owners.items():
        if len(ids) > 1:
            raise DuplicateExportName(name, ids)
    return {name: ids[0] for name, ids in owners.items()}


def _topological_order(nodes: Dict[str, Resource], edges: Dict[str, List[str]]) -> List[str]:
    position = {n: i for i, n in enumerate(nodes)}
    color = {n: _UNVISITED for n in nodes}
    path: List[str] = []
    order: List[str] = []

    def visit(n: str) -> None:
        color[n] = _VISITING
        path.append(n)
        for dep in sorted(edges[n], key=position.get):
            if color[dep] == _VISITING:
                raise CyclicDependency(path[path.index(dep):] + [dep])
            if color[dep] == _UNVISITED:
                visit(dep)
        path.pop()
        color[n] = _DONE
        order.append(n)

    for n in nodes:
        if color[n] == _UNVISITED:
            visit(n)
    return order


def build(resources, name: Optional[str] = None) -> Graph:
    """
    Build the dependency graph for a set of declared resources.

    Every reference expression adds an edge from the referencing resource to
    the referenced one. Structural problems (unknown references, overlapping
    segments, ambiguous listener routing, export collisions, cycles) are
    raised here, before anything is applied. Declaration order breaks ties,
    so an unchanged resource set always yields the same order.
    """
    if isinstance(resources, Stack):
        name = name or resources.name
    nodes: Dict[str, Resource] = {}
    for r in resources:
        if r.id in nodes:
            raise DuplicateId(r.id)
        nodes[r.id] = r

    _check_references(nodes)
    edges = {r.id: r.depends_on for r in nodes.values()}
    order = _topological_order(nodes, edges)

    _check_security_rules(nodes)
    _check_segments(nodes)
    _check_listeners(nodes)
    export_names(nodes.values())

    return Graph(nodes=nodes, edges=edges, order=order, name=name or "stack")
