import ipaddress
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from stackgraph.errors import DuplicateId, InvalidAttribute


class Kind(str, Enum):
    NETWORK          = "Network"
    NETWORK_SEGMENT  = "NetworkSegment"
    SECURITY_GROUP   = "SecurityGroup"
    SECURITY_RULE    = "SecurityRule"
    REPOSITORY       = "Repository"
    COMPUTE_SERVICE  = "ComputeService"
    INSTANCE         = "Instance"
    DATA_STORE       = "DataStore"
    LOAD_BALANCER    = "LoadBalancer"
    LISTENER         = "Listener"
    TARGET_GROUP     = "TargetGroup"
    OUTPUT           = "Output"


@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Reference:
    resource_id: str
    path: str

    @classmethod
    def parse(cls, expr: str) -> "Reference":
        """Parse 'resource_id.attribute_path' (the path may itself be dotted)."""
        if not isinstance(expr, str) or "." not in expr:
            raise ValueError(f"reference '{expr}' must look like 'resource_id.attribute'")
        resource_id, path = expr.split(".", 1)
        if not resource_id or not path:
            raise ValueError(f"reference '{expr}' must look like 'resource_id.attribute'")
        return cls(resource_id, path)

    @property
    def head(self) -> str:
        return self.path.split(".", 1)[0]

    def __str__(self) -> str:
        return f"{self.resource_id}.{self.path}"


# Attribute values are Literal | Reference, or lists / mappings of them.
AttributeValue = Union[Literal, Reference, List[Any], Dict[str, Any]]


@dataclass(frozen=True)
class KindSchema:
    required: Tuple[str, ...]
    defaults: Dict[str, Any] = field(default_factory=dict)
    generated: Tuple[str, ...] = ()
    # Attributes never compared when diffing desired against applied state.
    credential_bearing: Tuple[str, ...] = ()
    # Keys of generated attributes that are mappings; None admits any sub-path.
    shapes: Dict[str, Optional[Tuple[str, ...]]] = field(default_factory=dict)


_HEALTH_CHECK_DEFAULTS = {
    "path": "/health",
    "interval": 30,
    "timeout": 10,
    "healthy_threshold": 5,
    "unhealthy_threshold": 2,
    "healthy_codes": "200",
}

SCHEMAS: Dict[Kind, KindSchema] = {
    Kind.NETWORK: KindSchema(
        required=("cidr",),
        defaults={"enable_dns": True},
        generated=("id",),
    ),
    Kind.NETWORK_SEGMENT: KindSchema(
        required=("network", "cidr", "tier", "zone"),
        generated=("id",),
    ),
    Kind.SECURITY_GROUP: KindSchema(
        required=("network",),
        defaults={"allow_all_outbound": False, "description": ""},
        generated=("id",),
    ),
    Kind.SECURITY_RULE: KindSchema(
        required=("group", "peer", "protocol", "port", "direction"),
        defaults={"description": ""},
        generated=("id",),
    ),
    Kind.REPOSITORY: KindSchema(
        required=("name",),
        defaults={"scan_on_push": True},
        generated=("uri", "arn"),
    ),
    Kind.COMPUTE_SERVICE: KindSchema(
        required=("image", "segments", "security_groups", "desired_count"),
        defaults={
            "memory": 512,
            "cpu": 256,
            "port": 80,
            "environment": {},
            "health_check_path": "/health",
            "min_healthy_percent": 50,
            "max_healthy_percent": 200,
        },
        generated=("arn", "name", "revision"),
    ),
    Kind.INSTANCE: KindSchema(
        required=("image", "segment", "security_group"),
        defaults={"instance_type": "t3.micro", "assign_public_ip": False},
        generated=("id", "private_ip", "public_ip"),
    ),
    Kind.DATA_STORE: KindSchema(
        required=("engine", "segments", "security_groups"),
        defaults={
            "credentials": "generated",
            "username": "admin",
            "database": "app",
            "storage": 20,
            "max_storage": 100,
            "backup_retention_days": 7,
            "multi_az": False,
            "encrypted": True,
        },
        generated=("id", "endpoint", "secret_ref"),
        shapes={"endpoint": ("hostname", "port")},
        credential_bearing=("password",),
    ),
    Kind.LOAD_BALANCER: KindSchema(
        required=("segments", "security_groups"),
        defaults={"internet_facing": True},
        generated=("arn", "dns_name"),
    ),
    Kind.LISTENER: KindSchema(
        required=("load_balancer", "port"),
        defaults={
            "protocol": "HTTP",
            "default_action": {"type": "fixed-response", "status": 404},
        },
        generated=("arn", "action"),
        shapes={"action": None},
    ),
    Kind.TARGET_GROUP: KindSchema(
        required=("listener", "service", "port"),
        defaults={
            "protocol": "HTTP",
            "health_check": _HEALTH_CHECK_DEFAULTS,
            "drain_timeout": 300,
            "path_pattern": None,
        },
        generated=("arn",),
    ),
    Kind.OUTPUT: KindSchema(
        required=("value",),
        defaults={"description": "", "export_name": None},
        generated=("value",),
    ),
}

_ENGINE_PORTS = {"mysql": 3306, "mariadb": 3306, "postgres": 5432, "postgresql": 5432}
_TIERS = {"public", "private"}
_DIRECTIONS = {"ingress", "egress"}
_PROTOCOLS = {"tcp", "udp", "icmp", "all"}


@dataclass
class Resource:
    id: str
    kind: Kind
    attributes: Dict[str, Any] = field(default_factory=dict)

    @property
    def schema(self) -> KindSchema:
        return SCHEMAS[self.kind]

    @property
    def depends_on(self) -> List[str]:
        """Referenced resource ids, in first-seen attribute order."""
        seen: List[str] = []
        for ref in iter_references(self.attributes):
            if ref.resource_id not in seen:
                seen.append(ref.resource_id)
        return seen

    @property
    def references(self) -> List[Reference]:
        return list(iter_references(self.attributes))

    def literal(self, name: str, default: Any = None) -> Any:
        """Return an attribute with Literal wrappers removed (references stay as-is)."""
        if name not in self.attributes:
            return default
        return unwrap(self.attributes[name])

    def reference(self, name: str) -> Optional[Reference]:
        val = self.attributes.get(name)
        return val if isinstance(val, Reference) else None


def iter_references(value: Any) -> Iterator[Reference]:
    if isinstance(value, Reference):
        yield value
    elif isinstance(value, dict):
        for v in value.values():
            yield from iter_references(v)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from iter_references(item)


def wrap(value: Any) -> Any:
    """Turn plain values into Literal leaves, keeping References and containers."""
    if isinstance(value, (Literal, Reference)):
        return value
    if isinstance(value, dict):
        return {k: wrap(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [wrap(v) for v in value]
    return Literal(value)


def unwrap(value: Any) -> Any:
    if isinstance(value, Literal):
        return value.value
    if isinstance(value, dict):
        return {k: unwrap(v) for k, v in value.items()}
    if isinstance(value, list):
        return [unwrap(v) for v in value]
    return value


def parse_port_range(port: Any) -> Tuple[int, int]:
    """Accept 443, "8000-8080" or "all" and return an inclusive (from, to) range."""
    if isinstance(port, bool):
        raise ValueError(f"invalid port {port!r}")
    if isinstance(port, int):
        lo = hi = port
    elif isinstance(port, str) and port.lower() in ("all", "*", "-1"):
        return 0, 65535
    elif isinstance(port, str) and "-" in port:
        a, b = port.split("-", 1)
        lo, hi = int(a), int(b)
    elif isinstance(port, str):
        lo = hi = int(port)
    else:
        raise ValueError(f"invalid port {port!r}")
    if not (0 <= lo <= hi <= 65535):
        raise ValueError(f"invalid port range {port!r}")
    return lo, hi


def _check_literals(resource_id: str, kind: Kind, attrs: Dict[str, Any]) -> None:
    def lit(name):
        v = attrs.get(name)
        return v.value if isinstance(v, Literal) else None

    if kind in (Kind.NETWORK, Kind.NETWORK_SEGMENT) and lit("cidr") is not None:
        try:
            ipaddress.ip_network(str(lit("cidr")))
        except ValueError as exc:
            raise InvalidAttribute(resource_id, "cidr", str(exc))

    if kind == Kind.NETWORK_SEGMENT and lit("tier") is not None and lit("tier") not in _TIERS:
        raise InvalidAttribute(resource_id, "tier", f"must be one of {sorted(_TIERS)}")

    if kind == Kind.SECURITY_RULE:
        if lit("direction") is not None and lit("direction") not in _DIRECTIONS:
            raise InvalidAttribute(resource_id, "direction", f"must be one of {sorted(_DIRECTIONS)}")
        proto = lit("protocol")
        if proto is not None and str(proto).lower() not in _PROTOCOLS:
            raise InvalidAttribute(resource_id, "protocol", f"must be one of {sorted(_PROTOCOLS)}")
        if not isinstance(attrs.get("group"), Reference):
            raise InvalidAttribute(resource_id, "group", "must reference exactly one security group")
        peer = attrs.get("peer")
        if isinstance(peer, list):
            raise InvalidAttribute(resource_id, "peer", "must name exactly one source")
        if isinstance(peer, Literal):
            try:
                ipaddress.ip_network(str(peer.value), strict=False)
            except ValueError:
                raise InvalidAttribute(resource_id, "peer", "literal peers must be CIDR ranges")

    if kind in (Kind.SECURITY_RULE, Kind.LISTENER, Kind.TARGET_GROUP) and lit("port") is not None:
        try:
            parse_port_range(lit("port"))
        except ValueError as exc:
            raise InvalidAttribute(resource_id, "port", str(exc))

    if kind == Kind.COMPUTE_SERVICE and lit("desired_count") is not None:
        count = lit("desired_count")
        if isinstance(count, bool) or not isinstance(count, int) or count < 0:
            raise InvalidAttribute(resource_id, "desired_count", "must be a non-negative integer")

    if kind == Kind.OUTPUT and not isinstance(attrs.get("value"), Reference):
        raise InvalidAttribute(resource_id, "value", "must reference another resource's attribute")


def declare(kind: Union[Kind, str], resource_id: str, attributes: Optional[Dict[str, Any]] = None) -> Resource:
    """
    Build a Resource of the given kind, filling schema defaults.

    References are kept as Reference objects; they are only dereferenced at
    apply time against the applied-state store.
    """
    try:
        kind = Kind(kind)
    except ValueError:
        raise InvalidAttribute(resource_id, "kind", f"unknown resource kind '{kind}'")
    if not resource_id or "." in resource_id:
        raise InvalidAttribute(resource_id or "<anonymous>", "id", "ids must be non-empty and contain no '.'")

    schema = SCHEMAS[kind]
    raw = dict(attributes or {})
    for name in schema.required:
        if raw.get(name) is None:
            raise InvalidAttribute(resource_id, name, f"required for {kind.value}")

    attrs = {}
    for name, value in raw.items():
        default = schema.defaults.get(name)
        if isinstance(default, dict) and isinstance(value, dict):
            attrs[name] = wrap({**default, **value})
        else:
            attrs[name] = wrap(value)
    for name, default in schema.defaults.items():
        if name not in attrs:
            attrs[name] = wrap(default)

    if kind == Kind.DATA_STORE and "port" not in attrs:
        engine_name = unwrap(attrs["engine"])
        family = str(engine_name).split("-")[0].lower() if isinstance(engine_name, str) else "mysql"
        attrs["port"] = Literal(_ENGINE_PORTS.get(family, 3306))

    _check_literals(resource_id, kind, attrs)
    return Resource(id=resource_id, kind=kind, attributes=attrs)


class Stack:
    """An ordered set of declared resources forming one deployment."""

    def __init__(self, name: str = "stack"):
        self.name = name
        self._resources: Dict[str, Resource] = {}

    def declare(self, kind: Union[Kind, str], resource_id: str,
                attributes: Optional[Dict[str, Any]] = None) -> Resource:
        resource = declare(kind, resource_id, attributes)
        self.add(resource)
        return resource

    def add(self, resource: Resource) -> None:
        if resource.id in self._resources:
            raise DuplicateId(resource.id)
        self._resources[resource.id] = resource

    def get(self, resource_id: str) -> Optional[Resource]:
        return self._resources.get(resource_id)

    @property
    def resources(self) -> List[Resource]:
        return list(self._resources.values())

    def __iter__(self) -> Iterator[Resource]:
        return iter(self.resources)

    def __len__(self) -> int:
        return len(self._resources)

    def __contains__(self, resource_id: str) -> bool:
        return resource_id in self._resources

