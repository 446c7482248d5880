"""
Service placement and health gating for load-balancer targets.

Each registered target walks:

    registering -> health_check_pending -> healthy | unhealthy
                -> deregistering -> removed

Only healthy targets receive traffic. Placement converges the live target
set toward the service's desired count, bounded by the min/max healthy
percentages while a new revision rolls out.
"""
import hashlib
import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

import requests

from stackgraph.errors import InvalidTransition
from stackgraph.models.resource import Kind
from stackgraph.models.state import Status


class TargetState(str, Enum):
    REGISTERING          = "registering"
    HEALTH_CHECK_PENDING = "health_check_pending"
    HEALTHY              = "healthy"
    UNHEALTHY            = "unhealthy"
    DEREGISTERING        = "deregistering"
    REMOVED              = "removed"


_TRANSITIONS = {
    TargetState.REGISTERING:          {TargetState.HEALTH_CHECK_PENDING, TargetState.DEREGISTERING},
    TargetState.HEALTH_CHECK_PENDING: {TargetState.HEALTHY, TargetState.UNHEALTHY, TargetState.DEREGISTERING},
    TargetState.HEALTHY:              {TargetState.UNHEALTHY, TargetState.DEREGISTERING},
    TargetState.UNHEALTHY:            {TargetState.HEALTHY, TargetState.DEREGISTERING},
    TargetState.DEREGISTERING:        {TargetState.REMOVED},
    TargetState.REMOVED:              set(),
}

_LIVE = {
    TargetState.REGISTERING,
    TargetState.HEALTH_CHECK_PENDING,
    TargetState.HEALTHY,
    TargetState.UNHEALTHY,
}


@dataclass(frozen=True)
class HealthCheck:
    path: str = "/health"
    interval: float = 30
    timeout: float = 10
    healthy_threshold: int = 5
    unhealthy_threshold: int = 2
    healthy_codes: str = "200"

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "HealthCheck":
        data = data or {}
        fields = {k: data[k] for k in cls.__dataclass_fields__ if data.get(k) is not None}
        if "healthy_codes" in fields:
            fields["healthy_codes"] = str(fields["healthy_codes"])
        return cls(**fields)

    def to_dict(self) -> dict:
        return {k: getattr(self, k) for k in self.__dataclass_fields__}

    def accepts(self, status_code: int) -> bool:
        """Match a status against codes like "200", "200,302" or "200-299"."""
        for part in self.healthy_codes.split(","):
            part = part.strip()
            if "-" in part:
                lo, hi = part.split("-", 1)
                if int(lo) <= status_code <= int(hi):
                    return True
            elif part and int(part) == status_code:
                return True
        return False


@dataclass
class Target:
    target_id: str
    address: str
    port: int
    revision: str
    sequence: int = 0
    state: TargetState = TargetState.REGISTERING
    consecutive_successes: int = 0
    consecutive_failures: int = 0
    active_connections: int = 0
    last_checked: Optional[float] = None
    drain_deadline: Optional[float] = None
    history: List[str] = field(default_factory=list)

    def __post_init__(self):
        if not self.history:
            self.history.append(self.state.value)

    @property
    def routable(self) -> bool:
        return self.state == TargetState.HEALTHY

    @property
    def live(self) -> bool:
        return self.state in _LIVE

    def transition(self, new_state: TargetState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise InvalidTransition(self.target_id, self.state.value, new_state.value)
        self.state = new_state
        self.history.append(new_state.value)

    def to_dict(self) -> dict:
        return {
            "target_id": self.target_id,
            "address": self.address,
            "port": self.port,
            "revision": self.revision,
            "sequence": self.sequence,
            "state": self.state.value,
            "consecutive_successes": self.consecutive_successes,
            "consecutive_failures": self.consecutive_failures,
            "active_connections": self.active_connections,
            "last_checked": self.last_checked,
            "drain_deadline": self.drain_deadline,
            "history": list(self.history),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Target":
        data = dict(data)
        data["state"] = TargetState(data.get("state", "registering"))
        return cls(**data)


Probe = Callable[[Target, HealthCheck], bool]


class HttpProbe:
    """Health probe hitting http://address:port/path with requests."""

    def __init__(self, scheme: str = "http", session: Optional[requests.Session] = None):
        self.scheme = scheme
        self.session = session or requests.Session()

    def __call__(self, target: Target, check: HealthCheck) -> bool:
        url = f"{self.scheme}://{target.address}:{target.port}{check.path}"
        try:
            resp = self.session.get(url, timeout=check.timeout, allow_redirects=False)
        except requests.RequestException:
            return False
        return check.accepts(resp.status_code)


def _retire_order(t: Target) -> Tuple[bool, int]:
    # unhealthy/pending before healthy, newest first
    return (t.state == TargetState.HEALTHY, -t.sequence)


class ServicePlacement:
    def __init__(
        self,
        target_group_id: str,
        service_id: str,
        health_check: HealthCheck = HealthCheck(),
        port: int = 80,
        drain_timeout: float = 300,
    ):
        self.target_group_id = target_group_id
        self.service_id = service_id
        self.health_check = health_check
        self.port = port
        self.drain_timeout = drain_timeout
        self.targets: Dict[str, Target] = {}
        self.desired_count = 0
        self.revision = ""
        self.min_healthy_percent = 50
        self.max_healthy_percent = 200
        self._sequence = 0

    # ------------------------------------------------------------------ queries

    def live_targets(self) -> List[Target]:
        return [t for t in self.targets.values() if t.live]

    def healthy_targets(self) -> List[Target]:
        return [t for t in self.targets.values() if t.state == TargetState.HEALTHY]

    def routable_targets(self) -> List[Target]:
        return [t for t in self.targets.values() if t.routable]

    def in_state(self, state: TargetState) -> List[Target]:
        return [t for t in self.targets.values() if t.state == state]

    @property
    def stable(self) -> bool:
        """Every live target is healthy, on the current revision, and the count matches."""
        live = self.live_targets()
        return (
            len(live) == self.desired_count
            and all(t.state == TargetState.HEALTHY and t.revision == self.revision for t in live)
            and not self.in_state(TargetState.DEREGISTERING)
        )

    # ------------------------------------------------------------------ lifecycle

    def _address(self, target_id: str) -> str:
        d = hashlib.sha1(f"{self.target_group_id}/{target_id}".encode()).digest()
        return f"10.0.{d[0]}.{max(d[1], 4)}"

    def register(self, address: Optional[str] = None) -> Target:
        self._sequence += 1
        target_id = f"{self.service_id}-{self.revision[:8] or 'r0'}-{self._sequence}"
        target = Target(
            target_id=target_id,
            address=address or self._address(target_id),
            port=self.port,
            revision=self.revision,
            sequence=self._sequence,
        )
        self.targets[target_id] = target
        # attached to the target group; no traffic until checks pass
        target.transition(TargetState.HEALTH_CHECK_PENDING)
        return target

    def record_check(self, target_id: str, ok: bool, now: float) -> TargetState:
        t = self.targets[target_id]
        t.last_checked = now
        if not t.live:
            return t.state
        hc = self.health_check
        if ok:
            t.consecutive_failures = 0
            t.consecutive_successes += 1
            if t.state != TargetState.HEALTHY and t.consecutive_successes >= hc.healthy_threshold:
                t.transition(TargetState.HEALTHY)
        else:
            t.consecutive_successes = 0
            t.consecutive_failures += 1
            if t.state != TargetState.UNHEALTHY and t.consecutive_failures >= hc.unhealthy_threshold:
                t.transition(TargetState.UNHEALTHY)
        return t.state

    def deregister(self, target_id: str, now: float) -> None:
        t = self.targets[target_id]
        t.transition(TargetState.DEREGISTERING)
        t.drain_deadline = now + self.drain_timeout

    def reap(self, now: float) -> List[str]:
        """Remove draining targets whose connections finished or whose drain timed out."""
        removed = []
        for t in self.in_state(TargetState.DEREGISTERING):
            if t.active_connections <= 0 or (t.drain_deadline is not None and now >= t.drain_deadline):
                t.active_connections = 0
                t.transition(TargetState.REMOVED)
                removed.append(t.target_id)
        return removed

    def set_desired(self, desired_count: int, revision: str,
                    min_healthy_percent: int = 50, max_healthy_percent: int = 200) -> None:
        self.desired_count = int(desired_count)
        self.revision = revision
        self.min_healthy_percent = int(min_healthy_percent)
        self.max_healthy_percent = int(max_healthy_percent)

    def converge(self, now: float) -> Dict[str, List[str]]:
        """
        One convergence step toward desired_count on the current revision.

        New targets are launched while the live count stays within
        max_healthy_percent of the desired count; targets of an older
        revision are retired only while the healthy count stays at or above
        min_healthy_percent.
        """
        desired = self.desired_count
        max_live = max(desired, desired * self.max_healthy_percent // 100)
        min_healthy = math.ceil(desired * self.min_healthy_percent / 100)
        registered: List[str] = []
        deregistered: List[str] = []

        current = [t for t in self.live_targets() if t.revision == self.revision]
        stale = [t for t in self.live_targets() if t.revision != self.revision]

        if len(current) > desired:
            for t in sorted(current, key=_retire_order)[: len(current) - desired]:
                self.deregister(t.target_id, now)
                deregistered.append(t.target_id)
            current = [t for t in current if t.live]

        room = max_live - len(self.live_targets())
        for _ in range(max(0, min(desired - len(current), room))):
            registered.append(self.register().target_id)

        healthy = len(self.healthy_targets())
        for t in sorted(stale, key=_retire_order):
            if t.state == TargetState.HEALTHY:
                if healthy - 1 < min_healthy:
                    continue
                healthy -= 1
            self.deregister(t.target_id, now)
            deregistered.append(t.target_id)

        return {"registered": registered, "deregistered": deregistered}

    def drain_all(self, now: float) -> List[str]:
        out = []
        for t in self.live_targets():
            self.deregister(t.target_id, now)
            out.append(t.target_id)
        self.desired_count = 0
        return out

    # ------------------------------------------------------------------ persistence

    def to_dict(self) -> dict:
        return {
            "target_group_id": self.target_group_id,
            "service_id": self.service_id,
            "health_check": self.health_check.to_dict(),
            "port": self.port,
            "drain_timeout": self.drain_timeout,
            "desired_count": self.desired_count,
            "revision": self.revision,
            "min_healthy_percent": self.min_healthy_percent,
            "max_healthy_percent": self.max_healthy_percent,
            "sequence": self._sequence,
            "targets": [t.to_dict() for t in self.targets.values()],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ServicePlacement":
        p = cls(
            data["target_group_id"],
            data["service_id"],
            HealthCheck.from_dict(data.get("health_check")),
            port=data.get("port", 80),
            drain_timeout=data.get("drain_timeout", 300),
        )
        p.set_desired(
            data.get("desired_count", 0),
            data.get("revision", ""),
            data.get("min_healthy_percent", 50),
            data.get("max_healthy_percent", 200),
        )
        p._sequence = data.get("sequence", 0)
        for t in data.get("targets", []):
            target = Target.from_dict(t)
            p.targets[target.target_id] = target
        return p


class HealthGate:
    """Registry of service placements, one per target group, plus the check loop."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock
        self.placements: Dict[str, ServicePlacement] = {}

    def get(self, target_group_id: str) -> Optional[ServicePlacement]:
        return self.placements.get(target_group_id)

    def __contains__(self, target_group_id: str) -> bool:
        return target_group_id in self.placements

    def sync(self, target_group_id: str, service_id: str, target_group: dict, service: dict) -> ServicePlacement:
        """
        Align a target group's placement with applied target-group and
        service attributes, then take one convergence step.
        """
        check = HealthCheck.from_dict(target_group.get("health_check"))
        port = int(target_group.get("port") or service.get("port") or 80)
        drain = float(target_group.get("drain_timeout") or 300)
        placement = self.placements.get(target_group_id)
        if placement is None:
            placement = ServicePlacement(target_group_id, service_id, check, port, drain)
            self.placements[target_group_id] = placement
        else:
            placement.health_check = check
            placement.port = port
            placement.drain_timeout = drain
        placement.set_desired(
            service.get("desired_count", 0),
            service.get("revision", ""),
            service.get("min_healthy_percent", 50),
            service.get("max_healthy_percent", 200),
        )
        now = self.clock()
        placement.converge(now)
        placement.reap(now)
        return placement

    def drain(self, target_group_id: str) -> List[str]:
        placement = self.placements.get(target_group_id)
        if placement is None:
            return []
        now = self.clock()
        drained = placement.drain_all(now)
        placement.reap(now)
        return drained

    def tick(self, probe: Probe, now: Optional[float] = None) -> Dict[str, List[Tuple[str, str]]]:
        """Run every due health check, then converge and reap. Returns transitions per group."""
        now = self.clock() if now is None else now
        changes: Dict[str, List[Tuple[str, str]]] = {}
        for tg_id, placement in self.placements.items():
            moved = []
            for t in placement.live_targets():
                if t.last_checked is not None and now - t.last_checked < placement.health_check.interval:
                    continue
                before = t.state
                after = placement.record_check(t.target_id, probe(t, placement.health_check), now)
                if after != before:
                    moved.append((t.target_id, after.value))
            placement.converge(now)
            for target_id in placement.reap(now):
                moved.append((target_id, TargetState.REMOVED.value))
            if moved:
                changes[tg_id] = moved
        return changes

    @property
    def stable(self) -> bool:
        return all(p.stable for p in self.placements.values())

    def wait_until_stable(self, probe: Probe, timeout: float,
                          sleep: Callable[[float], None] = time.sleep) -> bool:
        deadline = self.clock() + timeout
        while not self.stable:
            if self.clock() >= deadline:
                return False
            self.tick(probe)
            step = min(p.health_check.interval for p in self.placements.values()) if self.placements else 1
            sleep(step)
        return True

    def to_dict(self) -> dict:
        return {tg: p.to_dict() for tg, p in self.placements.items()}

    @classmethod
    def from_dict(cls, data: Optional[dict], clock: Callable[[], float] = time.time) -> "HealthGate":
        gate = cls(clock)
        for tg, p in (data or {}).items():
            gate.placements[tg] = ServicePlacement.from_dict(p)
        return gate


def listener_routing(graph, store) -> Dict[str, dict]:
    """
    Effective routing per listener: its default action, replaced by a
    forward to the target group attached without a path pattern.
    """
    routing: Dict[str, dict] = {}
    for listener in graph.of_kind(Kind.LISTENER):
        routing[listener.id] = {"default": listener.literal("default_action"), "rules": []}

    for tg in graph.of_kind(Kind.TARGET_GROUP):
        if store.status(tg.id) != Status.APPLIED:
            continue
        entry = routing[tg.reference("listener").resource_id]
        pattern = tg.literal("path_pattern")
        if pattern is None:
            entry["default"] = {"type": "forward", "target_group": tg.id}
        else:
            entry["rules"].append({"path_pattern": pattern, "target_group": tg.id})
    return routing
