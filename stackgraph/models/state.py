import copy
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional


class Status(str, Enum):
    PENDING   = "pending"
    APPLIED   = "applied"
    FAILED    = "failed"
    SKIPPED   = "skipped"
    DESTROYED = "destroyed"


@dataclass
class ResourceState:
    resource_id: str
    kind: str
    status: Status = Status.PENDING
    desired: Dict[str, Any] = field(default_factory=dict)
    attributes: Dict[str, Any] = field(default_factory=dict)
    generated: Dict[str, Any] = field(default_factory=dict)
    depends_on: List[str] = field(default_factory=list)
    sequence: int = 0
    error: Optional[str] = None

    @property
    def was_applied(self) -> bool:
        """True once the resource has been provisioned at least once."""
        return bool(self.attributes)

    def to_dict(self) -> dict:
        return {
            "resource_id": self.resource_id,
            "kind": self.kind,
            "status": self.status.value,
            "desired": self.desired,
            "attributes": self.attributes,
            "generated": self.generated,
            "depends_on": self.depends_on,
            "sequence": self.sequence,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ResourceState":
        return cls(
            resource_id=data["resource_id"],
            kind=data["kind"],
            status=Status(data.get("status", "pending")),
            desired=data.get("desired") or {},
            attributes=data.get("attributes") or {},
            generated=data.get("generated") or {},
            depends_on=list(data.get("depends_on") or []),
            sequence=int(data.get("sequence") or 0),
            error=data.get("error"),
        )


class StateStore:
    """
    Applied-state store shared by every apply step of a pass.

    Each record has its own lock; a writer publishes a complete record under it
    and readers always receive deep copies, so a published state cannot be
    mutated by a dependent.
    """

    def __init__(self, records: Optional[Iterable[ResourceState]] = None):
        self._records: Dict[str, ResourceState] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()
        self._sequence = 0
        for r in records or ():
            self._records[r.resource_id] = r
            self._sequence = max(self._sequence, r.sequence)

    def _lock_for(self, resource_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(resource_id)
            if lock is None:
                lock = self._locks[resource_id] = threading.Lock()
            return lock

    def get(self, resource_id: str) -> Optional[ResourceState]:
        with self._lock_for(resource_id):
            rec = self._records.get(resource_id)
            return copy.deepcopy(rec) if rec is not None else None

    def status(self, resource_id: str) -> Optional[Status]:
        with self._lock_for(resource_id):
            rec = self._records.get(resource_id)
            return rec.status if rec is not None else None

    def attributes(self, resource_id: str) -> Optional[Dict[str, Any]]:
        """Applied attributes, or None when the resource is not applied in this pass."""
        with self._lock_for(resource_id):
            rec = self._records.get(resource_id)
            if rec is None or rec.status != Status.APPLIED:
                return None
            return copy.deepcopy(rec.attributes)

    def publish(self, state: ResourceState) -> None:
        with self._lock_for(state.resource_id):
            if state.status == Status.APPLIED:
                with self._guard:
                    self._sequence += 1
                    state.sequence = self._sequence
            self._records[state.resource_id] = copy.deepcopy(state)

    def mark(self, resource_id: str, kind: str, status: Status, error: Optional[str] = None) -> None:
        """Change a record's status, keeping its last applied desired/attributes for diffing."""
        with self._lock_for(resource_id):
            rec = self._records.get(resource_id)
            if rec is None:
                rec = self._records[resource_id] = ResourceState(resource_id=resource_id, kind=kind)
            rec.status = status
            rec.error = error

    def remove(self, resource_id: str) -> None:
        with self._lock_for(resource_id):
            self._records.pop(resource_id, None)

    def ids(self) -> List[str]:
        with self._guard:
            return list(self._records)

    def records(self) -> List[ResourceState]:
        return [r for r in (self.get(i) for i in self.ids()) if r is not None]

    def to_dict(self) -> dict:
        return {"resources": [r.to_dict() for r in self.records()]}

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "StateStore":
        data = data or {}
        return cls(ResourceState.from_dict(r) for r in data.get("resources", []))
