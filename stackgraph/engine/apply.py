"""
Topological apply engine.

Runs one deployment pass over a dependency graph: resources whose
dependencies are applied are handed to the provider concurrently, resolved
attributes flow forward through the state store, and every resource ends the
pass as applied, failed or skipped.
"""
import secrets
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from heapq import heappop, heappush
from typing import Dict, List, Optional, Set, Tuple

from rich.console import Console

from stackgraph.engine.provider import Provider
from stackgraph.engine.resolve import resolve_attributes
from stackgraph.errors import ApplyFailure, SecurityViolationDetected
from stackgraph.graph.builder import Graph
from stackgraph.models.resource import Kind, Resource
from stackgraph.models.state import ResourceState, StateStore, Status
from stackgraph.placement.health import HealthGate
from stackgraph.security.resolver import resolve_applied, validate_targets

_CANCELLED = "cancelled"

# Change markers for console output
_MARKS = {
    "create":    "[green]+[/green]",
    "update":    "[yellow]~[/yellow]",
    "unchanged": "[dim]=[/dim]",
    "failed":    "[red]![/red]",
    "skipped":   "[dim]-[/dim]",
    "delete":    "[red]-[/red]",
}


@dataclass
class ApplyResult:
    graph: Optional[Graph]
    store: StateStore
    statuses: Dict[str, Status] = field(default_factory=dict)
    changed: List[str] = field(default_factory=list)
    failures: Dict[str, ApplyFailure] = field(default_factory=dict)
    skipped: Dict[str, str] = field(default_factory=dict)
    removed: List[str] = field(default_factory=list)
    violations: List[SecurityViolationDetected] = field(default_factory=list)
    cancelled: bool = False

    def ids_with(self, status: Status) -> List[str]:
        return [rid for rid, s in self.statuses.items() if s == status]

    @property
    def applied(self) -> List[str]:
        return self.ids_with(Status.APPLIED)

    @property
    def failed(self) -> List[str]:
        return self.ids_with(Status.FAILED)

    @property
    def skipped_ids(self) -> List[str]:
        return self.ids_with(Status.SKIPPED)

    @property
    def ok(self) -> bool:
        return not self.failed and not self.skipped_ids and not self.violations and not self.cancelled

    def to_dict(self) -> dict:
        return {
            "statuses": {rid: s.value for rid, s in self.statuses.items()},
            "changed": list(self.changed),
            "failures": {rid: str(f.cause) for rid, f in self.failures.items()},
            "skipped": dict(self.skipped),
            "removed": list(self.removed),
            "violations": [str(v) for v in self.violations],
            "cancelled": self.cancelled,
        }


class ApplyEngine:
    def __init__(
        self,
        provider: Provider,
        store: Optional[StateStore] = None,
        placements: Optional[HealthGate] = None,
        max_workers: int = 4,
        console: Optional[Console] = None,
    ):
        self.provider = provider
        self.store = store if store is not None else StateStore()
        self.placements = placements if placements is not None else HealthGate()
        self.max_workers = max(1, max_workers)
        self.console = console

    def _log(self, mark: str, message: str) -> None:
        if self.console is not None:
            self.console.print(f"  {_MARKS[mark]} {message}")

    # ------------------------------------------------------------------ one resource

    def _apply_one(self, resource: Resource) -> Tuple[Status, bool, Optional[ApplyFailure]]:
        kind = resource.kind.value
        prior = self.store.get(resource.id)
        # UnresolvedReference is an engine bug and must escape, so resolve outside the try
        desired = resolve_attributes(resource, self.store)

        generated = dict(prior.generated) if prior else {}
        if resource.kind == Kind.DATA_STORE and desired.get("credentials") == "generated":
            if "password" not in generated:
                generated["password"] = secrets.token_urlsafe(24)

        if prior is not None and prior.was_applied and prior.desired == desired:
            self.store.mark(resource.id, kind, Status.APPLIED)
            self._log("unchanged", f"{resource.id} ({kind})")
            return Status.APPLIED, False, None

        op = "update" if prior is not None and prior.was_applied else "create"
        try:
            if resource.kind == Kind.OUTPUT:
                attrs = {"value": desired["value"]}
            elif op == "update":
                attrs = self.provider.update(resource, {**desired, **generated}, prior.attributes)
            else:
                attrs = self.provider.create(resource, {**desired, **generated})
        except Exception as exc:
            failure = ApplyFailure(resource.id, exc)
            self.store.mark(resource.id, kind, Status.FAILED, str(exc))
            self._log("failed", f"{resource.id} ({kind}): {exc}")
            return Status.FAILED, False, failure

        self.store.publish(ResourceState(
            resource_id=resource.id,
            kind=kind,
            status=Status.APPLIED,
            desired=desired,
            attributes=attrs,
            generated=generated,
            depends_on=resource.depends_on,
        ))
        self._log(op, f"{resource.id} ({kind})")
        return Status.APPLIED, True, None

    # ------------------------------------------------------------------ forward pass

    def apply(self, graph: Graph, cancel: Optional[threading.Event] = None) -> ApplyResult:
        """
        Apply every resource in dependency order.

        Independent branches run concurrently on up to max_workers threads. A
        failed resource takes its transitive dependents down with it (they are
        skipped); everything else keeps going. Setting `cancel` stops new work
        from being started; calls already in flight finish.
        """
        result = ApplyResult(graph=graph, store=self.store)
        for r in graph:
            self.store.mark(r.id, r.kind.value, Status.PENDING)

        waiting = {rid: set(graph.dependencies(rid)) for rid in graph.order}
        ready: List[Tuple[int, str]] = []
        for rid, deps in waiting.items():
            if not deps:
                heappush(ready, (graph.index(rid), rid))

        def block_dependents(failed_id: str) -> None:
            for dep in graph.transitive_dependents(failed_id):
                if dep not in result.statuses:
                    result.statuses[dep] = Status.SKIPPED
                    result.skipped[dep] = f"dependency '{failed_id}' failed"
                    self.store.mark(dep, graph[dep].kind.value, Status.SKIPPED, result.skipped[dep])
                    self._log("skipped", f"{dep} (blocked by {failed_id})")

        in_flight: Dict[Future, str] = {}
        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="apply") as pool:
            while ready or in_flight:
                while ready and len(in_flight) < self.max_workers and not (cancel and cancel.is_set()):
                    _, rid = heappop(ready)
                    in_flight[pool.submit(self._apply_one, graph[rid])] = rid
                if not in_flight:
                    break
                done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                for fut in sorted(done, key=lambda f: graph.index(in_flight[f])):
                    rid = in_flight.pop(fut)
                    status, changed, failure = fut.result()
                    result.statuses[rid] = status
                    if changed:
                        result.changed.append(rid)
                    if failure is not None:
                        result.failures[rid] = failure
                        block_dependents(rid)
                        continue
                    for dependent in graph.dependents(rid):
                        waiting[dependent].discard(rid)
                        if not waiting[dependent] and dependent not in result.statuses:
                            heappush(ready, (graph.index(dependent), dependent))

        if cancel is not None and cancel.is_set():
            result.cancelled = True
            for rid in graph.order:
                if rid not in result.statuses:
                    result.statuses[rid] = Status.SKIPPED
                    result.skipped[rid] = _CANCELLED
                    self.store.mark(rid, graph[rid].kind.value, Status.SKIPPED, _CANCELLED)

        # report in graph order
        result.statuses = {rid: result.statuses[rid] for rid in graph.order}

        if not result.cancelled:
            self._sync_placements(graph)
            result.removed = self._delete_orphans(graph, result)
        result.violations = self._validate_security(graph)
        return result

    # ------------------------------------------------------------------ after the pass

    def _sync_placements(self, graph: Graph) -> None:
        for tg in graph.of_kind(Kind.TARGET_GROUP):
            tg_attrs = self.store.attributes(tg.id)
            service_id = tg.reference("service").resource_id
            service_attrs = self.store.attributes(service_id)
            if tg_attrs is None or service_attrs is None:
                continue
            placement = self.placements.sync(tg.id, service_id, tg_attrs, service_attrs)
            if self.console is not None:
                live = placement.live_targets()
                self.console.print(
                    f"  [cyan]>[/cyan] {tg.id}: {len(live)} live / "
                    f"{len(placement.routable_targets())} routable (desired {placement.desired_count})"
                )

    def _validate_security(self, graph: Graph) -> List[SecurityViolationDetected]:
        matrix = resolve_applied(graph, self.store)
        violations = validate_targets(graph, self.store, matrix, self.placements)
        if self.console is not None:
            for v in violations:
                self.console.print(f"[yellow]Warning:[/yellow] security violation: {v}")
        return violations

    def _delete_order(self, ids: Set[str]) -> List[str]:
        """Dependents first, using the dependencies recorded at apply time."""
        records = {rid: self.store.get(rid) for rid in ids}
        remaining = set(ids)
        order: List[str] = []
        while remaining:
            blocked = {d for rid in remaining for d in records[rid].depends_on if d in remaining}
            batch = sorted((rid for rid in remaining if rid not in blocked),
                           key=lambda rid: -records[rid].sequence)
            if not batch:
                # recorded dependencies form a loop; fall back to reverse apply order
                batch = sorted(remaining, key=lambda rid: -records[rid].sequence)
            order.extend(batch)
            remaining.difference_update(batch)
        return order

    def _delete(self, ids: Set[str], result: ApplyResult) -> List[str]:
        removed: List[str] = []
        # undeleted resource id -> what it still depends on
        kept: Dict[str, List[str]] = {}
        for rid in self._delete_order(ids):
            rec = self.store.get(rid)
            holder = next((k for k, deps in kept.items() if rid in deps), None)
            if holder is not None:
                result.skipped[rid] = f"dependent '{holder}' was not deleted"
                result.statuses[rid] = Status.SKIPPED
                kept[rid] = rec.depends_on
                continue
            kind = Kind(rec.kind)
            if kind == Kind.TARGET_GROUP:
                self.placements.drain(rid)
            try:
                if rec.was_applied and kind != Kind.OUTPUT:
                    self.provider.delete(rid, kind, rec.attributes)
            except Exception as exc:
                result.failures[rid] = ApplyFailure(rid, exc)
                result.statuses[rid] = Status.FAILED
                self.store.mark(rid, rec.kind, Status.FAILED, str(exc))
                kept[rid] = rec.depends_on
                self._log("failed", f"delete {rid} ({rec.kind}): {exc}")
                continue
            self.store.remove(rid)
            self.placements.placements.pop(rid, None)
            removed.append(rid)
            self._log("delete", f"{rid} ({rec.kind})")
        return removed

    def _delete_orphans(self, graph: Graph, result: ApplyResult) -> List[str]:
        orphans = {rid for rid in self.store.ids() if rid not in graph}
        if not orphans:
            return []
        return self._delete(orphans, result)

    def destroy(self, graph: Optional[Graph] = None) -> ApplyResult:
        """Tear down every resource in the state, draining targets before their group goes."""
        result = ApplyResult(graph=graph, store=self.store)
        removed = self._delete(set(self.store.ids()), result)
        for rid in removed:
            result.statuses[rid] = Status.DESTROYED
        result.removed = removed
        return result
