"""
Placement and health gate tests — target lifecycle, thresholds, draining,
rolling revisions and scale to zero.
"""
import os

import pytest
import requests

from stackgraph.engine.apply import ApplyEngine
from stackgraph.engine.provider import SimulatedProvider
from stackgraph.errors import InvalidTransition
from stackgraph.graph.builder import build
from stackgraph.models.state import StateStore
from stackgraph.parsers.stack import parse_file
from stackgraph.placement.health import (
    HealthCheck,
    HealthGate,
    HttpProbe,
    ServicePlacement,
    Target,
    TargetState,
    listener_routing,
)

FIXTURES = os.path.join(os.path.dirname(__file__), "fixtures")
PROD = os.path.join(FIXTURES, "prod_app.yaml")


def _healthy(target, check):
    return True


def _failing(target, check):
    return False


class _Clock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _placement(desired=2, revision="rev1"):
    p = ServicePlacement("tg", "app", HealthCheck(interval=30, healthy_threshold=3, unhealthy_threshold=2),
                         port=80, drain_timeout=60)
    p.set_desired(desired, revision)
    return p


# --------------------------------------------------------- health check config
class TestHealthCheck:
    def test_defaults(self):
        hc = HealthCheck()
        assert (hc.path, hc.interval, hc.timeout) == ("/health", 30, 10)
        assert (hc.healthy_threshold, hc.unhealthy_threshold) == (5, 2)

    @pytest.mark.parametrize("codes,status,ok", [
        ("200", 200, True),
        ("200", 204, False),
        ("200,302", 302, True),
        ("200-299", 250, True),
        ("200-299", 301, False),
    ])
    def test_accepts(self, codes, status, ok):
        assert HealthCheck(healthy_codes=codes).accepts(status) is ok

    def test_from_dict_ignores_unknown_and_none(self):
        hc = HealthCheck.from_dict({"path": "/ready", "interval": None, "matcher": "x", "healthy_codes": 200})
        assert hc.path == "/ready"
        assert hc.interval == 30
        assert hc.healthy_codes == "200"


# --------------------------------------------------------- target lifecycle
class TestTargetLifecycle:
    def setup_method(self):
        self.placement = _placement()

    def test_registered_targets_wait_for_checks(self):
        t = self.placement.register()
        assert t.state == TargetState.HEALTH_CHECK_PENDING
        assert not t.routable
        assert t.history == ["registering", "health_check_pending"]

    def test_healthy_after_threshold(self):
        t = self.placement.register()
        for i in range(2):
            assert self.placement.record_check(t.target_id, True, i) == TargetState.HEALTH_CHECK_PENDING
        assert self.placement.record_check(t.target_id, True, 3) == TargetState.HEALTHY
        assert t.routable

    def test_unhealthy_after_threshold(self):
        t = self.placement.register()
        self.placement.record_check(t.target_id, False, 0)
        assert t.state == TargetState.HEALTH_CHECK_PENDING
        self.placement.record_check(t.target_id, False, 1)
        assert t.state == TargetState.UNHEALTHY
        assert not t.routable

    def test_success_resets_failure_streak(self):
        t = self.placement.register()
        for _ in range(3):
            self.placement.record_check(t.target_id, True, 0)
        self.placement.record_check(t.target_id, False, 1)
        self.placement.record_check(t.target_id, True, 2)
        self.placement.record_check(t.target_id, False, 3)
        assert t.state == TargetState.HEALTHY

    def test_recovers_from_unhealthy(self):
        t = self.placement.register()
        self.placement.record_check(t.target_id, False, 0)
        self.placement.record_check(t.target_id, False, 1)
        for i in range(3):
            self.placement.record_check(t.target_id, True, 2 + i)
        assert t.state == TargetState.HEALTHY

    def test_removed_is_terminal(self):
        t = Target("t1", "10.0.0.1", 80, "rev1", state=TargetState.DEREGISTERING)
        t.transition(TargetState.REMOVED)
        with pytest.raises(InvalidTransition):
            t.transition(TargetState.HEALTHY)

    def test_pending_cannot_skip_to_removed(self):
        t = self.placement.register()
        with pytest.raises(InvalidTransition):
            t.transition(TargetState.REMOVED)


# --------------------------------------------------------- draining
class TestDraining:
    def setup_method(self):
        self.placement = _placement()
        self.target = self.placement.register()

    def test_idle_target_removed_immediately(self):
        self.placement.deregister(self.target.target_id, now=100)
        assert self.placement.reap(now=100) == [self.target.target_id]
        assert self.target.state == TargetState.REMOVED

    def test_busy_target_drains_until_deadline(self):
        self.target.active_connections = 4
        self.placement.deregister(self.target.target_id, now=100)
        assert not self.target.routable
        assert self.placement.reap(now=130) == []
        assert self.target.state == TargetState.DEREGISTERING
        assert self.placement.reap(now=160) == [self.target.target_id]

    def test_busy_target_removed_once_connections_finish(self):
        self.target.active_connections = 1
        self.placement.deregister(self.target.target_id, now=100)
        self.target.active_connections = 0
        assert self.placement.reap(now=101) == [self.target.target_id]


# --------------------------------------------------------- convergence
class TestConverge:
    def test_launches_desired_count(self):
        p = _placement(desired=3)
        moved = p.converge(0)
        assert len(moved["registered"]) == 3
        assert len(p.live_targets()) == 3
        assert not p.stable

    def test_stable_when_all_healthy(self):
        p = _placement(desired=2)
        p.converge(0)
        for t in p.live_targets():
            for i in range(3):
                p.record_check(t.target_id, True, i)
        assert p.stable

    def test_scale_down_prefers_unhealthy(self):
        p = _placement(desired=2)
        p.converge(0)
        first, second = p.live_targets()
        for i in range(3):
            p.record_check(first.target_id, True, i)
        p.set_desired(1, "rev1")
        p.converge(10)
        assert second.state == TargetState.DEREGISTERING
        assert first.state == TargetState.HEALTHY

    def test_rolling_revision_keeps_min_healthy(self):
        p = _placement(desired=2)
        p.converge(0)
        for t in p.live_targets():
            for i in range(3):
                p.record_check(t.target_id, True, i)

        p.set_desired(2, "rev2", min_healthy_percent=50, max_healthy_percent=200)
        now = 100
        for _ in range(10):
            p.converge(now)
            p.reap(now)
            assert len(p.healthy_targets()) >= 1
            assert len(p.live_targets()) <= 4
            for t in p.live_targets():
                p.record_check(t.target_id, True, now)
            now += 30
        assert p.stable
        assert {t.revision for t in p.live_targets()} == {"rev2"}

    def test_round_trip(self):
        p = _placement(desired=2)
        p.converge(0)
        restored = ServicePlacement.from_dict(p.to_dict())
        assert restored.to_dict() == p.to_dict()
        assert restored.register().sequence == 3


# --------------------------------------------------------- health gate
class TestHealthGate:
    def setup_method(self):
        self.clock = _Clock()
        self.gate = HealthGate(clock=self.clock)
        self.tg = {"port": 80, "drain_timeout": 300,
                   "health_check": {"interval": 30, "healthy_threshold": 5, "unhealthy_threshold": 2}}
        self.service = {"desired_count": 2, "revision": "abc123", "min_healthy_percent": 50,
                        "max_healthy_percent": 200}

    def _tick_until(self, probe, ticks):
        for _ in range(ticks):
            self.gate.tick(probe)
            self.clock.now += 30

    def test_targets_healthy_after_five_checks(self):
        placement = self.gate.sync("tg", "app", self.tg, self.service)
        self._tick_until(_healthy, 4)
        assert placement.routable_targets() == []
        self._tick_until(_healthy, 1)
        assert len(placement.routable_targets()) == 2
        assert self.gate.stable

    def test_checks_respect_interval(self):
        placement = self.gate.sync("tg", "app", self.tg, self.service)
        self.gate.tick(_healthy)
        self.gate.tick(_healthy)
        assert all(t.consecutive_successes == 1 for t in placement.live_targets())

    def test_scale_to_zero(self):
        placement = self.gate.sync("tg", "app", self.tg, self.service)
        self._tick_until(_healthy, 5)
        assert len(placement.healthy_targets()) == 2

        self.gate.sync("tg", "app", self.tg, {**self.service, "desired_count": 0})
        assert placement.live_targets() == []
        assert placement.routable_targets() == []
        assert {t.state for t in placement.targets.values()} == {TargetState.REMOVED}
        assert self.gate.stable

    def test_failing_targets_never_routable(self):
        placement = self.gate.sync("tg", "app", self.tg, self.service)
        self._tick_until(_failing, 3)
        assert placement.routable_targets() == []
        assert len(placement.in_state(TargetState.UNHEALTHY)) == 2
        assert not self.gate.stable

    def test_wait_until_stable(self):
        self.gate.sync("tg", "app", self.tg, self.service)
        slept = []

        def sleep(seconds):
            slept.append(seconds)
            self.clock.now += seconds

        assert self.gate.wait_until_stable(_healthy, timeout=600, sleep=sleep)
        assert slept and all(s == 30 for s in slept)

    def test_wait_until_stable_times_out(self):
        self.gate.sync("tg", "app", self.tg, self.service)

        def sleep(seconds):
            self.clock.now += seconds

        assert not self.gate.wait_until_stable(_failing, timeout=120, sleep=sleep)

    def test_drain(self):
        placement = self.gate.sync("tg", "app", self.tg, self.service)
        drained = self.gate.drain("tg")
        assert len(drained) == 2
        assert placement.live_targets() == []

    def test_round_trip(self):
        self.gate.sync("tg", "app", self.tg, self.service)
        restored = HealthGate.from_dict(self.gate.to_dict(), clock=self.clock)
        assert restored.to_dict() == self.gate.to_dict()


# --------------------------------------------------------- engine integration
class TestPlacementAfterApply:
    def test_scale_to_zero_through_apply(self, tmp_path):
        clock = _Clock()
        gate = HealthGate(clock=clock)
        store = StateStore()
        engine = ApplyEngine(SimulatedProvider(stack="prod-app"), store, gate)

        engine.apply(build(parse_file(PROD)))
        placement = gate.get("app_tg")
        assert len(placement.live_targets()) == 2
        for _ in range(5):
            gate.tick(_healthy)
            clock.now += 30
        assert len(placement.routable_targets()) == 2

        with open(PROD) as fh:
            text = fh.read()
        scaled = tmp_path / "prod_app.yaml"
        scaled.write_text(text.replace("desired_count: 2", "desired_count: 0"))
        result = engine.apply(build(parse_file(str(scaled))))

        assert result.changed == ["app"]
        assert placement.live_targets() == []
        assert placement.routable_targets() == []
        assert result.violations == []

    def test_listener_routing(self):
        graph = build(parse_file(PROD))
        engine = ApplyEngine(SimulatedProvider(stack=graph.name))
        result = engine.apply(graph)
        routing = listener_routing(graph, result.store)
        assert routing["http"]["default"] == {"type": "forward", "target_group": "app_tg"}

    def test_listener_falls_back_to_fixed_response(self):
        graph = build(parse_file(PROD))
        provider = SimulatedProvider(stack=graph.name)
        provider.fail_on["app_tg"] = "limit"
        result = ApplyEngine(provider).apply(graph)
        routing = listener_routing(graph, result.store)
        assert routing["http"]["default"] == {"type": "fixed-response", "status": 404}


# --------------------------------------------------------- http probe
class _Response:
    def __init__(self, status_code):
        self.status_code = status_code


class _Session:
    def __init__(self, status_code=200, error=None):
        self.status_code = status_code
        self.error = error
        self.urls = []

    def get(self, url, timeout=None, allow_redirects=True):
        self.urls.append(url)
        if self.error is not None:
            raise self.error
        return _Response(self.status_code)


class TestHttpProbe:
    def setup_method(self):
        self.target = Target("t1", "10.0.4.7", 8080, "rev1")

    def test_probe_builds_url(self):
        session = _Session()
        assert HttpProbe(session=session)(self.target, HealthCheck(path="/health"))
        assert session.urls == ["http://10.0.4.7:8080/health"]

    def test_probe_status_mismatch(self):
        assert not HttpProbe(session=_Session(503))(self.target, HealthCheck())

    def test_probe_connection_error(self):
        session = _Session(error=requests.ConnectionError("refused"))
        assert not HttpProbe(session=session)(self.target, HealthCheck())
