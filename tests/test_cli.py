"""
CLI and report tests.
"""
import _thread
import json
import os
import subprocess
import sys
import threading

from click.testing import CliRunner
from rich.console import Console

from stackgraph.cli import _apply_interruptibly, cli
from stackgraph.engine.apply import ApplyEngine
from stackgraph.engine.provider import SimulatedProvider
from stackgraph.graph.builder import build
from stackgraph.parsers.stack import parse_file
from stackgraph.reporters import json_reporter, markdown
from stackgraph.security.resolver import resolve_applied

FIXTURES = os.path.join(os.path.dirname(__file__), "fixtures")
PROD = os.path.join(FIXTURES, "prod_app.yaml")
CYCLE = os.path.join(FIXTURES, "cycle.yaml")


def test_module_execution():
    """Test that 'python -m stackgraph' works."""
    result = subprocess.run(
        [sys.executable, "-m", "stackgraph", "--help"],
        capture_output=True,
        text=True
    )
    assert result.returncode == 0
    assert "stackgraph" in result.stdout


class TestPlan:
    def setup_method(self):
        self.runner = CliRunner()

    def test_plan_markdown(self, tmp_path):
        out = tmp_path / "plan.md"
        result = self.runner.invoke(cli, ["plan", PROD, "--output", str(out)])
        assert result.exit_code == 0
        content = out.read_text(encoding="utf-8")
        assert "# Stack Report: prod-app" in content
        assert "```mermaid" in content
        assert "planned" in content

    def test_plan_json(self, tmp_path):
        out = tmp_path / "plan.json"
        result = self.runner.invoke(cli, ["plan", PROD, "--format", "json", "--output", str(out)])
        assert result.exit_code == 0
        data = json.loads(out.read_text())
        assert data["meta"]["stack"] == "prod-app"
        assert data["order"][0] == "vpc"
        assert len(data["resources"]) == 24
        assert {row["rule"] for row in data["reachability"]} >= {"db_from_ecs", "ssh_admin"}

    def test_plan_cycle_exits_2(self):
        result = self.runner.invoke(cli, ["plan", CYCLE])
        assert result.exit_code == 2

    def test_plan_missing_path_exits_2(self, tmp_path):
        result = self.runner.invoke(cli, ["plan", str(tmp_path / "nope.yaml")])
        assert result.exit_code == 2


class TestApplyCommands:
    def setup_method(self):
        self.runner = CliRunner()

    def _apply(self, state, *extra):
        return self.runner.invoke(cli, [
            "apply", PROD, "--state", str(state), "--config", "missing-settings.yaml",
            "--output", str(state.parent / "report.md"), *extra,
        ])

    def test_apply_writes_state(self, tmp_path):
        state = tmp_path / "state.json"
        result = self._apply(state)
        assert result.exit_code == 0, result.output
        data = json.loads(state.read_text())
        assert data["stack"] == "prod-app"
        assert {r["resource_id"] for r in data["state"]["resources"]} >= {"vpc", "db", "app_tg"}
        assert "app_tg" in data["placements"]

    def test_apply_twice_is_stable(self, tmp_path):
        state = tmp_path / "state.json"
        assert self._apply(state).exit_code == 0
        first = json.loads(state.read_text())["state"]
        assert self._apply(state).exit_code == 0
        second = json.loads(state.read_text())["state"]
        attrs = lambda s: {r["resource_id"]: r["attributes"] for r in s["resources"]}
        assert attrs(first) == attrs(second)

    def test_outputs_after_apply(self, tmp_path):
        state = tmp_path / "state.json"
        self._apply(state)
        result = self.runner.invoke(cli, ["outputs", PROD, "--state", str(state), "--config", "missing.yaml"])
        assert result.exit_code == 0
        values = json.loads(result.output)
        assert set(values) == {"LoadBalancerDNS", "DbEndpoint", "DbAccessorIP"}

    def test_outputs_without_state_exit_1(self, tmp_path):
        result = self.runner.invoke(cli, [
            "outputs", PROD, "--state", str(tmp_path / "none.json"), "--config", "missing.yaml",
        ])
        assert result.exit_code == 1

    def test_destroy(self, tmp_path):
        state = tmp_path / "state.json"
        self._apply(state)
        result = self.runner.invoke(cli, ["destroy", "--state", str(state), "--config", "missing.yaml"])
        assert result.exit_code == 0
        data = json.loads(state.read_text())
        assert data["state"]["resources"] == []
        assert data["placements"] == {}

    def test_apply_with_wait(self, tmp_path):
        state = tmp_path / "state.json"
        settings = tmp_path / "stackgraph.yaml"
        settings.write_text("wait_timeout: 0\n")
        result = self.runner.invoke(cli, [
            "apply", PROD, "--state", str(state), "--config", str(settings),
            "--output", str(tmp_path / "r.md"), "--wait", "assume-healthy",
        ])
        assert result.exit_code == 0


class TestReach:
    def setup_method(self):
        self.runner = CliRunner()

    def test_allowed(self):
        result = self.runner.invoke(cli, [
            "reach", PROD, "--source", "ecs_sg", "--destination", "db_sg", "--port", "3306",
        ])
        assert result.exit_code == 0
        assert "allow" in result.output

    def test_denied(self):
        result = self.runner.invoke(cli, [
            "reach", PROD, "--source", "alb_sg", "--destination", "db_sg", "--port", "3306",
        ])
        assert result.exit_code == 1
        assert "deny" in result.output


class TestReports:
    def setup_method(self):
        self.graph = build(parse_file(PROD))
        provider = SimulatedProvider(stack=self.graph.name)
        provider.fail_on["db"] = "quota exceeded"
        self.result = ApplyEngine(provider).apply(self.graph)
        self.matrix = resolve_applied(self.graph, self.result.store)

    def test_markdown_lists_failures(self):
        report = markdown.build_report(self.graph, "prod_app.yaml", self.result, self.matrix)
        assert "## Failures" in report
        assert "quota exceeded" in report
        assert "## Skipped" in report
        assert "style db fill:#ff4444" in report

    def test_ascii_mode(self):
        report_emoji = markdown.build_report(self.graph, "prod_app.yaml", self.result, ascii_mode=False)
        assert "❌ failed" in report_emoji

        report_ascii = markdown.build_report(self.graph, "prod_app.yaml", self.result, ascii_mode=True)
        assert "[FAIL] failed" in report_ascii
        assert "❌" not in report_ascii

    def test_json_report(self):
        data = json.loads(json_reporter.build_report(self.graph, "prod_app.yaml", self.result, self.matrix))
        assert data["apply"]["statuses"]["db"] == "failed"
        assert data["apply"]["skipped"]["app"] == "dependency 'db' failed"
        statuses = {r["id"]: r["status"] for r in data["resources"]}
        assert statuses["vpc"] == "applied"


class _BlockingEngine:
    """Blocks until cancelled, the way a long pass would."""

    def __init__(self):
        self.started = threading.Event()

    def apply(self, graph, cancel):
        self.started.set()
        cancel.wait(10)
        return "cancelled" if cancel.is_set() else "finished"


class TestInterruptedApply:
    def test_ctrl_c_cancels_the_pass(self):
        engine = _BlockingEngine()
        cancel = threading.Event()

        def interrupt():
            engine.started.wait(10)
            _thread.interrupt_main()

        threading.Thread(target=interrupt, daemon=True).start()
        result = _apply_interruptibly(engine, None, cancel, Console(stderr=True))
        assert cancel.is_set()
        assert result == "cancelled"

    def test_cancelled_pass_reports_every_resource(self):
        graph = build(parse_file(PROD))
        cancel = threading.Event()
        cancel.set()
        result = _apply_interruptibly(
            ApplyEngine(SimulatedProvider(stack=graph.name)), graph, cancel, Console(stderr=True)
        )
        assert result.cancelled
        assert not result.ok
        assert set(result.skipped) == {r.id for r in graph}
        assert set(result.skipped.values()) == {"cancelled"}
