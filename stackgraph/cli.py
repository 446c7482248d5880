"""
stackgraph CLI entry point.
"""
import concurrent.futures
import json
import os
import sys
import threading
from typing import Optional, Tuple

import click
from rich.console import Console
from rich.table import Table

from stackgraph import __version__
from stackgraph.config import Settings, load_settings
from stackgraph.engine.apply import ApplyEngine, ApplyResult
from stackgraph.engine.provider import SimulatedProvider
from stackgraph.errors import StackError
from stackgraph.graph.builder import Graph, build
from stackgraph.models.state import StateStore, Status
from stackgraph.outputs.exporter import collect, describe
from stackgraph.parsers.stack import parse_paths
from stackgraph.placement.health import HealthGate, HttpProbe
from stackgraph.reporters import json_reporter, markdown
from stackgraph.security.resolver import resolve_declared

console = Console(stderr=True)

_STATUS_COLORS = {
    "applied": "green",
    "failed": "bold red",
    "skipped": "yellow",
    "pending": "dim",
    "destroyed": "dim",
}


def _print_banner(no_color: bool = False) -> None:
    c = Console(stderr=True, no_color=no_color)
    c.print(f"[bold cyan]stackgraph[/bold cyan] [dim]v{__version__}[/dim]  "
            "[dim]dependency-ordered stack apply[/dim]\n")


def _load_graph(paths: Tuple[str, ...], stderr: Console) -> Graph:
    missing = [p for p in paths if not os.path.exists(p)]
    for p in missing:
        stderr.print(f"[yellow]Warning:[/yellow] '{p}' does not exist, skipping.")
    present = [p for p in paths if p not in missing]
    if not present:
        stderr.print("[red]No stack files found.[/red]")
        sys.exit(2)
    try:
        stack = parse_paths(present)
        if not len(stack):
            stderr.print("[yellow]No resources declared in the provided paths.[/yellow]")
            sys.exit(0)
        return build(stack)
    except StackError as exc:
        stderr.print(f"[red]Invalid stack:[/red] {exc}")
        sys.exit(2)


def _load_state(path: str) -> Tuple[StateStore, HealthGate]:
    if not os.path.exists(path):
        return StateStore(), HealthGate()
    try:
        with open(path, encoding="utf-8") as fh:
            data = json.load(fh)
    except (OSError, ValueError) as exc:
        console.print(f"[red]Unreadable state file[/red] {path}: {exc}")
        sys.exit(2)
    return StateStore.from_dict(data.get("state")), HealthGate.from_dict(data.get("placements"))


def _save_state(path: str, stack: str, store: StateStore, gate: HealthGate) -> None:
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    payload = {
        "stack": stack,
        "version": __version__,
        "state": store.to_dict(),
        "placements": gate.to_dict(),
    }
    with open(path, "w", encoding="utf-8", newline="\n") as fh:
        json.dump(payload, fh, indent=2, sort_keys=True)


def _print_status_table(result: ApplyResult, no_color: bool) -> None:
    tbl = Table(title="Apply Result", show_header=True, header_style="bold")
    tbl.add_column("#", style="dim", width=4)
    tbl.add_column("Resource", width=24)
    tbl.add_column("Kind", width=16)
    tbl.add_column("Status", width=10)
    tbl.add_column("Detail")

    for i, (rid, status) in enumerate(result.statuses.items(), 1):
        kind = result.graph[rid].kind.value if result.graph is not None and rid in result.graph else "-"
        color = _STATUS_COLORS.get(status.value, "") if not no_color else ""
        detail = ""
        if rid in result.failures:
            detail = str(result.failures[rid].cause)
        elif rid in result.skipped:
            detail = result.skipped[rid]
        elif rid in result.changed:
            detail = "changed"
        tbl.add_row(
            str(i),
            rid,
            kind,
            f"[{color}]{status.value}[/{color}]" if color else status.value,
            detail[:80] + "…" if len(detail) > 80 else detail,
        )

    Console(stderr=True, no_color=no_color).print(tbl)


def _write_report(content: str, output: Optional[str], stderr: Console) -> None:
    if output:
        with open(output, "w", encoding="utf-8", newline="\n") as fh:
            fh.write(content)
        stderr.print(f"Report written to [bold]{output}[/bold]")
    else:
        click.echo(content)


def _render(fmt: str, graph: Graph, source: str, **kwargs) -> str:
    if fmt.lower() == "json":
        return json_reporter.build_report(graph, source, **kwargs)
    return markdown.build_report(graph, source, **kwargs)


def _apply_interruptibly(engine: ApplyEngine, graph: Graph, cancel: threading.Event,
                         stderr: Console) -> ApplyResult:
    """
    Run the pass on a worker thread and turn Ctrl-C into cancellation.

    Resources already in flight finish, the rest are skipped as cancelled,
    and the pass still returns a full result.
    """
    with concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="stackgraph-apply") as pool:
        future = pool.submit(engine.apply, graph, cancel)
        while True:
            try:
                return future.result()
            except KeyboardInterrupt:
                if not cancel.is_set():
                    cancel.set()
                    stderr.print("[yellow]Interrupted;[/yellow] waiting for in-flight resources to finish.")


def _settings(config: Optional[str], state: Optional[str], max_workers: Optional[int]) -> Settings:
    settings = load_settings(config)
    if state:
        settings.state_file = state
    if max_workers:
        settings.max_workers = max_workers
    return settings


_format_option = click.option(
    "--format", "output_format",
    type=click.Choice(["markdown", "json"], case_sensitive=False),
    default="markdown",
    show_default=True,
    help="Report format.",
)
_output_option = click.option(
    "--output", "-o",
    type=click.Path(),
    default=None,
    help="Write report to this file (default: stdout).",
)
_state_option = click.option(
    "--state", "state_path",
    type=click.Path(),
    default=None,
    help="State file (default from stackgraph.yaml, else .stackgraph/state.json).",
)
_config_option = click.option(
    "--config", "config_path",
    type=click.Path(),
    default=None,
    help="Settings file (default: ./stackgraph.yaml when present).",
)
_no_color_option = click.option(
    "--no-color",
    is_flag=True,
    default=False,
    help="Disable rich terminal color output.",
)


@click.group(context_settings=dict(help_option_names=["-h", "--help"]))
@click.version_option(__version__)
@click.pass_context
def cli(ctx):
    """stackgraph — dependency-ordered apply for declarative stacks."""
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())
        ctx.exit()


@cli.command()
@click.argument("paths", nargs=-1, required=True, type=click.Path())
@_format_option
@_output_option
@click.option("--ascii", is_flag=True, default=False, help="Use ASCII-only status markers.")
@_no_color_option
def plan(paths: Tuple[str, ...], output_format: str, output: Optional[str], ascii: bool, no_color: bool) -> None:
    """
    Validate stack files and show the apply order.

    PATHS can be files or directories; multiple values accepted.
    """
    _print_banner(no_color)
    stderr = Console(stderr=True, no_color=no_color)
    graph = _load_graph(paths, stderr)
    stderr.print(f"Planned [bold]{len(graph)}[/bold] resources for stack [bold]{graph.name}[/bold].")

    kwargs = {"matrix": resolve_declared(graph)}
    if output_format.lower() == "markdown":
        kwargs["ascii_mode"] = ascii
    _write_report(_render(output_format, graph, ", ".join(paths), **kwargs), output, stderr)
    sys.exit(0)


@cli.command()
@click.argument("paths", nargs=-1, required=True, type=click.Path())
@_state_option
@_config_option
@click.option("--max-workers", type=int, default=None, help="Resources applied concurrently.")
@click.option(
    "--wait",
    type=click.Choice(["none", "http", "assume-healthy"], case_sensitive=False),
    default="none",
    show_default=True,
    help="Run health checks until every target group is stable.",
)
@_format_option
@_output_option
@_no_color_option
def apply(
    paths: Tuple[str, ...],
    state_path: Optional[str],
    config_path: Optional[str],
    max_workers: Optional[int],
    wait: str,
    output_format: str,
    output: Optional[str],
    no_color: bool,
) -> None:
    """
    Apply stack files: create or update every resource in dependency order.

    Exits 1 when any resource failed or was skipped, or a security violation
    was detected; exits 2 when the stack itself is invalid.
    """
    _print_banner(no_color)
    stderr = Console(stderr=True, no_color=no_color)
    settings = _settings(config_path, state_path, max_workers)
    graph = _load_graph(paths, stderr)
    store, gate = _load_state(settings.state_file)

    provider = SimulatedProvider(stack=graph.name, region=settings.region, account=settings.account)
    engine = ApplyEngine(provider, store, gate, max_workers=settings.max_workers, console=stderr)

    cancel = threading.Event()
    stderr.print(f"Applying [bold]{len(graph)}[/bold] resources…")
    result = _apply_interruptibly(engine, graph, cancel, stderr)

    if wait != "none" and gate.placements and not result.cancelled:
        probe = HttpProbe() if wait == "http" else (lambda target, check: True)
        with stderr.status("[bold]Waiting for targets to become healthy…"):
            stable = gate.wait_until_stable(probe, settings.wait_timeout)
        if not stable:
            stderr.print("[yellow]Warning:[/yellow] target groups did not stabilise before the timeout.")

    _save_state(settings.state_file, graph.name, store, gate)
    _print_status_table(result, no_color)

    counts = {s: len(result.ids_with(s)) for s in (Status.APPLIED, Status.FAILED, Status.SKIPPED)}
    stderr.print(
        f"Applied [bold]{counts[Status.APPLIED]}[/bold], changed {len(result.changed)}, "
        f"failed {counts[Status.FAILED]}, skipped {counts[Status.SKIPPED]}"
        + (f", removed {len(result.removed)}" if result.removed else "")
    )

    _write_report(
        _render(output_format, graph, ", ".join(paths), result=result,
                matrix=resolve_declared(graph), outputs=describe(result)),
        output,
        stderr,
    )
    sys.exit(0 if result.ok else 1)


@cli.command()
@click.argument("paths", nargs=-1, type=click.Path())
@_state_option
@_config_option
@_no_color_option
def destroy(paths: Tuple[str, ...], state_path: Optional[str], config_path: Optional[str], no_color: bool) -> None:
    """Tear down every resource recorded in the state file."""
    _print_banner(no_color)
    stderr = Console(stderr=True, no_color=no_color)
    settings = _settings(config_path, state_path, None)
    store, gate = _load_state(settings.state_file)
    if not store.ids():
        stderr.print("[yellow]Nothing to destroy.[/yellow]")
        sys.exit(0)

    graph = _load_graph(paths, stderr) if paths else None
    stack = graph.name if graph is not None else "stack"
    if graph is None and os.path.exists(settings.state_file):
        with open(settings.state_file, encoding="utf-8") as fh:
            stack = json.load(fh).get("stack", stack)

    provider = SimulatedProvider(stack=stack, region=settings.region, account=settings.account)
    engine = ApplyEngine(provider, store, gate, max_workers=settings.max_workers, console=stderr)
    result = engine.destroy(graph)
    _save_state(settings.state_file, stack, store, gate)
    _print_status_table(result, no_color)
    sys.exit(0 if not result.failed and not result.skipped_ids else 1)


@cli.command()
@click.argument("paths", nargs=-1, required=True, type=click.Path())
@_state_option
@_config_option
def outputs(paths: Tuple[str, ...], state_path: Optional[str], config_path: Optional[str]) -> None:
    """Print exported outputs of the last apply as JSON."""
    stderr = Console(stderr=True)
    settings = _settings(config_path, state_path, None)
    graph = _load_graph(paths, stderr)
    store, _ = _load_state(settings.state_file)
    try:
        values = collect(ApplyResult(graph=graph, store=store))
    except StackError as exc:
        stderr.print(f"[red]Outputs unavailable:[/red] {exc}")
        sys.exit(1)
    click.echo(json.dumps(values, indent=2, sort_keys=True))


@cli.command()
@click.argument("paths", nargs=-1, required=True, type=click.Path())
@click.option("--source", required=True, help="Source security group id, or an address/CIDR.")
@click.option("--destination", required=True, help="Destination security group id.")
@click.option("--port", type=int, required=True)
@click.option("--protocol", default="tcp", show_default=True)
def reach(paths: Tuple[str, ...], source: str, destination: str, port: int, protocol: str) -> None:
    """
    Ask whether SOURCE may reach DESTINATION on PORT under the declared rules.

    Exits 0 on allow and 1 on deny.
    """
    stderr = Console(stderr=True)
    graph = _load_graph(paths, stderr)
    decision = resolve_declared(graph).decision(source, destination, port, protocol)
    click.echo(f"{source} -> {destination} {protocol}/{port}: {decision.value}")
    sys.exit(0 if decision.value == "allow" else 1)


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
