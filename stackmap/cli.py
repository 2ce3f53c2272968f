"""
stackmap CLI entry point.
"""
import json
import sys
from typing import List, Optional, Tuple

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from stackmap import __version__, engine, graph as graph_builder, planner
from stackmap.config import StackConfig, load_config
from stackmap.errors import ConfigurationError, StateError, StateLockError
from stackmap.executor import Executor, RunResult, StepResult, StepStatus
from stackmap.graph import ResourceGraph
from stackmap.log import configure_logging
from stackmap.models.plan import Plan
from stackmap.models.resource import RESOURCE_TYPES, split_address
from stackmap.reporters import json_reporter, markdown
from stackmap.state import StateStore

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_LOCKED = 3

_BANNER = r"""
     _             _
 ___| |_ __ _  ___| | ___ __ ___   __ _ _ __
/ __| __/ _` |/ __| |/ / '_ ` _ \ / _` | '_ \
\__ \ || (_| | (__|   <| | | | | | (_| | |_) |
|___/\__\__,_|\___|_|\_\_| |_| |_|\__,_| .__/
                                       |_|
"""

_ACTION_COLORS = {
    "create": "green",
    "update": "yellow",
    "replace": "bold yellow",
    "delete": "red",
}

_STATUS_COLORS = {
    "succeeded": "green",
    "failed": "bold red",
    "skipped": "yellow",
    "cancelled": "dim",
}

_MASK = "(sensitive)"


def _print_banner(no_color: bool = False) -> None:
    c = Console(stderr=True, no_color=no_color)
    c.print(f"[bold cyan]{_BANNER}[/bold cyan]")
    c.print(f"  [dim]declarative docker stacks[/dim]   [dim]v{__version__}[/dim]\n")


def _stderr(ctx: click.Context) -> Console:
    return Console(stderr=True, no_color=ctx.obj["no_color"])


def _config(ctx: click.Context) -> StackConfig:
    return ctx.obj["config"]


def _load_graph(ctx: click.Context, paths: Tuple[str, ...]) -> ResourceGraph:
    stderr = _stderr(ctx)
    with stderr.status("[bold]Collecting files…"):
        file_paths = engine.collect_files(paths)

    if not file_paths:
        stderr.print("[red]No files found.[/red]")
        sys.exit(EXIT_CONFIG)

    try:
        with stderr.status(f"[bold]Parsing {len(file_paths)} file(s)…"):
            declarations = engine.load_declarations(file_paths)
            built = graph_builder.build(declarations)
    except ConfigurationError as exc:
        stderr.print(f"[red]Configuration error:[/red] {exc}")
        sys.exit(EXIT_CONFIG)

    stderr.print(f"Found [bold]{len(built)}[/bold] declared resources.")
    return built


def _snapshot(ctx: click.Context, store: StateStore):
    try:
        return store.snapshot()
    except StateError as exc:
        _stderr(ctx).print(f"[red]State error:[/red] {exc}")
        sys.exit(EXIT_FAILED)


def _plan_label(plan: Plan) -> str:
    counts = plan.counts()
    return (
        f"Plan: [green]{counts['create']} to create[/green], "
        f"[yellow]{counts['update']} to update[/yellow], "
        f"[bold yellow]{counts['replace']} to replace[/bold yellow], "
        f"[red]{counts['delete']} to delete[/red]."
    )


def _print_plan_table(plan: Plan, no_color: bool) -> None:
    tbl = Table(title="Planned Changes", show_header=True, header_style="bold")
    tbl.add_column("#", style="dim", width=4)
    tbl.add_column("Action", width=16)
    tbl.add_column("Resource", width=40)
    tbl.add_column("Changed", width=24)
    tbl.add_column("Reason")

    for i, s in enumerate(plan.steps, 1):
        action = "replace" if s.replace else s.action.value
        label = f"{s.action.value} (replace)" if s.replace else s.action.value
        color = _ACTION_COLORS.get(action, "") if not no_color else ""
        tbl.add_row(
            str(i),
            f"[{color}]{label}[/{color}]" if color else label,
            s.address,
            ", ".join(s.changed),
            s.reason[:80] + "…" if len(s.reason) > 80 else s.reason,
        )

    Console(stderr=True, no_color=no_color).print(tbl)


def _print_run_summary(run: RunResult, no_color: bool) -> None:
    tbl = Table(title="Run Summary", show_header=True, header_style="bold")
    tbl.add_column("Resource", width=40)
    tbl.add_column("Action", width=10)
    tbl.add_column("Status", width=10)
    tbl.add_column("Attempts", width=8)
    tbl.add_column("Error")

    for r in run.results.values():
        color = _STATUS_COLORS.get(r.status.value, "") if not no_color else ""
        tbl.add_row(
            r.address,
            r.step.action.value,
            f"[{color}]{r.status.value}[/{color}]" if color else r.status.value,
            str(r.attempts),
            escape(r.error or ""),
        )

    c = Console(stderr=True, no_color=no_color)
    c.print(tbl)
    c.print(
        f"[green]{len(run.succeeded)} succeeded[/green], "
        f"[red]{len(run.failed)} failed[/red], "
        f"[yellow]{len(run.skipped)} skipped[/yellow], "
        f"[dim]{len(run.cancelled)} cancelled[/dim]."
    )


def _progress(console: Console):
    def _print(result: StepResult) -> None:
        marker = {
            StepStatus.SUCCEEDED: "[green]✓[/green]",
            StepStatus.FAILED: "[red]✗[/red]",
            StepStatus.SKIPPED: "[yellow]↷[/yellow]",
            StepStatus.CANCELLED: "[dim]·[/dim]",
        }.get(result.status, " ")
        console.print(f"{marker} {result.step.action.value} {result.address}")
    return _print


def _execute(ctx: click.Context, store: StateStore, plan: Plan, graph: Optional[ResourceGraph]) -> RunResult:
    config = _config(ctx)
    executor = Executor(
        store,
        engine.build_runtimes(config),
        parallelism=config.parallelism,
        max_attempts=config.max_attempts,
        backoff_base=config.backoff_base,
        backoff_max=config.backoff_max,
        on_event=_progress(_stderr(ctx)),
    )
    try:
        return executor.run(plan, graph)
    except StateError as exc:
        _stderr(ctx).print(f"[red]State error:[/red] {exc}")
        sys.exit(EXIT_FAILED)


def _confirm(yes: bool) -> bool:
    if yes:
        return True
    return click.confirm("Apply these changes?", default=False, err=True)


def _write_or_echo(stderr: Console, content: str, output: Optional[str]) -> None:
    if output:
        with open(output, "w", encoding="utf-8", newline="\n") as fh:
            fh.write(content)
        stderr.print(f"Report written to [bold]{output}[/bold]")
    else:
        click.echo(content)


@click.group(context_settings=dict(help_option_names=["-h", "--help"]))
@click.version_option(__version__)
@click.option("--state", "state_path", type=click.Path(dir_okay=False), default=None,
              help="State file (default: stackmap.state.json).")
@click.option("--config", "config_path", type=click.Path(dir_okay=False), default=None,
              help="Settings file (default: stackmap.yaml if present).")
@click.option("--runtime", type=click.Choice(["docker", "memory"]), default=None,
              help="Runtime that materialises containers, networks, volumes and images.")
@click.option("--log-level", type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
              default=None, help="Log verbosity.")
@click.option("--no-color", is_flag=True, default=False, help="Disable rich terminal color output.")
@click.pass_context
def cli(ctx, state_path, config_path, runtime, log_level, no_color):
    """stackmap — plan and apply declarative Docker stacks."""
    ctx.ensure_object(dict)
    ctx.obj["no_color"] = no_color
    try:
        config = load_config(config_path)
    except ConfigurationError as exc:
        Console(stderr=True, no_color=no_color).print(f"[red]Configuration error:[/red] {exc}")
        sys.exit(EXIT_CONFIG)

    if state_path:
        config.state_path = state_path
    if runtime:
        config.runtime = runtime
    if log_level:
        config.log_level = log_level.upper()
    configure_logging(config.log_level, no_color=no_color)
    ctx.obj["config"] = config

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())
        ctx.exit()


@cli.command()
@click.argument("paths", nargs=-1, required=True, type=click.Path())
@click.option(
    "--format", "output_format",
    type=click.Choice(["table", "markdown", "json"], case_sensitive=False),
    default="table",
    show_default=True,
    help="Report format; 'table' prints the terminal table only.",
)
@click.option("--output", "-o", type=click.Path(), default=None,
              help="Write the report to this file (default: stdout).")
@click.option("--destroy", is_flag=True, default=False, help="Plan the removal of everything in state.")
@click.pass_context
def plan(ctx, paths: Tuple[str, ...], output_format: str, output: Optional[str], destroy: bool) -> None:
    """
    Show what apply would change.

    PATHS can be files or directories; multiple values accepted.
    """
    no_color = ctx.obj["no_color"]
    _print_banner(no_color)
    stderr = _stderr(ctx)
    config = _config(ctx)

    built = _load_graph(ctx, paths)
    snapshot = _snapshot(ctx, StateStore(config.state_path))
    try:
        if destroy:
            result = planner.plan_destroy(snapshot)
        else:
            result = planner.plan(built, snapshot, config.mutable_attributes)
    except ConfigurationError as exc:
        stderr.print(f"[red]Plan error:[/red] {exc}")
        sys.exit(EXIT_CONFIG)

    if result.is_empty:
        stderr.print("[green]No changes.[/green] The applied state matches the declarations.")
    else:
        _print_plan_table(result, no_color)
        stderr.print(_plan_label(result))

    fmt = output_format.lower()
    if fmt == "json":
        _write_or_echo(stderr, json_reporter.build_report(result, ", ".join(paths)), output)
    elif fmt == "markdown":
        _write_or_echo(stderr, markdown.build_report(result, built, ", ".join(paths)), output)

    sys.exit(EXIT_OK)


@cli.command()
@click.argument("paths", nargs=-1, required=True, type=click.Path())
@click.option("--yes", "-y", is_flag=True, default=False, help="Do not ask for confirmation.")
@click.option("--parallelism", type=click.IntRange(min=1), default=None, help="Concurrent runtime operations.")
@click.option("--report", type=click.Path(), default=None, help="Write a JSON run report to this file.")
@click.pass_context
def apply(ctx, paths: Tuple[str, ...], yes: bool, parallelism: Optional[int], report: Optional[str]) -> None:
    """
    Create, update and delete resources until the runtime matches PATHS.
    """
    no_color = ctx.obj["no_color"]
    _print_banner(no_color)
    stderr = _stderr(ctx)
    config = _config(ctx)
    if parallelism:
        config.parallelism = parallelism

    built = _load_graph(ctx, paths)
    store = StateStore(config.state_path)
    try:
        store.lock()
    except StateLockError as exc:
        stderr.print(f"[red]State locked:[/red] {exc}")
        sys.exit(EXIT_LOCKED)

    try:
        snapshot = _snapshot(ctx, store)
        try:
            result = planner.plan(built, snapshot, config.mutable_attributes)
        except ConfigurationError as exc:
            stderr.print(f"[red]Plan error:[/red] {exc}")
            sys.exit(EXIT_CONFIG)

        if result.is_empty:
            stderr.print("[green]No changes.[/green] The applied state matches the declarations.")
            sys.exit(EXIT_OK)

        _print_plan_table(result, no_color)
        stderr.print(_plan_label(result))
        if not _confirm(yes):
            stderr.print("Apply cancelled.")
            sys.exit(EXIT_OK)

        run = _execute(ctx, store, result, built)
    finally:
        store.unlock()

    _print_run_summary(run, no_color)
    if report:
        _write_or_echo(stderr, json_reporter.build_report(result, ", ".join(paths), run), report)
    sys.exit(EXIT_OK if run.ok else EXIT_FAILED)


@cli.command()
@click.argument("paths", nargs=-1, type=click.Path())
@click.option("--target", "targets", multiple=True,
              help="Only destroy this address and everything depending on it. Repeatable.")
@click.option("--yes", "-y", is_flag=True, default=False, help="Do not ask for confirmation.")
@click.pass_context
def destroy(ctx, paths: Tuple[str, ...], targets: Tuple[str, ...], yes: bool) -> None:
    """
    Delete resources recorded in state, dependents first.

    PATHS are accepted for symmetry with apply and are only validated.
    """
    no_color = ctx.obj["no_color"]
    _print_banner(no_color)
    stderr = _stderr(ctx)
    config = _config(ctx)
    if paths:
        _load_graph(ctx, paths)

    store = StateStore(config.state_path)
    try:
        store.lock()
    except StateLockError as exc:
        stderr.print(f"[red]State locked:[/red] {exc}")
        sys.exit(EXIT_LOCKED)

    try:
        snapshot = _snapshot(ctx, store)
        try:
            result = planner.plan_destroy(snapshot, targets or None)
        except ConfigurationError as exc:
            stderr.print(f"[red]Plan error:[/red] {exc}")
            sys.exit(EXIT_CONFIG)

        if result.is_empty:
            stderr.print("[green]Nothing to destroy.[/green]")
            sys.exit(EXIT_OK)

        _print_plan_table(result, no_color)
        stderr.print(_plan_label(result))
        if not _confirm(yes):
            stderr.print("Destroy cancelled.")
            sys.exit(EXIT_OK)

        run = _execute(ctx, store, result, None)
    finally:
        store.unlock()

    _print_run_summary(run, no_color)
    sys.exit(EXIT_OK if run.ok else EXIT_FAILED)


@cli.command()
@click.argument("paths", nargs=-1, required=True, type=click.Path())
@click.option(
    "--format", "output_format",
    type=click.Choice(["order", "mermaid"], case_sensitive=False),
    default="order",
    show_default=True,
)
@click.pass_context
def graph(ctx, paths: Tuple[str, ...], output_format: str) -> None:
    """Print the creation order or a Mermaid diagram of PATHS."""
    built = _load_graph(ctx, paths)
    if output_format.lower() == "mermaid":
        click.echo(markdown.build_mermaid(built))
    else:
        for i, address in enumerate(built.creation_order(), 1):
            deps = built.dependencies(address)
            suffix = f"  <- {', '.join(deps)}" if deps else ""
            click.echo(f"{i:3d}. {address}{suffix}")
    sys.exit(EXIT_OK)


# --------------------------------------------------------- state
@cli.group()
def state():
    """Inspect the applied-state snapshot."""


def _secret_values(snapshot) -> List[str]:
    values = []
    for address in snapshot:
        info = RESOURCE_TYPES.get(split_address(address)[0])
        if info is None:
            continue
        outputs = snapshot.outputs(address)
        values.extend(str(outputs[k]) for k in info.sensitive_outputs if outputs.get(k))
    return values


def _scrub(value, secrets: List[str]):
    if isinstance(value, dict):
        return {k: _scrub(v, secrets) for k, v in value.items()}
    if isinstance(value, list):
        return [_scrub(v, secrets) for v in value]
    if isinstance(value, str):
        for secret in secrets:
            value = value.replace(secret, _MASK)
    return value


@state.command("list")
@click.pass_context
def state_list(ctx) -> None:
    """List resources recorded in state."""
    snapshot = _snapshot(ctx, StateStore(_config(ctx).state_path))
    if not len(snapshot):
        _stderr(ctx).print("[dim]State is empty.[/dim]")
        sys.exit(EXIT_OK)

    tbl = Table(title=f"State (serial {snapshot.serial})", show_header=True, header_style="bold")
    tbl.add_column("Resource", width=40)
    tbl.add_column("ID", width=20)
    tbl.add_column("Depends on")
    for address in snapshot:
        outputs = snapshot.outputs(address)
        tbl.add_row(address, str(outputs.get("id", ""))[:20], ", ".join(snapshot.dependencies(address)))
    Console(no_color=ctx.obj["no_color"]).print(tbl)
    sys.exit(EXIT_OK)


@state.command("show")
@click.argument("address")
@click.pass_context
def state_show(ctx, address: str) -> None:
    """Print one state entry as JSON, with generated secrets masked."""
    snapshot = _snapshot(ctx, StateStore(_config(ctx).state_path))
    entry = snapshot.get(address)
    if entry is None:
        _stderr(ctx).print(f"[red]'{address}' is not in state.[/red]")
        sys.exit(EXIT_FAILED)
    click.echo(json.dumps(_scrub(entry, _secret_values(snapshot)), indent=2, sort_keys=True))
    sys.exit(EXIT_OK)


@state.command("unlock")
@click.pass_context
def state_unlock(ctx) -> None:
    """Remove a stale state lock left by an interrupted run."""
    store = StateStore(_config(ctx).state_path)
    if store.force_unlock():
        _stderr(ctx).print(f"Removed [bold]{store.lock_path}[/bold].")
    else:
        _stderr(ctx).print("[dim]No lock held.[/dim]")
    sys.exit(EXIT_OK)


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
