import shlex
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path

import click

from devfleet.orchestrator.context import FleetContext
from devfleet.orchestrator.execution.launcher import LaunchError, ProcessPair
from devfleet.orchestrator.execution.ports import PortReclaimFailedError
from devfleet.orchestrator.managers.database import DatabaseStartTimeoutError
from devfleet.orchestrator.models.status import BatchResult
from devfleet.orchestrator.runtime.base import ContainerOperationError, ContainerRuntimeUnavailableError
from devfleet.orchestrator.table import TableLoadError, UnknownWorkspaceError

# Order matters: the first matching class wins.
EXIT_CODES: list[tuple[type[Exception], int]] = [
    (TableLoadError, 2),
    (UnknownWorkspaceError, 3),
    (PortReclaimFailedError, 4),
    (DatabaseStartTimeoutError, 5),
    (ContainerRuntimeUnavailableError, 6),
    (ContainerOperationError, 1),
    (LaunchError, 1),
]


@contextmanager
def _exit_on_error() -> Iterator[None]:
    """Translate orchestrator errors into a message on stderr and a distinct exit code."""
    try:
        yield
    except tuple(cls for cls, _ in EXIT_CODES) as exc:
        code = next(code for cls, code in EXIT_CODES if isinstance(exc, cls))
        click.secho(f"Error: {exc}", err=True, fg="red")
        raise click.exceptions.Exit(code) from exc


def _run_foreground(ctx: click.Context, pair: ProcessPair) -> None:
    """Wait on a launched pair; Ctrl-C stops it."""
    try:
        code = pair.wait()
    except KeyboardInterrupt:
        pair.terminate()
        code = 130
    ctx.exit(code)


@click.group()
@click.option("--log-level", default=None, help="Log level (default: from DEVFLEET_LOG_LEVEL or INFO).")
@click.option(
    "--path",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=None,
    help="Worktree directory (default: current directory).",
)
@click.pass_context
def main(ctx: click.Context, log_level: str | None, path: Path | None) -> None:
    """devfleet - run several worktrees of one project side by side."""
    from devfleet.orchestrator.log import setup_logging
    from devfleet.orchestrator.settings import get_settings

    settings = get_settings()
    setup_logging(log_level or settings.log_level)

    if ctx.obj is None:
        ctx.obj = FleetContext(settings, path or Path.cwd())


# ---------------------------------------------------------------------------
# Fleet overview
# ---------------------------------------------------------------------------


@main.command()
@click.pass_obj
def status(fleet: FleetContext) -> None:
    """Show the database state of every worktree."""
    with _exit_on_error():
        click.echo(_report(fleet))


@main.command()
@click.argument("workspace", required=False)
@click.option("--export", "export_", is_flag=True, default=False, help="Emit 'export KEY=value' lines for eval.")
@click.pass_obj
def env(fleet: FleetContext, workspace: str | None, export_: bool) -> None:
    """Print the environment a worktree's app is started with."""
    from devfleet.orchestrator.execution.environment import workspace_variables

    with _exit_on_error():
        variables = workspace_variables(fleet.table, fleet.workspace(workspace))
    for key, value in variables.items():
        if export_:
            click.echo(f"export {key}={shlex.quote(value)}")
        else:
            click.echo(f"{key}={value}")


# ---------------------------------------------------------------------------
# Safe start
# ---------------------------------------------------------------------------


@main.command()
@click.option("--clean", is_flag=True, default=False, help="Wipe build artifacts and dependencies first (slow).")
@click.option("--detach", is_flag=True, default=False, help="Return after launching instead of waiting.")
@click.pass_context
def start(ctx: click.Context, clean: bool, detach: bool) -> None:
    """Safe start: reclaim this worktree's ports, ensure its database, launch the app."""
    fleet: FleetContext = ctx.obj
    with _exit_on_error():
        workspace = fleet.current_workspace()
        pair = fleet.supervisor().safe_start(workspace, fleet.worktree, clean=clean, detach=detach)

    if detach:
        for role, pid in pair.pids.items():
            click.echo(f"{role}: pid {pid}")
        return
    _run_foreground(ctx, pair)


@main.command()
@click.argument("workspace", required=False)
@click.option("--detach", is_flag=True, default=False, help="Return after launching instead of waiting.")
@click.option("--all", "all_", is_flag=True, default=False, help="Start the tool for every worktree in the background.")
@click.pass_context
def studio(ctx: click.Context, workspace: str | None, detach: bool, all_: bool) -> None:
    """Start the database tool (Prisma Studio) on the worktree's tool port."""
    fleet: FleetContext = ctx.obj
    if all_:
        if workspace is not None:
            raise click.UsageError("WORKSPACE and --all are mutually exclusive.")
        with _exit_on_error():
            result = _launch_tools(fleet, None)
        _print_tool_result(fleet, result)
        if not result.ok:
            ctx.exit(1)
        return

    with _exit_on_error():
        identity = fleet.workspace(workspace)
        pair = fleet.supervisor().start_tool(identity, fleet.worktree_for(identity), detach=detach)

    if detach:
        for role, pid in pair.pids.items():
            click.echo(f"{role}: pid {pid}")
        return
    _run_foreground(ctx, pair)


@main.command("launch-all")
@click.argument("workspaces", nargs=-1)
@click.option("--with-db-status", is_flag=True, default=False, help="Print the database table afterwards.")
@click.option(
    "--with-studio", is_flag=True, default=False, help="Also start the database tool of each launched worktree."
)
@click.option("--parallel", is_flag=True, default=False, help="Start worktrees concurrently.")
@click.option("--clean", is_flag=True, default=False, help="Run a clean start in every worktree.")
@click.pass_context
def launch_all_command(
    ctx: click.Context,
    workspaces: tuple[str, ...],
    with_db_status: bool,
    with_studio: bool,
    parallel: bool,
    clean: bool,
) -> None:
    """Safe-start several worktrees in the background (default: all)."""
    from devfleet.orchestrator.inspection import launch_all, render_urls

    fleet: FleetContext = ctx.obj
    with _exit_on_error():
        result = launch_all(
            fleet.supervisor(),
            fleet.table,
            fleet.base_dir,
            workspaces=workspaces,
            parallel=parallel,
            clean=clean,
            log_dir=Path(fleet.settings.log_dir),
        )

    if result.succeeded:
        click.echo("Access URLs:")
        click.echo(render_urls(fleet.table, result.succeeded))
    _print_failures(result)

    ok = result.ok
    if with_studio and result.succeeded:
        click.echo()
        with _exit_on_error():
            tools = _launch_tools(fleet, result.succeeded, parallel=parallel)
        _print_tool_result(fleet, tools)
        ok = ok and tools.ok

    if with_db_status:
        click.echo()
        with _exit_on_error():
            click.echo(_report(fleet))

    if not ok:
        ctx.exit(1)


# ---------------------------------------------------------------------------
# Database management
# ---------------------------------------------------------------------------


@main.group()
def db() -> None:
    """Per-worktree database container management."""


@db.command("start")
@click.argument("workspace", required=False)
@click.pass_obj
def db_start(fleet: FleetContext, workspace: str | None) -> None:
    """Start (creating if needed) a worktree's database."""
    with _exit_on_error():
        identity = fleet.workspace(workspace)
        fleet.databases().start(identity)
    click.echo(f"Database for {identity} is running.")


@db.command("stop")
@click.argument("workspace", required=False)
@click.pass_obj
def db_stop(fleet: FleetContext, workspace: str | None) -> None:
    """Stop a worktree's database."""
    with _exit_on_error():
        identity = fleet.workspace(workspace)
        fleet.databases().stop(identity)
    click.echo(f"Database for {identity} is stopped.")


@db.command("reset")
@click.argument("workspace", required=False)
@click.option("--yes", is_flag=True, default=False, help="Do not ask for confirmation.")
@click.pass_obj
def db_reset(fleet: FleetContext, workspace: str | None, yes: bool) -> None:
    """Delete and recreate a worktree's database (DELETES ALL DATA)."""
    with _exit_on_error():
        identity = fleet.workspace(workspace)
        container = fleet.table.bundle(identity).db_container_name
        if not yes:
            click.confirm(f"This deletes all data in {container}. Continue?", abort=True)
        fleet.databases().reset(identity)
    click.echo(f"Database for {identity} was reset.")


@db.command("status")
@click.argument("workspace", required=False)
@click.pass_obj
def db_status(fleet: FleetContext, workspace: str | None) -> None:
    """Show database state for one worktree (or all)."""
    from devfleet.orchestrator.inspection import render_status

    with _exit_on_error():
        rows = fleet.databases().status()
        if workspace:
            identity = fleet.table.lookup(workspace).identity
            rows = [row for row in rows if row.workspace == identity]
    click.echo(render_status(rows, color=True))


@db.command("stopall")
@click.pass_context
def db_stopall(ctx: click.Context) -> None:
    """Stop every worktree's database."""
    fleet: FleetContext = ctx.obj
    with _exit_on_error():
        result = fleet.databases().stop_all()

    _print_failures(result)
    if not result.ok:
        ctx.exit(1)
    click.echo("All databases stopped.")


def _report(fleet: FleetContext) -> str:
    from devfleet.orchestrator.inspection import report

    return report(fleet.databases(), color=True)


def _launch_tools(fleet: FleetContext, workspaces: Sequence[str] | None, *, parallel: bool = False) -> BatchResult:
    from devfleet.orchestrator.inspection import launch_tools

    return launch_tools(
        fleet.supervisor(),
        fleet.table,
        fleet.base_dir,
        workspaces=workspaces,
        parallel=parallel,
        log_dir=Path(fleet.settings.log_dir),
    )


def _print_tool_result(fleet: FleetContext, result: BatchResult) -> None:
    from devfleet.orchestrator.inspection import render_tool_urls

    if result.succeeded:
        click.echo("Studio URLs:")
        click.echo(render_tool_urls(fleet.table, result.succeeded))
    _print_failures(result)


def _print_failures(result: BatchResult) -> None:
    for workspace, error in result.failed.items():
        click.secho(f"FAILED {workspace}: {error}", err=True, fg="red")


if __name__ == "__main__":
    main()
