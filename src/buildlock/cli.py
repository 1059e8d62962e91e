"""buildlock CLI: inspect and manage project build locks."""

import asyncio
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from buildlock import __version__

from .config import LockConfig, default_config_path, load_config, write_config_template
from .core.lock_manager import LockManager
from .errors import ConfigError, InvalidReasonError, LockQueueError, LockTimeoutError
from .logging import configure_logging
from .models import ReleaseResult
from .output import OutputContext, get_output_context, set_output_context


def _version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"buildlock {__version__}")
        raise typer.Exit()


app = typer.Typer(
    name="buildlock",
    help="FIFO exclusive locks for a shared IDE build engine",
    no_args_is_help=True,
)


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
    verbose: int = typer.Option(
        0,
        "--verbose",
        "-v",
        count=True,
        help="Increase verbosity (-v, -vv)",
    ),
    quiet: bool = typer.Option(
        False,
        "--quiet",
        "-q",
        help="Suppress non-error output",
    ),
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Output in JSON format for automation",
    ),
    no_color: bool = typer.Option(
        False,
        "--no-color",
        help="Disable colored output",
    ),
) -> None:
    """buildlock - queue for exclusive use of the IDE build engine."""
    configure_logging(verbosity=verbose, quiet=quiet, no_color=no_color)
    set_output_context(OutputContext(console=Console(no_color=no_color), json_mode=json_output))


def _manager(ctx: OutputContext) -> LockManager:
    try:
        config: LockConfig = load_config()
    except ConfigError as e:
        ctx.error(str(e))
        raise typer.Exit(2) from None
    return LockManager(config)


def format_release_message(target: str, result: ReleaseResult) -> str:
    """Human-readable outcome of a release."""
    if not result.released:
        return f"No active lock found for {target}. It may have already been released."

    info = result.info
    lock_id = f" (Lock ID: {info.lock_id})" if info else ""
    previous = f' Previous reason: "{info.reason}".' if info and info.reason else ""
    waiting = max(0, info.queue_depth - 1) if info else 0
    if waiting:
        proceed = f" {waiting} worker{'' if waiting == 1 else 's'} can proceed now."
    else:
        proceed = " No other workers were waiting."
    return f"Released lock for {target}{lock_id}.{previous}{proceed}"


# ============================================================================
# buildlock acquire
# ============================================================================


@app.command()
def acquire(
    project: str = typer.Argument(..., help="Project path to lock"),
    reason: str = typer.Option(..., "--reason", "-r", help="Why the lock is needed"),
    command: str = typer.Option("cli", "--command", "-c", help="Operation name"),
    max_wait: float | None = typer.Option(
        None, "--max-wait", help="Give up after this many seconds"
    ),
) -> None:
    """Wait for the lock on PROJECT and keep holding it after exit."""
    ctx = get_output_context()
    manager = _manager(ctx)

    try:
        acquisition = asyncio.run(manager.acquire(project, reason, command, max_wait=max_wait))
    except InvalidReasonError as e:
        ctx.error(str(e))
        raise typer.Exit(1) from None
    except LockTimeoutError as e:
        ctx.error(str(e))
        raise typer.Exit(4) from None
    except LockQueueError as e:
        ctx.error(str(e))
        raise typer.Exit(5) from None

    ctx.result(acquisition.model_dump(mode="json"), acquisition.status_text)


# ============================================================================
# buildlock release
# ============================================================================


@app.command()
def release(
    project: str = typer.Option(..., "--project", "-p", help="Absolute project path"),
) -> None:
    """Release the current holder of a project lock."""
    ctx = get_output_context()
    if not Path(project).is_absolute():
        ctx.error(f"Project path must be absolute, got: {project}")
        raise typer.Exit(1)

    result = asyncio.run(_manager(ctx).release(project))
    message = format_release_message(project, result)
    if result.released:
        ctx.success(message, result.model_dump(mode="json"))
    else:
        ctx.result(result.model_dump(mode="json"), message)


# ============================================================================
# buildlock list
# ============================================================================


@app.command("list")
def list_cmd() -> None:
    """List the current holder of every active lock."""
    ctx = get_output_context()
    locks = _manager(ctx).list_locks()

    if ctx.json_mode:
        ctx.print_json([lock.model_dump(mode="json") for lock in locks])
        return
    if not locks:
        ctx.print("No active locks.")
        return

    table = Table(title="Active locks")
    table.add_column("Project", overflow="fold")
    table.add_column("Reason", overflow="fold")
    table.add_column("Command")
    table.add_column("Queue", justify="right")
    table.add_column("Locked at")
    table.add_column("Lock ID", overflow="fold")
    for lock in locks:
        table.add_row(
            lock.path,
            lock.reason,
            lock.command,
            str(lock.queue_depth),
            lock.locked_at.strftime("%Y-%m-%d %H:%M:%S"),
            lock.lock_id,
        )
    ctx.console.print(table)


# ============================================================================
# buildlock release-all
# ============================================================================


@app.command("release-all")
def release_all(
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
) -> None:
    """Force release every lock (recovery after a stuck process)."""
    ctx = get_output_context()
    manager = _manager(ctx)

    if not yes and not ctx.json_mode:
        typer.confirm(
            f"Force release every lock in {manager.lock_dir}? Waiting workers will fail",
            abort=True,
        )

    result = manager.release_all_locks()
    if result.released:
        lines = [f"Force released {result.released} lock(s):"]
        lines += [f"  • {lock.path} ({lock.reason})" for lock in result.details]
        ctx.success("\n".join(lines), result.model_dump(mode="json"))
    else:
        ctx.result(result.model_dump(mode="json"), "No active locks to release.")


# ============================================================================
# buildlock init-config
# ============================================================================


@app.command("init-config")
def init_config(
    path: Path | None = typer.Option(None, "--path", help="Config file to write"),
    force: bool = typer.Option(False, "--force", "-f", help="Overwrite an existing file"),
) -> None:
    """Write a config.toml template."""
    ctx = get_output_context()
    config_path = path or default_config_path()

    if config_path.exists() and not force:
        ctx.error(f"Config already exists: {config_path}")
        raise typer.Exit(1)

    write_config_template(config_path)
    ctx.success(f"Created config template: {config_path}", {"config": str(config_path)})


if __name__ == "__main__":
    app()
