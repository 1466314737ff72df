"""CLI entry point for agentspawn."""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from typing import TYPE_CHECKING, Awaitable, TypeVar

import typer
from rich.console import Console
from rich.table import Table

from agentspawn.config import AgentSpawnConfig
from agentspawn.errors import AgentSpawnError
from agentspawn.model import SessionConfig, SessionInfo, SessionState, SpawnTarget
from agentspawn.wire import EventType, Wire, WireEvent

if TYPE_CHECKING:
    from agentspawn.pty.manager import SessionManager
    from agentspawn.pty.session import Session

T = TypeVar("T")

app = typer.Typer(
    name="agentspawn",
    help="Run and supervise many interactive agent sessions.",
    no_args_is_help=True,
)

console = Console()

_STATE_STYLES = {
    SessionState.RUNNING: "green",
    SessionState.STOPPED: "dim",
    SessionState.CRASHED: "red",
}


def setup_logging(verbose: bool = False, level: str = "info") -> None:
    numeric = logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=numeric,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _load(config_file: str | None, verbose: bool) -> AgentSpawnConfig:
    config = AgentSpawnConfig.load(config_file)
    setup_logging(verbose, config.log_level)
    return config


def _run(coro: Awaitable[T]) -> T:
    """Run a coroutine, mapping domain errors to exit codes."""
    try:
        return asyncio.run(coro)  # type: ignore[arg-type]
    except AgentSpawnError as e:
        typer.echo(f"Error: {e.message}", err=True)
        raise typer.Exit(e.exit_code) from e


async def _manager(config: AgentSpawnConfig) -> SessionManager:
    from agentspawn.pty.manager import SessionManager

    manager = SessionManager.from_config(config)
    await manager.init()
    return manager


def render_sessions(infos: list[SessionInfo]) -> Table:
    """Build a rich table of session snapshots."""
    table = Table(title="Sessions", expand=False)
    table.add_column("Name", style="bold")
    table.add_column("State")
    table.add_column("PID", justify="right")
    table.add_column("Started")
    table.add_column("Directory")
    table.add_column("Exit", justify="right")

    for info in sorted(infos, key=lambda i: i.name):
        style = _STATE_STYLES.get(info.state, "")
        table.add_row(
            info.name,
            f"[{style}]{info.state.value}[/{style}]" if style else info.state.value,
            str(info.pid) if info.pid else "-",
            info.started_at.strftime("%Y-%m-%d %H:%M:%S") if info.started_at else "-",
            info.working_directory or "-",
            "-" if info.exit_code is None else str(info.exit_code),
        )
    return table


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

_verbose_opt = typer.Option(False, "--verbose", "-v", help="Enable debug logging.")
_config_opt = typer.Option(None, "--config", "-c", help="Config file path.")


@app.command()
def start(
    name: str = typer.Argument(help="Unique session name."),
    cwd: str | None = typer.Option(None, "--cwd", "-d", help="Working directory."),
    command: str | None = typer.Option(
        None, "--command", help="Executable to run (default: from env/config)."
    ),
    args: list[str] | None = typer.Option(None, "--arg", "-a", help="Argument for the command."),
    verbose: bool = _verbose_opt,
    config_file: str | None = _config_opt,
) -> None:
    """Start a session and attach to it until it exits (Ctrl-C stops it)."""
    config = _load(config_file, verbose)
    target = SpawnTarget(command=command or config.default_command, args=list(args or []))
    session_config = SessionConfig(
        name=name,
        working_directory=os.path.abspath(cwd or os.getcwd()),
        target=target,
    )
    _run(_attach(config, session_config))


async def _attach(config: AgentSpawnConfig, session_config: SessionConfig) -> None:
    manager = await _manager(config)
    session = await manager.start_session(session_config)
    typer.echo(f"Started {session.name} (pid {session.pid})", err=True)
    await _follow(manager, session)


async def _follow(manager: SessionManager, session: Session) -> None:
    """Stream a local session to the terminal until it exits or is cancelled."""
    out = sys.stdout.buffer

    def _echo(_s: Session, data: bytes) -> None:
        out.write(data)
        out.flush()

    session.on_data(_echo)

    loop = asyncio.get_running_loop()
    stdin_fd = sys.stdin.fileno() if sys.stdin and sys.stdin.isatty() else -1

    def _forward_stdin() -> None:
        handle = session.get_handle()
        data = os.read(stdin_fd, 1024)
        if handle is not None and data:
            handle.write(data)

    if stdin_fd >= 0:
        loop.add_reader(stdin_fd, _forward_stdin)

    try:
        while session.state is SessionState.RUNNING:
            await asyncio.sleep(0.2)
    except asyncio.CancelledError:
        pass
    finally:
        if stdin_fd >= 0:
            loop.remove_reader(stdin_fd)

    if session.state is SessionState.RUNNING:
        await manager.stop_session(session.name)
        typer.echo(f"Stopped {session.name}", err=True)
    else:
        await manager.wait_pending()
        typer.echo(f"Session {session.name} exited (code {session.exit_code})", err=True)


@app.command()
def stop(
    name: str = typer.Argument(help="Session to stop."),
    verbose: bool = _verbose_opt,
    config_file: str | None = _config_opt,
) -> None:
    """Stop a session, including one started by another agentspawn process."""
    config = _load(config_file, verbose)

    async def _stop() -> None:
        manager = await _manager(config)
        await manager.stop_session(name)

    _run(_stop())
    typer.echo(f"Stopped {name}")


@app.command("stop-all")
def stop_all(
    verbose: bool = _verbose_opt,
    config_file: str | None = _config_opt,
) -> None:
    """Stop every session in the registry."""
    config = _load(config_file, verbose)

    async def _stop_all() -> int:
        manager = await _manager(config)
        count = len(manager.list_sessions())
        await manager.stop_all()
        return count

    count = _run(_stop_all())
    typer.echo(f"Stopped {count} session(s)")


@app.command("list")
def list_sessions(
    verbose: bool = _verbose_opt,
    config_file: str | None = _config_opt,
) -> None:
    """List sessions from the shared registry."""
    config = _load(config_file, verbose)

    async def _list() -> list[SessionInfo]:
        manager = await _manager(config)
        return manager.list_sessions()

    infos = _run(_list())
    if not infos:
        typer.echo("No sessions.")
        return
    console.print(render_sessions(infos))


@app.command()
def adopt(
    name: str = typer.Argument(help="Registry-only session to take over."),
    verbose: bool = _verbose_opt,
    config_file: str | None = _config_opt,
) -> None:
    """Replace a session started elsewhere with a fresh one attached here.

    The original process's in-memory state is discarded.
    """
    config = _load(config_file, verbose)

    async def _adopt() -> None:
        manager = await _manager(config)
        session = await manager.adopt_session(name)
        typer.echo(f"Adopted {name} as pid {session.pid}", err=True)
        await _follow(manager, session)

    _run(_adopt())


@app.command()
def watch(
    verbose: bool = _verbose_opt,
    config_file: str | None = _config_opt,
) -> None:
    """Print the session table whenever the registry changes (Ctrl-C to quit)."""
    config = _load(config_file, verbose)
    try:
        _run(_watch(config))
    except KeyboardInterrupt:
        pass


async def _watch(config: AgentSpawnConfig) -> None:
    from agentspawn.pty.manager import SessionManager
    from agentspawn.registry.watcher import RegistryWatcher

    wire = Wire()
    events = wire.subscribe()
    manager = SessionManager.from_config(config, wire)
    await manager.init()
    watcher = RegistryWatcher(manager.registry_path, config.watcher)
    changed = asyncio.Event()

    console.print(render_sessions(manager.list_sessions()))
    renderer = asyncio.create_task(render_events(manager, events))
    watcher.watch(changed.set)
    try:
        while True:
            await changed.wait()
            changed.clear()
            try:
                await manager.refresh_registry()
            except AgentSpawnError as e:
                wire.send_error(e.message)
    finally:
        watcher.unwatch()
        wire.close()
        await renderer


async def render_events(
    manager: SessionManager, events: asyncio.Queue[WireEvent | None]
) -> None:
    """Print manager events until the wire closes."""
    while True:
        event = await events.get()
        if event is None:
            return
        if event.type is EventType.REGISTRY_REFRESHED:
            console.print(render_sessions(manager.list_sessions()))
        elif event.type is EventType.SESSION_CRASHED:
            typer.echo(f"Session {event.data['name']} crashed: {event.data['reason']}", err=True)
        elif event.type is EventType.ERROR:
            typer.echo(f"Error: {event.data['error']}", err=True)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
