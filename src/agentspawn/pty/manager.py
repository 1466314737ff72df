"""Session manager: in-process sessions plus the shared registry."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from agentspawn.config import AgentSpawnConfig, LockConfig
from agentspawn.errors import SessionAlreadyExistsError, SessionNotFoundError
from agentspawn.model import SessionConfig, SessionInfo, SessionState, SpawnTarget
from agentspawn.pty.exit_status import classify_exit
from agentspawn.pty.session import (
    DEFAULT_FINAL_MARGIN,
    DEFAULT_SHUTDOWN_TIMEOUT,
    Session,
    pid_alive,
)
from agentspawn.registry.schema import RegistryData, RegistryEntry
from agentspawn.registry.store import Registry

if TYPE_CHECKING:
    from agentspawn.wire import Wire

logger = logging.getLogger(__name__)


def _entry_from_session(session: Session) -> RegistryEntry:
    info = session.get_info()
    return RegistryEntry(
        name=info.name,
        pid=info.pid,
        state=info.state,
        started_at=info.started_at.isoformat() if info.started_at else "",
        working_directory=info.working_directory,
        exit_code=info.exit_code,
    )


def _info_from_entry(entry: RegistryEntry) -> SessionInfo:
    started_at: datetime | None = None
    if entry.started_at:
        try:
            started_at = datetime.fromisoformat(entry.started_at)
        except ValueError:
            logger.debug("Unparseable startedAt for %s: %r", entry.name, entry.started_at)
    return SessionInfo(
        name=entry.name,
        pid=entry.pid,
        state=entry.state,
        started_at=started_at,
        working_directory=entry.working_directory,
        exit_code=entry.exit_code,
    )


def _needs_crash_mark(entry: RegistryEntry) -> bool:
    # pid 0 means no persistent backing process; nothing to probe
    return entry.state is SessionState.RUNNING and entry.pid > 0 and not pid_alive(entry.pid)


class SessionManager:
    """Owns the sessions started by this process and mirrors the registry.

    Two views are kept:

    - ``_sessions``: sessions spawned here; authoritative for their names.
    - ``_entries``: the last-seen registry contents, including sessions
      started by other processes ("registry-only" or foreign sessions).

    Every registry mutation goes through ``Registry.with_lock``. In-memory
    maps need no locking: one command's handler logic never interleaves
    with another's within a process.
    """

    def __init__(
        self,
        registry_path: str | Path,
        *,
        shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT,
        final_margin: float = DEFAULT_FINAL_MARGIN,
        lock_options: LockConfig | None = None,
        default_target: SpawnTarget | None = None,
        wire: Wire | None = None,
    ) -> None:
        self.registry = Registry(registry_path, lock_options)
        self.shutdown_timeout = shutdown_timeout
        self.final_margin = final_margin
        self.default_target = default_target or SpawnTarget()
        self._wire = wire
        self._sessions: dict[str, Session] = {}
        self._entries: dict[str, RegistryEntry] = {}
        self._pending: set[asyncio.Task[Any]] = set()

    @classmethod
    def from_config(cls, config: AgentSpawnConfig, wire: Wire | None = None) -> SessionManager:
        return cls(
            config.resolved_registry_path,
            shutdown_timeout=config.shutdown_timeout,
            final_margin=config.final_margin,
            lock_options=config.lock,
            default_target=SpawnTarget(command=config.default_command),
            wire=wire,
        )

    @property
    def registry_path(self) -> Path:
        return self.registry.path

    async def init(self) -> None:
        """Load the registry and mark entries with dead pids as crashed."""
        data = await self.registry.load()
        await self._merge_registry(data)

    async def _merge_registry(self, data: RegistryData) -> tuple[list[str], list[str]]:
        dead = {
            name: entry.pid
            for name, entry in data.sessions.items()
            if name not in self._sessions and _needs_crash_mark(entry)
        }
        if dead:
            await self._persist_crashed(dead)
            for name in dead:
                data.sessions[name] = data.sessions[name].model_copy(
                    update={"state": SessionState.CRASHED}
                )

        added = [n for n in data.sessions if n not in self._entries and n not in self._sessions]
        pruned = [
            n for n in self._entries if n not in data.sessions and n not in self._sessions
        ]
        for name in pruned:
            del self._entries[name]
        for name, entry in data.sessions.items():
            self._entries[name] = entry
        return added, pruned

    async def _persist_crashed(self, dead: dict[str, int]) -> None:
        def _mark(data: RegistryData) -> None:
            for name, pid in dead.items():
                entry = data.sessions.get(name)
                # Only if nobody replaced the entry since we looked
                if entry is not None and entry.pid == pid and entry.state is SessionState.RUNNING:
                    data.sessions[name] = entry.model_copy(update={"state": SessionState.CRASHED})

        for name, pid in dead.items():
            logger.warning("Session %s (pid=%d) is no longer running, marking crashed", name, pid)
            if self._wire:
                self._wire.send_crashed(name, pid, None, "process not found")
        await self.registry.with_lock(_mark)

    async def start_session(self, config: SessionConfig) -> Session:
        """Spawn a session and record it in the registry.

        Raises:
            SessionAlreadyExistsError: the name is taken here or in the registry.
            SpawnFailedError: the process could not be started.
            RegistryLockError: the registry could not be locked; the new
                process has been stopped before this propagates.
        """
        name = config.name
        if name in self._sessions:
            raise SessionAlreadyExistsError(name)

        # Re-read so a session started by another process since init() counts
        data = await self.registry.load()
        if name in data.sessions:
            self._entries[name] = data.sessions[name]
            raise SessionAlreadyExistsError(name)

        session = Session(
            config,
            shutdown_timeout=self.shutdown_timeout,
            final_margin=self.final_margin,
            default_target=self.default_target,
        )
        session.on_exit(self._on_session_exit)
        await session.start()

        def _register(data: RegistryData) -> RegistryEntry:
            if name in data.sessions:
                raise SessionAlreadyExistsError(name)
            # Derived under the lock so an exit observed meanwhile is recorded
            entry = _entry_from_session(session)
            data.sessions[name] = entry
            return entry

        try:
            entry = await self.registry.with_lock(_register)
        except BaseException:
            logger.error("Could not record session %s, stopping pid %d", name, session.pid)
            await session.stop()
            raise

        self._sessions[name] = session
        self._entries[name] = entry
        if self._wire:
            self._wire.send_started(name, session.pid)
        return session

    def _on_session_exit(self, session: Session, exit_code: int | None) -> None:
        if session.state is not SessionState.CRASHED:
            return

        status = classify_exit(exit_code)
        if self._wire:
            self._wire.send_crashed(session.name, session.pid, exit_code, status.reason)

        task = asyncio.get_running_loop().create_task(
            self._record_crash(session.name, session.pid, exit_code)
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _record_crash(self, name: str, pid: int, exit_code: int | None) -> None:
        def _mark(data: RegistryData) -> RegistryEntry | None:
            entry = data.sessions.get(name)
            if entry is None or entry.pid != pid:
                return None
            entry = entry.model_copy(
                update={"state": SessionState.CRASHED, "exit_code": exit_code}
            )
            data.sessions[name] = entry
            return entry

        try:
            entry = await self.registry.with_lock(_mark)
        except Exception as e:
            logger.exception("Failed to record crash of session %s", name)
            if self._wire:
                self._wire.send_error(f"Failed to record crash of session {name}: {e}")
            return
        if entry is not None and name in self._sessions:
            self._entries[name] = entry

    async def wait_pending(self) -> None:
        """Wait for background registry updates (crash records) to land."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def stop_session(self, name: str) -> None:
        """Stop a session, local or foreign, and drop its registry entry.

        Raises:
            SessionNotFoundError: the name is unknown here and in the registry.
        """
        session = self._sessions.get(name)
        if session is not None:
            await session.stop()
            del self._sessions[name]
            await self.registry.remove_entry(name)
            self._entries.pop(name, None)
            if self._wire:
                self._wire.send_stopped(name)
            return

        # Only a fresh entry may be signalled: a cached pid can be reused
        data = await self.registry.load()
        entry = data.sessions.get(name)
        if entry is None:
            self._entries.pop(name, None)
            raise SessionNotFoundError(name)

        if entry.state is SessionState.RUNNING and entry.pid > 0:
            try:
                os.kill(entry.pid, signal.SIGTERM)
                logger.info("Sent SIGTERM to foreign session %s (pid=%d)", name, entry.pid)
            except OSError as e:
                # Probably already gone
                logger.debug("Could not signal pid %d for %s: %s", entry.pid, name, e)

        await self.registry.remove_entry(name)
        self._entries.pop(name, None)
        if self._wire:
            self._wire.send_stopped(name, foreign=True)

    async def stop_all(self) -> None:
        """Stop every local session, then drop all remaining registry entries."""
        for name in list(self._sessions):
            await self.stop_session(name)

        data = await self.registry.load()
        for name in sorted(set(self._entries) - set(data.sessions)):
            del self._entries[name]
        for name in sorted(data.sessions):
            try:
                await self.stop_session(name)
            except SessionNotFoundError:
                # Removed by another process in the meantime
                pass
        await self.wait_pending()

    async def adopt_session(self, name: str) -> Session:
        """Replace a foreign registry entry with a fresh local session.

        The foreign process is not attached to: its entry is removed and a
        new process is started with the same name and working directory.
        Anything the original owner held in memory is lost.

        Raises:
            SessionAlreadyExistsError: the session is already local.
            SessionNotFoundError: no registry entry has this name.
        """
        if name in self._sessions:
            raise SessionAlreadyExistsError(name)

        data = await self.registry.load()
        entry = data.sessions.get(name)
        if entry is None:
            self._entries.pop(name, None)
            raise SessionNotFoundError(name)

        logger.warning(
            "Adopting session %s: discarding foreign entry (pid=%d, state=%s)",
            name,
            entry.pid,
            entry.state,
        )
        await self.registry.remove_entry(name)
        self._entries.pop(name, None)

        config = SessionConfig(
            name=name,
            working_directory=entry.working_directory or os.getcwd(),
        )
        session = await self.start_session(config)
        if self._wire:
            self._wire.send_adopted(name, entry.pid, session.pid)
        return session

    def get_session(self, name: str) -> Session | None:
        return self._sessions.get(name)

    def get_session_info(self, name: str) -> SessionInfo | None:
        session = self._sessions.get(name)
        if session is not None:
            return session.get_info()
        entry = self._entries.get(name)
        if entry is not None:
            return _info_from_entry(entry)
        return None

    def list_sessions(self) -> list[SessionInfo]:
        """Local sessions first, then registry-only ones; one row per name."""
        infos = [s.get_info() for s in self._sessions.values()]
        infos.extend(
            _info_from_entry(entry)
            for name, entry in self._entries.items()
            if name not in self._sessions
        )
        return infos

    def is_local(self, name: str) -> bool:
        return name in self._sessions

    async def refresh_registry(self) -> None:
        """Re-read the registry: pick up new entries, drop ones removed elsewhere.

        Local sessions are never touched.
        """
        data = await self.registry.load()
        added, pruned = await self._merge_registry(data)
        if added or pruned:
            logger.debug("Registry refresh: added=%s pruned=%s", added, pruned)
        if self._wire:
            self._wire.send_registry_refreshed(added, pruned)

    def __len__(self) -> int:
        return len(self._sessions)
