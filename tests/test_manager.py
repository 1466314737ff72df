"""Tests for agentspawn.pty.manager.SessionManager."""

from __future__ import annotations

import asyncio
import json
import subprocess
from pathlib import Path
from typing import AsyncIterator
from unittest.mock import AsyncMock, patch

import pytest

from agentspawn.config import AgentSpawnConfig, LockConfig
from agentspawn.errors import (
    RegistryCorruptError,
    RegistryLockError,
    SessionAlreadyExistsError,
    SessionNotFoundError,
    SpawnFailedError,
)
from agentspawn.model import SessionConfig, SessionState, SpawnTarget
from agentspawn.pty import manager as manager_module
from agentspawn.pty.manager import SessionManager
from agentspawn.pty.session import Session, pid_alive
from agentspawn.registry.schema import RegistryEntry
from agentspawn.registry.store import Registry
from agentspawn.wire import EventType, Wire

DEAD_PID = 999_999_999
FAST_LOCK = LockConfig(retries=20, factor=1.5, min_timeout=0.01, max_timeout=0.1)
SLEEPER = SpawnTarget("sleep", ["30"])


def _config(name: str, tmp_path: Path, target: SpawnTarget | None = None) -> SessionConfig:
    return SessionConfig(name=name, working_directory=str(tmp_path), target=target)


def _write_registry(path: Path, sessions: dict) -> None:
    path.write_text(json.dumps({"version": 1, "sessions": sessions}))


def _read_registry(path: Path) -> dict:
    return json.loads(path.read_text())["sessions"]


async def _wait_for(predicate, timeout: float = 5.0) -> bool:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(0.02)
    return predicate()


@pytest.fixture
def registry_path(tmp_path: Path) -> Path:
    return tmp_path / "state" / "sessions.json"


@pytest.fixture
async def manager(registry_path: Path) -> AsyncIterator[SessionManager]:
    mgr = SessionManager(
        registry_path,
        shutdown_timeout=2.0,
        final_margin=1.0,
        lock_options=FAST_LOCK,
        default_target=SLEEPER,
    )
    await mgr.init()
    try:
        yield mgr
    finally:
        for session in list(mgr._sessions.values()):
            await session.stop()


@pytest.fixture
def foreign_process() -> subprocess.Popen:
    proc = subprocess.Popen(["sleep", "30"])
    yield proc
    if proc.poll() is None:
        proc.kill()
    proc.wait(timeout=5)


# ---------------------------------------------------------------------------
# Construction / init
# ---------------------------------------------------------------------------


class TestInit:
    async def test_from_config(self, tmp_path: Path) -> None:
        config = AgentSpawnConfig(
            registry_path=str(tmp_path / "r.json"), shutdown_timeout=1.5, default_command="bash"
        )
        mgr = SessionManager.from_config(config)
        assert mgr.registry_path == tmp_path / "r.json"
        assert mgr.shutdown_timeout == 1.5
        assert mgr.default_target.command == "bash"

    async def test_init_on_missing_file(self, manager: SessionManager) -> None:
        assert manager.list_sessions() == []

    async def test_dead_running_entry_marked_crashed(self, registry_path: Path) -> None:
        registry_path.parent.mkdir(parents=True)
        _write_registry(registry_path, {"s1": {"pid": DEAD_PID, "state": "running"}})

        mgr = SessionManager(registry_path, lock_options=FAST_LOCK)
        await mgr.init()

        assert _read_registry(registry_path)["s1"]["state"] == "crashed"
        info = mgr.get_session_info("s1")
        assert info is not None
        assert info.state is SessionState.CRASHED

    async def test_pid_zero_is_exempt(self, registry_path: Path) -> None:
        registry_path.parent.mkdir(parents=True)
        _write_registry(registry_path, {"remote": {"pid": 0, "state": "running"}})

        mgr = SessionManager(registry_path, lock_options=FAST_LOCK)
        await mgr.init()

        assert _read_registry(registry_path)["remote"]["state"] == "running"

    async def test_live_foreign_entry_untouched(
        self, registry_path: Path, foreign_process: subprocess.Popen
    ) -> None:
        registry_path.parent.mkdir(parents=True)
        _write_registry(
            registry_path, {"other": {"pid": foreign_process.pid, "state": "running"}}
        )
        mgr = SessionManager(registry_path, lock_options=FAST_LOCK)
        await mgr.init()
        assert _read_registry(registry_path)["other"]["state"] == "running"

    async def test_corrupt_registry_surfaces(self, registry_path: Path) -> None:
        registry_path.parent.mkdir(parents=True)
        registry_path.write_text("not json")
        mgr = SessionManager(registry_path, lock_options=FAST_LOCK)
        with pytest.raises(RegistryCorruptError):
            await mgr.init()
        assert registry_path.read_text() == "not json"


# ---------------------------------------------------------------------------
# start_session
# ---------------------------------------------------------------------------


class TestStartSession:
    async def test_start_records_entry(
        self, manager: SessionManager, registry_path: Path, tmp_path: Path
    ) -> None:
        session = await manager.start_session(_config("alpha", tmp_path))
        assert session.state is SessionState.RUNNING

        entry = _read_registry(registry_path)["alpha"]
        assert entry["pid"] == session.pid
        assert entry["state"] == "running"
        assert entry["workingDirectory"] == str(tmp_path)
        assert entry["exitCode"] is None
        assert entry["startedAt"]

    async def test_duplicate_in_memory(
        self, manager: SessionManager, registry_path: Path, tmp_path: Path
    ) -> None:
        await manager.start_session(_config("alpha", tmp_path))
        with pytest.raises(SessionAlreadyExistsError):
            await manager.start_session(_config("alpha", tmp_path))
        assert list(_read_registry(registry_path)) == ["alpha"]
        assert len(manager) == 1

    async def test_duplicate_registry_only(
        self,
        manager: SessionManager,
        registry_path: Path,
        tmp_path: Path,
        foreign_process: subprocess.Popen,
    ) -> None:
        # Written by "another process" after this manager's init()
        await manager.registry.add_entry(
            RegistryEntry(name="beta", pid=foreign_process.pid, state=SessionState.RUNNING)
        )
        with pytest.raises(SessionAlreadyExistsError):
            await manager.start_session(_config("beta", tmp_path))
        assert _read_registry(registry_path)["beta"]["pid"] == foreign_process.pid
        assert manager.get_session("beta") is None

    async def test_spawn_failure(self, manager: SessionManager, registry_path: Path, tmp_path: Path) -> None:
        bad = SpawnTarget("definitely-not-a-real-binary-xyz")
        with pytest.raises(SpawnFailedError):
            await manager.start_session(_config("broken", tmp_path, bad))
        assert manager.get_session_info("broken") is None
        assert "broken" not in (await manager.registry.load()).sessions

    async def test_persistence_failure_stops_process(
        self, manager: SessionManager, tmp_path: Path
    ) -> None:
        started: list[Session] = []

        class _TrackingSession(Session):
            async def start(self) -> None:
                await super().start()
                started.append(self)

        failing = AsyncMock(side_effect=RegistryLockError(manager.registry_path))
        with (
            patch.object(manager_module, "Session", _TrackingSession),
            patch.object(manager.registry, "with_lock", failing),
        ):
            with pytest.raises(RegistryLockError):
                await manager.start_session(_config("orphan", tmp_path))

        assert len(started) == 1
        assert started[0].state is SessionState.STOPPED
        assert not pid_alive(started[0].pid)
        assert manager.get_session("orphan") is None

    async def test_crash_is_persisted(
        self, manager: SessionManager, registry_path: Path, tmp_path: Path
    ) -> None:
        wire = Wire()
        manager._wire = wire
        events = wire.subscribe()

        session = await manager.start_session(
            _config("crashy", tmp_path, SpawnTarget("sh", ["-c", "sleep 0.2; exit 4"]))
        )
        assert await _wait_for(lambda: session.state is SessionState.CRASHED)
        await manager.wait_pending()

        entry = _read_registry(registry_path)["crashy"]
        assert entry["state"] == "crashed"
        assert entry["exitCode"] == 4
        info = manager.get_session_info("crashy")
        assert info is not None and info.state is SessionState.CRASHED

        types = []
        while not events.empty():
            types.append(events.get_nowait().type)
        assert EventType.SESSION_STARTED in types
        assert EventType.SESSION_CRASHED in types

    async def test_failed_crash_record_is_reported(
        self, manager: SessionManager, tmp_path: Path
    ) -> None:
        wire = Wire()
        manager._wire = wire
        session = await manager.start_session(
            _config("flaky", tmp_path, SpawnTarget("sh", ["-c", "sleep 0.3; exit 1"]))
        )
        events = wire.subscribe()

        failing = AsyncMock(side_effect=RegistryLockError(manager.registry_path))
        with patch.object(manager.registry, "with_lock", failing):
            assert await _wait_for(lambda: session.state is SessionState.CRASHED)
            await manager.wait_pending()

        types = []
        while not events.empty():
            event = events.get_nowait()
            assert event is not None
            types.append(event.type)
            if event.type == EventType.ERROR:
                assert "flaky" in event.data["error"]
        assert EventType.ERROR in types


# ---------------------------------------------------------------------------
# stop_session / stop_all
# ---------------------------------------------------------------------------


class TestStopSession:
    async def test_stop_local(
        self, manager: SessionManager, registry_path: Path, tmp_path: Path
    ) -> None:
        session = await manager.start_session(_config("alpha", tmp_path))
        pid = session.pid
        await manager.stop_session("alpha")

        assert session.state is SessionState.STOPPED
        assert not pid_alive(pid)
        assert "alpha" not in _read_registry(registry_path)
        assert manager.get_session_info("alpha") is None

    async def test_name_reusable_after_stop(self, manager: SessionManager, tmp_path: Path) -> None:
        await manager.start_session(_config("alpha", tmp_path))
        await manager.stop_session("alpha")
        session = await manager.start_session(_config("alpha", tmp_path))
        assert session.state is SessionState.RUNNING

    async def test_stop_unknown(self, manager: SessionManager) -> None:
        with pytest.raises(SessionNotFoundError):
            await manager.stop_session("ghost")

    async def test_stop_foreign_signals_pid(
        self,
        registry_path: Path,
        foreign_process: subprocess.Popen,
    ) -> None:
        registry_path.parent.mkdir(parents=True)
        _write_registry(
            registry_path, {"other": {"pid": foreign_process.pid, "state": "running"}}
        )
        mgr = SessionManager(registry_path, lock_options=FAST_LOCK)
        await mgr.init()

        await mgr.stop_session("other")

        assert foreign_process.wait(timeout=5) != 0
        assert "other" not in _read_registry(registry_path)

    async def test_stop_does_not_signal_cached_pid(
        self, registry_path: Path, foreign_process: subprocess.Popen
    ) -> None:
        registry_path.parent.mkdir(parents=True)
        _write_registry(registry_path, {"x": {"pid": foreign_process.pid, "state": "running"}})
        mgr = SessionManager(registry_path, lock_options=FAST_LOCK)
        await mgr.init()
        # Stopped elsewhere; the pid may since belong to something else
        await Registry(registry_path, FAST_LOCK).remove_entry("x")

        with pytest.raises(SessionNotFoundError):
            await mgr.stop_session("x")

        assert foreign_process.poll() is None
        assert mgr.get_session_info("x") is None

    async def test_stop_all_ignores_cached_entries(
        self, registry_path: Path, foreign_process: subprocess.Popen
    ) -> None:
        registry_path.parent.mkdir(parents=True)
        _write_registry(registry_path, {"x": {"pid": foreign_process.pid, "state": "running"}})
        mgr = SessionManager(registry_path, lock_options=FAST_LOCK)
        await mgr.init()
        await Registry(registry_path, FAST_LOCK).remove_entry("x")

        await mgr.stop_all()

        assert foreign_process.poll() is None
        assert mgr.list_sessions() == []

    async def test_stop_foreign_already_gone(self, registry_path: Path) -> None:
        registry_path.parent.mkdir(parents=True)
        _write_registry(registry_path, {"gone": {"pid": DEAD_PID, "state": "crashed"}})
        mgr = SessionManager(registry_path, lock_options=FAST_LOCK)
        await mgr.init()

        await mgr.stop_session("gone")
        assert _read_registry(registry_path) == {}

    async def test_stop_all(
        self,
        manager: SessionManager,
        registry_path: Path,
        tmp_path: Path,
    ) -> None:
        a = await manager.start_session(_config("a", tmp_path))
        b = await manager.start_session(_config("b", tmp_path))
        await manager.registry.add_entry(
            RegistryEntry(name="foreign", pid=DEAD_PID, state=SessionState.CRASHED)
        )
        await manager.refresh_registry()

        await manager.stop_all()

        assert a.state is SessionState.STOPPED
        assert b.state is SessionState.STOPPED
        assert _read_registry(registry_path) == {}
        assert manager.list_sessions() == []


# ---------------------------------------------------------------------------
# Listing / refresh
# ---------------------------------------------------------------------------


class TestListing:
    async def test_local_takes_precedence(
        self, manager: SessionManager, registry_path: Path, tmp_path: Path
    ) -> None:
        session = await manager.start_session(_config("alpha", tmp_path))
        await manager.registry.add_entry(
            RegistryEntry(name="beta", pid=DEAD_PID, state=SessionState.CRASHED)
        )
        await manager.refresh_registry()

        infos = {i.name: i for i in manager.list_sessions()}
        assert set(infos) == {"alpha", "beta"}
        assert len(manager.list_sessions()) == 2
        assert infos["alpha"].pid == session.pid
        assert infos["alpha"].started_at is not None
        assert infos["beta"].state is SessionState.CRASHED
        assert manager.is_local("alpha")
        assert not manager.is_local("beta")

    async def test_get_session_info_unknown(self, manager: SessionManager) -> None:
        assert manager.get_session_info("nobody") is None

    async def test_refresh_marks_new_dead_entries(
        self, manager: SessionManager, registry_path: Path
    ) -> None:
        await Registry(registry_path, FAST_LOCK).add_entry(
            RegistryEntry(name="late", pid=DEAD_PID, state=SessionState.RUNNING)
        )
        await manager.refresh_registry()

        assert _read_registry(registry_path)["late"]["state"] == "crashed"
        info = manager.get_session_info("late")
        assert info is not None and info.state is SessionState.CRASHED

    async def test_refresh_prunes_removed_entries(
        self, manager: SessionManager, registry_path: Path
    ) -> None:
        other = Registry(registry_path, FAST_LOCK)
        await other.add_entry(RegistryEntry(name="temp", pid=0, state=SessionState.RUNNING))
        await manager.refresh_registry()
        assert manager.get_session_info("temp") is not None

        await other.remove_entry("temp")
        await manager.refresh_registry()
        assert manager.get_session_info("temp") is None

    async def test_refresh_never_touches_local(
        self, manager: SessionManager, registry_path: Path, tmp_path: Path
    ) -> None:
        session = await manager.start_session(_config("alpha", tmp_path))
        # Someone deletes our entry behind our back
        await Registry(registry_path, FAST_LOCK).remove_entry("alpha")
        await manager.refresh_registry()

        assert manager.get_session("alpha") is session
        assert session.state is SessionState.RUNNING
        assert manager.get_session_info("alpha") is not None

    async def test_refresh_event(self, manager: SessionManager, registry_path: Path) -> None:
        wire = Wire()
        manager._wire = wire
        events = wire.subscribe()
        await Registry(registry_path, FAST_LOCK).add_entry(
            RegistryEntry(name="new", pid=0, state=SessionState.STOPPED)
        )
        await manager.refresh_registry()
        event = events.get_nowait()
        assert event is not None
        assert event.type == EventType.REGISTRY_REFRESHED
        assert event.data["added"] == ["new"]


# ---------------------------------------------------------------------------
# adopt_session
# ---------------------------------------------------------------------------


class TestAdopt:
    async def test_adopt_replaces_foreign_entry(
        self, manager: SessionManager, registry_path: Path, tmp_path: Path
    ) -> None:
        await manager.registry.add_entry(
            RegistryEntry(
                name="old",
                pid=DEAD_PID,
                state=SessionState.CRASHED,
                working_directory=str(tmp_path),
            )
        )
        await manager.refresh_registry()

        session = await manager.adopt_session("old")

        assert manager.is_local("old")
        assert session.state is SessionState.RUNNING
        assert session.config.working_directory == str(tmp_path)
        entry = _read_registry(registry_path)["old"]
        assert entry["pid"] == session.pid
        assert entry["state"] == "running"
        assert len([i for i in manager.list_sessions() if i.name == "old"]) == 1

    async def test_adopt_unknown(self, manager: SessionManager) -> None:
        with pytest.raises(SessionNotFoundError):
            await manager.adopt_session("nobody")

    async def test_adopt_local_rejected(self, manager: SessionManager, tmp_path: Path) -> None:
        await manager.start_session(_config("mine", tmp_path))
        with pytest.raises(SessionAlreadyExistsError):
            await manager.adopt_session("mine")


# ---------------------------------------------------------------------------
# Cross-process visibility
# ---------------------------------------------------------------------------


class TestTwoManagers:
    async def test_second_manager_sees_and_blocks_name(
        self, manager: SessionManager, registry_path: Path, tmp_path: Path
    ) -> None:
        session = await manager.start_session(_config("alpha", tmp_path))

        other = SessionManager(registry_path, lock_options=FAST_LOCK, default_target=SLEEPER)
        await other.init()
        info = other.get_session_info("alpha")
        assert info is not None
        assert info.pid == session.pid
        assert info.state is SessionState.RUNNING

        with pytest.raises(SessionAlreadyExistsError):
            await other.start_session(_config("alpha", tmp_path))

    async def test_concurrent_starts_same_name(
        self, registry_path: Path, tmp_path: Path
    ) -> None:
        managers = [
            SessionManager(registry_path, lock_options=FAST_LOCK, default_target=SLEEPER)
            for _ in range(2)
        ]
        for mgr in managers:
            await mgr.init()
        try:
            results = await asyncio.gather(
                *(m.start_session(_config("race", tmp_path)) for m in managers),
                return_exceptions=True,
            )
            successes = [r for r in results if isinstance(r, Session)]
            failures = [r for r in results if isinstance(r, SessionAlreadyExistsError)]
            assert len(successes) == 1
            assert len(failures) == 1
            assert _read_registry(registry_path)["race"]["pid"] == successes[0].pid
        finally:
            for mgr in managers:
                await mgr.stop_all()
