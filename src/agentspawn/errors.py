"""Error taxonomy.

User-input errors (``SessionNotFoundError``, ``SessionAlreadyExistsError``)
are reported and never retried. ``RegistryLockError`` means "try again
later" and is kept distinct from errors raised by a rejected mutation.
"""

from __future__ import annotations

from pathlib import Path


class AgentSpawnError(Exception):
    """Base class for all agentspawn errors."""

    code = "AGENTSPAWN_ERROR"
    exit_code = 1

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class SessionNotFoundError(AgentSpawnError):
    code = "SESSION_NOT_FOUND"

    def __init__(self, name: str) -> None:
        super().__init__(f"Session not found: {name}")
        self.name = name


class SessionAlreadyExistsError(AgentSpawnError):
    code = "SESSION_EXISTS"

    def __init__(self, name: str) -> None:
        super().__init__(f"Session already exists: {name}")
        self.name = name


class SpawnFailedError(AgentSpawnError):
    code = "SPAWN_FAILED"
    exit_code = 2

    def __init__(self, name: str, reason: str) -> None:
        super().__init__(f"Failed to spawn session {name}: {reason}")
        self.name = name
        self.reason = reason


class RegistryCorruptError(AgentSpawnError):
    """The registry file exists but is unreadable or structurally invalid.

    Never handled by resetting the file: discarding entries could hide
    live processes started by other invocations.
    """

    code = "REGISTRY_CORRUPT"
    exit_code = 3

    def __init__(self, path: str | Path, reason: str = "") -> None:
        detail = f" ({reason})" if reason else ""
        super().__init__(f"Registry file is corrupt: {path}{detail}")
        self.path = str(path)
        self.reason = reason


class RegistryLockError(AgentSpawnError):
    code = "REGISTRY_LOCK_FAILED"
    exit_code = 75  # EX_TEMPFAIL

    def __init__(self, path: str | Path, cause: BaseException | None = None) -> None:
        super().__init__(f"Failed to acquire lock on registry file: {path}")
        self.path = str(path)
        if cause is not None:
            self.__cause__ = cause
