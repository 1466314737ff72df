"""Domain types shared by the registry and the PTY session layer."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime


class SessionState(enum.StrEnum):
    """Lifecycle states for a session.

    Values double as the on-disk ``state`` strings in the registry file.
    """

    RUNNING = "running"
    STOPPED = "stopped"
    CRASHED = "crashed"


@dataclass(frozen=True)
class SpawnTarget:
    """The executable a session runs.

    A sandboxing layer may hand over a wrapper command here; the session
    layer treats it as opaque.
    """

    command: str = "claude"
    args: list[str] = field(default_factory=list)

    @property
    def argv(self) -> list[str]:
        return [self.command, *self.args]


@dataclass(frozen=True)
class SessionConfig:
    """Caller-supplied, immutable description of a session."""

    name: str
    working_directory: str
    env: dict[str, str] = field(default_factory=dict)
    target: SpawnTarget | None = None


@dataclass(frozen=True)
class SessionInfo:
    """Point-in-time snapshot of a session, safe to hand to a UI."""

    name: str
    pid: int
    state: SessionState
    started_at: datetime | None
    working_directory: str
    exit_code: int | None = None
