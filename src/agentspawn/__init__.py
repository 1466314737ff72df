"""agentspawn: run and supervise many interactive agent sessions.

Sessions are coordinated through a shared on-disk registry rather than a
server, so independent CLI/TUI invocations see each other's sessions.
"""

from agentspawn.config import AgentSpawnConfig
from agentspawn.errors import (
    AgentSpawnError,
    RegistryCorruptError,
    RegistryLockError,
    SessionAlreadyExistsError,
    SessionNotFoundError,
    SpawnFailedError,
)
from agentspawn.model import SessionConfig, SessionInfo, SessionState, SpawnTarget
from agentspawn.pty import Session, SessionManager
from agentspawn.registry import Registry, RegistryWatcher

__version__ = "0.1.0"

__all__ = [
    "AgentSpawnConfig",
    "AgentSpawnError",
    "Registry",
    "RegistryCorruptError",
    "RegistryLockError",
    "RegistryWatcher",
    "Session",
    "SessionAlreadyExistsError",
    "SessionConfig",
    "SessionInfo",
    "SessionManager",
    "SessionNotFoundError",
    "SessionState",
    "SpawnFailedError",
    "SpawnTarget",
]
