"""On-disk registry document: models and structural validation.

The registry file is external input (hand edits, truncated writes from
old versions), so ``validate_document`` checks the top-level shape
explicitly and returns a ``CorruptDocument`` instead of trusting a cast.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from agentspawn.model import SessionState

REGISTRY_VERSION = 1


class RegistryEntry(BaseModel):
    """Cross-process projection of a session's observable fields."""

    model_config = ConfigDict(populate_by_name=True)

    name: str
    pid: int = 0
    state: SessionState = SessionState.STOPPED
    started_at: str = Field(default="", alias="startedAt")
    working_directory: str = Field(default="", alias="workingDirectory")
    exit_code: int | None = Field(default=None, alias="exitCode")

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class RegistryData(BaseModel):
    """The whole durable store, always read and written as one unit."""

    version: int = REGISTRY_VERSION
    sessions: dict[str, RegistryEntry] = Field(default_factory=dict)

    def to_json(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "sessions": {name: e.to_json() for name, e in self.sessions.items()},
        }


@dataclass(frozen=True)
class CorruptDocument:
    """Tagged result for a document that failed validation."""

    reason: str


def empty_registry() -> RegistryData:
    return RegistryData(version=REGISTRY_VERSION, sessions={})


def validate_document(raw: Any) -> RegistryData | CorruptDocument:
    """Validate a parsed JSON value as a registry document.

    The session key is the name; a conflicting ``name`` field is ignored.
    """
    if not isinstance(raw, dict):
        return CorruptDocument("document is not an object")

    version = raw.get("version")
    if isinstance(version, bool) or not isinstance(version, int):
        return CorruptDocument("missing or non-integer 'version'")

    sessions = raw.get("sessions")
    if not isinstance(sessions, dict):
        return CorruptDocument("missing or non-object 'sessions'")

    entries: dict[str, RegistryEntry] = {}
    for key, value in sessions.items():
        if not isinstance(value, dict):
            return CorruptDocument(f"session {key!r} is not an object")
        try:
            entries[key] = RegistryEntry.model_validate({**value, "name": key})
        except ValidationError as e:
            return CorruptDocument(f"session {key!r}: {e.error_count()} invalid field(s)")

    return RegistryData(version=version, sessions=entries)
