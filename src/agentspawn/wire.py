"""Wire protocol: decouples session lifecycle from front-ends.

The session manager publishes lifecycle events on the wire; a CLI, TUI
or dashboard subscribes and renders them. Nothing on the wire mutates
session state.
"""

from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass, field
from typing import Any


class EventType(enum.Enum):
    SESSION_STARTED = "session_started"
    SESSION_STOPPED = "session_stopped"
    SESSION_CRASHED = "session_crashed"
    SESSION_ADOPTED = "session_adopted"
    REGISTRY_REFRESHED = "registry_refreshed"
    ERROR = "error"


@dataclass
class WireEvent:
    """An event on the wire."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)


class Wire:
    """Async message bus: session manager -> UI subscribers.

    Single-producer, multi-consumer broadcast.
    """

    def __init__(self) -> None:
        self._subscribers: list[asyncio.Queue[WireEvent | None]] = []
        self._closed: bool = False

    def send(self, event: WireEvent) -> None:
        """Send an event to all subscribers.

        Silently drops events after ``close()`` has been called.
        """
        if self._closed:
            return
        for q in self._subscribers:
            q.put_nowait(event)

    def send_error(self, error: str) -> None:
        self.send(WireEvent(type=EventType.ERROR, data={"error": error}))

    def send_started(self, name: str, pid: int) -> None:
        self.send(WireEvent(type=EventType.SESSION_STARTED, data={"name": name, "pid": pid}))

    def send_stopped(self, name: str, foreign: bool = False) -> None:
        self.send(
            WireEvent(type=EventType.SESSION_STOPPED, data={"name": name, "foreign": foreign})
        )

    def send_crashed(
        self,
        name: str,
        pid: int,
        exit_code: int | None,
        reason: str = "",
    ) -> None:
        """Notify subscribers that a session's process died on its own."""
        self.send(
            WireEvent(
                type=EventType.SESSION_CRASHED,
                data={
                    "name": name,
                    "pid": pid,
                    "exit_code": exit_code,
                    "reason": reason,
                },
            )
        )

    def send_adopted(self, name: str, old_pid: int, new_pid: int) -> None:
        self.send(
            WireEvent(
                type=EventType.SESSION_ADOPTED,
                data={"name": name, "old_pid": old_pid, "new_pid": new_pid},
            )
        )

    def send_registry_refreshed(self, added: list[str], pruned: list[str]) -> None:
        self.send(
            WireEvent(
                type=EventType.REGISTRY_REFRESHED,
                data={"added": added, "pruned": pruned},
            )
        )

    def subscribe(self) -> asyncio.Queue[WireEvent | None]:
        """Subscribe to events. Returns a queue to read from."""
        q: asyncio.Queue[WireEvent | None] = asyncio.Queue()
        self._subscribers.append(q)
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        """Unsubscribe from events."""
        if q in self._subscribers:
            self._subscribers.remove(q)

    def close(self) -> None:
        """Signal all subscribers that the wire is closing."""
        self._closed = True
        for q in self._subscribers:
            q.put_nowait(None)
