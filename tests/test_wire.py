"""Tests for agentspawn.wire (Wire, WireEvent, EventType)."""

from __future__ import annotations

import asyncio

from agentspawn.wire import EventType, Wire, WireEvent


# ---------------------------------------------------------------------------
# EventType
# ---------------------------------------------------------------------------


class TestEventType:
    def test_all_variants_exist(self) -> None:
        expected = {
            "SESSION_STARTED",
            "SESSION_STOPPED",
            "SESSION_CRASHED",
            "SESSION_ADOPTED",
            "REGISTRY_REFRESHED",
            "ERROR",
        }
        assert {e.name for e in EventType} == expected

    def test_values_are_lowercase(self) -> None:
        for e in EventType:
            assert e.value == e.name.lower()


class TestWireEvent:
    def test_defaults(self) -> None:
        event = WireEvent(type=EventType.SESSION_STARTED)
        assert event.data == {}


# ---------------------------------------------------------------------------
# Wire: basic send/subscribe
# ---------------------------------------------------------------------------


class TestWire:
    def test_send_to_multiple_subscribers(self) -> None:
        wire = Wire()
        q1 = wire.subscribe()
        q2 = wire.subscribe()
        wire.send_started("a", 1)
        e1 = q1.get_nowait()
        e2 = q2.get_nowait()
        assert e1 is not None and e2 is not None
        assert e1.type == e2.type == EventType.SESSION_STARTED

    def test_unsubscribe(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.unsubscribe(q)
        wire.send_started("a", 1)
        assert q.empty()

    def test_unsubscribe_nonexistent_is_safe(self) -> None:
        wire = Wire()
        q: asyncio.Queue[WireEvent | None] = asyncio.Queue()
        wire.unsubscribe(q)  # Should not raise

    def test_close_sends_sentinel_then_drops(self) -> None:
        wire = Wire()
        q1 = wire.subscribe()
        q2 = wire.subscribe()
        wire.close()
        assert q1.get_nowait() is None
        assert q2.get_nowait() is None
        wire.send_started("a", 1)
        wire.send_error("nope")
        assert q1.empty()


# ---------------------------------------------------------------------------
# Wire: lifecycle helpers
# ---------------------------------------------------------------------------


class TestWireLifecycle:
    def test_send_started(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.send_started("alpha", 4242)
        event = q.get_nowait()
        assert event is not None
        assert event.type == EventType.SESSION_STARTED
        assert event.data == {"name": "alpha", "pid": 4242}

    def test_send_stopped_foreign(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.send_stopped("alpha", foreign=True)
        event = q.get_nowait()
        assert event is not None
        assert event.type == EventType.SESSION_STOPPED
        assert event.data["foreign"] is True

    def test_send_crashed(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.send_crashed("alpha", 10, 3, reason="Exit code 3")
        event = q.get_nowait()
        assert event is not None
        assert event.type == EventType.SESSION_CRASHED
        assert event.data["exit_code"] == 3
        assert event.data["reason"] == "Exit code 3"

    def test_send_adopted(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.send_adopted("alpha", 10, 20)
        event = q.get_nowait()
        assert event is not None
        assert event.data == {"name": "alpha", "old_pid": 10, "new_pid": 20}

    def test_send_registry_refreshed(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.send_registry_refreshed(["b"], ["c"])
        event = q.get_nowait()
        assert event is not None
        assert event.type == EventType.REGISTRY_REFRESHED
        assert event.data == {"added": ["b"], "pruned": ["c"]}

    def test_send_error(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.send_error("registry locked")
        event = q.get_nowait()
        assert event is not None
        assert event.type == EventType.ERROR
        assert event.data == {"error": "registry locked"}
