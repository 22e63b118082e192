"""Tests for call sessions, the session store and the barge-in detector."""

import asyncio
import threading

import pytest

from outdial.session import (
    BargeInDetector,
    CallSession,
    LogEntry,
    LogSource,
    ScriptState,
    SessionStore,
)


class TestCallSessionLogs:

    def test_add_log_returns_entry(self):
        session = CallSession(call_id="CA1")
        entry = session.add_log(LogSource.SYSTEM, "Call initiated")
        assert isinstance(entry, LogEntry)
        assert entry.source == LogSource.SYSTEM
        assert entry.text == "Call initiated"
        assert entry.timestamp.endswith("Z")
        assert session.logs == [entry]

    def test_ids_strictly_increase(self):
        session = CallSession(call_id="CA1")
        entries = [session.add_log("agent", f"line {i}") for i in range(50)]
        ids = [e.id for e in entries]
        assert ids == sorted(ids)
        assert len(set(ids)) == len(ids)

    def test_entries_are_immutable(self):
        entry = CallSession(call_id="CA1").add_log("user", "hi")
        with pytest.raises(Exception):
            entry.text = "changed"

    def test_snapshot_is_a_copy(self):
        session = CallSession(call_id="CA1")
        session.add_log("user", "hello")
        snapshot = session.snapshot_logs()
        session.add_log("agent", "hi")
        assert len(snapshot) == 1
        assert len(session.logs) == 2

    def test_concurrent_appends_keep_unique_ids(self):
        session = CallSession(call_id="CA1")

        def worker():
            for i in range(100):
                session.add_log("system", str(i))

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        ids = [e.id for e in session.logs]
        assert len(ids) == 400
        assert ids == sorted(ids)
        assert len(set(ids)) == 400

    def test_serializes_to_json(self):
        entry = CallSession(call_id="CA1").add_log("agent", "Hello")
        data = entry.model_dump(mode="json")
        assert data["source"] == "agent"
        assert set(data) == {"id", "source", "text", "timestamp"}


class TestScriptState:

    def test_exhausted(self):
        state = ScriptState(beats=["a"])
        assert not state.exhausted
        state.current_beat_index = 1
        assert state.exhausted

    def test_empty_outline_is_exhausted(self):
        assert ScriptState().exhausted


class TestSessionStore:

    def test_create_get_delete(self):
        store = SessionStore()
        session = store.create("CA1", theme="t", outline="o")
        assert store.get("CA1") is session
        assert "CA1" in store
        assert store.active_count == 1
        assert store.delete("CA1") is True
        assert store.get("CA1") is None
        assert store.delete("CA1") is False

    def test_duplicate_create_raises(self):
        store = SessionStore()
        store.create("CA1")
        with pytest.raises(ValueError):
            store.create("CA1")

    def test_set_replaces(self):
        store = SessionStore()
        store.create("CA1", theme="old")
        store.set(CallSession(call_id="CA1", theme="new"))
        assert store.get("CA1").theme == "new"

    def test_get_unknown(self):
        assert SessionStore().get("nope") is None

    @pytest.mark.asyncio
    async def test_schedule_delete(self):
        store = SessionStore()
        store.create("CA1")
        task = store.schedule_delete("CA1", 0.01)
        assert store.get("CA1") is not None
        await task
        assert store.get("CA1") is None

    @pytest.mark.asyncio
    async def test_reschedule_replaces_timer(self):
        store = SessionStore()
        store.create("CA1")
        first = store.schedule_delete("CA1", 0.01)
        second = store.schedule_delete("CA1", 10)
        await asyncio.sleep(0.03)
        assert first.cancelled()
        assert store.get("CA1") is not None
        second.cancel()

    @pytest.mark.asyncio
    async def test_set_cancels_pending_delete(self):
        store = SessionStore()
        store.create("CA1")
        task = store.schedule_delete("CA1", 0.01)
        store.set(CallSession(call_id="CA1"))
        await asyncio.sleep(0.03)
        assert task.cancelled()
        assert "CA1" in store

    @pytest.mark.asyncio
    async def test_cancel_pending(self):
        store = SessionStore()
        store.create("CA1")
        task = store.schedule_delete("CA1", 10)
        store.cancel_pending()
        await asyncio.sleep(0)
        assert task.cancelled()


class TestBargeInDetector:

    def test_silence_never_triggers(self):
        detector = BargeInDetector()
        assert not any(detector.check(b"\xff" * 160) for _ in range(10))

    def test_needs_consecutive_frames(self):
        detector = BargeInDetector(min_speech_frames=3)
        loud = b"\x80" * 160
        assert detector.check(loud) is False
        assert detector.check(loud) is False
        assert detector.check(loud) is True

    def test_quiet_frame_resets(self):
        detector = BargeInDetector(min_speech_frames=2)
        loud = b"\x80" * 160
        detector.check(loud)
        detector.check(b"\xff" * 160)
        assert detector.check(loud) is False

    def test_reset(self):
        detector = BargeInDetector(min_speech_frames=2)
        detector.check(b"\x80" * 160)
        detector.reset()
        assert detector.check(b"\x80" * 160) is False
