"""Call session state for outdial.

Each outbound call gets a CallSession holding the operator's theme and
outline, the append-only log the web UI polls, and (once the media stream
attaches) the script position. The SessionStore is the one piece of state
shared between concurrent call tasks and the HTTP layer.
"""

from __future__ import annotations

import asyncio
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from loguru import logger
from pydantic import BaseModel, ConfigDict

from outdial.audio.codecs import compute_audio_energy


class LogSource(str, Enum):
    USER = "user"
    AGENT = "agent"
    SYSTEM = "system"


class LogEntry(BaseModel):
    """One line of the call transcript, immutable once appended."""

    model_config = ConfigDict(frozen=True)

    id: int
    source: LogSource
    text: str
    timestamp: str


# ---------------------------------------------------------------------------
# Barge-in VAD
# ---------------------------------------------------------------------------

@dataclass
class BargeInDetector:
    """Energy-based Voice Activity Detector for barge-in detection.

    Prevents false barge-in triggers from silence/background noise by
    requiring the caller's audio energy to exceed a threshold for a
    minimum number of consecutive frames before signalling barge-in.

    Attributes:
        energy_threshold: RMS energy threshold to consider "speech" (0-32768).
            Default 200 works well for typical telephony. Lower = more sensitive.
        min_speech_frames: Number of consecutive above-threshold frames
            required before triggering barge-in. Default 3 (~60ms at 20ms/frame).
        codec: Audio codec of incoming frames ("mulaw" or "pcm16").
    """

    energy_threshold: float = 200.0
    min_speech_frames: int = 3
    codec: str = "mulaw"
    _consecutive_speech_frames: int = 0

    def check(self, audio_data: bytes) -> bool:
        """Check an audio frame for speech. Returns True if barge-in detected.

        Returns True on every frame once ``min_speech_frames`` consecutive
        frames have been above the threshold, until a quiet frame arrives.
        """
        energy = compute_audio_energy(audio_data, self.codec)

        if energy >= self.energy_threshold:
            self._consecutive_speech_frames += 1
            if self._consecutive_speech_frames >= self.min_speech_frames:
                logger.debug(
                    f"Barge-in VAD triggered: energy={energy:.0f} "
                    f"(threshold={self.energy_threshold}), "
                    f"frames={self._consecutive_speech_frames}"
                )
                return True
        else:
            self._consecutive_speech_frames = 0

        return False

    def reset(self) -> None:
        """Reset the detector for a new speaking turn."""
        self._consecutive_speech_frames = 0


# ---------------------------------------------------------------------------
# Call session
# ---------------------------------------------------------------------------

@dataclass
class ScriptState:
    """Position of a call within its outline."""

    beats: list[str] = field(default_factory=list)
    current_beat_index: int = 0
    start_time: float = field(default_factory=time.time)

    @property
    def exhausted(self) -> bool:
        return self.current_beat_index >= len(self.beats)


@dataclass
class CallSession:
    """Represents a single outbound call.

    ``theme`` and ``outline`` are fixed when the call is placed. ``logs``
    only ever grows; ``script_state`` appears once the media stream
    attaches.
    """

    call_id: str
    theme: str = ""
    outline: str = ""
    voice_id: str = ""
    to_number: str = ""
    created_at: float = field(default_factory=time.time)
    logs: list[LogEntry] = field(default_factory=list)
    script_state: ScriptState | None = None

    _last_log_id: int = 0
    _log_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def add_log(self, source: LogSource | str, text: str) -> LogEntry:
        """Append a log entry and return it.

        Ids come from the wall clock in milliseconds but never repeat or go
        backwards within a session.
        """
        with self._log_lock:
            now = datetime.now(timezone.utc)
            entry_id = max(int(now.timestamp() * 1000), self._last_log_id + 1)
            self._last_log_id = entry_id
            entry = LogEntry(
                id=entry_id,
                source=LogSource(source),
                text=text,
                timestamp=now.isoformat().replace("+00:00", "Z"),
            )
            self.logs.append(entry)
        logger.debug(f"[{self.call_id}] {entry.source.value}: {text}")
        return entry

    def snapshot_logs(self) -> list[LogEntry]:
        """Copy of the log in append order."""
        with self._log_lock:
            return list(self.logs)

    @property
    def duration_ms(self) -> int:
        return int((time.time() - self.created_at) * 1000)


class SessionStore:
    """Thread-safe store for call sessions, keyed by call id.

    Callers only get/set/delete; there is no way to iterate the store from
    outside. Deletion can be deferred so a trailing log poll still finds the
    session after the call is torn down.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, CallSession] = {}
        self._pending_deletes: dict[str, asyncio.Task] = {}
        self._lock = threading.Lock()

    def create(self, call_id: str, **kwargs) -> CallSession:
        """Create and store a new session.

        Raises:
            ValueError: If a session with this call id already exists.
        """
        session = CallSession(call_id=call_id, **kwargs)
        with self._lock:
            if call_id in self._sessions:
                raise ValueError(f"Session already exists for call {call_id}")
            self._sessions[call_id] = session
        logger.info(f"Session created for call {call_id}")
        return session

    def set(self, session: CallSession) -> None:
        """Store ``session``, replacing any session with the same call id."""
        with self._lock:
            self._sessions[session.call_id] = session
            pending = self._pending_deletes.pop(session.call_id, None)
        if pending is not None:
            pending.cancel()

    def get(self, call_id: str) -> CallSession | None:
        with self._lock:
            return self._sessions.get(call_id)

    def delete(self, call_id: str) -> bool:
        """Remove a session. Returns False if it was not present."""
        with self._lock:
            session = self._sessions.pop(call_id, None)
            pending = self._pending_deletes.pop(call_id, None)
        if pending is not None and pending is not asyncio.current_task():
            pending.cancel()
        if session is None:
            return False
        logger.info(f"Session removed for call {call_id} (age: {session.duration_ms}ms)")
        return True

    def schedule_delete(self, call_id: str, delay: float) -> asyncio.Task:
        """Delete the session after ``delay`` seconds.

        Rescheduling replaces the earlier timer. Must be called from a
        running event loop.
        """
        task = asyncio.get_running_loop().create_task(self._delete_later(call_id, delay))
        with self._lock:
            previous = self._pending_deletes.pop(call_id, None)
            self._pending_deletes[call_id] = task
        if previous is not None:
            previous.cancel()
        logger.debug(f"Session for call {call_id} will be removed in {delay}s")
        return task

    def cancel_pending(self) -> None:
        """Cancel every scheduled deletion (process shutdown)."""
        with self._lock:
            pending = list(self._pending_deletes.values())
            self._pending_deletes.clear()
        for task in pending:
            task.cancel()

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, call_id: str) -> bool:
        with self._lock:
            return call_id in self._sessions

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _delete_later(self, call_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        self.delete(call_id)


# Process-wide registry used by the server
session_store = SessionStore()
