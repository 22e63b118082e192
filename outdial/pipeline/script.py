"""Conversation script engine.

Paces a call through the operator's outline. Each beat is consumed at most
once and strictly in order. The opening beat is spoken as-is so the call
starts without waiting for the callee; later beats steer the next LLM
reply instead of being read out.

The script also owns the two ways a call is wound down from our side:
a stop word from either party, and the maximum call duration.
"""

from __future__ import annotations

import asyncio
import re
import time
from typing import Awaitable, Callable

from loguru import logger

from outdial.config import DEFAULT_STOP_MESSAGE, DEFAULT_STOP_WORDS, DEFAULT_TIMEOUT_MESSAGE
from outdial.pipeline.synthesis import SynthesisStream
from outdial.session import CallSession, LogSource, ScriptState

STOP_WORDS: tuple[str, ...] = tuple(DEFAULT_STOP_WORDS)

BeatCallback = Callable[[str, bool], Awaitable[None]]
StopCallback = Callable[[str], Awaitable[None]]

# "1.", "2)", "3 -", "4:" and bullet markers at the start of a line
_ORDINAL_PREFIX = re.compile(r"^\s*(?:\d+\s*[.):\-]+|[-*•]+)\s*")


def parse_beats(outline: str) -> list[str]:
    """Split an outline into beats.

    One beat per non-blank line, with any leading ordinal or bullet marker
    removed.

    >>> parse_beats("1. Hi there\\n\\n2) Wait, really?")
    ['Hi there', 'Wait, really?']
    """
    beats = []
    for line in (outline or "").splitlines():
        beat = _ORDINAL_PREFIX.sub("", line, count=1).strip()
        if beat:
            beats.append(beat)
    return beats


class ConversationScript:
    """Beat pacing and termination policy for one call.

    Args:
        session: The call's session; its ``script_state`` is created here.
        tts: The call's synthesis stream.
        max_call_seconds: Call length after which the timeout line is spoken.
        stop_words: Phrases that end the call when either party says them.
        stop_message: Closing line for a stop word.
        timeout_message: Closing line when the call runs out of time.
        on_beat: Awaited with ``(beat, spoken)`` each time a beat is consumed.
        on_stop: Awaited with the closing line once the call is wound down.
        clock: Wall clock in seconds, injectable for tests.
    """

    def __init__(
        self,
        session: CallSession,
        tts: SynthesisStream,
        max_call_seconds: float = 240.0,
        stop_words: list[str] | tuple[str, ...] = STOP_WORDS,
        stop_message: str = DEFAULT_STOP_MESSAGE,
        timeout_message: str = DEFAULT_TIMEOUT_MESSAGE,
        on_beat: BeatCallback | None = None,
        on_stop: StopCallback | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._session = session
        self._tts = tts
        self.max_call_seconds = max_call_seconds
        self.stop_words = [w.lower() for w in stop_words if w.strip()]
        self.stop_message = stop_message
        self.timeout_message = timeout_message
        self._on_beat = on_beat
        self._on_stop = on_stop
        self._clock = clock

        self.state = ScriptState(beats=parse_beats(session.outline), start_time=clock())
        session.script_state = self.state

        self._stopped = False
        self._watchdog_task: asyncio.Task | None = None

    @property
    def call_id(self) -> str:
        return self._session.call_id

    @property
    def stopped(self) -> bool:
        """True once a closing line has been sent."""
        return self._stopped

    @property
    def elapsed_seconds(self) -> float:
        return self._clock() - self.state.start_time

    def set_beat_callback(self, callback: BeatCallback) -> None:
        self._on_beat = callback

    # ------------------------------------------------------------------
    # Beats
    # ------------------------------------------------------------------

    async def send_next_beat(self) -> str | None:
        """Advance the script by one beat if the call allows it.

        Returns the consumed beat, or None when nothing was advanced.
        """
        if self._stopped:
            return None

        if self.elapsed_seconds > self.max_call_seconds:
            logger.info(f"[{self.call_id}] Max call duration reached, closing")
            await self.send_stop(self.timeout_message)
            return None

        state = self.state
        if state.exhausted:
            return None

        if self._tts.is_playing():
            logger.debug(f"[{self.call_id}] Agent still speaking, holding beat")
            return None

        beat = state.beats[state.current_beat_index]
        state.current_beat_index += 1
        number = state.current_beat_index
        self._session.add_log(LogSource.SYSTEM, f"(Advancing to beat {number}: {beat})")

        spoken = number == 1
        if spoken:
            self._session.add_log(LogSource.AGENT, beat)
            await self._tts.send_text(beat)
            await self._tts.flush()

        if self._on_beat is not None:
            await self._on_beat(beat, spoken)
        return beat

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    def is_stop_word(self, text: str) -> bool:
        lowered = (text or "").lower()
        return any(word in lowered for word in self.stop_words)

    async def send_stop(self, message: str | None = None) -> bool:
        """Interrupt whatever is playing and speak the closing line.

        Only the first call has any effect. Returns True if the line was sent.
        """
        if self._stopped:
            return False
        self._stopped = True
        self._cancel_watchdog()

        message = message or self.stop_message
        self._session.add_log(LogSource.AGENT, message)
        self._tts.interrupt()
        await self._tts.send_text(message)
        await self._tts.flush()
        logger.info(f"[{self.call_id}] Closing line sent: {message!r}")

        if self._on_stop is not None:
            await self._on_stop(message)
        return True

    # ------------------------------------------------------------------
    # Max duration watchdog
    # ------------------------------------------------------------------

    def start_watchdog(self) -> None:
        """Close the call when ``max_call_seconds`` runs out, even if nobody speaks."""
        if self._watchdog_task is None or self._watchdog_task.done():
            self._watchdog_task = asyncio.create_task(self._watchdog())

    def stop(self) -> None:
        """Cancel the watchdog. Safe to call repeatedly."""
        self._cancel_watchdog()

    def _cancel_watchdog(self) -> None:
        task, self._watchdog_task = self._watchdog_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _watchdog(self) -> None:
        remaining = self.max_call_seconds - self.elapsed_seconds
        if remaining > 0:
            await asyncio.sleep(remaining)
        if self._stopped:
            return
        logger.info(f"[{self.call_id}] Call time limit of {self.max_call_seconds:.0f}s reached")
        try:
            await self.send_stop(self.timeout_message)
        except Exception as e:
            logger.error(f"[{self.call_id}] Failed to send closing line: {e}")
