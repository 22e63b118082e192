"""Speech synthesis stream: the per-call TTS front-end.

Turns reply fragments into audio for the outbound telephony leg:

1. Fragments are forwarded to a live TTS connection as they are produced,
   or queued until one is (re)established
2. flush() marks end of turn so the backend finalizes trailing audio
3. Audio is forwarded to the call's audio sink as 8 kHz mu-law
4. interrupt() drops the turn without waiting on the network (barge-in)

Each TTS backend instance is one connection. Unexpected closes and failed
connects are retried a bounded number of times with linear backoff; after
that the stream stays disconnected and queues text silently.
"""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Awaitable, Callable

from loguru import logger

from outdial.audio.codecs import encode_from_linear_pcm
from outdial.providers.base import BaseTTS
from outdial.session import CallSession, LogSource

AudioSink = Callable[[bytes], Awaitable[None]]
TTSFactory = Callable[[], BaseTTS]


class SynthesisStream:
    """Streaming TTS front-end for one call.

    Args:
        tts_factory: Returns a fresh, unconnected TTS backend.
        audio_sink: Async callable receiving mu-law audio for the caller.
        session: Call session for system-visible log entries.
        max_reconnect_attempts: Reconnects tried before giving up (default: 3).
        reconnect_backoff_seconds: Delay unit; attempt n waits n units.
        on_interrupt: Called synchronously after every interrupt().

    Usage:
        stream = SynthesisStream(factory, send_audio, session)
        stream.start()
        await stream.send_text("Hello ")
        await stream.send_text("there!")
        await stream.flush()
        stream.interrupt()   # on barge-in
        await stream.stop()
    """

    def __init__(
        self,
        tts_factory: TTSFactory,
        audio_sink: AudioSink,
        session: CallSession | None = None,
        max_reconnect_attempts: int = 3,
        reconnect_backoff_seconds: float = 1.0,
        on_interrupt: Callable[[], None] | None = None,
    ):
        self._tts_factory = tts_factory
        self._audio_sink = audio_sink
        self._session = session
        self.max_reconnect_attempts = max_reconnect_attempts
        self.reconnect_backoff_seconds = reconnect_backoff_seconds
        self._on_interrupt = on_interrupt

        # Synthesis queue state
        self._queue: deque[str] = deque()
        self._playing = False
        self._connected = False
        self._reconnect_attempts = 0
        self._exhausted = False
        self._pending_flush = False

        # Bumped by every interrupt(); audio and sends from older
        # generations are discarded.
        self.generation = 0

        self._tts: BaseTTS | None = None
        self._connect_task: asyncio.Task | None = None
        self._receive_task: asyncio.Task | None = None
        self._closing: set[asyncio.Task] = set()
        self._stopped = False

        # Turn tracking for wait_until_idle()
        self._text_since_flush = False
        self._unfinished_turns = 0
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def call_id(self) -> str:
        return self._session.call_id if self._session else ""

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Open the first connection in the background."""
        self._schedule_connect(0.0)

    async def stop(self) -> None:
        """Close the connection and cancel all background work."""
        self._stopped = True
        self._queue.clear()
        self._playing = False
        self._connected = False
        self._pending_flush = False
        self._reset_turns()

        tasks = [t for t in (self._connect_task, self._receive_task) if t and not t.done()]
        self._connect_task = None
        self._receive_task = None
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

        tts, self._tts = self._tts, None
        if tts is not None:
            await self._close_quietly(tts)
        if self._closing:
            await asyncio.gather(*self._closing, return_exceptions=True)
        logger.info(f"[{self.call_id}] Synthesis stream stopped")

    # ------------------------------------------------------------------
    # Text input
    # ------------------------------------------------------------------

    async def send_text(self, fragment: str) -> None:
        """Forward a text fragment, or queue it while disconnected. Never raises."""
        if not fragment or self._stopped:
            return

        self._text_since_flush = True
        self._idle.clear()

        tts = self._tts
        if not self._connected or tts is None or self._queue:
            self._queue.append(fragment)
            return

        generation = self.generation
        try:
            await tts.send_text(fragment)
        except Exception as e:
            logger.warning(f"[{self.call_id}] TTS send failed, queueing: {e}")
            if generation == self.generation:
                self._queue.appendleft(fragment)

    async def flush(self) -> None:
        """Signal end of turn. Queued text is sent first. Never raises."""
        if self._stopped:
            return

        if self._text_since_flush:
            self._text_since_flush = False
            self._unfinished_turns += 1

        tts = self._tts
        if not self._connected or tts is None or self._queue:
            self._pending_flush = True
            self._update_idle()
            return

        try:
            await tts.flush()
        except Exception as e:
            logger.warning(f"[{self.call_id}] TTS flush failed, will retry on reconnect: {e}")
            self._pending_flush = True
        self._update_idle()

    # ------------------------------------------------------------------
    # Barge-in
    # ------------------------------------------------------------------

    def interrupt(self) -> None:
        """Drop the current turn immediately.

        Clears the queue and the playing flag, detaches the live connection
        (closed in the background) and starts a fresh one. Nothing here
        waits on the network.
        """
        self.generation += 1
        self._queue.clear()
        self._playing = False
        self._pending_flush = False
        self._reset_turns()

        if self._connected:
            tts, self._tts = self._tts, None
            self._connected = False
            if self._receive_task is not None and not self._receive_task.done():
                self._receive_task.cancel()
            self._receive_task = None
            # A connect task still draining the queue belongs to the old
            # connection.
            if self._connect_task is not None and not self._connect_task.done():
                self._connect_task.cancel()
            self._connect_task = None
            if tts is not None:
                self._close_in_background(tts)
            if not self._stopped:
                self._schedule_connect(0.0)

        logger.debug(f"[{self.call_id}] Synthesis interrupted (generation {self.generation})")
        if self._on_interrupt is not None:
            self._on_interrupt()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def is_playing(self) -> bool:
        """True while audio for the current turn is arriving."""
        return self._playing

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def is_exhausted(self) -> bool:
        """True once reconnects have been given up."""
        return self._exhausted

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def pending_text(self) -> list[str]:
        return list(self._queue)

    async def wait_until_idle(self, timeout: float) -> bool:
        """Wait until every flushed turn has finished playing.

        Returns False if ``timeout`` seconds pass first.
        """
        try:
            await asyncio.wait_for(self._idle.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    # ------------------------------------------------------------------
    # Internal: connection management
    # ------------------------------------------------------------------

    def _schedule_connect(self, delay: float) -> None:
        current = self._connect_task
        if current is not None and not current.done() and current is not asyncio.current_task():
            return
        self._connect_task = asyncio.create_task(self._connect(delay))

    async def _connect(self, delay: float) -> None:
        if delay > 0:
            await asyncio.sleep(delay)
        if self._stopped:
            return

        tts = self._tts_factory()
        try:
            await tts.connect()
        except asyncio.CancelledError:
            self._close_in_background(tts)
            raise
        except Exception as e:
            logger.warning(f"[{self.call_id}] TTS connect failed ({tts.name}): {e}")
            await self._close_quietly(tts)
            self._connection_lost(expected=False)
            return

        if self._stopped:
            await self._close_quietly(tts)
            return

        self._tts = tts
        self._connected = True
        self._reconnect_attempts = 0
        self._exhausted = False
        self._receive_task = asyncio.create_task(self._receive_loop(tts, self.generation))
        logger.debug(f"[{self.call_id}] TTS connected ({tts.name})")

        try:
            await self._drain(tts)
        except Exception as e:
            # The receive loop notices the dead connection and reconnects.
            logger.warning(f"[{self.call_id}] TTS drain failed: {e}")

    async def _drain(self, tts: BaseTTS) -> None:
        generation = self.generation
        while self._queue and tts is self._tts:
            await tts.send_text(self._queue[0])
            if generation != self.generation:
                return
            self._queue.popleft()

        if self._pending_flush and tts is self._tts:
            self._pending_flush = False
            await tts.flush()

    async def _receive_loop(self, tts: BaseTTS, generation: int) -> None:
        finished_turn = False
        try:
            async for chunk in tts.chunks():
                if tts is not self._tts or generation != self.generation:
                    return

                if chunk.audio:
                    self._playing = True
                    await self._forward_audio(tts, chunk.audio, chunk.sample_rate)

                if chunk.is_final:
                    finished_turn = True
                    self._playing = False
                    self._unfinished_turns = max(self._unfinished_turns - 1, 0)
                    self._update_idle()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"[{self.call_id}] TTS receive error: {e}")

        if tts is not self._tts:
            return

        # Closed by the backend, not by us. A close right after a finished
        # turn is normal for per-turn backends.
        expected = (
            finished_turn
            and self._unfinished_turns == 0
            and not self._text_since_flush
            and not self._queue
        )
        self._tts = None
        self._connected = False
        self._playing = False
        if not expected:
            self._reset_turns()
        self._receive_task = None
        await self._close_quietly(tts)
        self._connection_lost(expected=expected)

    def _connection_lost(self, expected: bool) -> None:
        if self._stopped:
            return

        if expected:
            logger.debug(f"[{self.call_id}] TTS connection closed after turn, reconnecting")
            self._schedule_connect(0.0)
            return

        if self._reconnect_attempts >= self.max_reconnect_attempts:
            self._exhausted = True
            message = (
                f"TTS connection lost; gave up after "
                f"{self.max_reconnect_attempts} reconnect attempts"
            )
            logger.error(f"[{self.call_id}] {message}")
            if self._session is not None:
                self._session.add_log(LogSource.SYSTEM, message)
            return

        self._reconnect_attempts += 1
        delay = self.reconnect_backoff_seconds * self._reconnect_attempts
        logger.warning(
            f"[{self.call_id}] TTS reconnect attempt {self._reconnect_attempts}/"
            f"{self.max_reconnect_attempts} in {delay:.1f}s"
        )
        self._schedule_connect(delay)

    async def _forward_audio(self, tts: BaseTTS, audio: bytes, sample_rate: int) -> None:
        if tts.codec != "mulaw":
            audio = encode_from_linear_pcm(audio, sample_rate)
        if not audio:
            return
        try:
            await self._audio_sink(audio)
        except Exception as e:
            logger.warning(f"[{self.call_id}] Dropping outbound audio: {e}")

    def _close_in_background(self, tts: BaseTTS) -> None:
        task = asyncio.create_task(self._close_quietly(tts))
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    async def _close_quietly(self, tts: BaseTTS) -> None:
        try:
            await tts.close()
        except Exception as e:
            logger.debug(f"[{self.call_id}] TTS close error: {e}")

    # ------------------------------------------------------------------
    # Internal: turn tracking
    # ------------------------------------------------------------------

    def _reset_turns(self) -> None:
        self._text_since_flush = False
        self._unfinished_turns = 0
        self._idle.set()

    def _update_idle(self) -> None:
        if self._unfinished_turns == 0 and not self._text_since_flush:
            self._idle.set()
        else:
            self._idle.clear()
