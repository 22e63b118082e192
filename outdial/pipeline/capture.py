"""Speech capture buffer: the per-call ASR front-end.

Accumulates inbound mu-law frames and decides when a span of audio is a
finished utterance worth transcribing:

- a periodic monitor flushes once enough audio is buffered and the caller
  has been quiet long enough
- a buffer that reaches the maximum duration is flushed regardless

Only one transcription is in flight at a time. Frames that arrive while it
runs are kept for the next utterance.
"""

from __future__ import annotations

import asyncio
import time
from enum import Enum
from typing import Awaitable, Callable

from loguru import logger

from outdial.audio.codecs import (
    TELEPHONY_SAMPLE_RATE,
    compute_audio_energy,
    decode_to_linear_pcm,
    frame_duration_ms,
)
from outdial.audio.wav import build_wav
from outdial.providers.base import BaseASR
from outdial.session import CallSession, LogSource

TranscriptCallback = Callable[[str], Awaitable[None]]


class CaptureState(str, Enum):
    IDLE = "idle"
    ACCUMULATING = "accumulating"
    PROCESSING = "processing"


class SpeechCaptureBuffer:
    """Utterance segmentation and transcription hand-off for one call.

    Args:
        asr: Transcription backend.
        session: Call session receiving user and error log entries.
        on_transcript: Awaited with each non-empty transcript.
        silence_threshold_ms: Quiet time that ends an utterance (default: 500).
        min_buffer_ms: Shortest utterance worth transcribing (default: 1000).
        max_buffer_ms: Forced flush length (default: 10000).
        tick_ms: Monitor period (default: 100).
        language: Language hint for the ASR backend.
        speech_energy_threshold: RMS level a frame needs to count as speech.
            0 counts every frame. Above 0, frames before the first speech
            frame of an utterance are not buffered.
        clock: Monotonic clock in seconds, injectable for tests.
    """

    BYTES_PER_FRAME = 160  # 20 ms of 8 kHz mu-law
    FRAME_MS = 20

    def __init__(
        self,
        asr: BaseASR,
        session: CallSession | None = None,
        on_transcript: TranscriptCallback | None = None,
        silence_threshold_ms: float = 500.0,
        min_buffer_ms: float = 1000.0,
        max_buffer_ms: float = 10000.0,
        tick_ms: float = 100.0,
        language: str = "en",
        speech_energy_threshold: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._asr = asr
        self._session = session
        self._on_transcript = on_transcript
        self.silence_threshold_ms = silence_threshold_ms
        self.min_buffer_ms = min_buffer_ms
        self.max_buffer_ms = max_buffer_ms
        self.tick_ms = tick_ms
        self.language = language
        self.speech_energy_threshold = speech_energy_threshold
        self._clock = clock

        # Capture buffer state
        self._frames: list[bytes] = []
        self._buffered_bytes = 0
        self._last_audio_at: float | None = None
        self._processing = False

        self._monitor_task: asyncio.Task | None = None
        self._process_task: asyncio.Task | None = None
        self.flush_count = 0

    @property
    def call_id(self) -> str:
        return self._session.call_id if self._session else ""

    def set_transcript_callback(self, callback: TranscriptCallback) -> None:
        self._on_transcript = callback

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the periodic silence monitor."""
        if self._monitor_task is None or self._monitor_task.done():
            self._monitor_task = asyncio.create_task(self._monitor())

    async def stop(self) -> None:
        """Cancel the monitor and any transcription, then reset all state."""
        tasks = [t for t in (self._monitor_task, self._process_task) if t and not t.done()]
        self._monitor_task = None
        self._process_task = None
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._reset_buffer()
        self._processing = False

    # ------------------------------------------------------------------
    # Audio input
    # ------------------------------------------------------------------

    def add_audio_chunk(self, frame: bytes) -> None:
        """Buffer one inbound mu-law frame.

        Never blocks and never drops audio while a transcription runs. A
        buffer that reaches ``max_buffer_ms`` is flushed immediately if no
        transcription is in flight, otherwise on the next monitor tick.
        """
        if not frame:
            return

        if self._is_speech(frame):
            self._last_audio_at = self._clock()
        elif self._last_audio_at is None:
            return

        self._frames.append(frame)
        self._buffered_bytes += len(frame)

        if self.buffered_ms >= self.max_buffer_ms and not self._processing:
            logger.debug(f"[{self.call_id}] Capture buffer full, forcing flush")
            self._begin_flush()

    def check_silence(self) -> bool:
        """Run one monitor evaluation. Returns True if a flush started."""
        if self._processing or not self._frames:
            return False

        buffered = self.buffered_ms
        if buffered >= self.max_buffer_ms:
            self._begin_flush()
            return True

        if buffered < self.min_buffer_ms or self._last_audio_at is None:
            return False

        silence_ms = (self._clock() - self._last_audio_at) * 1000
        if silence_ms >= self.silence_threshold_ms:
            self._begin_flush()
            return True
        return False

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> CaptureState:
        if self._processing:
            return CaptureState.PROCESSING
        if self._frames:
            return CaptureState.ACCUMULATING
        return CaptureState.IDLE

    @property
    def is_processing(self) -> bool:
        return self._processing

    @property
    def buffered_ms(self) -> float:
        return frame_duration_ms(self._buffered_bytes, self.BYTES_PER_FRAME, self.FRAME_MS)

    async def wait_processed(self) -> None:
        """Wait for the in-flight transcription, if any, to finish."""
        task = self._process_task
        if task is not None and not task.done():
            await asyncio.shield(task)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _is_speech(self, frame: bytes) -> bool:
        if self.speech_energy_threshold <= 0:
            return True
        return compute_audio_energy(frame, "mulaw") >= self.speech_energy_threshold

    def _reset_buffer(self) -> None:
        self._frames = []
        self._buffered_bytes = 0
        self._last_audio_at = None

    def _begin_flush(self) -> None:
        audio = b"".join(self._frames)
        self._reset_buffer()
        self._processing = True
        self.flush_count += 1
        self._process_task = asyncio.create_task(self._process(audio))

    async def _process(self, mulaw: bytes) -> None:
        try:
            try:
                wav = build_wav(decode_to_linear_pcm(mulaw), sample_rate=TELEPHONY_SAMPLE_RATE)
                transcript = await self._asr.transcribe(
                    wav, content_type="audio/wav", language=self.language
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"[{self.call_id}] ASR error ({self._asr.name}): {e}")
                if self._session is not None:
                    self._session.add_log(LogSource.SYSTEM, f"ASR Error: {e}")
                return

            transcript = (transcript or "").strip()
            if not transcript:
                logger.debug(f"[{self.call_id}] Empty transcript, nothing to do")
                return

            if self._session is not None:
                self._session.add_log(LogSource.USER, transcript)
            if self._on_transcript is not None:
                try:
                    await self._on_transcript(transcript)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error(f"[{self.call_id}] Transcript handler error: {e}")
        finally:
            self._processing = False

    async def _monitor(self) -> None:
        interval = self.tick_ms / 1000
        while True:
            await asyncio.sleep(interval)
            self.check_silence()
