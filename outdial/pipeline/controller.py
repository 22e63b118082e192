"""Call audio session controller.

Binds one Twilio media stream connection to one set of per-call
components and runs the call until the stream goes away:

    Twilio WS ──► TwilioSerializer ──► SpeechCaptureBuffer ──► ASR
                                               │
                                               ▼
    Twilio WS ◄── SynthesisStream ◄──── TurnGenerator ◄──► LLM
                       ▲                       │
                       └── ConversationScript ◄┘

Audio the caller sends while the agent is speaking interrupts the agent
(barge-in). Teardown runs exactly once however the stream ends.
"""

from __future__ import annotations

import asyncio
from typing import Any, Protocol

from loguru import logger

from outdial.config import OutdialConfig
from outdial.core.events import (
    MarkReceived,
    MediaFrame,
    StreamConnected,
    StreamStarted,
    StreamStopped,
    Track,
)
from outdial.pipeline.capture import SpeechCaptureBuffer
from outdial.pipeline.script import ConversationScript
from outdial.pipeline.synthesis import SynthesisStream
from outdial.pipeline.turns import TurnGenerator
from outdial.providers.base import BaseASR, BaseLLM, BaseTTS
from outdial.providers.registry import ProviderRegistry, provider_registry
from outdial.serializers.twilio import TwilioSerializer
from outdial.session import BargeInDetector, CallSession, LogSource, SessionStore, session_store

# WebSocket close codes
POLICY_VIOLATION = 1008
INTERNAL_ERROR = 1011


class TransportClosed(ConnectionError):
    """The media stream connection was closed by the remote side."""


class MediaTransport(Protocol):
    """What the controller needs from the media stream connection."""

    async def recv(self) -> str | bytes:
        """Next frame. Raises TransportClosed once the peer has gone."""
        ...

    async def send(self, data: str) -> None: ...

    async def close(self, code: int = 1000, reason: str = "") -> None: ...


class CallHangup(Protocol):
    async def hangup(self, call_sid: str) -> None: ...


class CallAudioSession:
    """Runs the audio side of one outbound call.

    Args:
        transport: The accepted media stream connection.
        call_id: Twilio call SID from the stream URL.
        config: Outdial configuration.
        store: Session registry (default: the process-wide store).
        providers: Provider registry (default: the process-wide registry).
        call_control: Used to hang up after a closing line, if enabled.
    """

    def __init__(
        self,
        transport: MediaTransport,
        call_id: str,
        config: OutdialConfig | None = None,
        store: SessionStore | None = None,
        providers: ProviderRegistry | None = None,
        call_control: CallHangup | None = None,
    ):
        self.transport = transport
        self.call_id = call_id
        self.config = config or OutdialConfig()
        self.store = store if store is not None else session_store
        self.providers = providers or provider_registry
        self.call_control = call_control

        self.serializer = TwilioSerializer(call_sid=call_id)
        self.session: CallSession | None = None
        self.synthesis: SynthesisStream | None = None
        self.script: ConversationScript | None = None
        self.turns: TurnGenerator | None = None
        self.capture: SpeechCaptureBuffer | None = None
        self._asr: BaseASR | None = None
        self._llm: BaseLLM | None = None

        barge_in = self.config.barge_in
        self._barge_in_detector = (
            BargeInDetector(
                energy_threshold=barge_in.energy_threshold,
                min_speech_frames=barge_in.min_speech_frames,
            )
            if barge_in.vad_enabled
            else None
        )

        self._side_tasks: set[asyncio.Task] = set()
        self._torn_down = False

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Serve the media stream until it closes."""
        session = self.store.get(self.call_id)
        if session is None:
            logger.warning(f"Media stream for unknown call {self.call_id!r}, refusing")
            await self._close_transport(POLICY_VIOLATION, "Call session not found")
            return
        self.session = session

        try:
            self._build(session)
        except Exception as e:
            logger.error(f"[{self.call_id}] Call setup failed: {e}")
            session.add_log(LogSource.SYSTEM, f"Error: {e}")
            await self._close_transport(INTERNAL_ERROR, "Call setup failed")
            self.store.schedule_delete(self.call_id, self.config.session.cleanup_delay_seconds)
            return

        logger.info(f"[{self.call_id}] Media stream attached")
        session.add_log(LogSource.SYSTEM, "Media stream connected.")
        try:
            while not self._torn_down:
                raw = await self.transport.recv()
                await self.handle_message(raw)
        except TransportClosed:
            logger.info(f"[{self.call_id}] Media stream disconnected")
        except Exception as e:
            logger.error(f"[{self.call_id}] Media stream error: {e}")
        finally:
            await self.teardown()

    def _build(self, session: CallSession) -> None:
        config = self.config

        self._asr = self.providers.create_asr(
            config.providers.asr.provider, **config.provider_kwargs("asr")
        )
        self._llm = self.providers.create_llm(
            config.providers.llm.provider, **config.provider_kwargs("llm")
        )
        self.synthesis = SynthesisStream(
            tts_factory=lambda: self._create_tts(session),
            audio_sink=self._send_audio,
            session=session,
            max_reconnect_attempts=config.synthesis.max_reconnect_attempts,
            reconnect_backoff_seconds=config.synthesis.reconnect_backoff_seconds,
            on_interrupt=self._on_interrupt,
        )
        self.script = ConversationScript(
            session,
            self.synthesis,
            max_call_seconds=config.max_call_seconds,
            stop_words=config.script.stop_words,
            stop_message=config.script.stop_message,
            timeout_message=config.script.timeout_message,
            on_stop=self._on_script_stop,
        )
        self.turns = TurnGenerator(
            session,
            self._llm,
            self.synthesis,
            self.script,
            temperature=config.llm.temperature,
            max_tokens=config.llm.max_tokens,
            max_history_messages=config.llm.max_history_messages,
        )
        capture = config.capture
        self.capture = SpeechCaptureBuffer(
            self._asr,
            session,
            on_transcript=self._on_transcript,
            silence_threshold_ms=capture.silence_threshold_ms,
            min_buffer_ms=capture.min_buffer_ms,
            max_buffer_ms=capture.max_buffer_ms,
            tick_ms=capture.tick_ms,
            language=capture.language,
            speech_energy_threshold=capture.speech_energy_threshold,
        )

        self.synthesis.start()
        self.capture.start()

    # ------------------------------------------------------------------
    # Inbound frames
    # ------------------------------------------------------------------

    async def handle_message(self, raw: str | bytes | dict) -> None:
        """Process one inbound media stream frame. Malformed frames are skipped."""
        try:
            events = await self.serializer.deserialize(raw)
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"[{self.call_id}] Skipping malformed frame: {e}")
            return

        for event in events:
            if isinstance(event, MediaFrame):
                self._on_media(event)
            elif isinstance(event, StreamStarted):
                await self._on_stream_started(event)
            elif isinstance(event, StreamConnected):
                logger.debug(f"[{self.call_id}] Twilio connected (protocol {event.protocol})")
            elif isinstance(event, MarkReceived):
                logger.debug(f"[{self.call_id}] Mark reached: {event.name}")
            elif isinstance(event, StreamStopped):
                logger.info(f"[{self.call_id}] Twilio stopped the media stream")
                await self.teardown()

    async def _on_stream_started(self, event: StreamStarted) -> None:
        logger.info(f"[{self.call_id}] Media stream started (stream {event.stream_sid})")
        self.script.start_watchdog()
        try:
            await self.turns.start_conversation()
        except Exception as e:
            logger.error(f"[{self.call_id}] Failed to open the conversation: {e}")
            self.session.add_log(LogSource.SYSTEM, f"Error: {e}")

    def _on_media(self, frame: MediaFrame) -> None:
        if frame.track != Track.INBOUND or not frame.data:
            return

        if self.synthesis.is_playing():
            if self._is_barge_in(frame.data):
                logger.info(f"[{self.call_id}] Barge-in, interrupting agent")
                self.synthesis.interrupt()
        elif self._barge_in_detector is not None:
            self._barge_in_detector.reset()

        # Capture is never skipped, barge-in or not.
        self.capture.add_audio_chunk(frame.data)

    def _is_barge_in(self, audio: bytes) -> bool:
        if self._barge_in_detector is None:
            return True
        if self._barge_in_detector.check(audio):
            self._barge_in_detector.reset()
            return True
        return False

    # ------------------------------------------------------------------
    # Component callbacks
    # ------------------------------------------------------------------

    async def _on_transcript(self, text: str) -> None:
        # The capture buffer has already logged the utterance.
        await self.turns.submit_user_text(text, log=False)

    async def _send_audio(self, audio: bytes) -> None:
        if self._torn_down:
            return
        if not self.serializer.stream_sid:
            logger.debug(f"[{self.call_id}] No stream yet, dropping {len(audio)} bytes")
            return
        await self.transport.send(self.serializer.build_media_message(audio))

    def _on_interrupt(self) -> None:
        if self._torn_down or not self.config.barge_in.send_clear:
            return
        if not self.serializer.stream_sid:
            return
        self._spawn(self._send_clear())

    async def _send_clear(self) -> None:
        try:
            await self.transport.send(self.serializer.build_clear_message())
        except Exception as e:
            logger.debug(f"[{self.call_id}] Could not send clear: {e}")

    async def _on_script_stop(self, message: str) -> None:
        if self.config.telephony.hangup_after_stop and self.call_control is not None:
            self._spawn(self._hangup_after_closing_line())

    async def _hangup_after_closing_line(self) -> None:
        await self.synthesis.wait_until_idle(self.config.telephony.hangup_wait_seconds)
        try:
            await self.call_control.hangup(self.call_id)
        except Exception as e:
            logger.error(f"[{self.call_id}] Hangup failed: {e}")
            self.session.add_log(LogSource.SYSTEM, f"Error: {e}")

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def teardown(self) -> None:
        """Stop every per-call component. Runs once; later calls do nothing."""
        if self._torn_down or self.session is None:
            return
        self._torn_down = True
        logger.info(f"[{self.call_id}] Tearing down call audio session")

        if self.turns is not None:
            await self.turns.stop()
        if self.synthesis is not None:
            await self.synthesis.stop()
        if self.capture is not None:
            await self.capture.stop()
        if self.script is not None:
            self.script.stop()

        tasks = [t for t in self._side_tasks if t is not asyncio.current_task()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        for provider in (self._asr, self._llm):
            if provider is None:
                continue
            try:
                await provider.close()
            except Exception as e:
                logger.debug(f"[{self.call_id}] Provider close error: {e}")

        self.session.add_log(LogSource.SYSTEM, "Media stream closed.")
        self.store.schedule_delete(self.call_id, self.config.session.cleanup_delay_seconds)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _tts_kwargs(self, session: CallSession) -> dict[str, Any]:
        kwargs = self.config.provider_kwargs("tts")
        if session.voice_id:
            kwargs["voice_id"] = session.voice_id
        elif not kwargs.get("voice_id") and self.config.credentials.elevenlabs_voice_id:
            if self.config.providers.tts.provider == "elevenlabs":
                kwargs["voice_id"] = self.config.credentials.elevenlabs_voice_id
        return kwargs

    def _create_tts(self, session: CallSession) -> BaseTTS:
        return self.providers.create_tts(
            self.config.providers.tts.provider, **self._tts_kwargs(session)
        )

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._side_tasks.add(task)
        task.add_done_callback(self._side_tasks.discard)
        return task

    async def _close_transport(self, code: int, reason: str) -> None:
        try:
            await self.transport.close(code, reason)
        except Exception as e:
            logger.debug(f"[{self.call_id}] Transport close error: {e}")
