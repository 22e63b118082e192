"""ElevenLabs streaming Text-to-Speech provider.

Uses ElevenLabs' WebSocket ``stream-input`` API. By default audio comes
back as 8 kHz mu-law, the format Twilio plays, so nothing needs
transcoding on the way out.

Requires: pip install websockets
API key: https://elevenlabs.io/
"""

from __future__ import annotations

import asyncio
import base64
import json
from typing import AsyncIterator
from urllib.parse import urlencode

import websockets
from loguru import logger

from outdial.providers.base import BaseTTS, ProviderError, TTSChunk


class ElevenLabsTTS(BaseTTS):
    """ElevenLabs real-time streaming TTS over one WebSocket.

    Text is sent incrementally and audio chunks are received as they're
    generated. ElevenLabs closes the socket after it has answered an
    end-of-stream message, so each instance normally serves one turn.

    Args:
        api_key: ElevenLabs API key.
        voice_id: Voice identifier.
        model_id: TTS model (default: "eleven_turbo_v2_5").
        output_format: Audio output format (default: "ulaw_8000").
        stability: Voice stability (0.0-1.0, default: 0.5).
        similarity_boost: Voice similarity (0.0-1.0, default: 0.75).
        optimize_streaming_latency: Latency optimization level (0-4, default: 3).
    """

    BASE_WS_URL = "wss://api.elevenlabs.io/v1/text-to-speech"

    def __init__(
        self,
        api_key: str = "",
        voice_id: str = "21m00Tcm4TlvDq8ikWAM",  # Rachel
        model_id: str = "eleven_turbo_v2_5",
        output_format: str = "ulaw_8000",
        stability: float = 0.5,
        similarity_boost: float = 0.75,
        optimize_streaming_latency: int = 3,
    ):
        self._api_key = api_key
        self._voice_id = voice_id
        self._model_id = model_id
        self._output_format = output_format
        self._stability = stability
        self._similarity_boost = similarity_boost
        self._optimize_streaming_latency = optimize_streaming_latency

        self._ws = None
        self._sample_rate_hz = self._parse_sample_rate(output_format)

    @property
    def url(self) -> str:
        query = urlencode(
            {
                "model_id": self._model_id,
                "output_format": self._output_format,
                "optimize_streaming_latency": self._optimize_streaming_latency,
            }
        )
        return f"{self.BASE_WS_URL}/{self._voice_id}/stream-input?{query}"

    async def connect(self) -> None:
        """Open the WebSocket and send the beginning-of-stream message."""
        if not self._api_key:
            raise ProviderError("ElevenLabs API key not configured")

        logger.debug(f"Connecting to ElevenLabs TTS (voice={self._voice_id}, model={self._model_id})")

        self._ws = await websockets.connect(
            self.url,
            additional_headers={"xi-api-key": self._api_key},
            ping_interval=5,
            ping_timeout=20,
        )

        bos_message = {
            "text": " ",
            "voice_settings": {
                "stability": self._stability,
                "similarity_boost": self._similarity_boost,
            },
            "xi_api_key": self._api_key,
        }
        await self._ws.send(json.dumps(bos_message))

    async def send_text(self, text: str) -> None:
        if self._ws is None:
            raise ProviderError("ElevenLabs TTS not connected")
        await self._ws.send(json.dumps({"text": text, "try_trigger_generation": True}))

    async def flush(self) -> None:
        """Send EOS so ElevenLabs generates whatever text it still holds."""
        if self._ws is None:
            raise ProviderError("ElevenLabs TTS not connected")
        await self._ws.send(json.dumps({"text": ""}))

    async def chunks(self) -> AsyncIterator[TTSChunk]:
        """Yield decoded audio until the socket closes."""
        if self._ws is None:
            return
        try:
            async for message in self._ws:
                if not isinstance(message, str):
                    continue
                data = json.loads(message)

                audio_b64 = data.get("audio")
                if audio_b64:
                    audio = base64.b64decode(audio_b64)
                    if audio:
                        yield TTSChunk(audio=audio, sample_rate=self._sample_rate_hz)

                if data.get("isFinal"):
                    yield TTSChunk(audio=b"", sample_rate=self._sample_rate_hz, is_final=True)

                if data.get("error") or data.get("message"):
                    logger.warning(f"ElevenLabs: {data.get('error') or data.get('message')}")
        except websockets.ConnectionClosed as e:
            logger.debug(f"ElevenLabs socket closed: {e}")

    async def close(self) -> None:
        """Close the ElevenLabs WebSocket connection."""
        ws, self._ws = self._ws, None
        if ws is None:
            return
        try:
            await asyncio.wait_for(ws.close(), timeout=2.0)
        except (asyncio.TimeoutError, websockets.WebSocketException, OSError) as e:
            logger.debug(f"ElevenLabs close: {e}")

    @property
    def sample_rate(self) -> int:
        return self._sample_rate_hz

    @property
    def codec(self) -> str:
        if self._output_format.startswith("ulaw"):
            return "mulaw"
        return "pcm16"

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    @staticmethod
    def _parse_sample_rate(output_format: str) -> int:
        """Extract sample rate from ElevenLabs output format string."""
        # Formats: pcm_16000, pcm_22050, pcm_24000, ulaw_8000, ...
        for part in output_format.split("_"):
            try:
                rate = int(part)
            except ValueError:
                continue
            if rate >= 8000:
                return rate
        return 8000
