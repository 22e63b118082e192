"""OpenAI Text-to-Speech provider.

OpenAI's speech endpoint is request/response, so text is buffered until
the turn is flushed and then synthesized in one streamed request. Audio
arrives as 24 kHz PCM16 and is transcoded to mu-law by the synthesis
stream.

Requires: pip install openai
API key: https://platform.openai.com/
"""

from __future__ import annotations

import asyncio
from typing import AsyncIterator

from loguru import logger
from openai import AsyncOpenAI

from outdial.providers.base import BaseTTS, ProviderError, TTSChunk

OPENAI_VOICES = ("alloy", "echo", "fable", "onyx", "nova", "shimmer")
OPENAI_PCM_SAMPLE_RATE = 24000


class OpenAITTS(BaseTTS):
    """OpenAI speech synthesis behind the streaming TTS interface.

    Args:
        api_key: OpenAI API key.
        voice_id: One of the OpenAI voices; anything else falls back to "nova".
        model: "tts-1" (fast) or "tts-1-hd" (quality).
        speed: Speaking rate (0.25 - 4.0).
        chunk_size: Bytes per yielded audio chunk.
    """

    def __init__(
        self,
        api_key: str = "",
        voice_id: str = "nova",
        model: str = "tts-1",
        speed: float = 1.0,
        chunk_size: int = 4800,
        base_url: str | None = None,
    ):
        self._voice = voice_id if voice_id in OPENAI_VOICES else "nova"
        self._model = model
        self._speed = speed
        self._chunk_size = chunk_size
        self._client = AsyncOpenAI(api_key=api_key, base_url=base_url)

        self._buffer: list[str] = []
        self._queue: asyncio.Queue[TTSChunk | None] = asyncio.Queue()
        self._request_lock = asyncio.Lock()
        self._requests: set[asyncio.Task] = set()
        self._open = False
        self._closed = False

    async def connect(self) -> None:
        self._open = True

    async def send_text(self, text: str) -> None:
        if not self._open:
            raise ProviderError("OpenAI TTS not connected")
        self._buffer.append(text)

    async def flush(self) -> None:
        """Start synthesizing everything sent since the last flush."""
        if not self._open:
            raise ProviderError("OpenAI TTS not connected")
        text = "".join(self._buffer).strip()
        self._buffer.clear()
        if not text:
            await self._queue.put(TTSChunk(audio=b"", sample_rate=OPENAI_PCM_SAMPLE_RATE, is_final=True))
            return
        task = asyncio.create_task(self._synthesize(text))
        self._requests.add(task)
        task.add_done_callback(self._requests.discard)

    async def chunks(self) -> AsyncIterator[TTSChunk]:
        while True:
            chunk = await self._queue.get()
            if chunk is None:
                return
            yield chunk

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._open = False
        for task in list(self._requests):
            task.cancel()
        await self._queue.put(None)
        await self._client.close()

    @property
    def sample_rate(self) -> int:
        return OPENAI_PCM_SAMPLE_RATE

    @property
    def codec(self) -> str:
        return "pcm16"

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _synthesize(self, text: str) -> None:
        # One request at a time keeps turns in order.
        async with self._request_lock:
            try:
                async with self._client.audio.speech.with_streaming_response.create(
                    model=self._model,
                    voice=self._voice,
                    input=text,
                    response_format="pcm",
                    speed=self._speed,
                ) as response:
                    async for data in response.iter_bytes(self._chunk_size):
                        await self._queue.put(
                            TTSChunk(audio=data, sample_rate=OPENAI_PCM_SAMPLE_RATE)
                        )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # Closing the stream makes the synthesis stream reconnect.
                logger.error(f"OpenAI TTS error: {e}")
                self._open = False
                await self._queue.put(None)
                return
            await self._queue.put(
                TTSChunk(audio=b"", sample_rate=OPENAI_PCM_SAMPLE_RATE, is_final=True)
            )
