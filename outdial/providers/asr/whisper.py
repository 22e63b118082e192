"""OpenAI Whisper transcription provider.

Sends each finished utterance to the audio transcription endpoint as a
WAV file.

Requires: pip install openai
API key: https://platform.openai.com/
"""

from __future__ import annotations

import io
import time

from loguru import logger
from openai import AsyncOpenAI

from outdial.providers.base import BaseASR


class WhisperASR(BaseASR):
    """OpenAI Whisper request/response transcription.

    Args:
        api_key: OpenAI API key.
        model: Transcription model (default: "whisper-1").
        base_url: Optional custom API base URL.
        max_retries: Max API retries (default: 2).
    """

    def __init__(
        self,
        api_key: str = "",
        model: str = "whisper-1",
        base_url: str | None = None,
        max_retries: int = 2,
    ):
        self._model = model
        self._client = AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            max_retries=max_retries,
        )

    async def transcribe(
        self,
        audio: bytes,
        content_type: str = "audio/wav",
        language: str = "en",
    ) -> str:
        start = time.time()

        # Whisper needs a file-like object with a name
        ext = "wav" if "wav" in content_type else content_type.rsplit("/", 1)[-1]
        audio_file = io.BytesIO(audio)
        audio_file.name = f"utterance.{ext}"

        response = await self._client.audio.transcriptions.create(
            model=self._model,
            file=audio_file,
            language=language,
        )

        transcript = (response.text or "").strip()
        latency_ms = int((time.time() - start) * 1000)
        logger.info(f"ASR Whisper: '{transcript[:50]}' latency={latency_ms}ms")
        return transcript

    async def close(self) -> None:
        await self._client.close()
