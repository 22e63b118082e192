"""Deepgram pre-recorded transcription provider.

Posts each finished utterance to Deepgram's batch ``/v1/listen`` endpoint.

Requires: pip install httpx
API key: https://console.deepgram.com/
"""

from __future__ import annotations

import time
from typing import Any

import httpx
from loguru import logger

from outdial.providers.base import BaseASR, ProviderError


class DeepgramASR(BaseASR):
    """Deepgram request/response transcription.

    Args:
        api_key: Deepgram API key.
        model: Deepgram model (default: "nova-2").
        smart_format: Enable Deepgram smart formatting (default: True).
        timeout: Request timeout in seconds (default: 30).
    """

    URL = "https://api.deepgram.com/v1/listen"

    def __init__(
        self,
        api_key: str = "",
        model: str = "nova-2",
        smart_format: bool = True,
        timeout: float = 30.0,
    ):
        self._api_key = api_key
        self._model = model
        self._smart_format = smart_format
        self._client = httpx.AsyncClient(timeout=timeout)

    async def transcribe(
        self,
        audio: bytes,
        content_type: str = "audio/wav",
        language: str = "en",
    ) -> str:
        if not self._api_key:
            raise ProviderError("Deepgram API key not configured")

        start = time.time()
        params = {
            "model": self._model,
            "language": language,
            "smart_format": "true" if self._smart_format else "false",
            "punctuate": "true",
        }
        headers = {
            "Authorization": f"Token {self._api_key}",
            "Content-Type": content_type,
        }

        resp = await self._client.post(self.URL, params=params, headers=headers, content=audio)
        resp.raise_for_status()
        transcript = self._parse_transcript(resp.json())

        latency_ms = int((time.time() - start) * 1000)
        logger.info(f"ASR Deepgram: '{transcript[:50]}' latency={latency_ms}ms")
        return transcript

    async def close(self) -> None:
        await self._client.aclose()

    @staticmethod
    def _parse_transcript(data: dict[str, Any]) -> str:
        channels = data.get("results", {}).get("channels") or [{}]
        alternatives = channels[0].get("alternatives") or [{}]
        return (alternatives[0].get("transcript") or "").strip()
