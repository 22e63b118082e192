"""Shared fakes for the outdial test suite."""

from __future__ import annotations

import asyncio
from typing import AsyncIterator

import pytest

from outdial.providers.base import BaseASR, BaseLLM, BaseTTS, LLMChunk, Message, TTSChunk
from outdial.session import CallSession


class FakeASR(BaseASR):
    """Returns canned transcripts in order; an Exception entry is raised."""

    def __init__(self, transcripts=None, gate: asyncio.Event | None = None):
        self.transcripts = list(transcripts or [])
        self.calls: list[tuple[bytes, str, str]] = []
        self.gate = gate
        self.closed = False

    async def transcribe(self, audio: bytes, content_type: str = "audio/wav", language: str = "en") -> str:
        self.calls.append((audio, content_type, language))
        if self.gate is not None:
            await self.gate.wait()
        result = self.transcripts.pop(0) if self.transcripts else ""
        if isinstance(result, Exception):
            raise result
        return result

    async def close(self) -> None:
        self.closed = True


class FakeLLM(BaseLLM):
    """Streams canned replies word by word; an Exception entry is raised."""

    def __init__(self, replies=None, gate: asyncio.Event | None = None):
        self.replies = list(replies or [])
        self.requests: list[list[Message]] = []
        self.gate = gate
        self.closed = False

    async def generate(
        self,
        messages: list[Message],
        temperature: float = 0.8,
        max_tokens: int = 150,
    ) -> AsyncIterator[LLMChunk]:
        self.requests.append(list(messages))
        reply = self.replies.pop(0) if self.replies else ""
        if isinstance(reply, Exception):
            raise reply
        words = reply.split(" ")
        for i, word in enumerate(words):
            yield LLMChunk(text=word if i == 0 else " " + word)
            if i == 0 and self.gate is not None:
                await self.gate.wait()
        yield LLMChunk(is_final=True, input_tokens=10, output_tokens=len(words))

    async def close(self) -> None:
        self.closed = True

    @property
    def model(self) -> str:
        return "fake-model"


class FakeTTS(BaseTTS):
    """In-memory TTS connection driven by the test.

    ``emit`` delivers audio, ``drop`` simulates the remote side closing.
    With ``auto_final`` every flush produces one audio chunk and a final
    chunk.
    """

    def __init__(self, fail_connect: bool = False, auto_final: bool = False, codec: str = "mulaw"):
        self.fail_connect = fail_connect
        self.auto_final = auto_final
        self._codec = codec
        self.sent: list[str] = []
        self.flushes = 0
        self.connected = False
        self.closed = False
        self._queue: asyncio.Queue[TTSChunk | None] = asyncio.Queue()

    async def connect(self) -> None:
        if self.fail_connect:
            raise ConnectionError("connection refused")
        self.connected = True

    async def send_text(self, text: str) -> None:
        if self.closed:
            raise ConnectionError("closed")
        self.sent.append(text)

    async def flush(self) -> None:
        if self.closed:
            raise ConnectionError("closed")
        self.flushes += 1
        if self.auto_final:
            self.emit(b"\x00" * 160)
            self.emit(b"", is_final=True)

    def emit(self, audio: bytes, is_final: bool = False, sample_rate: int = 8000) -> None:
        self._queue.put_nowait(TTSChunk(audio=audio, sample_rate=sample_rate, is_final=is_final))

    def drop(self) -> None:
        self._queue.put_nowait(None)

    async def chunks(self) -> AsyncIterator[TTSChunk]:
        while True:
            chunk = await self._queue.get()
            if chunk is None:
                return
            yield chunk

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._queue.put_nowait(None)

    @property
    def sample_rate(self) -> int:
        return 8000

    @property
    def codec(self) -> str:
        return self._codec


class FakeTTSFactory:
    """Builds FakeTTS connections and remembers them.

    ``failures`` connections in a row fail to connect before one succeeds.
    """

    def __init__(self, failures: int = 0, **kwargs):
        self.failures = failures
        self.kwargs = kwargs
        self.instances: list[FakeTTS] = []

    def __call__(self) -> FakeTTS:
        fail = len(self.instances) < self.failures
        tts = FakeTTS(fail_connect=fail, **self.kwargs)
        self.instances.append(tts)
        return tts

    @property
    def live(self) -> FakeTTS | None:
        for tts in reversed(self.instances):
            if tts.connected and not tts.closed:
                return tts
        return None


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def settle(rounds: int = 10) -> None:
    """Let background tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def session() -> CallSession:
    return CallSession(
        call_id="CA123",
        theme="A confused pizza delivery driver",
        outline="1. Hi there\n2. Wait, really?\n3. Never mind, bye",
        voice_id="voice-1",
        to_number="+15550001111",
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
