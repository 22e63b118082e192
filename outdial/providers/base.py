"""Base interfaces for AI providers (ASR, LLM, TTS).

All provider implementations inherit from these abstract base classes,
so the per-call pipeline can swap strategies through configuration
without touching its own code.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import AsyncIterator


# ---------------------------------------------------------------------------
# Data classes for provider communication
# ---------------------------------------------------------------------------

@dataclass
class LLMChunk:
    """A streaming chunk from an LLM response."""

    text: str = ""
    # End of response marker
    is_final: bool = False
    # Usage info (only on final chunk)
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class TTSChunk:
    """A chunk of synthesized audio from a TTS provider."""

    audio: bytes
    sample_rate: int = 8000
    # True once the backend has finished everything flushed so far
    is_final: bool = False


@dataclass
class Message:
    """A conversation message for the LLM."""

    role: str  # "system", "user", "assistant"
    content: str = ""


class ProviderError(RuntimeError):
    """An external speech or language service rejected a request."""


# ---------------------------------------------------------------------------
# Abstract Base Classes
# ---------------------------------------------------------------------------

class BaseASR(ABC):
    """Abstract base class for speech recognition providers.

    Transcription is request/response: the capture buffer hands over one
    finished utterance at a time as a self-describing audio container.
    """

    @abstractmethod
    async def transcribe(
        self,
        audio: bytes,
        content_type: str = "audio/wav",
        language: str = "en",
    ) -> str:
        """Transcribe one utterance.

        Args:
            audio: Encoded audio (a WAV file for the built-in pipeline).
            content_type: MIME type of ``audio``.
            language: Language hint.

        Returns:
            The best transcript, or an empty string for silence.

        Raises:
            Exception: Any transport or service error. The caller logs it.
        """
        ...

    async def close(self) -> None:
        """Release HTTP clients. Override if needed."""
        pass

    @property
    def name(self) -> str:
        """Provider name for logging."""
        return self.__class__.__name__


class BaseLLM(ABC):
    """Abstract base class for Large Language Model providers.

    Lifecycle:
        1. __init__(api_key, model, **config) — configure the provider
        2. generate(messages) — async iterator of LLMChunk objects
        3. close() — clean up any persistent connections
    """

    @abstractmethod
    async def generate(
        self,
        messages: list[Message],
        temperature: float = 0.8,
        max_tokens: int = 150,
    ) -> AsyncIterator[LLMChunk]:
        """Generate a streaming response from the LLM.

        Args:
            messages: System prompt followed by the conversation so far.
            temperature: Sampling temperature (0.0 - 2.0).
            max_tokens: Maximum tokens to generate.

        Yields:
            LLMChunk objects with streaming text. The last chunk has
            is_final=True.

        Raises:
            Exception: Any transport or service error. The caller logs it.
        """
        ...
        yield  # pragma: no cover

    async def close(self) -> None:
        """Clean up any persistent connections. Override if needed."""
        pass

    @property
    @abstractmethod
    def model(self) -> str:
        """The model identifier (e.g., 'gpt-4o-mini')."""
        ...

    @property
    def name(self) -> str:
        """Provider name for logging."""
        return self.__class__.__name__


class BaseTTS(ABC):
    """Abstract base class for streaming Text-to-Speech providers.

    One instance is one connection. Text goes in incrementally; audio comes
    out of ``chunks()`` as soon as the backend produces it.

    Lifecycle:
        1. __init__(api_key, voice_id, **config) — configure the provider
        2. connect() — open and authenticate the connection
        3. send_text(text) / flush() — feed text, mark end of turn
        4. chunks() — async iterator of TTSChunk objects, ends on close
        5. close() — tear down the connection
    """

    @abstractmethod
    async def connect(self) -> None:
        """Open and authenticate a connection to the TTS service."""
        ...

    @abstractmethod
    async def send_text(self, text: str) -> None:
        """Send a text fragment for synthesis."""
        ...

    @abstractmethod
    async def flush(self) -> None:
        """Signal end of turn so the backend finalizes trailing audio."""
        ...

    @abstractmethod
    def chunks(self) -> AsyncIterator[TTSChunk]:
        """Yield audio as it arrives.

        A chunk with is_final=True marks the end of a flushed turn. The
        iterator finishes when the connection closes, for any reason.
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Close the TTS connection and release resources."""
        ...

    @property
    @abstractmethod
    def sample_rate(self) -> int:
        """Output audio sample rate (e.g., 8000, 24000)."""
        ...

    @property
    @abstractmethod
    def codec(self) -> str:
        """Output audio codec ('mulaw' or 'pcm16')."""
        ...

    @property
    def name(self) -> str:
        """Provider name for logging."""
        return self.__class__.__name__
