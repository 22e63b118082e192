"""OpenAI-compatible streaming LLM providers.

Uses the Chat Completions API with streaming so reply fragments can be
handed to speech synthesis before the whole reply is known. Any endpoint
that speaks the same API (Venice, local servers) works through
``base_url``.

Requires: pip install openai
API key: https://platform.openai.com/
"""

from __future__ import annotations

from typing import Any, AsyncIterator

from loguru import logger
from openai import AsyncOpenAI

from outdial.providers.base import BaseLLM, LLMChunk, Message


class OpenAILLM(BaseLLM):
    """OpenAI GPT streaming LLM provider.

    Args:
        api_key: OpenAI API key.
        model: Model identifier (default: "gpt-4o-mini").
        base_url: Optional custom API base URL (for compatible endpoints).
        organization: Optional OpenAI organization ID.
        max_retries: Max API retries (default: 2).
    """

    def __init__(
        self,
        api_key: str = "",
        model: str = "gpt-4o-mini",
        base_url: str | None = None,
        organization: str | None = None,
        max_retries: int = 2,
    ):
        self._model_name = model
        self._client = AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            organization=organization,
            max_retries=max_retries,
        )

    async def generate(
        self,
        messages: list[Message],
        temperature: float = 0.8,
        max_tokens: int = 150,
    ) -> AsyncIterator[LLMChunk]:
        """Stream a response, one LLMChunk per text delta.

        Errors from the API propagate to the caller.
        """
        kwargs: dict[str, Any] = {
            "model": self._model_name,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "temperature": temperature,
            "max_tokens": max_tokens,
            "stream": True,
        }

        logger.debug(f"{self.name} request: model={self._model_name}, messages={len(messages)}")

        stream = await self._client.chat.completions.create(**kwargs)
        input_tokens = 0
        output_tokens = 0

        async for chunk in stream:
            delta = chunk.choices[0].delta if chunk.choices else None
            if delta and delta.content:
                yield LLMChunk(text=delta.content)
            if getattr(chunk, "usage", None):
                input_tokens = chunk.usage.prompt_tokens
                output_tokens = chunk.usage.completion_tokens

        yield LLMChunk(is_final=True, input_tokens=input_tokens, output_tokens=output_tokens)

    async def close(self) -> None:
        """Close the OpenAI client."""
        await self._client.close()

    @property
    def model(self) -> str:
        return self._model_name


class VeniceLLM(OpenAILLM):
    """Venice AI through its OpenAI-compatible endpoint."""

    BASE_URL = "https://api.venice.ai/api/v1"

    def __init__(
        self,
        api_key: str = "",
        model: str = "llama-3.3-70b",
        base_url: str | None = None,
        max_retries: int = 2,
    ):
        super().__init__(
            api_key=api_key,
            model=model,
            base_url=base_url or self.BASE_URL,
            max_retries=max_retries,
        )
