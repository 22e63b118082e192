"""Anthropic Claude streaming LLM provider.

Uses the Anthropic Messages API with streaming for real-time response
generation.

Requires: pip install outdial[anthropic]
API key: https://console.anthropic.com/
"""

from __future__ import annotations

from typing import Any, AsyncIterator

from loguru import logger

from outdial.providers.base import BaseLLM, LLMChunk, Message

try:
    from anthropic import AsyncAnthropic
except ImportError:
    AsyncAnthropic = None  # type: ignore

CALL_ANSWERED = "(The callee has picked up.)"


class AnthropicLLM(BaseLLM):
    """Anthropic Claude streaming LLM provider.

    Args:
        api_key: Anthropic API key.
        model: Model identifier (default: "claude-sonnet-4-20250514").
        max_retries: Max API retries (default: 2).
    """

    def __init__(
        self,
        api_key: str = "",
        model: str = "claude-sonnet-4-20250514",
        max_retries: int = 2,
    ):
        if AsyncAnthropic is None:
            raise ImportError(
                "anthropic is required for AnthropicLLM. "
                "Install with: pip install outdial[anthropic]"
            )

        self._model_name = model
        self._client = AsyncAnthropic(
            api_key=api_key,
            max_retries=max_retries,
        )

    async def generate(
        self,
        messages: list[Message],
        temperature: float = 0.8,
        max_tokens: int = 150,
    ) -> AsyncIterator[LLMChunk]:
        """Stream a response from Claude.

        The system message goes in Anthropic's separate ``system`` field.
        Errors from the API propagate to the caller.
        """
        system_prompt, anthropic_messages = self._convert_messages(messages)

        kwargs: dict[str, Any] = {
            "model": self._model_name,
            "messages": anthropic_messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        if system_prompt:
            kwargs["system"] = system_prompt

        logger.debug(
            f"Anthropic request: model={self._model_name}, messages={len(anthropic_messages)}"
        )

        input_tokens = 0
        output_tokens = 0
        async with self._client.messages.stream(**kwargs) as stream:
            async for event in stream:
                if event.type == "content_block_delta" and event.delta.type == "text_delta":
                    yield LLMChunk(text=event.delta.text)
                elif event.type == "message_start":
                    if event.message and event.message.usage:
                        input_tokens = event.message.usage.input_tokens
                elif event.type == "message_delta":
                    if getattr(event, "usage", None):
                        output_tokens = event.usage.output_tokens

        yield LLMChunk(is_final=True, input_tokens=input_tokens, output_tokens=output_tokens)

    async def close(self) -> None:
        """Close the Anthropic client."""
        await self._client.close()

    @property
    def model(self) -> str:
        return self._model_name

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    @staticmethod
    def _convert_messages(messages: list[Message]) -> tuple[str, list[dict[str, Any]]]:
        """Split out the system prompt and merge consecutive same-role turns.

        The Messages API rejects two user messages in a row, which happens
        when steering notes are queued ahead of a caller utterance.
        """
        system_parts: list[str] = []
        converted: list[dict[str, Any]] = []

        for msg in messages:
            if msg.role == "system":
                system_parts.append(msg.content)
                continue
            if converted and converted[-1]["role"] == msg.role:
                converted[-1]["content"] += "\n\n" + msg.content
            else:
                converted.append({"role": msg.role, "content": msg.content})

        # The opening line is the agent's, but the API wants a user turn first.
        if converted and converted[0]["role"] == "assistant":
            converted.insert(0, {"role": "user", "content": CALL_ANSWERED})

        return "\n\n".join(system_parts), converted
