"""LLM history for one call.

The persona prompt is held apart from the running history and is always
sent first; trimming only ever drops history.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from loguru import logger

from outdial.providers.base import Message

INTERRUPTED_MARKER = "[interrupted]"


@dataclass
class ConversationContext:
    """Messages sent to the LLM on every turn.

    Args:
        system_prompt: The persona and outline prompt.
        max_messages: Cap on messages sent, persona included (default: 50).
        max_context_chars: Approximate cap on characters sent (default: 32000).
    """

    system_prompt: str = ""
    max_messages: int = 50
    max_context_chars: int = 32000

    _history: list[Message] = field(default_factory=list)
    _input_tokens: int = 0
    _output_tokens: int = 0

    def add_user_message(self, text: str) -> None:
        """Something the callee said."""
        self._append("user", text)
        logger.debug(f"Context: caller said {len(text)} chars")

    def add_assistant_message(self, text: str) -> None:
        """Something the agent said. Blank replies are not recorded."""
        if text.strip():
            self._append("assistant", text)

    def add_interrupted_reply(self, partial: str) -> None:
        """Record the part of a reply the callee talked over."""
        partial = partial.strip()
        if partial:
            self._append("assistant", f"{partial} {INTERRUPTED_MARKER}")

    def add_steering_note(self, text: str) -> None:
        """Guidance for the model that is never spoken."""
        self._append("system", text)

    def get_messages(self) -> list[Message]:
        return self._persona() + list(self._history)

    def update_token_usage(self, input_tokens: int, output_tokens: int) -> None:
        self._input_tokens += input_tokens
        self._output_tokens += output_tokens

    @property
    def total_tokens(self) -> int:
        return self._input_tokens + self._output_tokens

    @property
    def message_count(self) -> int:
        return len(self._persona()) + len(self._history)

    @property
    def last_assistant_message(self) -> str:
        return next((m.content for m in reversed(self._history) if m.role == "assistant"), "")

    def clear(self) -> None:
        """Forget the call so far; the persona stays."""
        self._history.clear()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _persona(self) -> list[Message]:
        return [Message(role="system", content=self.system_prompt)] if self.system_prompt else []

    def _append(self, role: str, text: str) -> None:
        self._history.append(Message(role=role, content=text))
        self._trim()

    def _trim(self) -> None:
        budget = max(self.max_messages - len(self._persona()), 1)
        if len(self._history) > budget:
            del self._history[:-budget]
            logger.debug(f"Context trimmed to {self.message_count} messages")

        chars = len(self.system_prompt) + sum(len(m.content) for m in self._history)
        while chars > self.max_context_chars and len(self._history) > 1:
            chars -= len(self._history.pop(0).content)
