"""Turn generator: the LLM front-end of a call.

Each finished callee utterance becomes one LLM turn:

1. Stream a reply from the LLM using the persona prompt and history
2. Forward reply fragments to the synthesis stream as they arrive
3. Flush and log the assembled reply
4. End the call on a stop word from either side, otherwise advance the
   script once the reply has finished playing
"""

from __future__ import annotations

import asyncio

from loguru import logger

from outdial.pipeline.context import ConversationContext
from outdial.pipeline.script import ConversationScript
from outdial.pipeline.synthesis import SynthesisStream
from outdial.prompts import beat_steering_note, get_system_prompt
from outdial.providers.base import BaseLLM
from outdial.session import CallSession, LogSource


class TurnGenerator:
    """Generates agent replies for one call.

    Args:
        session: The call's session.
        llm: Language model backend.
        synthesis: The call's synthesis stream.
        script: The call's script engine. Its beat callback is bound here.
        temperature: Sampling temperature (default: 0.8).
        max_tokens: Reply length cap (default: 150).
        max_history_messages: History kept for the LLM (default: 50).
        playback_timeout_seconds: Longest wait for a reply to finish playing
            before the script is advanced anyway.
    """

    def __init__(
        self,
        session: CallSession,
        llm: BaseLLM,
        synthesis: SynthesisStream,
        script: ConversationScript,
        temperature: float = 0.8,
        max_tokens: int = 150,
        max_history_messages: int = 50,
        playback_timeout_seconds: float = 30.0,
    ):
        self._session = session
        self._llm = llm
        self._synthesis = synthesis
        self._script = script
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.playback_timeout_seconds = playback_timeout_seconds

        self.context = ConversationContext(
            system_prompt=get_system_prompt(session.theme, session.outline),
            max_messages=max_history_messages,
        )
        script.set_beat_callback(self.on_beat)

        self._active_turn: asyncio.Task | None = None
        self._active_text = ""

    @property
    def call_id(self) -> str:
        return self._session.call_id

    @property
    def active_turn(self) -> asyncio.Task | None:
        """The turn currently being generated, if any."""
        if self._active_turn is not None and self._active_turn.done():
            return None
        return self._active_turn

    # ------------------------------------------------------------------
    # Conversation lifecycle
    # ------------------------------------------------------------------

    async def start_conversation(self) -> None:
        """Open the call with the first beat."""
        await self._script.send_next_beat()

    def stop_conversation(self) -> None:
        """Forget the conversation so far."""
        self.context.clear()

    async def stop(self) -> None:
        """Cancel the active turn and clear the history."""
        await self._cancel_active_turn()
        self.stop_conversation()

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def submit_user_text(self, text: str, log: bool = True) -> asyncio.Task:
        """Start a turn for ``text`` in the background.

        A turn still running for an earlier utterance is cancelled first and
        anything it already sent to the synthesis stream is dropped. A stop
        word in the abandoned utterance still ends the call.
        """
        if self.active_turn is not None:
            logger.debug(f"[{self.call_id}] New utterance, abandoning previous turn")
            abandoned = self._active_text
            await self._cancel_active_turn()
            self._synthesis.interrupt()
            await self._stop_if_requested(abandoned)
        self._active_text = text
        self._active_turn = asyncio.create_task(self.handle_user_text(text, log=log))
        return self._active_turn

    async def handle_user_text(self, text: str, log: bool = True) -> None:
        """Generate, speak and log the agent's reply to one utterance."""
        text = text.strip()
        if not text:
            return
        if log:
            self._session.add_log(LogSource.USER, text)
        if self._script.stopped:
            logger.debug(f"[{self.call_id}] Call is closing, not replying")
            return

        self.context.add_user_message(text)
        generation = self._synthesis.generation
        reply = ""
        completed = False

        try:
            async for chunk in self._llm.generate(
                messages=self.context.get_messages(),
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            ):
                if self._synthesis.generation != generation:
                    # Interrupted while streaming; the rest goes nowhere.
                    self.context.add_interrupted_reply(reply)
                    reply = ""
                    break

                if chunk.text:
                    reply += chunk.text
                    await self._synthesis.send_text(chunk.text)

                if chunk.is_final:
                    self.context.update_token_usage(chunk.input_tokens, chunk.output_tokens)
            else:
                reply = reply.strip()
                if reply:
                    self.context.add_assistant_message(reply)
                    await self._synthesis.flush()
                    self._session.add_log(LogSource.AGENT, reply)
                    completed = True
                else:
                    logger.warning(f"[{self.call_id}] LLM returned an empty reply")

        except asyncio.CancelledError:
            self.context.add_interrupted_reply(reply)
            raise
        except Exception as e:
            logger.error(f"[{self.call_id}] LLM error ({self._llm.name}): {e}")
            self._session.add_log(LogSource.SYSTEM, f"Error: {e}")
            reply = ""

        # The caller's words count however the reply ended.
        if await self._stop_if_requested(text, reply):
            return
        if not completed:
            return

        # Beats never cut into the agent's own speech.
        await self._synthesis.wait_until_idle(self.playback_timeout_seconds)
        if self._synthesis.generation != generation:
            return
        await self._script.send_next_beat()

    async def on_beat(self, beat: str, spoken: bool) -> None:
        """Record a consumed beat in the history."""
        if spoken:
            self.context.add_assistant_message(beat)
        else:
            index = self._script.state.current_beat_index
            self.context.add_steering_note(beat_steering_note(index, beat))

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _cancel_active_turn(self) -> None:
        task, self._active_turn = self._active_turn, None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _stop_if_requested(self, text: str, reply: str = "") -> bool:
        """End the call if either side used a stop word."""
        if not (self._script.is_stop_word(text) or self._script.is_stop_word(reply)):
            return False
        logger.info(f"[{self.call_id}] Stop word detected, ending call")
        await self._script.send_stop()
        return True
