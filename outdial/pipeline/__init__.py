"""Per-call pipeline: capture -> ASR -> LLM -> TTS, paced by the outline.

Usage:
    from outdial.pipeline import CallAudioSession

    call = CallAudioSession(transport, call_sid, config)
    await call.run()
"""

from outdial.pipeline.capture import CaptureState, SpeechCaptureBuffer
from outdial.pipeline.context import ConversationContext
from outdial.pipeline.controller import CallAudioSession, TransportClosed
from outdial.pipeline.script import STOP_WORDS, ConversationScript, parse_beats
from outdial.pipeline.synthesis import SynthesisStream
from outdial.pipeline.turns import TurnGenerator

__all__ = [
    "CallAudioSession",
    "CaptureState",
    "ConversationContext",
    "ConversationScript",
    "STOP_WORDS",
    "SpeechCaptureBuffer",
    "SynthesisStream",
    "TransportClosed",
    "TurnGenerator",
    "parse_beats",
]
