"""outdial - Outbound AI voice calls over Twilio Media Streams.

An operator places a call with a persona (theme) and an outline of talking
points (beats). Once the callee picks up, the call's audio is bridged to
speech recognition, a language model and streaming speech synthesis, and
the transcript can be polled while the call runs.

Quick start:
    $ pip install outdial
    $ outdial init            # generates outdial.yaml
    $ outdial run --config outdial.yaml

Programmatic:
    from outdial import create_app, load_config

    app = create_app(load_config("outdial.yaml"))
"""

__version__ = "0.1.0"

from outdial.config import ConfigError, OutdialConfig, load_config
from outdial.session import CallSession, LogEntry, LogSource, SessionStore, session_store
from outdial.pipeline import (
    CallAudioSession,
    ConversationScript,
    SpeechCaptureBuffer,
    SynthesisStream,
    TurnGenerator,
    parse_beats,
)
from outdial.providers import BaseASR, BaseLLM, BaseTTS, ProviderRegistry, provider_registry


def create_app(*args, **kwargs):
    """Create the FastAPI application (see :func:`outdial.server.create_app`)."""
    from outdial.server import create_app as _create_app

    return _create_app(*args, **kwargs)


__all__ = [
    "__version__",
    "BaseASR",
    "BaseLLM",
    "BaseTTS",
    "CallAudioSession",
    "CallSession",
    "ConfigError",
    "ConversationScript",
    "LogEntry",
    "LogSource",
    "OutdialConfig",
    "ProviderRegistry",
    "SessionStore",
    "SpeechCaptureBuffer",
    "SynthesisStream",
    "TurnGenerator",
    "create_app",
    "load_config",
    "parse_beats",
    "provider_registry",
    "session_store",
]
