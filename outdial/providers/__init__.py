"""outdial AI providers - ASR, LLM, and TTS integrations.

Each external capability sits behind one interface and is selected by name
when a call's pipeline is built:
- ASR: OpenAI Whisper, Deepgram
- LLM: OpenAI, Venice (OpenAI-compatible), Anthropic Claude
- TTS: ElevenLabs (streaming WebSocket), OpenAI

Usage:
    from outdial.providers import provider_registry

    asr = provider_registry.create_asr("openai", api_key="...")
    llm = provider_registry.create_llm("openai", api_key="...", model="gpt-4o-mini")
    tts = provider_registry.create_tts("elevenlabs", api_key="...", voice_id="...")
"""

from outdial.providers.base import BaseASR, BaseLLM, BaseTTS
from outdial.providers.registry import ProviderRegistry, provider_registry

__all__ = [
    "BaseASR",
    "BaseLLM",
    "BaseTTS",
    "ProviderRegistry",
    "provider_registry",
]
