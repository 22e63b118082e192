"""Provider registry: ASR, LLM and TTS strategies selected by name.

Built-ins are stored as ``"module:Class"`` strings and imported the first
time they are created, so an unused backend's SDK is never loaded.
"""

from __future__ import annotations

import importlib
from typing import Any, Callable, Union

from loguru import logger

from outdial.providers.base import BaseASR, BaseLLM, BaseTTS

ProviderRef = Union[str, Callable[..., Any]]

BUILTIN_PROVIDERS: dict[str, dict[str, str]] = {
    "asr": {
        "openai": "outdial.providers.asr.whisper:WhisperASR",
        "deepgram": "outdial.providers.asr.deepgram:DeepgramASR",
    },
    "llm": {
        "openai": "outdial.providers.llm.openai:OpenAILLM",
        "venice": "outdial.providers.llm.openai:VeniceLLM",
        "anthropic": "outdial.providers.llm.anthropic:AnthropicLLM",
    },
    "tts": {
        "elevenlabs": "outdial.providers.tts.elevenlabs:ElevenLabsTTS",
        "openai": "outdial.providers.tts.openai:OpenAITTS",
    },
}


class ProviderRegistry:
    """Creates provider instances by kind and name.

    Anything callable with the provider's keyword arguments can be
    registered: a provider class, or a factory function in tests.

    Example:
        asr = provider_registry.create_asr("openai", api_key="...")
        llm = provider_registry.create_llm("venice", api_key="...", model="llama-3.3-70b")
        tts = provider_registry.create_tts("elevenlabs", api_key="...", voice_id="...")
    """

    def __init__(self) -> None:
        self._providers: dict[str, dict[str, ProviderRef]] = {
            kind: dict(refs) for kind, refs in BUILTIN_PROVIDERS.items()
        }

    def register(self, kind: str, name: str, factory: ProviderRef) -> None:
        self._table(kind)[name] = factory
        logger.debug(f"Registered {kind.upper()} provider: {name}")

    def create(self, kind: str, name: str, **kwargs: Any) -> Any:
        """Build provider ``name`` of ``kind`` ("asr", "llm" or "tts").

        Raises:
            ValueError: If the provider name is not registered.
        """
        table = self._table(kind)
        if name not in table:
            raise ValueError(
                f"Unknown {kind.upper()} provider '{name}'. Available: {', '.join(table)}"
            )
        factory = _load(table[name])
        logger.debug(f"Creating {kind.upper()} provider: {name}")
        return factory(**kwargs)

    def available(self, kind: str) -> list[str]:
        return list(self._table(kind))

    def _table(self, kind: str) -> dict[str, ProviderRef]:
        try:
            return self._providers[kind]
        except KeyError:
            raise ValueError(f"Unknown provider kind '{kind}'") from None

    # Per-kind shorthands

    def register_asr(self, name: str, factory: ProviderRef) -> None:
        self.register("asr", name, factory)

    def register_llm(self, name: str, factory: ProviderRef) -> None:
        self.register("llm", name, factory)

    def register_tts(self, name: str, factory: ProviderRef) -> None:
        self.register("tts", name, factory)

    def create_asr(self, name: str, **kwargs: Any) -> BaseASR:
        return self.create("asr", name, **kwargs)

    def create_llm(self, name: str, **kwargs: Any) -> BaseLLM:
        return self.create("llm", name, **kwargs)

    def create_tts(self, name: str, **kwargs: Any) -> BaseTTS:
        """A TTS instance is one connection; the synthesis stream calls this per reconnect."""
        return self.create("tts", name, **kwargs)

    @property
    def available_asr(self) -> list[str]:
        return self.available("asr")

    @property
    def available_llm(self) -> list[str]:
        return self.available("llm")

    @property
    def available_tts(self) -> list[str]:
        return self.available("tts")


def _load(ref: ProviderRef) -> Callable[..., Any]:
    if isinstance(ref, str):
        module_path, attr = ref.rsplit(":", 1)
        return getattr(importlib.import_module(module_path), attr)
    return ref


provider_registry = ProviderRegistry()
