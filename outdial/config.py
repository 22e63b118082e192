"""Configuration system for outdial.

Tunables (thresholds, provider selection, timeouts) load from YAML files,
dicts, or programmatic construction via Pydantic models. Credentials come
from the environment (or a ``.env`` file) through pydantic-settings and are
checked once at start-up, before any traffic is accepted.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from loguru import logger
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigError(ValueError):
    """Raised when a required setting is missing or invalid."""


# ---------------------------------------------------------------------------
# Environment credentials
# ---------------------------------------------------------------------------

class Credentials(BaseSettings):
    """Secrets and deployment values read from the environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    public_host: str = ""
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_caller_id: str = ""

    openai_api_key: str = ""
    venice_api_key: str = ""
    anthropic_api_key: str = ""
    deepgram_api_key: str = ""
    elevenlabs_api_key: str = ""
    elevenlabs_voice_id: str = ""

    max_call_seconds: int | None = None

    def api_key_for(self, provider: str) -> str:
        """Look up the API key a named provider strategy needs."""
        return getattr(self, f"{provider}_api_key", "") or ""


# ---------------------------------------------------------------------------
# Config sections
# ---------------------------------------------------------------------------

class ServerConfig(BaseModel):
    """HTTP/WebSocket listener settings."""

    host: str = "0.0.0.0"
    port: int = 8080
    # Host name Twilio uses to reach this server (webhooks and media stream).
    public_host: str = ""
    media_path: str = "/ws/media"


class TelephonyConfig(BaseModel):
    """Call-control settings."""

    caller_id: str = ""
    # End the call from our side once the closing line has played.
    hangup_after_stop: bool = False
    hangup_wait_seconds: float = 8.0


class ProviderConfig(BaseModel):
    """One ASR, LLM or TTS strategy and its constructor kwargs."""

    provider: str = ""
    config: dict[str, Any] = Field(default_factory=dict)


class ProvidersConfig(BaseModel):
    asr: ProviderConfig = Field(default_factory=lambda: ProviderConfig(provider="openai"))
    llm: ProviderConfig = Field(default_factory=lambda: ProviderConfig(provider="openai"))
    tts: ProviderConfig = Field(default_factory=lambda: ProviderConfig(provider="elevenlabs"))


class CaptureConfig(BaseModel):
    """End-of-utterance heuristics for inbound audio."""

    silence_threshold_ms: float = 500.0
    min_buffer_ms: float = 1000.0
    max_buffer_ms: float = 10000.0
    tick_ms: float = 100.0
    language: str = "en"
    # 0 treats every frame as speech.
    speech_energy_threshold: float = 0.0


class SynthesisConfig(BaseModel):
    max_reconnect_attempts: int = 3
    reconnect_backoff_seconds: float = 1.0


DEFAULT_STOP_WORDS = [
    "stop",
    "not interested",
    "do not call",
    "wrong number",
    "remove me",
]

DEFAULT_STOP_MESSAGE = "Okay, my mistake. Have a great day. Goodbye."
DEFAULT_TIMEOUT_MESSAGE = "Thanks for your time, goodbye!"


class ScriptConfig(BaseModel):
    """Outline pacing and termination policy."""

    max_call_seconds: float = 240.0
    stop_words: list[str] = Field(default_factory=lambda: list(DEFAULT_STOP_WORDS))
    stop_message: str = DEFAULT_STOP_MESSAGE
    timeout_message: str = DEFAULT_TIMEOUT_MESSAGE


class BargeInConfig(BaseModel):
    """Barge-in policy.

    With ``vad_enabled`` off, any inbound frame during agent speech
    interrupts it. With it on, the energy detector must fire first.
    """

    vad_enabled: bool = False
    energy_threshold: float = 200.0
    min_speech_frames: int = 3
    # Tell Twilio to drop audio it has buffered but not yet played.
    send_clear: bool = True


class LLMSettings(BaseModel):
    temperature: float = 0.8
    max_tokens: int = 150
    max_history_messages: int = 50


class SessionConfig(BaseModel):
    # Grace period before a finished call's session is removed, so the last
    # log poll still sees the final entries.
    cleanup_delay_seconds: float = 30.0


class LoggingConfig(BaseModel):
    level: str = "INFO"


# ---------------------------------------------------------------------------
# Top-level config
# ---------------------------------------------------------------------------

class OutdialConfig(BaseModel):
    """Top-level outdial configuration.

    Examples:
        # Programmatic
        config = OutdialConfig(
            providers=ProvidersConfig(
                llm=ProviderConfig(provider="venice", config={"model": "llama-3.3-70b"}),
            ),
        )

        # From YAML
        config = OutdialConfig.from_yaml("outdial.yaml")

        # Shorthand
        config = OutdialConfig.from_dict({
            "port": 8080,
            "asr_provider": "deepgram",
            "max_call_seconds": 180,
        })
    """

    server: ServerConfig = Field(default_factory=ServerConfig)
    telephony: TelephonyConfig = Field(default_factory=TelephonyConfig)
    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)
    capture: CaptureConfig = Field(default_factory=CaptureConfig)
    synthesis: SynthesisConfig = Field(default_factory=SynthesisConfig)
    script: ScriptConfig = Field(default_factory=ScriptConfig)
    barge_in: BargeInConfig = Field(default_factory=BargeInConfig)
    llm: LLMSettings = Field(default_factory=LLMSettings)
    session: SessionConfig = Field(default_factory=SessionConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    credentials: Credentials = Field(default_factory=Credentials, exclude=True)

    @classmethod
    def from_yaml(cls, path: str | Path) -> OutdialConfig:
        """Load configuration from a YAML file."""
        path = Path(path)
        with path.open() as f:
            data = yaml.safe_load(f) or {}
        return cls._from_raw(data)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> OutdialConfig:
        """Load configuration from a dictionary.

        Supports both the full nested format and a flat shorthand format:

        Full format:
            {"server": {"port": 8080}, "providers": {"tts": {"provider": "openai"}}}

        Shorthand format:
            {"port": 8080, "tts_provider": "openai"}
        """
        return cls._from_raw(dict(data))

    @classmethod
    def _from_raw(cls, data: dict[str, Any]) -> OutdialConfig:
        """Normalize and construct config from a raw dict."""
        data = _expand_env(data)

        flat_mappings = {
            "host": ("server", "host"),
            "port": ("server", "port"),
            "public_host": ("server", "public_host"),
            "caller_id": ("telephony", "caller_id"),
            "max_call_seconds": ("script", "max_call_seconds"),
            "stop_words": ("script", "stop_words"),
            "cleanup_delay_seconds": ("session", "cleanup_delay_seconds"),
            "log_level": ("logging", "level"),
        }

        for flat_key, (section, nested_key) in flat_mappings.items():
            if flat_key in data:
                data.setdefault(section, {})
                data[section][nested_key] = data.pop(flat_key)

        for kind in ("asr", "llm", "tts"):
            flat_key = f"{kind}_provider"
            if flat_key in data:
                providers = data.setdefault("providers", {})
                providers.setdefault(kind, {})
                providers[kind]["provider"] = data.pop(flat_key)

        return cls(**data)

    # ------------------------------------------------------------------
    # Resolution against the environment
    # ------------------------------------------------------------------

    @property
    def public_host(self) -> str:
        return self.server.public_host or self.credentials.public_host

    @property
    def caller_id(self) -> str:
        return self.telephony.caller_id or self.credentials.twilio_caller_id

    @property
    def max_call_seconds(self) -> float:
        if self.credentials.max_call_seconds is not None:
            return float(self.credentials.max_call_seconds)
        return self.script.max_call_seconds

    def provider_kwargs(self, kind: str) -> dict[str, Any]:
        """Constructor kwargs for the configured ``kind`` provider.

        An ``api_key`` missing from the YAML is filled in from the
        environment.
        """
        selected: ProviderConfig = getattr(self.providers, kind)
        kwargs = dict(selected.config)
        if not kwargs.get("api_key"):
            key = self.credentials.api_key_for(selected.provider)
            if key:
                kwargs["api_key"] = key
        return kwargs

    def validate_credentials(self) -> list[str]:
        """Check start-up requirements.

        Returns:
            Warnings about optional keys that are missing.

        Raises:
            ConfigError: If the public host or Twilio credentials are missing.
        """
        missing = []
        if not self.public_host:
            missing.append("PUBLIC_HOST")
        if not self.credentials.twilio_account_sid:
            missing.append("TWILIO_ACCOUNT_SID")
        if not self.credentials.twilio_auth_token:
            missing.append("TWILIO_AUTH_TOKEN")
        if missing:
            raise ConfigError(f"Missing required settings: {', '.join(missing)}")

        warnings = []
        for kind in ("asr", "llm", "tts"):
            selected: ProviderConfig = getattr(self.providers, kind)
            if not self.provider_kwargs(kind).get("api_key"):
                warnings.append(
                    f"No API key for {kind.upper()} provider '{selected.provider}'; "
                    f"calls will run without it"
                )
        if not self.caller_id:
            warnings.append("No caller id configured; each call must supply callerId")

        for message in warnings:
            logger.warning(message)
        return warnings


_ENV_REF = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


def _expand_env(value: Any) -> Any:
    """Replace ``${NAME}`` in string values with the environment variable."""
    if isinstance(value, str):
        return _ENV_REF.sub(lambda m: os.environ.get(m.group(1), ""), value)
    if isinstance(value, dict):
        return {k: _expand_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_env(v) for v in value]
    return value


def load_config(source: str | Path | dict[str, Any] | OutdialConfig | None = None) -> OutdialConfig:
    """Load an OutdialConfig from any supported source.

    Args:
        source: A YAML file path (str/Path), a dict, an existing
            OutdialConfig, or None for defaults.

    Returns:
        An OutdialConfig instance.
    """
    if source is None:
        return OutdialConfig()
    if isinstance(source, OutdialConfig):
        return source
    if isinstance(source, dict):
        return OutdialConfig.from_dict(source)
    if isinstance(source, (str, Path)):
        path = Path(source)
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")
        return OutdialConfig.from_yaml(path)
    raise TypeError(f"Cannot load config from {type(source)}")


# Default YAML template for `outdial init`
DEFAULT_CONFIG_YAML = """\
# outdial configuration
# Credentials are read from the environment (or .env):
#   PUBLIC_HOST, TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN, TWILIO_CALLER_ID,
#   OPENAI_API_KEY, ELEVENLABS_API_KEY, DEEPGRAM_API_KEY, ANTHROPIC_API_KEY,
#   VENICE_API_KEY

server:
  host: 0.0.0.0
  port: 8080
  media_path: /ws/media

telephony:
  hangup_after_stop: false

providers:
  asr:
    provider: openai        # openai | deepgram
    config:
      model: whisper-1
  llm:
    provider: openai        # openai | venice | anthropic
    config:
      model: gpt-4o-mini
  tts:
    provider: elevenlabs    # elevenlabs | openai
    config:
      model_id: eleven_turbo_v2_5

capture:
  silence_threshold_ms: 500
  min_buffer_ms: 1000
  max_buffer_ms: 10000
  # RMS level a frame needs to count as speech. 0 treats every frame as
  # speech, so only the max buffer length ends an utterance on a live line.
  speech_energy_threshold: 0

synthesis:
  max_reconnect_attempts: 3
  reconnect_backoff_seconds: 1.0

script:
  max_call_seconds: 240
  stop_words: ["stop", "not interested", "do not call", "wrong number", "remove me"]

barge_in:
  vad_enabled: false

llm:
  temperature: 0.8
  max_tokens: 150

session:
  cleanup_delay_seconds: 30

logging:
  level: INFO
"""
