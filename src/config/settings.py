"""Application-wide configuration loading and validation."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Languages accepted by the realtime input transcription model.
TRANSCRIPTION_LANGUAGES = frozenset(
    {
        "af", "ar", "az", "be", "bg", "bs", "ca", "cs", "cy", "da", "de", "el", "en", "es", "et",
        "fa", "fi", "fr", "gl", "he", "hi", "hr", "hu", "hy", "id", "is", "it", "ja", "kk", "kn",
        "ko", "lt", "lv", "mi", "mk", "mr", "ms", "ne", "nl", "no", "pl", "pt", "ro", "ru", "sk",
        "sl", "sr", "sv", "sw", "ta", "th", "tl", "tr", "uk", "ur", "vi", "zh",
    }
)

DEFAULT_LANGUAGE = "hr"

DEFAULT_INSTRUCTIONS = (
    "Ti si Ivana, ljubazna agentica korisničke podrške. Odgovaraj kratko i na hrvatskom. "
    "Ako korisnik kaže da je gotovo (npr. 'doviđenja', 'bok', 'to je sve'), kratko se pristojno oprosti "
    "i POZOVI alat hangup_call kako bi se poziv prekinuo."
)


def normalize_language(value: str | None, fallback: str = DEFAULT_LANGUAGE) -> str:
    """Reduce a locale-ish value (``hr-HR``, ``en_US.UTF-8``, ``C.UTF-8``) to a language code."""

    if not value:
        return fallback
    code = str(value).strip().lower()
    if code == "c" or code.startswith("c."):
        return fallback
    for sep in ("_", ".", "-"):
        code = code.split(sep)[0]
    if len(code) != 2:
        return fallback
    return code if code in TRANSCRIPTION_LANGUAGES else fallback


class Settings(BaseSettings):
    """Centralized environment configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    environment: Literal["local", "dev", "prod"] = Field(default="local")
    log_level: str = Field(default="INFO")

    # Realtime voice AI
    openai_api_key: str | None = Field(default=None)
    realtime_url: str = Field(default="wss://api.openai.com/v1/realtime")
    realtime_model: str = Field(default="gpt-4o-realtime-preview")
    voice: str = Field(default="alloy")
    lang: str = Field(
        default=DEFAULT_LANGUAGE,
        description="Transcription language. Read from LANG, so system locales are normalized.",
    )
    transcription_model: str = Field(default="whisper-1")
    session_instructions: str = Field(default=DEFAULT_INSTRUCTIONS)
    greeting_instructions: str | None = Field(
        default="Pozdrav! Kako Vam mogu pomoći?",
        description="Proactive greeting requested when the stream starts. Empty disables it.",
    )
    goodbye_instructions: str | None = Field(
        default=None,
        description="If set, one extra goodbye response is requested when a hangup begins.",
    )
    farewell_locale: str | None = Field(
        default=None,
        description="Phrase set used to detect leave-taking. Defaults to the transcription language.",
    )
    farewell_extra_phrases: list[str] = Field(default_factory=list)

    # Audio relay timing
    sample_rate: int = Field(default=8000, gt=0)
    frame_size_bytes: int = Field(default=160, gt=0)
    frame_interval_ms: int = Field(default=20, gt=0)
    commit_debounce_ms: int = Field(default=250, gt=0)
    drain_poll_ms: int = Field(default=30, gt=0)
    drain_grace_ms: int = Field(default=120, ge=0)
    keepalive_interval_seconds: float = Field(default=15.0, gt=0)
    max_outbound_queue_bytes: int = Field(
        default=0,
        ge=0,
        description="Cap for queued outbound audio; oldest frames are dropped beyond it. 0 means unbounded.",
    )
    start_beep_enabled: bool = Field(default=True)

    # Twilio (Voice)
    twilio_account_sid: str | None = Field(default=None)
    twilio_auth_token: str | None = Field(default=None)
    twilio_from_number: str | None = Field(default=None, description="E.164, e.g. +385...")
    twilio_machine_detection: str | None = Field(default=None)
    twiml_url: str | None = Field(
        default=None,
        description="If set, outbound calls fetch TwiML from this URL instead of inline TwiML.",
    )
    public_base_url: str | None = Field(
        default=None,
        description="Public base URL for Twilio webhooks and the media stream (e.g. https://<ngrok>.ngrok-free.app).",
    )

    @field_validator("lang", mode="before")
    @classmethod
    def normalize_lang(cls, value: str | None) -> str:
        return normalize_language(value)

    @field_validator("greeting_instructions", "goodbye_instructions", "twiml_url", "public_base_url")
    @classmethod
    def blank_to_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        return value or None

    @model_validator(mode="after")
    def check_frame_timing(self) -> Settings:
        # One mu-law byte per sample: the pacer frame must cover exactly one interval.
        expected = self.frame_interval_ms * self.sample_rate // 1000
        if self.frame_interval_ms * self.sample_rate % 1000 or expected != self.frame_size_bytes:
            raise ValueError(
                f"frame_size_bytes={self.frame_size_bytes} does not match "
                f"{self.frame_interval_ms} ms at {self.sample_rate} Hz"
            )
        return self

    @property
    def effective_farewell_locale(self) -> str:
        return normalize_language(self.farewell_locale, fallback=self.lang)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance."""

    return Settings()
