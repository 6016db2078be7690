from __future__ import annotations

import os
from dataclasses import dataclass

from tutor_studio.errors import ConfigurationError


def _env(name: str, default: str | None = None) -> str | None:
    val = os.environ.get(name)
    if val is None or val.strip() == "":
        return default
    return val


def _env_float(name: str, default: float) -> float:
    raw = _env(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number", {"value": raw}) from e


def _env_int(name: str, default: int) -> int:
    raw = _env(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer", {"value": raw}) from e


def _env_flag(name: str, default: bool) -> bool:
    raw = _env(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    api_key: str
    text_model: str = "gemini-3-flash-preview"
    reasoning_model: str = "gemini-3.1-pro-preview"
    image_model: str = "gemini-3.1-flash-image-preview"
    image_edit_model: str = "gemini-2.5-flash-image"
    video_model: str = "veo-3.1-fast-generate-preview"
    voice_model: str = "gemini-2.5-flash-native-audio-preview-09-2025"
    voice_name: str = "Zephyr"
    lesson_search: bool = True
    video_poll_seconds: float = 5.0
    video_deadline_seconds: float = 600.0
    transcribe_delay_seconds: float = 2.0
    session_ttl_seconds: float = 60 * 60
    log_level: str = "INFO"
    port: int = 8080

    @classmethod
    def from_env(cls) -> "Settings":
        """
        Reads the environment once at startup. A missing API key is fatal:
        every Gemini call needs it, including the authenticated video download.
        """
        api_key = _env("GEMINI_API_KEY") or _env("GOOGLE_API_KEY")
        if not api_key:
            raise ConfigurationError("Missing config: set GEMINI_API_KEY (or GOOGLE_API_KEY).")

        return cls(
            api_key=api_key,
            text_model=_env("TUTOR_TEXT_MODEL", cls.text_model),
            reasoning_model=_env("TUTOR_REASONING_MODEL", cls.reasoning_model),
            image_model=_env("TUTOR_IMAGE_MODEL", cls.image_model),
            image_edit_model=_env("TUTOR_IMAGE_EDIT_MODEL", cls.image_edit_model),
            video_model=_env("TUTOR_VIDEO_MODEL", cls.video_model),
            voice_model=_env("TUTOR_VOICE_MODEL", cls.voice_model),
            voice_name=_env("TUTOR_VOICE_NAME", cls.voice_name),
            lesson_search=_env_flag("TUTOR_LESSON_SEARCH", cls.lesson_search),
            video_poll_seconds=_env_float("TUTOR_VIDEO_POLL_SECONDS", cls.video_poll_seconds),
            video_deadline_seconds=_env_float("TUTOR_VIDEO_DEADLINE_SECONDS", cls.video_deadline_seconds),
            transcribe_delay_seconds=_env_float("TUTOR_TRANSCRIBE_DELAY_SECONDS", cls.transcribe_delay_seconds),
            session_ttl_seconds=_env_float("TUTOR_SESSION_TTL_SECONDS", cls.session_ttl_seconds),
            log_level=(_env("TUTOR_LOG_LEVEL", cls.log_level) or "INFO").upper(),
            port=_env_int("PORT", cls.port),
        )
