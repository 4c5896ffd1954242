"""Environment-backed settings handed to components at construction time."""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field

env_path = Path(__file__).parent / ".env"
load_dotenv(dotenv_path=env_path)

# ---------------------------------------------------------------------------
# Named defaults
# ---------------------------------------------------------------------------
# Each model has its own quota pool, so a 429 on one is worth trying the next.
DEFAULT_MODELS = [
    "google/gemini-2.5-flash-lite",
    "google/gemini-2.5-flash",
    "google/gemini-2.0-flash-lite-001",
    "google/gemini-2.0-flash-001",
]
DEFAULT_LLM_BASE_URL = "https://openrouter.ai/api/v1/chat/completions"
DEFAULT_FALLBACK_CHAT_ID = "-1001000000000"
DEFAULT_APP_URL = "https://floodvoice.vercel.app"
DEFAULT_VAPI_BASE_URL = "https://api.vapi.ai"


def _env_list(name: str, default: list[str]) -> list[str]:
    raw = os.getenv(name, "")
    items = [item.strip() for item in raw.split(",") if item.strip()]
    return items or list(default)


class ClassifierConfig(BaseModel):
    api_key: str = ""
    base_url: str = DEFAULT_LLM_BASE_URL
    models: list[str] = Field(default_factory=lambda: list(DEFAULT_MODELS))
    timeout_seconds: float = 30.0

    @classmethod
    def from_env(cls) -> "ClassifierConfig":
        return cls(
            api_key=os.getenv("OPENROUTER_API_KEY", ""),
            base_url=os.getenv("LLM_BASE_URL", DEFAULT_LLM_BASE_URL),
            models=_env_list("ANALYSIS_LLM_MODELS", DEFAULT_MODELS),
            timeout_seconds=float(os.getenv("LLM_TIMEOUT_SECONDS", "30")),
        )


class DispatcherConfig(BaseModel):
    telegram_bot_token: str = ""
    telegram_api_base: str = "https://api.telegram.org"
    fallback_chat_id: str = DEFAULT_FALLBACK_CHAT_ID
    app_url: str = DEFAULT_APP_URL
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_from_number: str = ""
    escalation_to_number: str = ""
    timeout_seconds: float = 10.0

    @classmethod
    def from_env(cls) -> "DispatcherConfig":
        return cls(
            telegram_bot_token=os.getenv("TELEGRAM_BOT_TOKEN", ""),
            fallback_chat_id=os.getenv("FALLBACK_TELEGRAM_CHAT_ID", DEFAULT_FALLBACK_CHAT_ID),
            app_url=os.getenv("APP_URL", DEFAULT_APP_URL).rstrip("/"),
            twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", ""),
            twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", ""),
            twilio_from_number=os.getenv("TWILIO_FROM_NUMBER", ""),
            escalation_to_number=os.getenv("ESCALATION_TO_NUMBER", ""),
        )


class VoiceConfig(BaseModel):
    api_key: str = ""
    base_url: str = DEFAULT_VAPI_BASE_URL
    phone_number_id: str = ""
    webhook_base_url: str = "http://localhost:8000"
    max_concurrent_calls: int = 5
    timeout_seconds: float = 30.0

    @classmethod
    def from_env(cls) -> "VoiceConfig":
        return cls(
            api_key=os.getenv("VAPI_PRIVATE_KEY", ""),
            base_url=os.getenv("VAPI_BASE_URL", DEFAULT_VAPI_BASE_URL).rstrip("/"),
            phone_number_id=os.getenv("VAPI_PHONE_NUMBER_ID", ""),
            webhook_base_url=os.getenv("WEBHOOK_BASE_URL", "http://localhost:8000").rstrip("/"),
            max_concurrent_calls=int(os.getenv("MAX_CONCURRENT_CALLS", "5")),
        )


class AppConfig(BaseModel):
    classify_timeout_seconds: float = 25.0
    check_interval_hours: float = 0.0
    cron_secret: str = ""
    flood_depth_threshold_inches: float = 4.0
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "AppConfig":
        return cls(
            classify_timeout_seconds=float(os.getenv("CLASSIFY_TIMEOUT_SECONDS", "25")),
            check_interval_hours=float(os.getenv("CHECK_INTERVAL_HOURS", "0")),
            cron_secret=os.getenv("CRON_SECRET", ""),
            flood_depth_threshold_inches=float(os.getenv("FLOOD_DEPTH_THRESHOLD_INCHES", "4")),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )


class AuthConfig(BaseModel):
    jwt_secret: str = "changeme-in-production-please"
    jwt_algorithm: str = "HS256"
    token_ttl_hours: int = 24

    @classmethod
    def from_env(cls) -> "AuthConfig":
        return cls(
            jwt_secret=os.getenv("JWT_SECRET_KEY", "changeme-in-production-please"),
            token_ttl_hours=int(os.getenv("ACCESS_TOKEN_TTL_HOURS", "24")),
        )
