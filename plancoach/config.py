import os
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

# Load environment variables
load_dotenv()

STALENESS_HOURS = 18
MISSED_STREAK_BREAKDOWN = 5
COMPLETED_STREAK_ACK = 3


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    return float(raw) if raw not in (None, "") else default


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    return int(raw) if raw not in (None, "") else default


class Settings(BaseModel):
    gemini_api_keys: List[str] = Field(default_factory=list, description="Rotated on rate limits")
    gemini_model: str = "gemini-2.0-flash"
    llm_max_retries: int = 3
    llm_backoff_base_seconds: float = 1.0
    llm_backoff_max_seconds: float = 8.0
    llm_timeout_seconds: float = 30.0
    deterministic_timeout_seconds: float = 12.0
    storage_backend: str = Field(default="memory", description="'memory' or 'firestore'")
    ledger_dedup_size: int = 2000
    firebase_credentials: Optional[str] = None
    cors_origins: List[str] = Field(
        default_factory=lambda: ["http://localhost:5173", "http://localhost:5174"]
    )

    @classmethod
    def from_env(cls) -> "Settings":
        keys = [k for k in (os.getenv("GEMINI_API_KEY"), os.getenv("GEMINI_API_KEY_2")) if k]
        origins = os.getenv("CORS_ORIGINS")
        values = dict(
            gemini_api_keys=keys,
            gemini_model=os.getenv("GEMINI_MODEL", "gemini-2.0-flash"),
            llm_max_retries=_int_env("LLM_MAX_RETRIES", 3),
            llm_backoff_base_seconds=_float_env("LLM_BACKOFF_BASE_SECONDS", 1.0),
            llm_backoff_max_seconds=_float_env("LLM_BACKOFF_MAX_SECONDS", 8.0),
            llm_timeout_seconds=_float_env("LLM_TIMEOUT_SECONDS", 30.0),
            deterministic_timeout_seconds=_float_env("DETERMINISTIC_TIMEOUT_SECONDS", 12.0),
            storage_backend=os.getenv("STORAGE_BACKEND", "memory").strip().lower(),
            ledger_dedup_size=_int_env("LEDGER_DEDUP_SIZE", 2000),
            firebase_credentials=os.getenv("FIREBASE_CREDENTIALS") or os.getenv("GOOGLE_APPLICATION_CREDENTIALS"),
        )
        if origins:
            values["cors_origins"] = [o.strip() for o in origins.split(",") if o.strip()]
        return cls(**values)


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings
