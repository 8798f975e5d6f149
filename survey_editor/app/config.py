from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


def _env_str(key: str, default: Optional[str] = None) -> Optional[str]:
    v = os.getenv(key)
    if v is None:
        return default
    v = v.strip()
    return v if v else default


def _env_int(key: str, default: int) -> int:
    v = _env_str(key)
    if v is None:
        return default
    try:
        return int(v)
    except ValueError:
        return default


def _env_float(key: str, default: float) -> float:
    v = _env_str(key)
    if v is None:
        return default
    try:
        return float(v)
    except ValueError:
        return default


def _env_bool(key: str, default: bool) -> bool:
    v = _env_str(key)
    if v is None:
        return default
    return v.lower() in {"1", "true", "yes", "y", "on"}


@dataclass(frozen=True)
class Settings:
    # Settings store
    db_path: str

    # Logging
    log_level: str
    log_json: bool

    # Completion service (any OpenAI-compatible endpoint)
    llm_base_url: str
    llm_api_key: str
    llm_model: str
    llm_timeout_seconds: float

    # Survey / attachments
    survey_title: str
    attachment_max_chars: int
    extractor_url: Optional[str] = None

    @staticmethod
    def from_env(load_dotenv_file: bool = True) -> "Settings":
        if load_dotenv_file:
            load_dotenv()

        db_path = _env_str("APP_DB_PATH", "data/app.db") or "data/app.db"
        # Create the parent directory; the DB file itself is created on first connect.
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        api_key = _env_str("OPENROUTER_API_KEY") or _env_str("OPENAI_API_KEY") or ""

        return Settings(
            db_path=db_path,

            log_level=_env_str("APP_LOG_LEVEL", "INFO") or "INFO",
            log_json=_env_bool("APP_LOG_JSON", True),

            llm_base_url=_env_str("APP_LLM_BASE_URL", "https://openrouter.ai/api/v1") or "https://openrouter.ai/api/v1",
            llm_api_key=api_key,
            llm_model=_env_str("APP_LLM_MODEL", "openai/gpt-4o-mini") or "openai/gpt-4o-mini",
            llm_timeout_seconds=_env_float("APP_LLM_TIMEOUT_SECONDS", 60.0),

            survey_title=_env_str("APP_SURVEY_TITLE", "Share Behavior Research") or "Share Behavior Research",
            attachment_max_chars=_env_int("APP_ATTACHMENT_MAX_CHARS", 50_000),
            extractor_url=_env_str("APP_EXTRACTOR_URL"),
        )
