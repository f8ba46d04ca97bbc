"""
Centralised engine settings loaded from environment / .env file.
"""
from __future__ import annotations

from pathlib import Path
from functools import lru_cache

from pydantic_settings import BaseSettings
from dotenv import load_dotenv

# Load .env from project root (two levels up from this file)
_ENV_PATH = Path(__file__).resolve().parents[2] / ".env"
load_dotenv(_ENV_PATH)


class Settings(BaseSettings):
    # ── Dates ────────────────────────────────────────────
    timezone: str = "UTC"
    week_starts_on: int = 0  # 0 = Monday (datetime.weekday convention)

    # ── Query defaults ───────────────────────────────────
    default_page: int = 1
    default_page_size: int = 100

    # ── Chart rendering ──────────────────────────────────
    max_series: int = 10
    label_max_length: int = 30

    # ── App ──────────────────────────────────────────────
    api_port: int = 8000
    log_level: str = "INFO"

    class Config:
        env_prefix = "WIDGET_"
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache
def get_settings() -> Settings:
    return Settings()
