"""
Broadcast Bot — Centralized configuration.

Loads all settings from .env and validates required keys.
This module is the foundation for every other module in the project.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

# Load .env from project root (two levels up from src/config.py)
_ENV_PATH = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_ENV_PATH)


class Settings(BaseModel):
    """Application settings loaded from environment variables."""

    # Telegram
    TELEGRAM_BOT_TOKEN: str

    # Security: only these IDs may use the admin commands
    ADMIN_IDS: list[int] = []

    # SQLite
    DATABASE_PATH: str = "data/broadcasts.db"

    # Naive /schedule datetimes and confirmations use this zone
    TIMEZONE: str = "UTC"

    # Broadcast delivery
    SWEEP_INTERVAL_SECONDS: int = 15
    SEND_DELAY_MS: int = 50
    DISPATCH_TIMEOUT_SECONDS: int = 0   # 0 → no deadline

    LOG_LEVEL: str = "INFO"

    @field_validator("ADMIN_IDS", mode="before")
    @classmethod
    def parse_admin_ids(cls, v: str | list[int]) -> list[int]:
        if isinstance(v, list):
            return v
        if isinstance(v, str) and v.strip():
            return [int(uid.strip()) for uid in v.split(",") if uid.strip()]
        return []

    @field_validator(
        "SWEEP_INTERVAL_SECONDS", "SEND_DELAY_MS", "DISPATCH_TIMEOUT_SECONDS",
        mode="before",
    )
    @classmethod
    def parse_int(cls, v: str | int) -> int:
        value = int(v)
        if value < 0:
            raise ValueError("must not be negative")
        return value


def _load_settings() -> Settings:
    """Load settings from environment, validating required keys."""
    token = os.getenv("TELEGRAM_BOT_TOKEN", "")

    if not token or token.startswith("your-"):
        print("ERROR: TELEGRAM_BOT_TOKEN is missing or not set in .env", file=sys.stderr)
        sys.exit(1)

    return Settings(
        TELEGRAM_BOT_TOKEN=token,
        ADMIN_IDS=os.getenv("ADMIN_IDS", ""),
        DATABASE_PATH=os.getenv("DATABASE_PATH", "data/broadcasts.db"),
        TIMEZONE=os.getenv("TIMEZONE", "UTC"),
        SWEEP_INTERVAL_SECONDS=os.getenv("SWEEP_INTERVAL_SECONDS", "15"),
        SEND_DELAY_MS=os.getenv("SEND_DELAY_MS", "50"),
        DISPATCH_TIMEOUT_SECONDS=os.getenv("DISPATCH_TIMEOUT_SECONDS", "0"),
        LOG_LEVEL=os.getenv("LOG_LEVEL", "INFO"),
    )


# Singleton, imported by all other modules as:
#   from src.config import settings
settings = _load_settings()
