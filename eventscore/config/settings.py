"""
Environment-driven settings.

Values are read once at import time; tests override attributes directly on
the ``settings`` instance.
"""
import os
from typing import List

from dotenv import load_dotenv

load_dotenv()


def get_str_env(key: str, default: str) -> str:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    return value.strip()


def get_int_env(key: str, default: int) -> int:
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def get_list_env(key: str, default: List[str]) -> List[str]:
    """Comma separated list; blank entries are dropped."""
    raw = os.getenv(key)
    if not raw:
        return list(default)
    return [item.strip().upper() for item in raw.split(",") if item.strip()]


class Settings:
    ENVIRONMENT: str = get_str_env("ENVIRONMENT", "development")
    DATABASE_URL: str = get_str_env("DATABASE_URL", "sqlite+aiosqlite:///./eventscore.db")

    JWT_SECRET_KEY: str = get_str_env("JWT_SECRET_KEY", "dev-secret-key-change-in-production")
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = get_int_env("ACCESS_TOKEN_EXPIRE_MINUTES", 60)

    # Roles whose winner signatures must all be present before results are released
    WINNER_REQUIRED_ROLES: List[str] = get_list_env(
        "WINNER_REQUIRED_ROLES", ["TALLY_MASTER", "AUDITOR", "BOARD"]
    )

    ALLOWED_ORIGINS: List[str] = [
        origin.strip() for origin in os.getenv("ALLOWED_ORIGINS", "").split(",") if origin.strip()
    ]

    BULK_RATE_LIMIT: str = get_str_env("BULK_RATE_LIMIT", "10/minute")

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"


settings = Settings()
