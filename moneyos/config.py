from __future__ import annotations

import os
from dataclasses import dataclass

DEFAULT_DATABASE_URL = "sqlite:///./moneyos.db"
FALLBACK_JWT_SECRET = "fallback_secret"


def normalize_currency(value: str) -> str:
    normalized = value.strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise ValueError("Currency must be a 3-letter ISO 4217 code.")
    return normalized


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    """Process configuration, read once at startup and passed explicitly."""

    database_url: str = DEFAULT_DATABASE_URL
    jwt_secret: str = FALLBACK_JWT_SECRET
    jwt_algorithm: str = "HS256"
    jwt_expires_minutes: int = 24 * 60
    sms_push_secret: str | None = None
    sms_pull_limit: int = 50
    default_currency: str = "INR"
    frontend_origin: str = "http://localhost:3000"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        try:
            currency = normalize_currency(os.getenv("DEFAULT_CURRENCY", "INR"))
        except ValueError:
            currency = "INR"
        return cls(
            database_url=os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL),
            jwt_secret=os.getenv("JWT_SECRET") or FALLBACK_JWT_SECRET,
            jwt_expires_minutes=_env_int("JWT_EXPIRES_MINUTES", 24 * 60),
            sms_push_secret=os.getenv("SMS_PUSH_SECRET") or None,
            sms_pull_limit=_env_int("SMS_PULL_LIMIT", 50),
            default_currency=currency,
            frontend_origin=os.getenv("FRONTEND_ORIGIN", "http://localhost:3000"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )
