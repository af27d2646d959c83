from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache

from fintrack.currency_conversion import SUPPORTED_CURRENCIES, normalize_currency

DEFAULT_SECRET_KEY = "change-me-in-production"
DEFAULT_TOKEN_TTL_MINUTES = 7 * 24 * 60
DEFAULT_MAX_RECEIPT_BYTES = 5 * 1024 * 1024


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./fintrack.db"
    frontend_origin: str = "http://localhost:3000"
    environment: str = "production"
    secret_key: str = DEFAULT_SECRET_KEY
    token_ttl_minutes: int = DEFAULT_TOKEN_TTL_MINUTES
    default_currency: str = "ILS"
    rates_url: str = "https://api.exchangerate-api.com/v4/latest"
    historical_rates_url: str = "https://api.frankfurter.app"
    cascade_subscriptions: bool = False
    max_receipt_bytes: int = DEFAULT_MAX_RECEIPT_BYTES
    log_level: str = "INFO"
    port: int = 4010

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    @classmethod
    def from_env(cls) -> "Settings":
        defaults = cls()
        return cls(
            database_url=os.getenv("DATABASE_URL", defaults.database_url),
            frontend_origin=os.getenv("FRONTEND_ORIGIN", defaults.frontend_origin),
            environment=os.getenv("FINTRACK_ENV", defaults.environment).strip().lower(),
            secret_key=os.getenv("FINTRACK_SECRET_KEY", defaults.secret_key),
            token_ttl_minutes=_env_int("FINTRACK_TOKEN_TTL_MINUTES", defaults.token_ttl_minutes),
            default_currency=get_system_default_currency(defaults.default_currency),
            rates_url=os.getenv("FINTRACK_RATES_URL", defaults.rates_url).rstrip("/"),
            historical_rates_url=os.getenv(
                "FINTRACK_HISTORICAL_RATES_URL", defaults.historical_rates_url
            ).rstrip("/"),
            cascade_subscriptions=_env_bool(
                "FINTRACK_CASCADE_SUBSCRIPTIONS", defaults.cascade_subscriptions
            ),
            max_receipt_bytes=_env_int("FINTRACK_MAX_RECEIPT_BYTES", defaults.max_receipt_bytes),
            log_level=os.getenv("FINTRACK_LOG_LEVEL", defaults.log_level).strip().upper(),
            port=_env_int("PORT", defaults.port),
        )


def get_system_default_currency(fallback: str = "ILS") -> str:
    raw = os.getenv("DEFAULT_CURRENCY", fallback)
    try:
        normalized = normalize_currency(raw)
    except ValueError:
        return fallback
    if normalized not in SUPPORTED_CURRENCIES:
        return fallback
    return normalized


@lru_cache
def get_settings() -> Settings:
    return Settings.from_env()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}
