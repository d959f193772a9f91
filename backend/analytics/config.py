"""Runtime configuration read from ``ANALYTICS_*`` environment variables."""
from __future__ import annotations

import os
from typing import Optional


def _int_env(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    return int(value)


class Settings:
    """Application settings. Properties read the environment on every access."""

    @property
    def database_url(self) -> str:
        return os.environ.get("ANALYTICS_DATABASE_URL", "sqlite:///./analytics.db")

    @property
    def environment(self) -> str:
        return os.environ.get("ANALYTICS_ENV", "production").strip().lower()

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    @property
    def log_level(self) -> str:
        return os.environ.get("ANALYTICS_LOG_LEVEL", "INFO").upper()

    # Ingestion limits

    @property
    def max_body_bytes(self) -> int:
        return _int_env("ANALYTICS_MAX_BODY_BYTES", 8 * 1024)

    @property
    def max_batch_events(self) -> int:
        return _int_env("ANALYTICS_MAX_BATCH_EVENTS", 25)

    @property
    def track_rate_limit(self) -> int:
        return _int_env("ANALYTICS_TRACK_RATE_LIMIT", 120)

    @property
    def track_rate_window(self) -> int:
        return _int_env("ANALYTICS_TRACK_RATE_WINDOW", 60)

    @property
    def query_rate_limit(self) -> int:
        return _int_env("ANALYTICS_QUERY_RATE_LIMIT", 60)

    @property
    def query_rate_window(self) -> int:
        return _int_env("ANALYTICS_QUERY_RATE_WINDOW", 60)

    @property
    def rate_limit_backend(self) -> str:
        return os.environ.get("ANALYTICS_RATE_LIMIT_BACKEND", "memory").strip().lower()

    @property
    def rate_limit_prune_threshold(self) -> int:
        return _int_env("ANALYTICS_RATE_LIMIT_PRUNE_THRESHOLD", 1000)

    @property
    def redis_url(self) -> str:
        return os.environ.get("ANALYTICS_REDIS_URL", "redis://localhost:6379/0")

    @property
    def ip_hash_salt(self) -> str:
        return os.environ.get("ANALYTICS_IP_HASH_SALT", "")

    @property
    def dev_country(self) -> Optional[str]:
        return os.environ.get("ANALYTICS_DEV_COUNTRY")

    # Query defaults

    @property
    def default_active_minutes(self) -> int:
        return _int_env("ANALYTICS_ACTIVE_MINUTES", 5)

    @property
    def max_active_minutes(self) -> int:
        return _int_env("ANALYTICS_MAX_ACTIVE_MINUTES", 30)

    # Dashboard token verification

    @property
    def jwt_jwks_url(self) -> Optional[str]:
        return os.environ.get("ANALYTICS_JWT_JWKS_URL")

    @property
    def jwt_issuer(self) -> Optional[str]:
        return os.environ.get("ANALYTICS_JWT_ISSUER")

    @property
    def jwt_audience(self) -> Optional[str]:
        return os.environ.get("ANALYTICS_JWT_AUDIENCE")


_settings_instance: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = Settings()
    return _settings_instance


def clear_settings_cache() -> None:
    global _settings_instance
    _settings_instance = None
