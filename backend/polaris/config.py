from __future__ import annotations

import os
import threading
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, ValidationError


_ENV_LOCK = threading.Lock()
_SETTINGS: "Settings | None" = None


def _read_int(value: str | None, default: Optional[int]) -> Optional[int]:
    if value is None or not value.strip():
        return default
    return int(value.strip())


class Settings(BaseModel):
    """Reconciliation job configuration loaded from environment variables.

    Environment precedence is:

    1. Canonical env var names (e.g. POSTGRES_DSN, APP_ENV).
    2. Legacy aliases (e.g. DATABASE_URL, SUPABASE_DB_URL, ENV) when canonical is unset.
    3. Built-in defaults where defined.
    """

    # Core
    APP_ENV: str = Field(default="local")
    SERVICE_NAME: str = Field(default="polaris-recon")
    LOG_LEVEL: str = Field(default="INFO")

    # Database
    POSTGRES_DSN: str
    DB_POOL_SIZE: int = Field(default=10, ge=1)
    DB_MAX_OVERFLOW: int = Field(default=20, ge=0)
    DB_POOL_TIMEOUT: float = Field(default=30.0)

    # Redis (single-flight lock for scheduled runs)
    REDIS_URL: str = Field(default="redis://localhost:6379/0")
    POLARIS_REDIS_PREFIX: str = Field(default="polaris")
    REDIS_POOL_SIZE: int = Field(default=10)
    REDIS_MAX_CONNECTIONS: Optional[int] = Field(default=None)

    # Circuit breaker defaults
    CIRCUIT_BREAKER_FAILURE_THRESHOLD: int = Field(default=5)
    CIRCUIT_BREAKER_ROLLING_WINDOW: int = Field(default=60)
    CIRCUIT_BREAKER_RECOVERY_TIMEOUT: int = Field(default=30)
    CIRCUIT_BREAKER_SUCCESS_THRESHOLD: int = Field(default=2)

    # Reconciliation
    RECON_LOOKBACK_DAYS: int = Field(default=120, ge=1)
    RECON_MAX_CONCURRENCY: int = Field(default=8, ge=1)
    RECON_LIMIT_USERS: Optional[int] = Field(default=None, ge=0)
    RECON_LOCK_TTL_SECONDS: int = Field(default=900, ge=1)

    class Config:
        frozen = True

    @property
    def env(self) -> str:
        """Canonical environment label used for metrics and namespacing."""
        return self.APP_ENV

    @property
    def service(self) -> str:
        """Canonical service name label used for metrics."""
        return self.SERVICE_NAME

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "Settings":
        """Build Settings from environment with support for legacy aliases.

        Canonical names are preferred; legacy aliases are only consulted if the
        canonical variable is unset.
        """

        env = os.environ if environ is None else environ

        def pick(
            primary: str,
            *aliases: str,
            default: Optional[str] = None,
        ) -> Optional[str]:
            if primary in env and env[primary]:
                return env[primary]
            for name in aliases:
                if name in env and env[name]:
                    return env[name]
            return default

        data: Dict[str, Any] = {}

        try:
            # Core
            data["APP_ENV"] = (pick("APP_ENV", "ENV", default="local") or "local").strip()
            data["SERVICE_NAME"] = (
                pick("SERVICE_NAME", default="polaris-recon") or "polaris-recon"
            ).strip()
            data["LOG_LEVEL"] = (
                pick("LOG_LEVEL", default="INFO") or "INFO"
            ).strip().upper()

            # Database
            dsn = pick("POSTGRES_DSN", "DATABASE_URL", "SUPABASE_DB_URL")
            if not dsn:
                raise RuntimeError(
                    "POSTGRES_DSN (or legacy DATABASE_URL / SUPABASE_DB_URL) must be set in the environment."
                )
            data["POSTGRES_DSN"] = dsn
            data["DB_POOL_SIZE"] = int(pick("DB_POOL_SIZE", default="10") or "10")
            data["DB_MAX_OVERFLOW"] = int(pick("DB_MAX_OVERFLOW", default="20") or "20")
            data["DB_POOL_TIMEOUT"] = float(
                pick("DB_POOL_TIMEOUT", default="30.0") or "30.0"
            )

            # Redis
            data["REDIS_URL"] = (
                pick("REDIS_URL", default="redis://localhost:6379/0")
                or "redis://localhost:6379/0"
            )
            data["POLARIS_REDIS_PREFIX"] = (
                pick("POLARIS_REDIS_PREFIX", default="polaris") or "polaris"
            )
            data["REDIS_POOL_SIZE"] = int(
                pick("REDIS_POOL_SIZE", default="10") or "10"
            )
            data["REDIS_MAX_CONNECTIONS"] = _read_int(
                pick("REDIS_MAX_CONNECTIONS", default=None), None
            )

            # Circuit breaker
            data["CIRCUIT_BREAKER_FAILURE_THRESHOLD"] = int(
                pick("CIRCUIT_BREAKER_FAILURE_THRESHOLD", default="5") or "5"
            )
            data["CIRCUIT_BREAKER_ROLLING_WINDOW"] = int(
                pick("CIRCUIT_BREAKER_ROLLING_WINDOW", default="60") or "60"
            )
            data["CIRCUIT_BREAKER_RECOVERY_TIMEOUT"] = int(
                pick("CIRCUIT_BREAKER_RECOVERY_TIMEOUT", default="30") or "30"
            )
            data["CIRCUIT_BREAKER_SUCCESS_THRESHOLD"] = int(
                pick("CIRCUIT_BREAKER_SUCCESS_THRESHOLD", default="2") or "2"
            )

            # Reconciliation
            data["RECON_LOOKBACK_DAYS"] = int(
                pick("RECON_LOOKBACK_DAYS", default="120") or "120"
            )
            data["RECON_MAX_CONCURRENCY"] = int(
                pick("RECON_MAX_CONCURRENCY", default="8") or "8"
            )
            data["RECON_LIMIT_USERS"] = _read_int(
                pick("RECON_LIMIT_USERS", default=None), None
            )
            data["RECON_LOCK_TTL_SECONDS"] = int(
                pick("RECON_LOCK_TTL_SECONDS", default="900") or "900"
            )
        except ValueError as exc:
            raise RuntimeError(f"Invalid configuration: {exc}") from exc

        try:
            return cls(**data)
        except ValidationError as exc:
            raise RuntimeError(f"Invalid configuration: {exc}") from exc


def get_settings() -> Settings:
    """Return a cached Settings instance (process-wide singleton).

    The first call reads from environment; subsequent calls return the same
    immutable Settings object.
    """
    global _SETTINGS
    if _SETTINGS is None:
        with _ENV_LOCK:
            if _SETTINGS is None:
                _SETTINGS = Settings.from_env()
    return _SETTINGS


def reset_settings_cache() -> None:
    """Drop the cached Settings so the next get_settings() re-reads the environment."""
    global _SETTINGS
    with _ENV_LOCK:
        _SETTINGS = None
