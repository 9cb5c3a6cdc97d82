"""Application settings loaded from the environment."""
from __future__ import annotations

import math
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

from tracker_billing.app.errors import ConfigurationError

PLAN_PRICE_ENV = {
    "test": "STRIPE_PRICE_TEST",
    "basic": "STRIPE_PRICE_BASIC",
    "moderate": "STRIPE_PRICE_MODERATE",
    "advance": "STRIPE_PRICE_ADVANCE",
}


@dataclass(frozen=True)
class Settings:
    """Runtime configuration for the billing sync service."""

    app_env: str
    log_level: str
    stripe_secret_key: Optional[str]
    stripe_publishable_key: Optional[str]
    stripe_webhook_secret: Optional[str]
    stripe_prices: Dict[str, Optional[str]]
    traccar_base_url: str
    traccar_admin_email: Optional[str]
    traccar_admin_password: Optional[str] = field(repr=False)
    traccar_timeout_seconds: float
    traccar_session_ttl_seconds: float
    frontend_url: str
    success_url: str
    cancel_url: str
    allowed_origins: Tuple[str, ...]
    admin_api_token: Optional[str] = field(repr=False)
    db_host: str
    db_port: int
    db_name: str
    db_user: str
    db_password: str = field(repr=False)
    db_connect_timeout: int
    db_pool_min: int
    db_pool_max: int
    db_apply_schema: bool
    # "postgres" in deployments; "memory" keeps all billing state in process.
    billing_store: str = "postgres"

    @property
    def uses_memory_store(self) -> bool:
        return self.billing_store == "memory"

    @property
    def db_config(self) -> Dict[str, Any]:
        return dict(
            host=self.db_host,
            port=self.db_port,
            dbname=self.db_name,
            user=self.db_user,
            password=self.db_password,
            connect_timeout=self.db_connect_timeout,
        )

    def missing_required(self) -> Tuple[str, ...]:
        required = {
            "STRIPE_SECRET_KEY": self.stripe_secret_key,
            "STRIPE_WEBHOOK_SECRET": self.stripe_webhook_secret,
            "TRACCAR_ADMIN_EMAIL": self.traccar_admin_email,
            "TRACCAR_ADMIN_PASSWORD": self.traccar_admin_password,
        }
        return tuple(name for name, value in required.items() if not value)

    def validate(self) -> "Settings":
        """Raise :class:`ConfigurationError` naming every missing required key."""

        missing = self.missing_required()
        if missing:
            raise ConfigurationError(
                "Missing required environment variables: " + ", ".join(missing)
            )
        if self.billing_store not in {"postgres", "memory"}:
            raise ConfigurationError("BILLING_STORE must be 'postgres' or 'memory'")
        if self.db_pool_max < max(self.db_pool_min, 1):
            raise ConfigurationError("DB_POOL_MAX must be >= DB_POOL_MIN and >= 1")
        return self


def _to_bool(value: Optional[str], *, default: bool) -> bool:
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return default


def _to_int(value: Optional[str], *, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Expected integer value, got {value!r}") from exc


def _to_float(value: Optional[str], *, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Expected float value, got {value!r}") from exc


def _parse_connect_timeout(raw_value: Optional[str]) -> int:
    timeout = _to_float(raw_value, default=5.0)
    if timeout < 0:
        raise ConfigurationError("DB_CONNECT_TIMEOUT must be non-negative")
    return int(math.ceil(timeout))


def _split_origins(raw_value: Optional[str], fallback: str) -> Tuple[str, ...]:
    origins = [origin.strip() for origin in (raw_value or "").split(",") if origin.strip()]
    return tuple(origins) if origins else (fallback,)


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """Load :class:`Settings` from environment variables."""

    env_mapping = os.environ if env is None else env

    frontend_url = (env_mapping.get("FRONTEND_URL") or "http://localhost:3000").rstrip("/")
    return Settings(
        app_env=(env_mapping.get("APP_ENV") or "development").strip().lower(),
        log_level=(env_mapping.get("LOG_LEVEL") or "INFO").strip().upper(),
        stripe_secret_key=env_mapping.get("STRIPE_SECRET_KEY") or None,
        stripe_publishable_key=env_mapping.get("STRIPE_PUBLISHABLE_KEY") or None,
        stripe_webhook_secret=env_mapping.get("STRIPE_WEBHOOK_SECRET") or None,
        stripe_prices={
            plan_id: env_mapping.get(variable) or None
            for plan_id, variable in PLAN_PRICE_ENV.items()
        },
        traccar_base_url=(env_mapping.get("TRACCAR_BASE_URL") or "http://localhost:8082").rstrip("/"),
        traccar_admin_email=env_mapping.get("TRACCAR_ADMIN_EMAIL") or None,
        traccar_admin_password=env_mapping.get("TRACCAR_ADMIN_PASSWORD") or None,
        traccar_timeout_seconds=max(
            0.1, _to_float(env_mapping.get("TRACCAR_TIMEOUT_SECONDS"), default=10.0)
        ),
        traccar_session_ttl_seconds=max(
            60.0, _to_float(env_mapping.get("TRACCAR_SESSION_TTL_SECONDS"), default=82800.0)
        ),
        frontend_url=frontend_url,
        success_url=env_mapping.get("SUCCESS_URL") or f"{frontend_url}/success",
        cancel_url=env_mapping.get("CANCEL_URL") or f"{frontend_url}/pricing",
        allowed_origins=_split_origins(env_mapping.get("ALLOWED_ORIGINS"), frontend_url),
        admin_api_token=env_mapping.get("ADMIN_API_TOKEN") or None,
        db_host=env_mapping.get("DB_HOST", "127.0.0.1"),
        db_port=_to_int(env_mapping.get("DB_PORT"), default=5432),
        db_name=env_mapping.get("DB_NAME", "tracker_billing"),
        db_user=env_mapping.get("DB_USER", "billing"),
        db_password=env_mapping.get("DB_PASSWORD", ""),
        db_connect_timeout=_parse_connect_timeout(env_mapping.get("DB_CONNECT_TIMEOUT")),
        db_pool_min=max(0, _to_int(env_mapping.get("DB_POOL_MIN"), default=1)),
        db_pool_max=_to_int(env_mapping.get("DB_POOL_MAX"), default=10),
        db_apply_schema=_to_bool(env_mapping.get("DB_APPLY_SCHEMA"), default=False),
        billing_store=(env_mapping.get("BILLING_STORE") or "postgres").strip().lower(),
    )


__all__ = ["PLAN_PRICE_ENV", "Settings", "load_settings"]
