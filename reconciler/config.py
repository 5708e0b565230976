"""Billing reconciler configuration helpers."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional
import os


@dataclass(frozen=True)
class DatabaseConfig:
    """Connection settings for the PostgreSQL billing store."""

    host: str
    port: int
    name: str
    user: str
    password: str
    connect_timeout: int


@dataclass(frozen=True)
class ReconcilerConfig:
    """Configuration for billing reconciliation and its provider."""

    database: DatabaseConfig
    provider_name: str
    stripe_api_key: str
    stripe_webhook_secret: str
    provider_timeout_seconds: float
    max_attempts: int
    backoff_base_seconds: float
    max_backoff_seconds: float
    revoke_on_payment_failure: bool
    admin_token: str
    sweep_batch_size: int
    sweep_max_batches: int


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
        raise ValueError(f"Expected integer value, got {value!r}") from exc


def _to_float(value: Optional[str], *, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected float value, got {value!r}") from exc


def load_database_config(env: Optional[Mapping[str, str]] = None) -> DatabaseConfig:
    env_mapping = os.environ if env is None else env
    return DatabaseConfig(
        host=env_mapping.get("DB_HOST", "127.0.0.1"),
        port=_to_int(env_mapping.get("DB_PORT"), default=5432),
        name=env_mapping.get("DB_NAME", "billing_db"),
        user=env_mapping.get("DB_USER", "billing_user"),
        password=env_mapping.get("DB_PASSWORD", "billing_pass"),
        connect_timeout=max(1, _to_int(env_mapping.get("DB_CONNECT_TIMEOUT"), default=5)),
    )


def load_reconciler_config(env: Optional[Mapping[str, str]] = None) -> ReconcilerConfig:
    """Load :class:`ReconcilerConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    provider_name = (env_mapping.get("BILLING_PROVIDER") or "sandbox").strip().lower() or "sandbox"

    max_attempts = max(1, _to_int(env_mapping.get("BILLING_MAX_ATTEMPTS"), default=4))
    backoff_base = max(0.0, _to_float(env_mapping.get("BILLING_BACKOFF_BASE_SECONDS"), default=0.05))
    max_backoff = max(0.0, _to_float(env_mapping.get("BILLING_MAX_BACKOFF_SECONDS"), default=0.2))
    timeout = max(0.1, _to_float(env_mapping.get("BILLING_PROVIDER_TIMEOUT_SECONDS"), default=10.0))

    return ReconcilerConfig(
        database=load_database_config(env_mapping),
        provider_name=provider_name,
        stripe_api_key=env_mapping.get("STRIPE_API_KEY", ""),
        stripe_webhook_secret=env_mapping.get("STRIPE_WEBHOOK_SECRET", ""),
        provider_timeout_seconds=timeout,
        max_attempts=max_attempts,
        backoff_base_seconds=backoff_base,
        max_backoff_seconds=max_backoff,
        revoke_on_payment_failure=_to_bool(
            env_mapping.get("BILLING_REVOKE_ON_PAYMENT_FAILURE"), default=False
        ),
        admin_token=env_mapping.get("BILLING_ADMIN_TOKEN", ""),
        sweep_batch_size=max(1, _to_int(env_mapping.get("BILLING_SWEEP_BATCH_SIZE"), default=100)),
        sweep_max_batches=max(1, _to_int(env_mapping.get("BILLING_SWEEP_MAX_BATCHES"), default=50)),
    )


__all__ = [
    "DatabaseConfig",
    "ReconcilerConfig",
    "load_database_config",
    "load_reconciler_config",
]
