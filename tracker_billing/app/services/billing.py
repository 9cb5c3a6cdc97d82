"""Application wiring for the billing sync service."""
from __future__ import annotations

import logging
from functools import lru_cache
from typing import Union

from tracker_billing.config import Settings, load_settings

from ..billing import (
    InMemoryEventStore,
    InMemorySubscriptionRepository,
    PostgresEventStore,
    PostgresSubscriptionRepository,
    build_catalog,
)
from ..billing.db import ConnectionPool, apply_schema, create_connection_pool
from ..directory import TraccarDirectoryClient
from ..payments import StripeGateway
from ..reconciliation import DirectorySubscriptionMirror, ReconciliationEngine

logger = logging.getLogger("billing")

SubscriptionStore = Union[PostgresSubscriptionRepository, InMemorySubscriptionRepository]
EventLedger = Union[PostgresEventStore, InMemoryEventStore]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()


@lru_cache(maxsize=1)
def get_connection_pool() -> ConnectionPool:
    settings = get_settings()
    return create_connection_pool(
        settings.db_config,
        min_connections=settings.db_pool_min,
        max_connections=settings.db_pool_max,
    )


@lru_cache(maxsize=1)
def get_directory_client() -> TraccarDirectoryClient:
    settings = get_settings()
    return TraccarDirectoryClient(
        settings.traccar_base_url,
        settings.traccar_admin_email or "",
        settings.traccar_admin_password or "",
        timeout=settings.traccar_timeout_seconds,
        session_ttl=settings.traccar_session_ttl_seconds,
    )


@lru_cache(maxsize=1)
def get_subscription_repository() -> SubscriptionStore:
    settings = get_settings()
    mirror = DirectorySubscriptionMirror(get_directory_client())
    if settings.uses_memory_store:
        logger.warning("Using in-memory billing store; state is lost on restart")
        return InMemorySubscriptionRepository(
            build_catalog(settings.stripe_prices), sync_hook=mirror
        )
    return PostgresSubscriptionRepository(get_connection_pool(), sync_hook=mirror)


@lru_cache(maxsize=1)
def get_event_store() -> EventLedger:
    if get_settings().uses_memory_store:
        return InMemoryEventStore()
    return PostgresEventStore(get_connection_pool())


@lru_cache(maxsize=1)
def get_payment_gateway() -> StripeGateway:
    settings = get_settings()
    return StripeGateway(
        settings.stripe_secret_key or "",
        settings.stripe_webhook_secret or "",
        publishable_key=settings.stripe_publishable_key,
    )


@lru_cache(maxsize=1)
def get_reconciliation_engine() -> ReconciliationEngine:
    return ReconciliationEngine(
        event_store=get_event_store(),
        repository=get_subscription_repository(),
        directory=get_directory_client(),
    )


def initialize_store() -> None:
    """Apply the schema when configured and seed the plan catalog."""

    settings = get_settings()
    if not settings.uses_memory_store and settings.db_apply_schema:
        apply_schema(get_connection_pool())
    get_subscription_repository().seed_plans(build_catalog(settings.stripe_prices))
    logger.info("Billing store ready (%s)", settings.billing_store)


def reset_services() -> None:
    """Drop every cached component; the next getter call rebuilds it."""

    for getter in (
        get_reconciliation_engine,
        get_payment_gateway,
        get_event_store,
        get_subscription_repository,
        get_directory_client,
        get_connection_pool,
        get_settings,
    ):
        getter.cache_clear()


__all__ = [
    "get_connection_pool",
    "get_directory_client",
    "get_event_store",
    "get_payment_gateway",
    "get_reconciliation_engine",
    "get_settings",
    "get_subscription_repository",
    "initialize_store",
    "reset_services",
]
