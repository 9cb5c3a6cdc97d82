from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from tracker_billing import main
from tracker_billing.app.billing import InMemorySubscriptionRepository
from tracker_billing.app.errors import ConfigurationError
from tracker_billing.app.services import billing as billing_services

ENV = {
    "STRIPE_SECRET_KEY": "sk_test_1",
    "STRIPE_WEBHOOK_SECRET": "whsec_1",
    "STRIPE_PRICE_BASIC": "price_basic",
    "TRACCAR_ADMIN_EMAIL": "admin@x.com",
    "TRACCAR_ADMIN_PASSWORD": "secret",
    "BILLING_STORE": "memory",
    "APP_ENV": "test",
}


@pytest.fixture
def memory_env(monkeypatch):
    for key, value in ENV.items():
        monkeypatch.setenv(key, value)
    monkeypatch.setattr(main, "load_dotenv", lambda: None)
    billing_services.reset_services()
    yield
    billing_services.reset_services()


def test_app_serves_health_and_seeded_plans(memory_env):
    app = main.create_app()

    with TestClient(app) as client:
        health = client.get("/health").json()
        plans = client.get("/billing/plans").json()

    assert health["status"] == "healthy"
    assert health["environment"] == "test"
    basic = next(plan for plan in plans["plans"] if plan["id"] == "basic")
    assert basic["stripePriceId"] == "price_basic"
    assert isinstance(billing_services.get_subscription_repository(), InMemorySubscriptionRepository)


def test_engine_shares_repository_and_event_store(memory_env):
    engine = billing_services.get_reconciliation_engine()

    assert engine.repository is billing_services.get_subscription_repository()
    assert engine.event_store is billing_services.get_event_store()
    assert engine.directory is billing_services.get_directory_client()


def test_missing_configuration_fails_startup(memory_env, monkeypatch):
    monkeypatch.delenv("STRIPE_WEBHOOK_SECRET")
    billing_services.reset_services()

    with pytest.raises(ConfigurationError):
        main.create_app()
