from __future__ import annotations

import pytest

from tracker_billing.app.errors import ConfigurationError
from tracker_billing.config import load_settings

REQUIRED = {
    "STRIPE_SECRET_KEY": "sk_test_1",
    "STRIPE_WEBHOOK_SECRET": "whsec_1",
    "TRACCAR_ADMIN_EMAIL": "admin@x.com",
    "TRACCAR_ADMIN_PASSWORD": "secret",
}


def test_defaults_are_applied():
    settings = load_settings(REQUIRED)

    assert settings.app_env == "development"
    assert settings.traccar_base_url == "http://localhost:8082"
    assert settings.success_url == "http://localhost:3000/success"
    assert settings.cancel_url == "http://localhost:3000/pricing"
    assert settings.allowed_origins == ("http://localhost:3000",)
    assert settings.db_port == 5432
    assert settings.billing_store == "postgres"
    assert settings.stripe_prices == {"test": None, "basic": None, "moderate": None, "advance": None}
    assert settings.validate() is settings


def test_missing_required_keys_are_all_named():
    settings = load_settings({"STRIPE_SECRET_KEY": "sk_test_1"})

    with pytest.raises(ConfigurationError) as excinfo:
        settings.validate()

    message = str(excinfo.value)
    assert "STRIPE_WEBHOOK_SECRET" in message
    assert "TRACCAR_ADMIN_EMAIL" in message
    assert "TRACCAR_ADMIN_PASSWORD" in message
    assert "STRIPE_SECRET_KEY" not in message


def test_invalid_integer_is_configuration_error():
    with pytest.raises(ConfigurationError):
        load_settings({**REQUIRED, "DB_PORT": "five"})


def test_price_references_and_origins_are_parsed():
    settings = load_settings(
        {
            **REQUIRED,
            "STRIPE_PRICE_BASIC": "price_basic",
            "FRONTEND_URL": "https://app.example.com/",
            "ALLOWED_ORIGINS": "https://app.example.com, https://admin.example.com",
            "DB_CONNECT_TIMEOUT": "2.5",
        }
    )

    assert settings.stripe_prices["basic"] == "price_basic"
    assert settings.success_url == "https://app.example.com/success"
    assert settings.allowed_origins == ("https://app.example.com", "https://admin.example.com")
    assert settings.db_connect_timeout == 3


def test_memory_store_and_invalid_store():
    assert load_settings({**REQUIRED, "BILLING_STORE": "Memory"}).uses_memory_store is True

    with pytest.raises(ConfigurationError):
        load_settings({**REQUIRED, "BILLING_STORE": "redis"}).validate()


def test_pool_bounds_are_validated():
    with pytest.raises(ConfigurationError):
        load_settings({**REQUIRED, "DB_POOL_MIN": "5", "DB_POOL_MAX": "2"}).validate()
