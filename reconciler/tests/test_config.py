from __future__ import annotations

import pytest

from reconciler.config import load_reconciler_config


def test_defaults_match_documented_values():
    config = load_reconciler_config({})

    assert config.provider_name == "sandbox"
    assert config.max_attempts == 4
    assert config.backoff_base_seconds == pytest.approx(0.05)
    assert config.max_backoff_seconds == pytest.approx(0.2)
    assert config.provider_timeout_seconds == pytest.approx(10.0)
    assert config.revoke_on_payment_failure is False
    assert config.admin_token == ""
    assert config.sweep_batch_size == 100
    assert config.sweep_max_batches == 50
    assert config.database.name == "billing_db"
    assert config.database.connect_timeout == 5


def test_environment_overrides():
    config = load_reconciler_config(
        {
            "BILLING_PROVIDER": " Stripe ",
            "STRIPE_API_KEY": "sk_live_x",
            "BILLING_MAX_ATTEMPTS": "6",
            "BILLING_BACKOFF_BASE_SECONDS": "0.01",
            "BILLING_REVOKE_ON_PAYMENT_FAILURE": "yes",
            "BILLING_SWEEP_BATCH_SIZE": "0",
            "DB_HOST": "db.internal",
            "DB_PORT": "6543",
        }
    )

    assert config.provider_name == "stripe"
    assert config.stripe_api_key == "sk_live_x"
    assert config.max_attempts == 6
    assert config.backoff_base_seconds == pytest.approx(0.01)
    assert config.revoke_on_payment_failure is True
    assert config.sweep_batch_size == 1
    assert config.database.host == "db.internal"
    assert config.database.port == 6543


def test_attempts_never_drop_below_one():
    assert load_reconciler_config({"BILLING_MAX_ATTEMPTS": "0"}).max_attempts == 1


def test_invalid_numbers_are_rejected():
    with pytest.raises(ValueError):
        load_reconciler_config({"BILLING_MAX_ATTEMPTS": "four"})
