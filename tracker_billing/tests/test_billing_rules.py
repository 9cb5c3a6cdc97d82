from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from tracker_billing.app.billing import (
    AllowanceReason,
    HistoryEventType,
    Subscription,
    SubscriptionStatus,
    build_catalog,
    get_plan_definition,
    is_valid_plan,
)
from tracker_billing.app.billing import rules
from tracker_billing.app.errors import PlanNotFoundError

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def make_subscription(**overrides) -> Subscription:
    values = dict(
        id=1,
        user_id=7,
        plan_id="basic",
        status=SubscriptionStatus.ACTIVE,
        device_limit=30,
        created_at=NOW,
        updated_at=NOW,
    )
    values.update(overrides)
    return Subscription(**values)


def test_history_for_insert_is_single_created_row():
    current = make_subscription()

    entries = rules.history_for_write(None, current)

    assert [entry.event_type for entry in entries] == [HistoryEventType.SUBSCRIPTION_CREATED]
    assert entries[0].metadata["device_limit"] == 30


def test_history_emits_one_row_per_changed_field_group():
    previous = make_subscription()
    current = make_subscription(
        plan_id="moderate",
        device_limit=80,
        status=SubscriptionStatus.PAST_DUE,
    )

    entries = rules.history_for_write(previous, current)

    assert [entry.event_type for entry in entries] == [
        HistoryEventType.STATUS_CHANGED,
        HistoryEventType.PLAN_CHANGED,
    ]
    assert entries[0].metadata == {"old_status": "active", "new_status": "past_due"}
    assert entries[1].metadata["old_plan"] == "basic"
    assert entries[1].metadata["new_plan"] == "moderate"


def test_history_ignores_changes_outside_status_and_plan():
    previous = make_subscription()
    current = make_subscription(current_period_end=NOW + timedelta(days=30), device_limit=40)

    assert rules.history_for_write(previous, current) == []


@pytest.mark.parametrize(
    "owned, allowed, reason, remaining",
    [
        (0, True, AllowanceReason.ALLOWED, 30),
        (29, True, AllowanceReason.ALLOWED, 1),
        (30, False, AllowanceReason.LIMIT_REACHED, 0),
        (45, False, AllowanceReason.LIMIT_REACHED, 0),
    ],
)
def test_device_allowance_boundaries(owned, allowed, reason, remaining):
    allowance = rules.evaluate_device_allowance(make_subscription(), owned)

    assert allowance.allowed is allowed
    assert allowance.reason == reason
    assert allowance.remaining == remaining


def test_device_allowance_requires_active_subscription():
    canceled = make_subscription(status=SubscriptionStatus.CANCELED)

    for subscription in (None, canceled):
        allowance = rules.evaluate_device_allowance(subscription, 0)
        assert allowance.allowed is False
        assert allowance.reason == AllowanceReason.NO_ACTIVE_SUBSCRIPTION
        assert allowance.message == "No active subscription found"


def test_device_allowance_messages():
    subscription = make_subscription(device_limit=5)

    assert rules.evaluate_device_allowance(subscription, 3).message == "Can add 2 more device(s)"
    assert rules.evaluate_device_allowance(subscription, 5).message == "Device limit reached (5 devices)"


def test_stale_write_detection():
    older = NOW - timedelta(minutes=5)

    assert rules.is_stale_write(NOW, older) is True
    assert rules.is_stale_write(older, NOW) is False
    assert rules.is_stale_write(NOW, NOW) is False
    assert rules.is_stale_write(None, NOW) is False
    assert rules.is_stale_write(NOW, None) is False


def test_stale_write_treats_naive_timestamps_as_utc():
    assert rules.is_stale_write(NOW, NOW.replace(tzinfo=None) - timedelta(seconds=1)) is True


def test_effective_status_folds_in_expiry_and_usage():
    expired = make_subscription(current_period_end=NOW - timedelta(days=1))
    past_due = make_subscription(status=SubscriptionStatus.PAST_DUE)
    trial_over = make_subscription(status=SubscriptionStatus.TRIALING, trial_end=NOW - timedelta(hours=1))

    assert rules.effective_status(None, 0, now=NOW) == "none"
    assert rules.effective_status(expired, 0, now=NOW) == "expired"
    assert rules.effective_status(past_due, 0, now=NOW) == "payment_required"
    assert rules.effective_status(trial_over, 0, now=NOW) == "trial_expired"
    assert rules.effective_status(make_subscription(), 30, now=NOW) == "limit_reached"
    assert rules.effective_status(make_subscription(), 2, now=NOW) == "active"


def test_days_until():
    assert rules.days_until(None, now=NOW) is None
    assert rules.days_until(NOW + timedelta(days=3, hours=1), now=NOW) == 3


def test_catalog_lookup_and_price_references():
    assert get_plan_definition(" Basic ").device_limit == 30
    assert is_valid_plan("advance") is True
    assert is_valid_plan("enterprise") is False
    assert is_valid_plan(None) is False
    with pytest.raises(PlanNotFoundError):
        get_plan_definition("enterprise")

    plans = {plan.plan_id: plan for plan in build_catalog({"basic": "price_basic", "test": None})}

    assert plans["basic"].price_reference == "price_basic"
    assert plans["test"].price_reference is None
    assert plans["advance"].device_limit == 350
