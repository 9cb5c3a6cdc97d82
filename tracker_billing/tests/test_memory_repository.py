from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import List

import pytest

from tracker_billing.app.billing import (
    AllowanceReason,
    HistoryEventType,
    InMemoryEventStore,
    InMemorySubscriptionRepository,
    Subscription,
    SubscriptionData,
    SubscriptionStatus,
    build_catalog,
)
from tracker_billing.app.billing.models import BillingEventStatus, EventRecordOutcome
from tracker_billing.app.errors import PlanNotFoundError, RepositoryError, SubscriptionNotFoundError

PRICES = {"basic": "price_basic", "moderate": "price_moderate"}
T0 = datetime(2024, 6, 1, tzinfo=timezone.utc)


def make_repository(**kwargs) -> InMemorySubscriptionRepository:
    return InMemorySubscriptionRepository(build_catalog(PRICES), **kwargs)


def data(plan_id: str = "basic", status: SubscriptionStatus = SubscriptionStatus.ACTIVE, **extra) -> SubscriptionData:
    return SubscriptionData(plan_id=plan_id, status=status, **extra)


def test_upsert_insert_uses_plan_device_limit_and_writes_created_history():
    repository = make_repository()

    write = repository.upsert_subscription(7, data(external_subscription_id="sub_1"))

    assert write.created is True
    assert write.subscription.device_limit == 30
    history = repository.list_history(7)
    assert [entry.event_type for entry in history] == [HistoryEventType.SUBSCRIPTION_CREATED]


def test_plan_change_round_trip_writes_one_plan_changed_row():
    repository = make_repository()
    repository.upsert_subscription(7, data("basic"))

    write = repository.upsert_subscription(7, data("moderate"))

    assert write.created is False
    assert write.subscription.device_limit == 80
    plan_changes = [
        entry for entry in repository.list_history(7) if entry.event_type == HistoryEventType.PLAN_CHANGED
    ]
    assert len(plan_changes) == 1
    assert plan_changes[0].metadata["old_plan"] == "basic"
    assert plan_changes[0].metadata["new_plan"] == "moderate"


def test_repeated_identical_upsert_updates_in_place_without_history():
    repository = make_repository()
    first = repository.upsert_subscription(7, data())

    second = repository.upsert_subscription(7, data())

    assert second.subscription.id == first.subscription.id
    assert second.history == ()
    assert len(repository.list_history(7)) == 1


def test_explicit_device_limit_overrides_plan_default():
    repository = make_repository()

    write = repository.upsert_subscription(7, data(device_limit=12))

    assert write.subscription.device_limit == 12


def test_unknown_plan_is_rejected():
    repository = make_repository()

    with pytest.raises(PlanNotFoundError):
        repository.upsert_subscription(7, data("enterprise"))


def test_stale_write_is_skipped():
    repository = make_repository()
    repository.upsert_subscription(7, data("moderate", event_at=T0 + timedelta(minutes=5)))

    write = repository.upsert_subscription(7, data("basic", event_at=T0))

    assert write.stale is True
    assert write.written is False
    assert repository.get_subscription(7).plan_id == "moderate"


def test_newer_write_advances_last_event_at_and_undated_write_keeps_it():
    repository = make_repository()
    repository.upsert_subscription(7, data(event_at=T0))
    repository.upsert_subscription(7, data(event_at=T0 + timedelta(seconds=1)))

    repository.upsert_subscription(7, data())

    assert repository.get_subscription(7).last_event_at == T0 + timedelta(seconds=1)


def test_one_active_subscription_per_user():
    repository = make_repository()
    repository.upsert_subscription(7, data(external_subscription_id="sub_1"))
    repository.upsert_subscription(7, data("moderate", external_subscription_id="sub_2"))

    active = [
        row for row in repository._subscriptions.values() if row.user_id == 7 and row.is_active
    ]
    assert len(active) == 1


def test_external_subscription_id_is_unique():
    repository = make_repository()
    repository.upsert_subscription(7, data(external_subscription_id="sub_1"))

    with pytest.raises(RepositoryError):
        repository.upsert_subscription(8, data(external_subscription_id="sub_1"))


def test_cancel_at_period_end_writes_history_only_on_transition():
    repository = make_repository()
    repository.upsert_subscription(7, data())

    first = repository.cancel_at_period_end(7, True)
    second = repository.cancel_at_period_end(7, True)

    assert first.written is True
    assert first.subscription.canceled_at is not None
    assert first.subscription.status == SubscriptionStatus.ACTIVE
    assert second.written is False
    canceled = [
        entry for entry in repository.list_history(7) if entry.event_type == HistoryEventType.SUBSCRIPTION_CANCELED
    ]
    assert len(canceled) == 1

    repository.cancel_at_period_end(7, False)
    assert repository.get_subscription(7).cancel_at_period_end is False


def test_cancel_without_active_subscription_raises():
    repository = make_repository()

    with pytest.raises(SubscriptionNotFoundError):
        repository.cancel_at_period_end(7, True)


def test_end_subscription_now_is_idempotent():
    repository = make_repository()
    repository.upsert_subscription(7, data())

    first = repository.end_subscription_now(7)
    second = repository.end_subscription_now(7)

    assert first.subscription.status == SubscriptionStatus.CANCELED
    assert first.subscription.ended_at is not None
    assert second.written is False
    ended = [
        entry for entry in repository.list_history(7) if entry.event_type == HistoryEventType.SUBSCRIPTION_ENDED
    ]
    assert len(ended) == 1


def test_can_add_device_counts_owned_devices():
    repository = make_repository()
    assert repository.can_add_device(7).reason == AllowanceReason.NO_ACTIVE_SUBSCRIPTION

    repository.upsert_subscription(7, data(device_limit=2))
    repository.transfer_device_ownership(100, 7)
    allowance = repository.can_add_device(7)
    assert allowance.allowed is True
    assert allowance.remaining == 1

    repository.transfer_device_ownership(101, 7)
    allowance = repository.can_add_device(7)
    assert allowance.allowed is False
    assert allowance.remaining == 0
    assert allowance.reason == AllowanceReason.LIMIT_REACHED


def test_transfer_device_ownership_records_previous_owner():
    repository = make_repository()
    repository.transfer_device_ownership(100, 7)

    moved = repository.transfer_device_ownership(100, 8)
    unchanged = repository.transfer_device_ownership(100, 8)

    assert moved.owner_id == 8
    assert moved.transferred_from == 7
    assert moved.transferred_at is not None
    assert unchanged == moved
    assert repository.list_owned_devices(7) == []
    assert [row.device_id for row in repository.list_owned_devices(8)] == [100]


def test_sync_hook_runs_after_write_and_failures_are_reported():
    seen: List[Subscription] = []

    def failing_hook(subscription: Subscription) -> None:
        seen.append(subscription)
        raise RuntimeError("directory unavailable")

    repository = make_repository(sync_hook=failing_hook)

    write = repository.upsert_subscription(7, data())

    assert write.sync_error == "directory unavailable"
    assert seen[0].id == write.subscription.id
    assert repository.get_subscription(7) is not None


def test_status_view_and_analytics():
    repository = make_repository()
    repository.upsert_subscription(7, data(current_period_end=datetime.now(timezone.utc) + timedelta(days=10)))
    repository.upsert_subscription(8, data())
    repository.cancel_at_period_end(8, True)
    repository.transfer_device_ownership(100, 7)

    view = repository.get_subscription_status(7)
    assert view.plan_name == "Basic Plan"
    assert view.owned_devices == 1
    assert view.remaining_devices == 29
    assert view.effective_status == "active"
    assert view.days_until_renewal in (9, 10)

    assert repository.get_subscription_status(99).effective_status == "none"

    rollups = {rollup.plan_id: rollup for rollup in repository.subscription_analytics()}
    assert rollups["basic"].active_subscriptions == 2
    assert rollups["basic"].monthly_revenue == rollups["basic"].price * 2
    assert rollups["basic"].pending_cancellations == 1
    assert rollups["basic"].avg_devices_per_user == 0.5
    assert rollups["moderate"].active_subscriptions == 0


def test_find_user_id_prefers_subscription_then_customer():
    repository = make_repository()
    repository.upsert_subscription(7, data(external_customer_id="cus_1", external_subscription_id="sub_1"))

    assert repository.find_user_id(external_subscription_id="sub_1") == 7
    assert repository.find_user_id(external_subscription_id="sub_x", external_customer_id="cus_1") == 7
    assert repository.find_user_id(external_customer_id="cus_missing") is None


def test_purge_history_before_cutoff():
    repository = make_repository()
    repository.upsert_subscription(7, data())

    assert repository.purge_history_before(datetime.now(timezone.utc) - timedelta(days=1)) == 0
    assert repository.purge_history_before(datetime.now(timezone.utc) + timedelta(seconds=1)) == 1
    assert repository.list_history(7) == []


def test_seed_plans_only_fills_missing_price_references():
    repository = InMemorySubscriptionRepository(build_catalog({"basic": "price_old"}))

    repository.seed_plans(build_catalog({"basic": "price_new", "moderate": "price_moderate"}))

    assert repository.get_plan("basic").price_reference == "price_old"
    assert repository.get_plan_by_price_reference("price_moderate").plan_id == "moderate"


def test_in_memory_event_store_dedupes_processed_events():
    store = InMemoryEventStore()

    outcome, record = store.record_event("evt_1", "invoice.payment_succeeded", {"id": "evt_1"})
    assert outcome == EventRecordOutcome.STORED
    assert record.attempts == 1

    store.mark_processed("evt_1", success=False, error="db down")
    outcome, record = store.record_event("evt_1", "invoice.payment_succeeded", {"id": "evt_1"})
    assert outcome == EventRecordOutcome.STORED
    assert record.attempts == 2
    assert record.status == BillingEventStatus.PROCESSING

    store.mark_processed("evt_1", user_id=7)
    outcome, record = store.record_event("evt_1", "invoice.payment_succeeded", {"id": "evt_1"})
    assert outcome == EventRecordOutcome.DUPLICATE
    assert record.processed is True
    assert record.user_id == 7
