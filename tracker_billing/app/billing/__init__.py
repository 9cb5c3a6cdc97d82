"""Billing domain package: plans, subscriptions, device ownership and the event ledger."""

from .catalog import PLAN_CATALOG, build_catalog, get_plan_definition, is_valid_plan
from .event_store import PostgresEventStore
from .memory import InMemoryEventStore, InMemorySubscriptionRepository
from .models import (
    ACTIVE_STATUSES,
    AllowanceReason,
    BillingEventRecord,
    BillingEventStatus,
    DeviceAllowance,
    DeviceOwnership,
    EventRecordOutcome,
    HistoryEventType,
    Plan,
    PlanAnalytics,
    Subscription,
    SubscriptionData,
    SubscriptionHistoryEntry,
    SubscriptionStatus,
    SubscriptionStatusView,
    SubscriptionWrite,
)
from .repository import PostgresSubscriptionRepository, SubscriptionSyncHook

__all__ = [
    "ACTIVE_STATUSES",
    "AllowanceReason",
    "BillingEventRecord",
    "BillingEventStatus",
    "DeviceAllowance",
    "DeviceOwnership",
    "EventRecordOutcome",
    "HistoryEventType",
    "InMemoryEventStore",
    "InMemorySubscriptionRepository",
    "PLAN_CATALOG",
    "Plan",
    "PlanAnalytics",
    "PostgresEventStore",
    "PostgresSubscriptionRepository",
    "Subscription",
    "SubscriptionData",
    "SubscriptionHistoryEntry",
    "SubscriptionStatus",
    "SubscriptionStatusView",
    "SubscriptionSyncHook",
    "SubscriptionWrite",
    "build_catalog",
    "get_plan_definition",
    "is_valid_plan",
]
