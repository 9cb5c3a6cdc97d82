"""Helpers for reading provider event envelopes and their data objects."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Optional

from ..billing.models import Plan, SubscriptionData, SubscriptionStatus


class ProviderEventType(str, Enum):
    CHECKOUT_COMPLETED = "checkout.session.completed"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["ProviderEventType"]:
        try:
            return cls(value)
        except ValueError:
            return None


# Provider statuses outside the local lifecycle fold into the nearest local one.
_STATUS_MAP = {
    "trialing": SubscriptionStatus.TRIALING,
    "active": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.UNPAID,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete": SubscriptionStatus.PAST_DUE,
    "incomplete_expired": SubscriptionStatus.CANCELED,
    "paused": SubscriptionStatus.UNPAID,
}


def from_timestamp(value: Any) -> Optional[datetime]:
    """Convert a provider epoch timestamp to an aware UTC datetime."""

    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def data_object(event: Mapping[str, Any]) -> Mapping[str, Any]:
    data = event.get("data") or {}
    return data.get("object") or {}


def metadata_of(obj: Mapping[str, Any]) -> Mapping[str, Any]:
    return obj.get("metadata") or {}


def email_of(obj: Mapping[str, Any]) -> Optional[str]:
    """Best email for the object: explicit metadata first, then provider fields."""

    details = obj.get("customer_details") or {}
    email = (
        metadata_of(obj).get("userEmail")
        or obj.get("customer_email")
        or details.get("email")
    )
    return email.strip() if isinstance(email, str) and email.strip() else None


def _first_item(obj: Mapping[str, Any]) -> Mapping[str, Any]:
    items = (obj.get("items") or {}).get("data") or []
    return items[0] if items else {}


def price_reference_of(subscription: Mapping[str, Any]) -> Optional[str]:
    price = _first_item(subscription).get("price") or {}
    return price.get("id") if isinstance(price, Mapping) else price


def invoice_subscription_id(invoice: Mapping[str, Any]) -> Optional[str]:
    subscription = invoice.get("subscription")
    if subscription:
        return subscription
    parent = invoice.get("parent") or {}
    return (parent.get("subscription_details") or {}).get("subscription")


def map_status(value: Optional[str]) -> SubscriptionStatus:
    try:
        return _STATUS_MAP[value or ""]
    except KeyError as exc:
        raise ValueError(f"Unsupported subscription status: {value!r}") from exc


def checkout_status(session: Mapping[str, Any]) -> SubscriptionStatus:
    """Status for a subscription first seen through a completed checkout session."""
    if session.get("payment_status") == "unpaid":
        return SubscriptionStatus.PAST_DUE
    return SubscriptionStatus.ACTIVE


def subscription_data(
    subscription: Mapping[str, Any],
    plan: Plan,
    *,
    event_at: Optional[datetime],
    status: Optional[SubscriptionStatus] = None,
    device_limit: Optional[int] = None,
) -> SubscriptionData:
    """Desired local state described by a provider subscription object."""

    item = _first_item(subscription)
    period_start = subscription.get("current_period_start") or item.get("current_period_start")
    period_end = subscription.get("current_period_end") or item.get("current_period_end")
    return SubscriptionData(
        plan_id=plan.plan_id,
        status=status or map_status(subscription.get("status")),
        device_limit=device_limit,
        external_customer_id=subscription.get("customer"),
        external_subscription_id=subscription.get("id"),
        external_payment_method_id=subscription.get("default_payment_method"),
        current_period_start=from_timestamp(period_start),
        current_period_end=from_timestamp(period_end),
        trial_start=from_timestamp(subscription.get("trial_start")),
        trial_end=from_timestamp(subscription.get("trial_end")),
        canceled_at=from_timestamp(subscription.get("canceled_at")),
        ended_at=from_timestamp(subscription.get("ended_at")),
        cancel_at_period_end=bool(subscription.get("cancel_at_period_end")),
        event_at=event_at,
    )


__all__ = [
    "ProviderEventType",
    "checkout_status",
    "data_object",
    "email_of",
    "from_timestamp",
    "invoice_subscription_id",
    "map_status",
    "metadata_of",
    "price_reference_of",
    "subscription_data",
]
