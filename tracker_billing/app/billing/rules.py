"""Pure rules shared by every subscription repository implementation.

History derivation, the device allowance check and the derived status shown
to operators live here so the PostgreSQL and in-memory repositories cannot
drift apart.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

from .models import (
    AllowanceReason,
    DeviceAllowance,
    HistoryEventType,
    Subscription,
    SubscriptionHistoryEntry,
    SubscriptionStatus,
)


def history_for_write(
    previous: Optional[Subscription],
    current: Subscription,
) -> List[SubscriptionHistoryEntry]:
    """Return the history rows describing the transition ``previous -> current``.

    One row per changed field group (status, plan); an insert yields a single
    ``subscription_created`` row.
    """

    if previous is None:
        return [
            SubscriptionHistoryEntry(
                user_id=current.user_id,
                subscription_id=current.id,
                plan_id=current.plan_id,
                status=current.status,
                event_type=HistoryEventType.SUBSCRIPTION_CREATED,
                description=f"Subscription created: {current.plan_id}",
                metadata={
                    "plan_id": current.plan_id,
                    "status": current.status.value,
                    "device_limit": current.device_limit,
                },
            )
        ]

    entries: List[SubscriptionHistoryEntry] = []
    if previous.status != current.status:
        entries.append(
            SubscriptionHistoryEntry(
                user_id=current.user_id,
                subscription_id=current.id,
                plan_id=current.plan_id,
                status=current.status,
                event_type=HistoryEventType.STATUS_CHANGED,
                description=f"Status changed from {previous.status.value} to {current.status.value}",
                metadata={
                    "old_status": previous.status.value,
                    "new_status": current.status.value,
                },
            )
        )
    if previous.plan_id != current.plan_id:
        entries.append(
            SubscriptionHistoryEntry(
                user_id=current.user_id,
                subscription_id=current.id,
                plan_id=current.plan_id,
                status=current.status,
                event_type=HistoryEventType.PLAN_CHANGED,
                description=f"Plan changed from {previous.plan_id} to {current.plan_id}",
                metadata={
                    "old_plan": previous.plan_id,
                    "new_plan": current.plan_id,
                    "old_device_limit": previous.device_limit,
                    "new_device_limit": current.device_limit,
                },
            )
        )
    return entries


def cancel_flag_entry(subscription: Subscription, flag: bool) -> SubscriptionHistoryEntry:
    description = (
        "Subscription will cancel at period end" if flag else "Subscription cancellation undone"
    )
    return SubscriptionHistoryEntry(
        user_id=subscription.user_id,
        subscription_id=subscription.id,
        plan_id=subscription.plan_id,
        status=subscription.status,
        event_type=HistoryEventType.SUBSCRIPTION_CANCELED,
        description=description,
        metadata={"cancel_at_period_end": flag},
    )


def ended_entry(previous: Subscription, current: Subscription) -> SubscriptionHistoryEntry:
    return SubscriptionHistoryEntry(
        user_id=current.user_id,
        subscription_id=current.id,
        plan_id=current.plan_id,
        status=current.status,
        event_type=HistoryEventType.SUBSCRIPTION_ENDED,
        description="Subscription ended",
        metadata={"old_status": previous.status.value},
    )


def is_stale_write(stored_event_at: Optional[datetime], incoming_event_at: Optional[datetime]) -> bool:
    """Return ``True`` when the incoming provider event predates the stored state."""

    if stored_event_at is None or incoming_event_at is None:
        return False
    return _as_utc(incoming_event_at) < _as_utc(stored_event_at)


def evaluate_device_allowance(
    subscription: Optional[Subscription],
    owned_devices: int,
) -> DeviceAllowance:
    """Decide whether one more device fits under the active subscription's limit."""

    if subscription is None or not subscription.is_active:
        return DeviceAllowance(
            allowed=False,
            reason=AllowanceReason.NO_ACTIVE_SUBSCRIPTION,
            remaining=0,
            message="No active subscription found",
            owned_devices=owned_devices,
        )

    limit = subscription.device_limit
    if owned_devices >= limit:
        return DeviceAllowance(
            allowed=False,
            reason=AllowanceReason.LIMIT_REACHED,
            remaining=0,
            message=f"Device limit reached ({limit} devices)",
            device_limit=limit,
            owned_devices=owned_devices,
        )

    remaining = limit - owned_devices
    return DeviceAllowance(
        allowed=True,
        reason=AllowanceReason.ALLOWED,
        remaining=remaining,
        message=f"Can add {remaining} more device(s)",
        device_limit=limit,
        owned_devices=owned_devices,
    )


def effective_status(
    subscription: Optional[Subscription],
    owned_devices: int,
    *,
    now: Optional[datetime] = None,
) -> str:
    """Operator-facing status that folds in period expiry and device usage."""

    if subscription is None:
        return "none"
    now = now or datetime.now(timezone.utc)
    period_end = subscription.current_period_end
    if (
        subscription.status == SubscriptionStatus.ACTIVE
        and period_end is not None
        and _as_utc(period_end) < now
    ):
        return "expired"
    if subscription.status == SubscriptionStatus.PAST_DUE:
        return "payment_required"
    trial_end = subscription.trial_end
    if (
        subscription.status == SubscriptionStatus.TRIALING
        and trial_end is not None
        and _as_utc(trial_end) < now
    ):
        return "trial_expired"
    if owned_devices >= subscription.device_limit:
        return "limit_reached"
    return subscription.status.value


def days_until(moment: Optional[datetime], *, now: Optional[datetime] = None) -> Optional[int]:
    if moment is None:
        return None
    now = now or datetime.now(timezone.utc)
    return (_as_utc(moment).date() - now.date()).days


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


__all__ = [
    "cancel_flag_entry",
    "days_until",
    "effective_status",
    "ended_entry",
    "evaluate_device_allowance",
    "history_for_write",
    "is_stale_write",
]
