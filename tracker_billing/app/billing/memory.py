"""In-memory stores suitable for tests and local development."""
from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from ..errors import PlanNotFoundError, RepositoryError, SubscriptionNotFoundError
from . import rules
from .models import (
    ACTIVE_STATUSES,
    CURRENT_STATUSES,
    BillingEventRecord,
    BillingEventStatus,
    DeviceAllowance,
    DeviceOwnership,
    EventRecordOutcome,
    Plan,
    PlanAnalytics,
    Subscription,
    SubscriptionData,
    SubscriptionHistoryEntry,
    SubscriptionStatus,
    SubscriptionStatusView,
    SubscriptionWrite,
)
from .repository import SubscriptionSyncHook, build_status_view


class InMemorySubscriptionRepository:
    """Dictionary-backed repository with the same semantics as the PostgreSQL one."""

    def __init__(
        self,
        plans: Iterable[Plan] = (),
        *,
        sync_hook: Optional[SubscriptionSyncHook] = None,
    ) -> None:
        self._lock = threading.Lock()
        self._plans: Dict[str, Plan] = {plan.plan_id: plan for plan in plans}
        self._subscriptions: Dict[int, Subscription] = {}
        self._history: List[SubscriptionHistoryEntry] = []
        self._ownership: Dict[int, DeviceOwnership] = {}
        self._next_subscription_id = 1
        self._next_history_id = 1
        self.sync_hook = sync_hook

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # Plans -----------------------------------------------------------------

    def seed_plans(self, plans: Iterable[Plan]) -> None:
        with self._lock:
            for plan in plans:
                existing = self._plans.get(plan.plan_id)
                if existing is None:
                    self._plans[plan.plan_id] = plan
                elif plan.price_reference and not existing.price_reference:
                    self._plans[plan.plan_id] = existing.model_copy(
                        update={"price_reference": plan.price_reference}
                    )

    def list_plans(self, *, include_inactive: bool = False) -> List[Plan]:
        plans = [plan for plan in self._plans.values() if include_inactive or plan.active]
        return sorted(plans, key=lambda plan: (plan.price, plan.plan_id))

    def get_plan(self, plan_id: str) -> Optional[Plan]:
        return self._plans.get(plan_id.strip().lower())

    def get_plan_by_price_reference(self, price_reference: str) -> Optional[Plan]:
        for plan in self._plans.values():
            if plan.price_reference and plan.price_reference == price_reference:
                return plan
        return None

    def update_plan(self, plan: Plan) -> Plan:
        with self._lock:
            if plan.plan_id not in self._plans:
                raise PlanNotFoundError(f"Unknown plan id: {plan.plan_id}")
            self._plans[plan.plan_id] = plan
            return plan

    # Subscriptions -----------------------------------------------------------

    def get_subscription(self, user_id: int) -> Optional[Subscription]:
        return self._latest_for(user_id)

    def find_user_id(
        self,
        *,
        external_subscription_id: Optional[str] = None,
        external_customer_id: Optional[str] = None,
    ) -> Optional[int]:
        rows = list(self._subscriptions.values())
        if external_subscription_id:
            for row in rows:
                if row.external_subscription_id == external_subscription_id:
                    return row.user_id
        if external_customer_id:
            matches = [row for row in rows if row.external_customer_id == external_customer_id]
            if matches:
                return max(matches, key=lambda row: row.updated_at).user_id
        return None

    def upsert_subscription(self, user_id: int, data: SubscriptionData) -> SubscriptionWrite:
        with self._lock:
            previous = self._latest_for(user_id)
            if previous is not None and rules.is_stale_write(previous.last_event_at, data.event_at):
                return SubscriptionWrite(subscription=previous, stale=True)

            device_limit = data.device_limit
            if device_limit is None:
                plan = self._plans.get(data.plan_id.strip().lower())
                if plan is None:
                    raise PlanNotFoundError(f"Unknown plan id: {data.plan_id}")
                device_limit = plan.device_limit

            now = self._now()
            fields: Dict[str, Any] = {
                "plan_id": data.plan_id.strip().lower(),
                "status": data.status,
                "device_limit": device_limit,
                "current_period_start": data.current_period_start,
                "current_period_end": data.current_period_end,
                "trial_start": data.trial_start,
                "trial_end": data.trial_end,
                "canceled_at": data.canceled_at,
                "cancel_at_period_end": data.cancel_at_period_end,
                "updated_at": now,
            }
            if previous is not None:
                fields.update(
                    external_customer_id=data.external_customer_id or previous.external_customer_id,
                    external_subscription_id=data.external_subscription_id
                    or previous.external_subscription_id,
                    external_payment_method_id=data.external_payment_method_id
                    or previous.external_payment_method_id,
                    ended_at=data.ended_at or previous.ended_at,
                    last_event_at=data.event_at or previous.last_event_at,
                )
                current = previous.model_copy(update=fields)
            else:
                current = Subscription(
                    id=self._next_subscription_id,
                    user_id=user_id,
                    external_customer_id=data.external_customer_id,
                    external_subscription_id=data.external_subscription_id,
                    external_payment_method_id=data.external_payment_method_id,
                    ended_at=data.ended_at,
                    last_event_at=data.event_at,
                    start_date=now,
                    created_at=now,
                    **fields,
                )
                self._next_subscription_id += 1
            self._check_constraints(current)
            self._subscriptions[current.id] = current
            history = self._append(rules.history_for_write(previous, current))

        return self._after_commit(
            SubscriptionWrite(
                subscription=current,
                written=True,
                created=previous is None,
                history=tuple(history),
            )
        )

    def cancel_at_period_end(self, user_id: int, flag: bool = True) -> SubscriptionWrite:
        with self._lock:
            previous = self._latest_for(user_id)
            if previous is None or previous.status not in ACTIVE_STATUSES:
                raise SubscriptionNotFoundError(f"No active subscription for user {user_id}")
            if previous.cancel_at_period_end == flag:
                return SubscriptionWrite(subscription=previous)
            update: Dict[str, Any] = {"cancel_at_period_end": flag, "updated_at": self._now()}
            if flag:
                update["canceled_at"] = self._now()
            current = previous.model_copy(update=update)
            self._subscriptions[current.id] = current
            history = self._append([rules.cancel_flag_entry(current, flag)])

        return self._after_commit(
            SubscriptionWrite(subscription=current, written=True, history=tuple(history))
        )

    def end_subscription_now(self, user_id: int) -> SubscriptionWrite:
        with self._lock:
            previous = self._latest_for(user_id)
            if previous is None:
                raise SubscriptionNotFoundError(f"No subscription for user {user_id}")
            if previous.status == SubscriptionStatus.CANCELED:
                return SubscriptionWrite(subscription=previous)
            now = self._now()
            current = previous.model_copy(
                update={"status": SubscriptionStatus.CANCELED, "ended_at": now, "updated_at": now}
            )
            self._subscriptions[current.id] = current
            history = self._append([rules.ended_entry(previous, current)])

        return self._after_commit(
            SubscriptionWrite(subscription=current, written=True, history=tuple(history))
        )

    def list_history(self, user_id: int, *, limit: int = 50) -> List[SubscriptionHistoryEntry]:
        entries = [entry for entry in self._history if entry.user_id == user_id]
        entries.sort(key=lambda entry: (entry.created_at, entry.id or 0), reverse=True)
        return entries[:limit]

    def purge_history_before(self, cutoff: datetime) -> int:
        with self._lock:
            kept = [entry for entry in self._history if entry.created_at >= cutoff]
            deleted = len(self._history) - len(kept)
            self._history = kept
        return deleted

    # Devices -----------------------------------------------------------------

    def can_add_device(self, user_id: int) -> DeviceAllowance:
        subscription = self._latest_for(user_id)
        if subscription is not None and not subscription.is_active:
            subscription = None
        return rules.evaluate_device_allowance(subscription, self._owned_count(user_id))

    def transfer_device_ownership(self, device_id: int, new_owner_id: int) -> DeviceOwnership:
        with self._lock:
            existing = self._ownership.get(device_id)
            if existing is None:
                ownership = DeviceOwnership(device_id=device_id, owner_id=new_owner_id)
            elif existing.owner_id == new_owner_id:
                return existing
            else:
                ownership = existing.model_copy(
                    update={
                        "owner_id": new_owner_id,
                        "transferred_from": existing.owner_id,
                        "transferred_at": self._now(),
                    }
                )
            self._ownership[device_id] = ownership
            return ownership

    def list_owned_devices(self, user_id: int) -> List[DeviceOwnership]:
        owned = [row for row in self._ownership.values() if row.owner_id == user_id]
        return sorted(owned, key=lambda row: row.device_id)

    # Reporting ---------------------------------------------------------------

    def get_subscription_status(self, user_id: int) -> SubscriptionStatusView:
        subscription = self._latest_for(user_id)
        if subscription is not None and subscription.status not in CURRENT_STATUSES:
            subscription = None
        plan = self._plans.get(subscription.plan_id) if subscription else None
        return build_status_view(
            user_id,
            subscription,
            plan_name=plan.name if plan else None,
            owned_devices=self._owned_count(user_id),
        )

    def subscription_analytics(self) -> List[PlanAnalytics]:
        rollups = []
        for plan in self._plans.values():
            active = [
                row
                for row in self._subscriptions.values()
                if row.plan_id == plan.plan_id and row.is_active
            ]
            owned = [self._owned_count(row.user_id) for row in active]
            rollups.append(
                PlanAnalytics(
                    plan_id=plan.plan_id,
                    plan_name=plan.name,
                    price=plan.price,
                    active_subscriptions=len(active),
                    monthly_revenue=plan.price * len(active),
                    pending_cancellations=sum(1 for row in active if row.cancel_at_period_end),
                    avg_devices_per_user=(sum(owned) / len(owned)) if owned else 0.0,
                    users_at_limit=sum(
                        1 for row, count in zip(active, owned) if count >= row.device_limit
                    ),
                )
            )
        rollups.sort(key=lambda rollup: (-rollup.monthly_revenue, rollup.plan_id))
        return rollups

    # Internals ---------------------------------------------------------------

    def _latest_for(self, user_id: int) -> Optional[Subscription]:
        rows = [row for row in self._subscriptions.values() if row.user_id == user_id]
        if not rows:
            return None
        return max(rows, key=lambda row: (row.is_active, row.updated_at, row.id))

    def _owned_count(self, user_id: int) -> int:
        return sum(1 for row in self._ownership.values() if row.owner_id == user_id)

    def _check_constraints(self, candidate: Subscription) -> None:
        for row in self._subscriptions.values():
            if row.id == candidate.id:
                continue
            if (
                candidate.external_subscription_id
                and row.external_subscription_id == candidate.external_subscription_id
            ):
                raise RepositoryError("duplicate external subscription id")
            if candidate.is_active and row.is_active and row.user_id == candidate.user_id:
                raise RepositoryError("user already has an active subscription")

    def _append(self, entries: Iterable[SubscriptionHistoryEntry]) -> List[SubscriptionHistoryEntry]:
        stored = []
        for entry in entries:
            persisted = entry.model_copy(update={"id": self._next_history_id})
            self._next_history_id += 1
            self._history.append(persisted)
            stored.append(persisted)
        return stored

    def _after_commit(self, write: SubscriptionWrite) -> SubscriptionWrite:
        if self.sync_hook is None or write.subscription is None:
            return write
        try:
            self.sync_hook(write.subscription)
        except Exception as exc:
            return write.model_copy(update={"sync_error": str(exc)})
        return write


class InMemoryEventStore:
    """Event ledger mirroring :class:`PostgresEventStore` without a database."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: Dict[str, BillingEventRecord] = {}

    def record_event(
        self,
        event_id: str,
        event_type: str,
        payload: Mapping[str, Any],
        *,
        customer_id: Optional[str] = None,
        subscription_id: Optional[str] = None,
    ) -> Tuple[EventRecordOutcome, BillingEventRecord]:
        with self._lock:
            existing = self._events.get(event_id)
            if existing is not None and existing.processed:
                return EventRecordOutcome.DUPLICATE, existing
            if existing is not None:
                record = existing.model_copy(
                    update={
                        "attempts": existing.attempts + 1,
                        "status": BillingEventStatus.PROCESSING,
                        "error_message": None,
                        "payload": dict(payload),
                    }
                )
            else:
                record = BillingEventRecord(
                    event_id=event_id,
                    event_type=event_type,
                    payload=dict(payload),
                    customer_id=customer_id,
                    subscription_id=subscription_id,
                )
            self._events[event_id] = record
            return EventRecordOutcome.STORED, record

    def mark_processed(
        self,
        event_id: str,
        *,
        success: bool = True,
        error: Optional[str] = None,
        user_id: Optional[int] = None,
    ) -> None:
        with self._lock:
            existing = self._events.get(event_id)
            if existing is None or existing.processed:
                return
            self._events[event_id] = existing.model_copy(
                update={
                    "processed": success,
                    "status": BillingEventStatus.PROCESSED if success else BillingEventStatus.FAILED,
                    "error_message": error,
                    "user_id": user_id if user_id is not None else existing.user_id,
                    "processed_at": datetime.now(timezone.utc) if success else existing.processed_at,
                }
            )

    def get_event(self, event_id: str) -> Optional[BillingEventRecord]:
        return self._events.get(event_id)

    def purge_processed_before(self, cutoff: datetime) -> int:
        with self._lock:
            stale = [
                event_id
                for event_id, record in self._events.items()
                if record.processed and record.created_at < cutoff
            ]
            for event_id in stale:
                del self._events[event_id]
        return len(stale)


__all__ = ["InMemoryEventStore", "InMemorySubscriptionRepository"]
