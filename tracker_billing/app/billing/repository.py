"""Persistence layer for plans, subscriptions, device ownership and history."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Iterable, List, Optional, Sequence

import psycopg2.extras
from psycopg2.extensions import cursor as PgCursor

from ..errors import PlanNotFoundError, SubscriptionNotFoundError
from . import rules
from .db import ConnectionPool, dict_cursor
from .models import (
    ACTIVE_STATUSES,
    CURRENT_STATUSES,
    DeviceAllowance,
    DeviceOwnership,
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

logger = logging.getLogger(__name__)

SubscriptionSyncHook = Callable[[Subscription], None]

_ACTIVE_VALUES = tuple(status.value for status in ACTIVE_STATUSES)
_CURRENT_VALUES = tuple(status.value for status in CURRENT_STATUSES)


def _row_to_plan(row: dict) -> Plan:
    return Plan(
        plan_id=row["plan_id"],
        name=row["name"],
        description=row.get("description"),
        price=Decimal(str(row["price"])),
        currency=row.get("currency") or "USD",
        device_limit=int(row["device_limit"]),
        price_reference=row.get("price_reference"),
        features=tuple(row.get("features") or ()),
        active=bool(row.get("active", True)),
    )


def _row_to_subscription(row: dict) -> Subscription:
    return Subscription(
        id=int(row["id"]),
        user_id=int(row["user_id"]),
        plan_id=row["plan_id"],
        status=SubscriptionStatus(row["status"]),
        device_limit=int(row["device_limit"]),
        external_customer_id=row.get("external_customer_id"),
        external_subscription_id=row.get("external_subscription_id"),
        external_payment_method_id=row.get("external_payment_method_id"),
        start_date=row.get("start_date"),
        current_period_start=row.get("current_period_start"),
        current_period_end=row.get("current_period_end"),
        trial_start=row.get("trial_start"),
        trial_end=row.get("trial_end"),
        canceled_at=row.get("canceled_at"),
        ended_at=row.get("ended_at"),
        cancel_at_period_end=bool(row.get("cancel_at_period_end")),
        last_event_at=row.get("last_event_at"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_history(row: dict) -> SubscriptionHistoryEntry:
    return SubscriptionHistoryEntry(
        id=row.get("id"),
        user_id=int(row["user_id"]),
        subscription_id=row.get("subscription_id"),
        plan_id=row.get("plan_id"),
        status=SubscriptionStatus(row["status"]) if row.get("status") else None,
        event_type=HistoryEventType(row["event_type"]),
        description=row.get("description") or "",
        metadata=row.get("metadata") or {},
        created_at=row["created_at"],
    )


def _row_to_ownership(row: dict) -> DeviceOwnership:
    return DeviceOwnership(
        device_id=int(row["device_id"]),
        owner_id=int(row["owner_id"]),
        created_at=row["created_at"],
        transferred_from=row.get("transferred_from"),
        transferred_at=row.get("transferred_at"),
    )


class PostgresSubscriptionRepository:
    """Concrete repository persisting subscription state in PostgreSQL.

    Every mutating call runs in one transaction on one pooled connection. The
    optional ``sync_hook`` receives the committed subscription after the
    connection has been returned; its failures are reported on the returned
    :class:`SubscriptionWrite` and never undo the commit.
    """

    def __init__(
        self,
        pool: ConnectionPool,
        *,
        sync_hook: Optional[SubscriptionSyncHook] = None,
    ) -> None:
        self._pool = pool
        self._sync_hook = sync_hook

    # Plans -----------------------------------------------------------------

    def seed_plans(self, plans: Iterable[Plan]) -> None:
        """Insert catalog plans; existing rows only pick up missing price references."""

        with dict_cursor(self._pool) as cursor:
            for plan in plans:
                cursor.execute(
                    """
                    INSERT INTO billing_plans (
                        plan_id, name, description, price, currency,
                        device_limit, price_reference, features, active
                    )
                    VALUES (%(plan_id)s, %(name)s, %(description)s, %(price)s, %(currency)s,
                            %(device_limit)s, %(price_reference)s, %(features)s, %(active)s)
                    ON CONFLICT (plan_id) DO UPDATE SET
                        price_reference = COALESCE(EXCLUDED.price_reference, billing_plans.price_reference),
                        updated_at = NOW()
                    """,
                    self._plan_params(plan),
                )

    def list_plans(self, *, include_inactive: bool = False) -> List[Plan]:
        with dict_cursor(self._pool) as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_plans
                WHERE active OR %s
                ORDER BY price, plan_id
                """,
                (include_inactive,),
            )
            return [_row_to_plan(row) for row in cursor.fetchall() or []]

    def get_plan(self, plan_id: str) -> Optional[Plan]:
        with dict_cursor(self._pool) as cursor:
            cursor.execute(
                "SELECT * FROM billing_plans WHERE plan_id = %s LIMIT 1",
                (plan_id.strip().lower(),),
            )
            row = cursor.fetchone()
            return _row_to_plan(row) if row else None

    def get_plan_by_price_reference(self, price_reference: str) -> Optional[Plan]:
        with dict_cursor(self._pool) as cursor:
            cursor.execute(
                "SELECT * FROM billing_plans WHERE price_reference = %s LIMIT 1",
                (price_reference,),
            )
            row = cursor.fetchone()
            return _row_to_plan(row) if row else None

    def update_plan(self, plan: Plan) -> Plan:
        """Explicit admin update of a plan definition."""

        with dict_cursor(self._pool) as cursor:
            cursor.execute(
                """
                UPDATE billing_plans
                SET name = %(name)s,
                    description = %(description)s,
                    price = %(price)s,
                    currency = %(currency)s,
                    device_limit = %(device_limit)s,
                    price_reference = %(price_reference)s,
                    features = %(features)s,
                    active = %(active)s,
                    updated_at = NOW()
                WHERE plan_id = %(plan_id)s
                RETURNING *
                """,
                self._plan_params(plan),
            )
            row = cursor.fetchone()
            if not row:
                raise PlanNotFoundError(f"Unknown plan id: {plan.plan_id}")
            return _row_to_plan(row)

    # Subscriptions -----------------------------------------------------------

    def get_subscription(self, user_id: int) -> Optional[Subscription]:
        with dict_cursor(self._pool) as cursor:
            row = self._select_latest(cursor, user_id, lock=False)
            return _row_to_subscription(row) if row else None

    def find_user_id(
        self,
        *,
        external_subscription_id: Optional[str] = None,
        external_customer_id: Optional[str] = None,
    ) -> Optional[int]:
        """Map provider identifiers back to a local user id."""

        with dict_cursor(self._pool) as cursor:
            if external_subscription_id:
                cursor.execute(
                    """
                    SELECT user_id FROM billing_subscriptions
                    WHERE external_subscription_id = %s
                    LIMIT 1
                    """,
                    (external_subscription_id,),
                )
                row = cursor.fetchone()
                if row:
                    return int(row["user_id"])
            if external_customer_id:
                cursor.execute(
                    """
                    SELECT user_id FROM billing_subscriptions
                    WHERE external_customer_id = %s
                    ORDER BY updated_at DESC
                    LIMIT 1
                    """,
                    (external_customer_id,),
                )
                row = cursor.fetchone()
                if row:
                    return int(row["user_id"])
        return None

    def upsert_subscription(self, user_id: int, data: SubscriptionData) -> SubscriptionWrite:
        """Insert or update the user's subscription and append its history."""

        with dict_cursor(self._pool) as cursor:
            existing_row = self._select_latest(cursor, user_id, lock=True)
            previous = _row_to_subscription(existing_row) if existing_row else None

            if previous is not None and rules.is_stale_write(previous.last_event_at, data.event_at):
                logger.info(
                    "Skipping stale write for user %s: stored=%s incoming=%s",
                    user_id,
                    previous.last_event_at,
                    data.event_at,
                )
                return SubscriptionWrite(subscription=previous, stale=True)

            device_limit = data.device_limit
            if device_limit is None:
                device_limit = self._plan_device_limit(cursor, data.plan_id)

            params = {
                "user_id": user_id,
                "plan_id": data.plan_id.strip().lower(),
                "status": data.status.value,
                "device_limit": device_limit,
                "external_customer_id": data.external_customer_id,
                "external_subscription_id": data.external_subscription_id,
                "external_payment_method_id": data.external_payment_method_id,
                "current_period_start": data.current_period_start,
                "current_period_end": data.current_period_end,
                "trial_start": data.trial_start,
                "trial_end": data.trial_end,
                "canceled_at": data.canceled_at,
                "ended_at": data.ended_at,
                "cancel_at_period_end": data.cancel_at_period_end,
                "event_at": data.event_at,
            }
            if previous is not None:
                params["id"] = previous.id
                cursor.execute(
                    """
                    UPDATE billing_subscriptions
                    SET plan_id = %(plan_id)s,
                        status = %(status)s,
                        device_limit = %(device_limit)s,
                        external_customer_id = COALESCE(%(external_customer_id)s, external_customer_id),
                        external_subscription_id = COALESCE(%(external_subscription_id)s, external_subscription_id),
                        external_payment_method_id = COALESCE(%(external_payment_method_id)s, external_payment_method_id),
                        current_period_start = %(current_period_start)s,
                        current_period_end = %(current_period_end)s,
                        trial_start = %(trial_start)s,
                        trial_end = %(trial_end)s,
                        canceled_at = %(canceled_at)s,
                        ended_at = COALESCE(%(ended_at)s, ended_at),
                        cancel_at_period_end = %(cancel_at_period_end)s,
                        last_event_at = COALESCE(%(event_at)s, last_event_at),
                        updated_at = NOW()
                    WHERE id = %(id)s
                    RETURNING *
                    """,
                    params,
                )
            else:
                cursor.execute(
                    """
                    INSERT INTO billing_subscriptions (
                        user_id, plan_id, status, device_limit,
                        external_customer_id, external_subscription_id, external_payment_method_id,
                        current_period_start, current_period_end, trial_start, trial_end,
                        canceled_at, ended_at, cancel_at_period_end, last_event_at
                    )
                    VALUES (%(user_id)s, %(plan_id)s, %(status)s, %(device_limit)s,
                            %(external_customer_id)s, %(external_subscription_id)s,
                            %(external_payment_method_id)s, %(current_period_start)s,
                            %(current_period_end)s, %(trial_start)s, %(trial_end)s,
                            %(canceled_at)s, %(ended_at)s, %(cancel_at_period_end)s, %(event_at)s)
                    RETURNING *
                    """,
                    params,
                )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist subscription")
            current = _row_to_subscription(row)
            history = self._append_history(cursor, rules.history_for_write(previous, current))
            logger.info(
                "%s subscription %s for user %s plan=%s status=%s",
                "Updated" if previous else "Created",
                current.id,
                user_id,
                current.plan_id,
                current.status.value,
            )

        write = SubscriptionWrite(
            subscription=current,
            written=True,
            created=previous is None,
            history=tuple(history),
        )
        return self._after_commit(write)

    def cancel_at_period_end(self, user_id: int, flag: bool = True) -> SubscriptionWrite:
        """Set the cancel-at-period-end flag without changing the status."""

        with dict_cursor(self._pool) as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_subscriptions
                WHERE user_id = %s AND status IN %s
                LIMIT 1
                FOR UPDATE
                """,
                (user_id, _ACTIVE_VALUES),
            )
            row = cursor.fetchone()
            if not row:
                raise SubscriptionNotFoundError(f"No active subscription for user {user_id}")
            previous = _row_to_subscription(row)
            if previous.cancel_at_period_end == flag:
                return SubscriptionWrite(subscription=previous)

            cursor.execute(
                """
                UPDATE billing_subscriptions
                SET cancel_at_period_end = %s,
                    canceled_at = CASE WHEN %s THEN NOW() ELSE canceled_at END,
                    updated_at = NOW()
                WHERE id = %s
                RETURNING *
                """,
                (flag, flag, previous.id),
            )
            current = _row_to_subscription(cursor.fetchone())
            history = self._append_history(cursor, [rules.cancel_flag_entry(current, flag)])
            logger.info("Set cancel_at_period_end=%s for user %s", flag, user_id)

        return self._after_commit(
            SubscriptionWrite(subscription=current, written=True, history=tuple(history))
        )

    def end_subscription_now(self, user_id: int) -> SubscriptionWrite:
        """Force the subscription to ``canceled``; already-canceled rows are left alone."""

        with dict_cursor(self._pool) as cursor:
            row = self._select_latest(cursor, user_id, lock=True)
            if not row:
                raise SubscriptionNotFoundError(f"No subscription for user {user_id}")
            previous = _row_to_subscription(row)
            if previous.status == SubscriptionStatus.CANCELED:
                return SubscriptionWrite(subscription=previous)

            cursor.execute(
                """
                UPDATE billing_subscriptions
                SET status = %s,
                    ended_at = NOW(),
                    updated_at = NOW()
                WHERE id = %s
                RETURNING *
                """,
                (SubscriptionStatus.CANCELED.value, previous.id),
            )
            current = _row_to_subscription(cursor.fetchone())
            history = self._append_history(cursor, [rules.ended_entry(previous, current)])
            logger.info("Ended subscription %s for user %s", current.id, user_id)

        return self._after_commit(
            SubscriptionWrite(subscription=current, written=True, history=tuple(history))
        )

    def list_history(self, user_id: int, *, limit: int = 50) -> List[SubscriptionHistoryEntry]:
        with dict_cursor(self._pool) as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_subscription_history
                WHERE user_id = %s
                ORDER BY created_at DESC, id DESC
                LIMIT %s
                """,
                (user_id, limit),
            )
            return [_row_to_history(row) for row in cursor.fetchall() or []]

    def purge_history_before(self, cutoff: datetime) -> int:
        """Retention cleanup; the only path that deletes history rows."""

        with dict_cursor(self._pool) as cursor:
            cursor.execute(
                "DELETE FROM billing_subscription_history WHERE created_at < %s",
                (cutoff,),
            )
            deleted = cursor.rowcount
        logger.info("Purged %s subscription history rows older than %s", deleted, cutoff)
        return deleted

    # Devices -----------------------------------------------------------------

    def can_add_device(self, user_id: int) -> DeviceAllowance:
        with dict_cursor(self._pool) as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_subscriptions
                WHERE user_id = %s AND status IN %s
                LIMIT 1
                """,
                (user_id, _ACTIVE_VALUES),
            )
            row = cursor.fetchone()
            owned = self._owned_device_count(cursor, user_id)
        subscription = _row_to_subscription(row) if row else None
        return rules.evaluate_device_allowance(subscription, owned)

    def transfer_device_ownership(self, device_id: int, new_owner_id: int) -> DeviceOwnership:
        with dict_cursor(self._pool) as cursor:
            cursor.execute(
                """
                INSERT INTO billing_device_ownership (device_id, owner_id)
                VALUES (%s, %s)
                ON CONFLICT (device_id) DO UPDATE SET
                    transferred_from = billing_device_ownership.owner_id,
                    owner_id = EXCLUDED.owner_id,
                    transferred_at = NOW()
                WHERE billing_device_ownership.owner_id <> EXCLUDED.owner_id
                RETURNING *
                """,
                (device_id, new_owner_id),
            )
            row = cursor.fetchone()
            if row is None:
                # Same owner: the conditional update matched nothing.
                cursor.execute(
                    "SELECT * FROM billing_device_ownership WHERE device_id = %s",
                    (device_id,),
                )
                row = cursor.fetchone()
            ownership = _row_to_ownership(row)
        logger.info(
            "Set device %s owner to user %s (previous=%s)",
            device_id,
            new_owner_id,
            ownership.transferred_from,
        )
        return ownership

    def list_owned_devices(self, user_id: int) -> List[DeviceOwnership]:
        with dict_cursor(self._pool) as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_device_ownership
                WHERE owner_id = %s
                ORDER BY device_id
                """,
                (user_id,),
            )
            return [_row_to_ownership(row) for row in cursor.fetchall() or []]

    # Reporting ---------------------------------------------------------------

    def get_subscription_status(self, user_id: int) -> SubscriptionStatusView:
        with dict_cursor(self._pool) as cursor:
            cursor.execute(
                """
                SELECT s.*, p.name AS plan_name
                FROM billing_subscriptions AS s
                LEFT JOIN billing_plans AS p ON p.plan_id = s.plan_id
                WHERE s.user_id = %s AND s.status IN %s
                ORDER BY s.updated_at DESC
                LIMIT 1
                """,
                (user_id, _CURRENT_VALUES),
            )
            row = cursor.fetchone()
            owned = self._owned_device_count(cursor, user_id)
        subscription = _row_to_subscription(row) if row else None
        return build_status_view(
            user_id,
            subscription,
            plan_name=row.get("plan_name") if row else None,
            owned_devices=owned,
        )

    def subscription_analytics(self) -> List[PlanAnalytics]:
        with dict_cursor(self._pool) as cursor:
            cursor.execute(
                """
                SELECT
                    p.plan_id,
                    p.name AS plan_name,
                    p.price,
                    COUNT(s.id) AS active_subscriptions,
                    COALESCE(SUM(CASE WHEN s.id IS NOT NULL THEN p.price END), 0) AS monthly_revenue,
                    COALESCE(SUM(CASE WHEN s.cancel_at_period_end THEN 1 ELSE 0 END), 0) AS pending_cancellations,
                    COALESCE(AVG(o.owned), 0) AS avg_devices_per_user,
                    COALESCE(SUM(CASE WHEN o.owned >= s.device_limit THEN 1 ELSE 0 END), 0) AS users_at_limit
                FROM billing_plans AS p
                LEFT JOIN billing_subscriptions AS s
                    ON s.plan_id = p.plan_id AND s.status IN %s
                LEFT JOIN LATERAL (
                    SELECT COUNT(*) AS owned
                    FROM billing_device_ownership AS d
                    WHERE d.owner_id = s.user_id
                ) AS o ON s.id IS NOT NULL
                GROUP BY p.plan_id, p.name, p.price
                ORDER BY monthly_revenue DESC, p.plan_id
                """,
                (_ACTIVE_VALUES,),
            )
            rows = cursor.fetchall() or []
        return [
            PlanAnalytics(
                plan_id=row["plan_id"],
                plan_name=row["plan_name"],
                price=Decimal(str(row["price"])),
                active_subscriptions=int(row["active_subscriptions"]),
                monthly_revenue=Decimal(str(row["monthly_revenue"])),
                pending_cancellations=int(row["pending_cancellations"]),
                avg_devices_per_user=float(row["avg_devices_per_user"]),
                users_at_limit=int(row["users_at_limit"]),
            )
            for row in rows
        ]

    # Internals ---------------------------------------------------------------

    def _select_latest(self, cursor: PgCursor, user_id: int, *, lock: bool) -> Optional[dict]:
        query = """
            SELECT *
            FROM billing_subscriptions
            WHERE user_id = %s
            ORDER BY (status IN ('active', 'trialing')) DESC, updated_at DESC
            LIMIT 1
        """
        if lock:
            query += " FOR UPDATE"
        cursor.execute(query, (user_id,))
        return cursor.fetchone()

    def _plan_device_limit(self, cursor: PgCursor, plan_id: str) -> int:
        cursor.execute(
            "SELECT device_limit FROM billing_plans WHERE plan_id = %s",
            (plan_id.strip().lower(),),
        )
        row = cursor.fetchone()
        if not row:
            raise PlanNotFoundError(f"Unknown plan id: {plan_id}")
        return int(row["device_limit"])

    def _owned_device_count(self, cursor: PgCursor, user_id: int) -> int:
        cursor.execute(
            "SELECT COUNT(*) AS owned FROM billing_device_ownership WHERE owner_id = %s",
            (user_id,),
        )
        row = cursor.fetchone()
        return int(row["owned"]) if row else 0

    def _append_history(
        self,
        cursor: PgCursor,
        entries: Sequence[SubscriptionHistoryEntry],
    ) -> List[SubscriptionHistoryEntry]:
        stored: List[SubscriptionHistoryEntry] = []
        for entry in entries:
            cursor.execute(
                """
                INSERT INTO billing_subscription_history (
                    user_id, subscription_id, plan_id, status,
                    event_type, description, metadata
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    entry.user_id,
                    entry.subscription_id,
                    entry.plan_id,
                    entry.status.value if entry.status else None,
                    entry.event_type.value,
                    entry.description,
                    psycopg2.extras.Json(entry.metadata),
                ),
            )
            row = cursor.fetchone()
            stored.append(_row_to_history(row) if row else entry)
        return stored

    def _after_commit(self, write: SubscriptionWrite) -> SubscriptionWrite:
        if self._sync_hook is None or write.subscription is None:
            return write
        try:
            self._sync_hook(write.subscription)
        except Exception as exc:
            logger.exception(
                "Post-commit sync failed for subscription %s user %s",
                write.subscription.id,
                write.subscription.user_id,
            )
            return write.model_copy(update={"sync_error": str(exc)})
        return write

    @staticmethod
    def _plan_params(plan: Plan) -> dict:
        return {
            "plan_id": plan.plan_id,
            "name": plan.name,
            "description": plan.description,
            "price": plan.price,
            "currency": plan.currency,
            "device_limit": plan.device_limit,
            "price_reference": plan.price_reference,
            "features": psycopg2.extras.Json(list(plan.features)),
            "active": plan.active,
        }


def build_status_view(
    user_id: int,
    subscription: Optional[Subscription],
    *,
    plan_name: Optional[str],
    owned_devices: int,
    now: Optional[datetime] = None,
) -> SubscriptionStatusView:
    now = now or datetime.now(timezone.utc)
    if subscription is None:
        return SubscriptionStatusView(user_id=user_id, owned_devices=owned_devices)
    return SubscriptionStatusView(
        user_id=user_id,
        subscription_id=subscription.id,
        plan_id=subscription.plan_id,
        plan_name=plan_name,
        status=subscription.status,
        effective_status=rules.effective_status(subscription, owned_devices, now=now),
        device_limit=subscription.device_limit,
        owned_devices=owned_devices,
        remaining_devices=subscription.device_limit - owned_devices,
        current_period_end=subscription.current_period_end,
        cancel_at_period_end=subscription.cancel_at_period_end,
        days_until_renewal=rules.days_until(subscription.current_period_end, now=now),
        external_customer_id=subscription.external_customer_id,
        external_subscription_id=subscription.external_subscription_id,
    )


__all__ = ["PostgresSubscriptionRepository", "SubscriptionSyncHook", "build_status_view"]
