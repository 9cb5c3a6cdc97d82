"""Durable record of inbound provider events keyed by event id."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Mapping, Optional, Tuple

import psycopg2.extras

from .db import ConnectionPool, dict_cursor
from .models import BillingEventRecord, BillingEventStatus, EventRecordOutcome

logger = logging.getLogger(__name__)


def _row_to_event(row: dict) -> BillingEventRecord:
    return BillingEventRecord(
        event_id=row["event_id"],
        event_type=row["event_type"],
        payload=row.get("payload") or {},
        status=BillingEventStatus(row["status"]),
        processed=bool(row["processed"]),
        attempts=int(row.get("attempts") or 1),
        error_message=row.get("error_message"),
        customer_id=row.get("customer_id"),
        subscription_id=row.get("subscription_id"),
        user_id=row.get("user_id"),
        created_at=row["created_at"],
        processed_at=row.get("processed_at"),
    )


class PostgresEventStore:
    """Idempotency ledger for provider webhooks.

    ``record_event`` is the only entry point for new deliveries. A delivery
    whose id is already marked processed is reported as a duplicate; any
    other repeat (processing or failed) is re-armed for another attempt.
    """

    def __init__(self, pool: ConnectionPool) -> None:
        self._pool = pool

    def record_event(
        self,
        event_id: str,
        event_type: str,
        payload: Mapping[str, Any],
        *,
        customer_id: Optional[str] = None,
        subscription_id: Optional[str] = None,
    ) -> Tuple[EventRecordOutcome, BillingEventRecord]:
        with dict_cursor(self._pool) as cursor:
            cursor.execute(
                """
                INSERT INTO billing_events (
                    event_id, event_type, customer_id, subscription_id, payload
                )
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (event_id) DO UPDATE SET
                    attempts = billing_events.attempts + 1,
                    status = 'processing',
                    error_message = NULL,
                    payload = EXCLUDED.payload
                WHERE NOT billing_events.processed
                RETURNING *
                """,
                (
                    event_id,
                    event_type,
                    customer_id,
                    subscription_id,
                    psycopg2.extras.Json(dict(payload)),
                ),
            )
            row = cursor.fetchone()
            if row is not None:
                record = _row_to_event(row)
                if record.attempts > 1:
                    logger.info("Retrying event %s (attempt %s)", event_id, record.attempts)
                return EventRecordOutcome.STORED, record

            # The conditional upsert skipped an already-processed row.
            cursor.execute("SELECT * FROM billing_events WHERE event_id = %s", (event_id,))
            existing = cursor.fetchone()
        logger.info("Event %s already processed; skipping", event_id)
        return EventRecordOutcome.DUPLICATE, _row_to_event(existing)

    def mark_processed(
        self,
        event_id: str,
        *,
        success: bool = True,
        error: Optional[str] = None,
        user_id: Optional[int] = None,
    ) -> None:
        """Close out an attempt.

        ``success=False`` leaves the row unprocessed so a redelivery retries it;
        an ``error`` on a successful attempt records a degraded directory sync.
        """

        status = BillingEventStatus.PROCESSED if success else BillingEventStatus.FAILED
        with dict_cursor(self._pool) as cursor:
            cursor.execute(
                """
                UPDATE billing_events
                SET processed = %s,
                    status = %s,
                    error_message = %s,
                    user_id = COALESCE(%s, user_id),
                    processed_at = CASE WHEN %s THEN NOW() ELSE processed_at END
                WHERE event_id = %s AND NOT processed
                """,
                (
                    success,
                    status.value,
                    error[:2000] if error else None,
                    user_id,
                    success,
                    event_id,
                ),
            )
        if not success:
            logger.warning("Event %s marked failed: %s", event_id, error)

    def get_event(self, event_id: str) -> Optional[BillingEventRecord]:
        with dict_cursor(self._pool) as cursor:
            cursor.execute("SELECT * FROM billing_events WHERE event_id = %s", (event_id,))
            row = cursor.fetchone()
            return _row_to_event(row) if row else None

    def purge_processed_before(self, cutoff: datetime) -> int:
        """Retention cleanup; unprocessed events are never purged."""

        with dict_cursor(self._pool) as cursor:
            cursor.execute(
                "DELETE FROM billing_events WHERE processed AND created_at < %s",
                (cutoff,),
            )
            deleted = cursor.rowcount
        logger.info("Purged %s processed events older than %s", deleted, cutoff)
        return deleted


__all__ = ["PostgresEventStore"]
