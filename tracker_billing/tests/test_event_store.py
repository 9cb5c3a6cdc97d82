from __future__ import annotations

from datetime import datetime, timezone

from tracker_billing.app.billing import BillingEventStatus, EventRecordOutcome, PostgresEventStore

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, *, fetchone_results=()):
        self.fetchone_results = list(fetchone_results)
        self.execute_calls = []
        self.rowcount = 0

    def execute(self, query, params=None):
        self.execute_calls.append((" ".join(query.split()), params))

    def fetchone(self):
        if not self.fetchone_results:
            return None
        return self.fetchone_results.pop(0)

    def close(self):
        pass


class FakeConnection:
    def __init__(self, cursor):
        self._cursor = cursor
        self.commits = 0

    def cursor(self, *args, **kwargs):
        return self._cursor

    def commit(self):
        self.commits += 1

    def rollback(self):
        raise AssertionError("unexpected rollback")


class FakePool:
    def __init__(self, cursor):
        self.connection = FakeConnection(cursor)

    def getconn(self, key=None):
        return self.connection

    def putconn(self, conn, key=None, close=False):
        pass


def event_row(**overrides):
    row = {
        "event_id": "evt_1",
        "event_type": "invoice.payment_succeeded",
        "payload": {"id": "evt_1"},
        "status": "processing",
        "processed": False,
        "attempts": 1,
        "error_message": None,
        "customer_id": "cus_1",
        "subscription_id": "sub_1",
        "user_id": None,
        "created_at": NOW,
        "processed_at": None,
    }
    row.update(overrides)
    return row


def test_record_event_stores_new_delivery():
    cursor = FakeCursor(fetchone_results=[event_row()])
    store = PostgresEventStore(FakePool(cursor))

    outcome, record = store.record_event(
        "evt_1",
        "invoice.payment_succeeded",
        {"id": "evt_1"},
        customer_id="cus_1",
        subscription_id="sub_1",
    )

    assert outcome == EventRecordOutcome.STORED
    assert record.attempts == 1
    query, params = cursor.execute_calls[0]
    assert "ON CONFLICT (event_id) DO UPDATE" in query
    assert "WHERE NOT billing_events.processed" in query
    assert params[:4] == ("evt_1", "invoice.payment_succeeded", "cus_1", "sub_1")
    assert params[4].adapted == {"id": "evt_1"}


def test_record_event_rearms_failed_delivery():
    cursor = FakeCursor(fetchone_results=[event_row(attempts=3)])
    store = PostgresEventStore(FakePool(cursor))

    outcome, record = store.record_event("evt_1", "invoice.payment_succeeded", {"id": "evt_1"})

    assert outcome == EventRecordOutcome.STORED
    assert record.attempts == 3
    assert len(cursor.execute_calls) == 1


def test_record_event_reports_processed_duplicate():
    cursor = FakeCursor(
        fetchone_results=[None, event_row(processed=True, status="processed", user_id=7)]
    )
    store = PostgresEventStore(FakePool(cursor))

    outcome, record = store.record_event("evt_1", "invoice.payment_succeeded", {"id": "evt_1"})

    assert outcome == EventRecordOutcome.DUPLICATE
    assert record.processed is True
    assert record.status == BillingEventStatus.PROCESSED
    assert record.user_id == 7
    assert cursor.execute_calls[1] == ("SELECT * FROM billing_events WHERE event_id = %s", ("evt_1",))


def test_mark_processed_success_records_user_and_degraded_error():
    cursor = FakeCursor()
    pool = FakePool(cursor)
    store = PostgresEventStore(pool)

    store.mark_processed("evt_1", error="sync: directory down", user_id=7)

    query, params = cursor.execute_calls[0]
    assert query.startswith("UPDATE billing_events")
    assert query.endswith("WHERE event_id = %s AND NOT processed")
    assert params == (True, "processed", "sync: directory down", 7, True, "evt_1")
    assert pool.connection.commits == 1


def test_mark_processed_failure_truncates_error():
    cursor = FakeCursor()
    store = PostgresEventStore(FakePool(cursor))

    store.mark_processed("evt_1", success=False, error="x" * 5000)

    _, params = cursor.execute_calls[0]
    assert params[0] is False
    assert params[1] == "failed"
    assert len(params[2]) == 2000


def test_purge_processed_only():
    cursor = FakeCursor()
    cursor.rowcount = 2
    store = PostgresEventStore(FakePool(cursor))

    assert store.purge_processed_before(NOW) == 2
    assert cursor.execute_calls[0] == (
        "DELETE FROM billing_events WHERE processed AND created_at < %s",
        (NOW,),
    )
