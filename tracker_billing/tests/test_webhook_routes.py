from __future__ import annotations

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from tracker_billing.app.errors import WebhookSignatureError
from tracker_billing.app.reconciliation import ReconciliationOutcome, ReconciliationResult
from tracker_billing.app.routes import webhooks as webhooks_routes


class FakeGateway:
    def __init__(self, *, valid=True):
        self.valid = valid
        self.signatures = []

    def construct_event(self, payload, signature):
        self.signatures.append(signature)
        if not self.valid or signature is None:
            raise WebhookSignatureError("No signatures found matching the expected signature")
        return json.loads(payload)


class FakeEngine:
    def __init__(self, outcome=ReconciliationOutcome.PROCESSED, error=None):
        self.outcome = outcome
        self.error = error
        self.events = []

    def handle_event(self, event):
        self.events.append(event)
        if self.error is not None:
            raise self.error
        return ReconciliationResult(
            event_id=event["id"],
            event_type=event["type"],
            outcome=self.outcome,
        )


@pytest.fixture
def client_factory(monkeypatch):
    def build(gateway, engine):
        monkeypatch.setattr(webhooks_routes, "get_payment_gateway", lambda: gateway)
        monkeypatch.setattr(webhooks_routes, "get_reconciliation_engine", lambda: engine)
        app = FastAPI()
        app.include_router(webhooks_routes.router)
        return TestClient(app)

    return build


EVENT = {"id": "evt_1", "type": "invoice.payment_succeeded", "data": {"object": {}}}


def test_invalid_signature_is_rejected(client_factory):
    engine = FakeEngine()
    client = client_factory(FakeGateway(valid=False), engine)

    response = client.post(
        "/webhooks/stripe",
        content=json.dumps(EVENT),
        headers={"stripe-signature": "t=1,v1=bad"},
    )

    assert response.status_code == 400
    assert response.json()["detail"].startswith("Webhook Error:")
    assert engine.events == []


def test_missing_signature_is_rejected(client_factory):
    gateway = FakeGateway()
    client = client_factory(gateway, FakeEngine())

    response = client.post("/webhooks/stripe", content=json.dumps(EVENT))

    assert response.status_code == 400
    assert gateway.signatures == [None]


def test_processed_event_is_acknowledged(client_factory):
    engine = FakeEngine()
    client = client_factory(FakeGateway(), engine)

    response = client.post(
        "/webhooks/stripe",
        content=json.dumps(EVENT),
        headers={"stripe-signature": "t=1,v1=good"},
    )

    assert response.status_code == 200
    assert response.json() == {"received": True, "outcome": "processed", "eventId": "evt_1"}
    assert engine.events[0]["id"] == "evt_1"


@pytest.mark.parametrize(
    "outcome",
    [ReconciliationOutcome.DUPLICATE, ReconciliationOutcome.DEGRADED, ReconciliationOutcome.SKIPPED],
)
def test_accepted_outcomes_return_200(client_factory, outcome):
    client = client_factory(FakeGateway(), FakeEngine(outcome=outcome))

    response = client.post(
        "/webhooks/stripe",
        content=json.dumps(EVENT),
        headers={"stripe-signature": "t=1,v1=good"},
    )

    assert response.status_code == 200
    assert response.json()["outcome"] == outcome.value


def test_failed_event_requests_redelivery(client_factory):
    client = client_factory(FakeGateway(), FakeEngine(outcome=ReconciliationOutcome.FAILED))

    response = client.post(
        "/webhooks/stripe",
        content=json.dumps(EVENT),
        headers={"stripe-signature": "t=1,v1=good"},
    )

    assert response.status_code == 500
    assert response.json()["detail"]["eventId"] == "evt_1"


def test_malformed_event_is_rejected(client_factory):
    client = client_factory(FakeGateway(), FakeEngine(error=ValueError("event id missing from provider event")))

    response = client.post(
        "/webhooks/stripe",
        content=json.dumps({"type": "invoice.payment_succeeded"}),
        headers={"stripe-signature": "t=1,v1=good"},
    )

    assert response.status_code == 400
    assert response.json()["detail"] == "event id missing from provider event"
