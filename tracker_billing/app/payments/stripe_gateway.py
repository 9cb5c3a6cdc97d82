"""Thin wrapper over the Stripe SDK used by the billing routes and the webhook."""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, Mapping, Optional

import stripe

from ..billing.models import Plan
from ..errors import WebhookSignatureError

logger = logging.getLogger(__name__)


class StripeGateway:
    """Signature verification, hosted sessions and lookups against Stripe."""

    def __init__(
        self,
        secret_key: str,
        webhook_secret: str,
        *,
        publishable_key: Optional[str] = None,
    ) -> None:
        self._api_key = secret_key
        self._webhook_secret = webhook_secret
        self.publishable_key = publishable_key

    def construct_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Verify ``payload`` against the signature header and return the event envelope."""

        if not signature:
            raise WebhookSignatureError("Missing Stripe-Signature header")
        try:
            stripe.Webhook.construct_event(payload, signature, self._webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as exc:
            logger.error("Webhook signature verification failed: %s", exc)
            raise WebhookSignatureError(str(exc)) from exc
        return json.loads(payload)

    def create_checkout_session(
        self,
        *,
        plan: Plan,
        email: str,
        success_url: str,
        cancel_url: str,
        metadata: Optional[Mapping[str, str]] = None,
    ) -> Dict[str, Any]:
        if not plan.price_reference:
            raise ValueError(f"No price reference configured for plan {plan.plan_id}")
        plan_metadata = {
            "planId": plan.plan_id,
            "deviceLimit": str(plan.device_limit),
            "userEmail": email,
        }
        session = stripe.checkout.Session.create(
            api_key=self._api_key,
            mode="subscription",
            payment_method_types=["card"],
            customer_email=email,
            line_items=[{"price": plan.price_reference, "quantity": 1}],
            success_url=f"{success_url}?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=cancel_url,
            metadata={**plan_metadata, **dict(metadata or {})},
            subscription_data={"metadata": plan_metadata},
        )
        logger.info("Checkout session created: %s plan=%s", session.id, plan.plan_id)
        return {"id": session.id, "url": session.url}

    def create_portal_session(self, customer_id: str, return_url: str) -> Dict[str, Any]:
        session = stripe.billing_portal.Session.create(
            api_key=self._api_key,
            customer=customer_id,
            return_url=return_url,
        )
        return {"url": session.url}

    def retrieve_checkout_session(self, session_id: str) -> Dict[str, Any]:
        session = stripe.checkout.Session.retrieve(session_id, api_key=self._api_key)
        return {
            "id": session.id,
            "status": session.status,
            "customer_email": session.customer_email,
            "customer_id": session.customer,
            "subscription_id": session.subscription,
            "metadata": dict(session.metadata or {}),
        }

    def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        subscription = stripe.Subscription.retrieve(subscription_id, api_key=self._api_key)
        return {
            "id": subscription.id,
            "status": subscription.status,
            "current_period_end": subscription.get("current_period_end"),
            "cancel_at_period_end": subscription.cancel_at_period_end,
            "metadata": dict(subscription.metadata or {}),
        }


__all__ = ["StripeGateway"]
