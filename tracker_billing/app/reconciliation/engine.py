"""Reconciliation of provider billing events with the local store and the directory."""
from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, List, Mapping, Optional, Protocol, Tuple

from ..billing.models import (
    BillingEventRecord,
    EventRecordOutcome,
    Plan,
    Subscription,
    SubscriptionData,
    SubscriptionStatus,
    SubscriptionWrite,
)
from ..directory.models import DirectoryUser, NewDirectoryUser
from ..errors import DirectoryError, RepositoryError
from . import events
from .events import ProviderEventType
from .mirror import directory_device_limit
from .models import ReconciliationOutcome, ReconciliationResult

logger = logging.getLogger("billing")


class EventStore(Protocol):
    """Idempotency ledger for inbound events."""

    def record_event(
        self,
        event_id: str,
        event_type: str,
        payload: Mapping[str, Any],
        *,
        customer_id: Optional[str] = None,
        subscription_id: Optional[str] = None,
    ) -> Tuple[EventRecordOutcome, BillingEventRecord]:
        ...

    def mark_processed(
        self,
        event_id: str,
        *,
        success: bool = True,
        error: Optional[str] = None,
        user_id: Optional[int] = None,
    ) -> None:
        ...


class SubscriptionRepository(Protocol):
    """Repository operations the engine relies on."""

    def get_plan(self, plan_id: str) -> Optional[Plan]:
        ...

    def get_plan_by_price_reference(self, price_reference: str) -> Optional[Plan]:
        ...

    def get_subscription(self, user_id: int) -> Optional[Subscription]:
        ...

    def find_user_id(
        self,
        *,
        external_subscription_id: Optional[str] = None,
        external_customer_id: Optional[str] = None,
    ) -> Optional[int]:
        ...

    def upsert_subscription(self, user_id: int, data: SubscriptionData) -> SubscriptionWrite:
        ...


class UserDirectory(Protocol):
    """Directory operations the engine relies on."""

    def find_user_by_email(self, email: str) -> Optional[DirectoryUser]:
        ...

    def create_user(self, profile: NewDirectoryUser) -> DirectoryUser:
        ...

    def update_device_limit_and_attributes(
        self,
        user_id: int,
        device_limit: Optional[int],
        attribute_delta: Optional[Mapping[str, Any]] = None,
    ) -> Any:
        ...

    def set_disabled(self, user_id: int, disabled: bool) -> Any:
        ...


@dataclass
class _Applied:
    outcome: ReconciliationOutcome
    user_id: Optional[int] = None
    subscription_id: Optional[int] = None
    directory_errors: List[str] = field(default_factory=list)

    @property
    def directory_error(self) -> Optional[str]:
        return "; ".join(self.directory_errors) if self.directory_errors else None


def generate_password() -> str:
    return secrets.token_urlsafe(12)


@dataclass
class ReconciliationEngine:
    """Applies verified provider events.

    Every event passes the event store first; processed ids short-circuit as
    duplicates. Repository failures mark the event failed so the provider's
    redelivery reprocesses it. Directory failures after a committed write are
    recorded on the event, which is still marked processed.
    """

    event_store: EventStore
    repository: SubscriptionRepository
    directory: UserDirectory
    password_factory: Callable[[], str] = generate_password

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def handle_event(self, event: Mapping[str, Any]) -> ReconciliationResult:
        event_id = str(event.get("id") or "")
        event_type = str(event.get("type") or "")
        if not event_id:
            raise ValueError("event id missing from provider event")
        obj = events.data_object(event)

        try:
            record_outcome, record = self.event_store.record_event(
                event_id,
                event_type,
                event,
                customer_id=obj.get("customer") if isinstance(obj.get("customer"), str) else None,
                subscription_id=self._provider_subscription_id(event_type, obj),
            )
        except RepositoryError as exc:
            logger.error("Could not record event %s: %s", event_id, exc)
            return self._result(event_id, event_type, ReconciliationOutcome.FAILED, error=str(exc))

        if record_outcome == EventRecordOutcome.DUPLICATE:
            return self._result(
                event_id, event_type, ReconciliationOutcome.DUPLICATE, user_id=record.user_id
            )

        kind = ProviderEventType.parse(event_type)
        if kind is None:
            logger.info("Ignoring unhandled event type %s (%s)", event_type, event_id)
            return self._finish(event_id, event_type, _Applied(ReconciliationOutcome.IGNORED))

        logger.info("Processing %s event %s (attempt %s)", event_type, event_id, record.attempts)
        event_at = events.from_timestamp(event.get("created"))
        try:
            applied = self._dispatch(kind, obj, event_at)
        except (RepositoryError, DirectoryError) as exc:
            logger.error("Event %s failed: %s", event_id, exc)
            return self._fail(event_id, event_type, str(exc))
        except Exception as exc:
            logger.exception("Unexpected failure processing event %s", event_id)
            return self._fail(event_id, event_type, str(exc) or exc.__class__.__name__)

        return self._finish(event_id, event_type, applied)

    # Bookkeeping -------------------------------------------------------------

    def _finish(self, event_id: str, event_type: str, applied: _Applied) -> ReconciliationResult:
        outcome = applied.outcome
        if outcome == ReconciliationOutcome.PROCESSED and applied.directory_errors:
            outcome = ReconciliationOutcome.DEGRADED
        try:
            self.event_store.mark_processed(
                event_id, error=applied.directory_error, user_id=applied.user_id
            )
        except RepositoryError as exc:
            logger.error("Could not mark event %s processed: %s", event_id, exc)
            return self._result(event_id, event_type, ReconciliationOutcome.FAILED, error=str(exc))
        return self._result(
            event_id,
            event_type,
            outcome,
            user_id=applied.user_id,
            subscription_id=applied.subscription_id,
            directory_error=applied.directory_error,
        )

    def _fail(self, event_id: str, event_type: str, error: str) -> ReconciliationResult:
        try:
            self.event_store.mark_processed(event_id, success=False, error=error)
        except RepositoryError as exc:
            logger.error("Could not mark event %s failed: %s", event_id, exc)
        return self._result(event_id, event_type, ReconciliationOutcome.FAILED, error=error)

    @staticmethod
    def _result(
        event_id: str,
        event_type: str,
        outcome: ReconciliationOutcome,
        **kwargs: Any,
    ) -> ReconciliationResult:
        return ReconciliationResult(event_id=event_id, event_type=event_type, outcome=outcome, **kwargs)

    @staticmethod
    def _provider_subscription_id(event_type: str, obj: Mapping[str, Any]) -> Optional[str]:
        if event_type.startswith("customer.subscription."):
            return obj.get("id")
        if event_type.startswith("invoice."):
            return events.invoice_subscription_id(obj)
        subscription = obj.get("subscription")
        return subscription if isinstance(subscription, str) else None

    # Dispatch ----------------------------------------------------------------

    def _dispatch(
        self,
        kind: ProviderEventType,
        obj: Mapping[str, Any],
        event_at: Optional[datetime],
    ) -> _Applied:
        if kind == ProviderEventType.CHECKOUT_COMPLETED:
            return self._handle_checkout_completed(obj)
        if kind in {ProviderEventType.SUBSCRIPTION_CREATED, ProviderEventType.SUBSCRIPTION_UPDATED}:
            return self._handle_subscription_changed(kind, obj, event_at)
        if kind == ProviderEventType.SUBSCRIPTION_DELETED:
            return self._handle_subscription_deleted(obj, event_at)
        if kind == ProviderEventType.INVOICE_PAYMENT_FAILED:
            return self._handle_payment_failed(obj)
        return self._handle_payment_succeeded(obj)

    def _handle_checkout_completed(self, session: Mapping[str, Any]) -> _Applied:
        provider_subscription_id = session.get("subscription")
        if not provider_subscription_id:
            logger.warning("Checkout session %s has no subscription", session.get("id"))
            return _Applied(ReconciliationOutcome.SKIPPED)

        metadata = events.metadata_of(session)
        email = events.email_of(session)
        plan_id = metadata.get("planId")
        plan = self.repository.get_plan(plan_id) if plan_id else None
        if email is None or plan is None:
            logger.error(
                "Checkout session %s missing email or known plan (plan=%s)",
                session.get("id"),
                plan_id,
            )
            return _Applied(ReconciliationOutcome.SKIPPED)

        user = self._locate_or_provision(email, plan, metadata)
        existing = self.repository.get_subscription(user.id)
        applied = _Applied(ReconciliationOutcome.PROCESSED, user_id=user.id)

        push_limit: Optional[int] = None
        if existing is not None and existing.external_subscription_id == provider_subscription_id:
            # Subscription events already wrote this subscription; they stay authoritative.
            applied.subscription_id = existing.id
            push_limit = directory_device_limit(existing)
            status = existing.status
        else:
            status = events.checkout_status(session)
            write = self.repository.upsert_subscription(
                user.id,
                SubscriptionData(
                    plan_id=plan.plan_id,
                    status=status,
                    external_customer_id=session.get("customer"),
                    external_subscription_id=provider_subscription_id,
                ),
            )
            self._collect_write(applied, write)

        self._best_effort(
            applied,
            "subscription metadata",
            lambda: self.directory.update_device_limit_and_attributes(
                user.id,
                push_limit,
                {
                    "stripeCustomerId": session.get("customer"),
                    "stripeSubscriptionId": provider_subscription_id,
                    "subscriptionPlan": plan.plan_id,
                    "subscriptionStatus": status.value,
                    "subscriptionStartDate": self._now().isoformat(),
                },
            ),
        )
        logger.info(
            "Checkout completed for user %s plan=%s status=%s", user.id, plan.plan_id, status.value
        )
        return applied

    def _handle_subscription_changed(
        self,
        kind: ProviderEventType,
        subscription: Mapping[str, Any],
        event_at: Optional[datetime],
    ) -> _Applied:
        price_reference = events.price_reference_of(subscription)
        plan = self.repository.get_plan_by_price_reference(price_reference) if price_reference else None
        if plan is None:
            logger.error("Unknown price reference %s on %s", price_reference, subscription.get("id"))
            return _Applied(ReconciliationOutcome.SKIPPED)

        user_id = self._resolve_user_id(subscription, subscription.get("id"))
        if user_id is None:
            return _Applied(ReconciliationOutcome.SKIPPED)

        data = events.subscription_data(subscription, plan, event_at=event_at)
        write = self.repository.upsert_subscription(user_id, data)
        applied = _Applied(ReconciliationOutcome.PROCESSED, user_id=user_id)
        if write.stale:
            applied.outcome = ReconciliationOutcome.STALE
            applied.subscription_id = write.subscription_id
            return applied
        self._collect_write(applied, write)

        status = data.status
        if kind == ProviderEventType.SUBSCRIPTION_CREATED:
            self._best_effort(applied, "enable", lambda: self.directory.set_disabled(user_id, False))
        elif status in {SubscriptionStatus.PAST_DUE, SubscriptionStatus.UNPAID}:
            logger.warning("Subscription payment issue for user %s (%s)", user_id, status.value)
            self._best_effort(
                applied,
                "payment issue flag",
                lambda: self.directory.update_device_limit_and_attributes(
                    user_id, None, {"paymentIssue": True}
                ),
            )
        elif status == SubscriptionStatus.ACTIVE:
            self._best_effort(
                applied,
                "payment issue flag",
                lambda: self.directory.update_device_limit_and_attributes(
                    user_id, None, {"paymentIssue": False}
                ),
            )
            self._best_effort(applied, "enable", lambda: self.directory.set_disabled(user_id, False))

        logger.info(
            "Subscription %s for user %s plan=%s status=%s",
            "created" if kind == ProviderEventType.SUBSCRIPTION_CREATED else "updated",
            user_id,
            plan.plan_id,
            status.value,
        )
        return applied

    def _handle_subscription_deleted(
        self,
        subscription: Mapping[str, Any],
        event_at: Optional[datetime],
    ) -> _Applied:
        user_id = self._resolve_user_id(subscription, subscription.get("id"))
        if user_id is None:
            return _Applied(ReconciliationOutcome.SKIPPED)

        price_reference = events.price_reference_of(subscription)
        plan = self.repository.get_plan_by_price_reference(price_reference) if price_reference else None
        if plan is None:
            existing = self.repository.get_subscription(user_id)
            plan = self.repository.get_plan(existing.plan_id) if existing else None
        if plan is None:
            logger.error("No plan for deleted subscription %s", subscription.get("id"))
            return _Applied(ReconciliationOutcome.SKIPPED, user_id=user_id)

        data = events.subscription_data(
            subscription,
            plan,
            event_at=event_at,
            status=SubscriptionStatus.CANCELED,
            device_limit=0,
        )
        if data.ended_at is None:
            data = data.model_copy(update={"ended_at": event_at or self._now()})
        write = self.repository.upsert_subscription(user_id, data)
        applied = _Applied(ReconciliationOutcome.PROCESSED, user_id=user_id)
        if write.stale:
            applied.outcome = ReconciliationOutcome.STALE
            applied.subscription_id = write.subscription_id
            return applied
        self._collect_write(applied, write)
        self._best_effort(applied, "disable", lambda: self.directory.set_disabled(user_id, True))
        logger.info("Subscription canceled for user %s", user_id)
        return applied

    def _handle_payment_failed(self, invoice: Mapping[str, Any]) -> _Applied:
        user_id = self._resolve_user_id(invoice, events.invoice_subscription_id(invoice))
        if user_id is None:
            return _Applied(ReconciliationOutcome.SKIPPED)
        logger.warning("Payment failed for user %s", user_id)
        applied = _Applied(ReconciliationOutcome.PROCESSED, user_id=user_id)
        self._best_effort(
            applied,
            "payment failure flag",
            lambda: self.directory.update_device_limit_and_attributes(
                user_id,
                None,
                {
                    "subscriptionStatus": "payment_failed",
                    "lastPaymentAttempt": self._now().isoformat(),
                },
            ),
        )
        return applied

    def _handle_payment_succeeded(self, invoice: Mapping[str, Any]) -> _Applied:
        user_id = self._resolve_user_id(invoice, events.invoice_subscription_id(invoice))
        if user_id is None:
            return _Applied(ReconciliationOutcome.SKIPPED)
        applied = _Applied(ReconciliationOutcome.PROCESSED, user_id=user_id)
        self._best_effort(
            applied,
            "payment confirmation",
            lambda: self.directory.update_device_limit_and_attributes(
                user_id,
                None,
                {
                    "subscriptionStatus": SubscriptionStatus.ACTIVE.value,
                    "lastPaymentDate": self._now().isoformat(),
                },
            ),
        )
        self._best_effort(applied, "enable", lambda: self.directory.set_disabled(user_id, False))
        logger.info("Payment confirmed for user %s", user_id)
        return applied

    # Helpers -----------------------------------------------------------------

    def _resolve_user_id(
        self,
        obj: Mapping[str, Any],
        provider_subscription_id: Optional[str],
    ) -> Optional[int]:
        customer = obj.get("customer")
        user_id = self.repository.find_user_id(
            external_subscription_id=provider_subscription_id,
            external_customer_id=customer if isinstance(customer, str) else None,
        )
        if user_id is not None:
            return user_id

        email = events.email_of(obj)
        if email is None:
            logger.error("Cannot resolve user for %s: no local record and no email", obj.get("id"))
            return None
        user = self.directory.find_user_by_email(email)
        if user is None:
            logger.error("Directory user not found: %s", email)
            return None
        return user.id

    def _locate_or_provision(
        self,
        email: str,
        plan: Plan,
        metadata: Mapping[str, Any],
    ) -> DirectoryUser:
        user = self.directory.find_user_by_email(email)
        if user is not None:
            return user
        logger.info("Directory user not found, creating %s", email)
        return self.directory.create_user(
            NewDirectoryUser(
                name=metadata.get("userName") or email.split("@")[0],
                email=email,
                password=metadata.get("temporaryPassword") or self.password_factory(),
                device_limit=plan.device_limit,
            )
        )

    @staticmethod
    def _collect_write(applied: _Applied, write: SubscriptionWrite) -> None:
        applied.subscription_id = write.subscription_id
        if write.sync_error:
            applied.directory_errors.append(f"sync: {write.sync_error}")

    @staticmethod
    def _best_effort(applied: _Applied, action: str, call: Callable[[], Any]) -> None:
        try:
            call()
        except DirectoryError as exc:
            logger.error("Directory %s failed for user %s: %s", action, applied.user_id, exc)
            applied.directory_errors.append(f"{action}: {exc}")


__all__ = [
    "EventStore",
    "ReconciliationEngine",
    "SubscriptionRepository",
    "UserDirectory",
    "generate_password",
]
