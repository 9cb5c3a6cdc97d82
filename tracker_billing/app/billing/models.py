"""Domain models for plans, subscriptions, device ownership and billing events."""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


class SubscriptionStatus(str, Enum):
    """Lifecycle state mirrored from the payment provider."""

    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    CANCELED = "canceled"


ACTIVE_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING})
# Statuses that still count as a current subscription for status lookups.
CURRENT_STATUSES = ACTIVE_STATUSES | {SubscriptionStatus.PAST_DUE}


class HistoryEventType(str, Enum):
    """Transition categories recorded in the subscription history."""

    SUBSCRIPTION_CREATED = "subscription_created"
    STATUS_CHANGED = "status_changed"
    PLAN_CHANGED = "plan_changed"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    SUBSCRIPTION_ENDED = "subscription_ended"


class Plan(BaseModel):
    """A priced tier defining a device-count ceiling."""

    plan_id: str
    name: str
    description: Optional[str] = None
    price: Decimal = Field(ge=0)
    currency: str = "USD"
    device_limit: int = Field(ge=0)
    price_reference: Optional[str] = None
    features: Tuple[str, ...] = ()
    active: bool = True

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("plan_id")
    @classmethod
    def _normalize_plan_id(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()


class SubscriptionData(BaseModel):
    """Desired subscription state handed to the repository by callers."""

    plan_id: str
    status: SubscriptionStatus
    device_limit: Optional[int] = Field(default=None, ge=0)
    external_customer_id: Optional[str] = None
    external_subscription_id: Optional[str] = None
    external_payment_method_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    cancel_at_period_end: bool = False
    event_at: Optional[datetime] = Field(
        default=None,
        description="Provider timestamp of the event that produced this state",
    )

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class Subscription(BaseModel):
    """Persisted subscription row."""

    id: int
    user_id: int
    plan_id: str
    status: SubscriptionStatus
    device_limit: int = Field(ge=0)
    external_customer_id: Optional[str] = None
    external_subscription_id: Optional[str] = None
    external_payment_method_id: Optional[str] = None
    start_date: Optional[datetime] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    cancel_at_period_end: bool = False
    last_event_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def is_active(self) -> bool:
        """Return ``True`` for active and trialing subscriptions."""
        return self.status in ACTIVE_STATUSES


class SubscriptionHistoryEntry(BaseModel):
    """Append-only audit row describing one subscription transition."""

    id: Optional[int] = None
    user_id: int
    subscription_id: Optional[int] = None
    plan_id: Optional[str] = None
    status: Optional[SubscriptionStatus] = None
    event_type: HistoryEventType
    description: str = ""
    metadata: Dict[str, object] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class SubscriptionWrite(BaseModel):
    """Outcome of a mutating repository call."""

    subscription: Optional[Subscription] = None
    written: bool = False
    created: bool = False
    stale: bool = False
    history: Tuple[SubscriptionHistoryEntry, ...] = ()
    sync_error: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @property
    def subscription_id(self) -> Optional[int]:
        return self.subscription.id if self.subscription else None


class DeviceOwnership(BaseModel):
    """The single billing-responsible user for a device."""

    device_id: int
    owner_id: int
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    transferred_from: Optional[int] = None
    transferred_at: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class AllowanceReason(str, Enum):
    """Why a device may or may not be added."""

    ALLOWED = "allowed"
    NO_ACTIVE_SUBSCRIPTION = "no_active_subscription"
    LIMIT_REACHED = "limit_reached"


class DeviceAllowance(BaseModel):
    """Advisory result of a device-limit check."""

    allowed: bool
    reason: AllowanceReason
    remaining: int = Field(ge=0)
    message: str
    device_limit: Optional[int] = None
    owned_devices: int = 0

    model_config = ConfigDict(frozen=True)


class SubscriptionStatusView(BaseModel):
    """Subscription joined with its plan and current ownership usage."""

    user_id: int
    subscription_id: Optional[int] = None
    plan_id: Optional[str] = None
    plan_name: Optional[str] = None
    status: Optional[SubscriptionStatus] = None
    effective_status: str = "none"
    device_limit: Optional[int] = None
    owned_devices: int = 0
    remaining_devices: Optional[int] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    days_until_renewal: Optional[int] = None
    external_customer_id: Optional[str] = None
    external_subscription_id: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class PlanAnalytics(BaseModel):
    """Revenue and usage rollup for one plan."""

    plan_id: str
    plan_name: str
    price: Decimal
    active_subscriptions: int = 0
    monthly_revenue: Decimal = Decimal("0")
    pending_cancellations: int = 0
    avg_devices_per_user: float = 0.0
    users_at_limit: int = 0

    model_config = ConfigDict(frozen=True)


class BillingEventStatus(str, Enum):
    """Processing state of a stored provider event."""

    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"


class EventRecordOutcome(str, Enum):
    """Result of registering an inbound provider event."""

    STORED = "stored"
    DUPLICATE = "duplicate"


class BillingEventRecord(BaseModel):
    """One row per provider webhook event id."""

    event_id: str
    event_type: str
    payload: Dict[str, object] = Field(default_factory=dict)
    status: BillingEventStatus = BillingEventStatus.PROCESSING
    processed: bool = False
    attempts: int = 1
    error_message: Optional[str] = None
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    user_id: Optional[int] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    processed_at: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)
