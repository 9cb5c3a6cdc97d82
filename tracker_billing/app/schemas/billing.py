"""API schemas for the public billing endpoints and the webhook."""
from __future__ import annotations

from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..billing import Plan
from ..reconciliation import ReconciliationResult


class PlanResponse(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    price: Decimal
    currency: str
    device_limit: int = Field(alias="deviceLimit")
    features: List[str] = Field(default_factory=list)
    stripe_price_id: Optional[str] = Field(alias="stripePriceId", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_plan(cls, plan: Plan) -> "PlanResponse":
        return cls(
            id=plan.plan_id,
            name=plan.name,
            description=plan.description,
            price=plan.price,
            currency=plan.currency,
            device_limit=plan.device_limit,
            features=list(plan.features),
            stripe_price_id=plan.price_reference,
        )


class PlanListResponse(BaseModel):
    success: bool = True
    plans: List[PlanResponse]


class PlanDetailResponse(BaseModel):
    success: bool = True
    plan: PlanResponse


class CheckoutRequest(BaseModel):
    plan_id: str = Field(alias="planId", min_length=1)
    email: str
    metadata: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        cleaned = value.strip().lower()
        local, _, domain = cleaned.partition("@")
        if not local or "." not in domain:
            raise ValueError("Valid email is required")
        return cleaned


class CheckoutResponse(BaseModel):
    success: bool = True
    session_id: str = Field(alias="sessionId")
    session_url: Optional[str] = Field(alias="sessionUrl", default=None)
    publishable_key: Optional[str] = Field(alias="publishableKey", default=None)

    model_config = ConfigDict(populate_by_name=True)


class PortalRequest(BaseModel):
    customer_id: str = Field(alias="customerId", min_length=1)

    model_config = ConfigDict(populate_by_name=True)


class PortalResponse(BaseModel):
    success: bool = True
    url: str


class CheckoutSessionSummary(BaseModel):
    id: str
    status: Optional[str] = None
    customer_email: Optional[str] = Field(alias="customerEmail", default=None)
    customer_id: Optional[str] = Field(alias="customerId", default=None)
    subscription_id: Optional[str] = Field(alias="subscriptionId", default=None)
    metadata: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True)


class CheckoutSessionDetailResponse(BaseModel):
    success: bool = True
    session: CheckoutSessionSummary


class ProviderSubscriptionSummary(BaseModel):
    id: str
    status: Optional[str] = None
    current_period_end: Optional[int] = Field(alias="currentPeriodEnd", default=None)
    cancel_at_period_end: bool = Field(alias="cancelAtPeriodEnd", default=False)
    metadata: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True)


class ProviderSubscriptionResponse(BaseModel):
    success: bool = True
    subscription: ProviderSubscriptionSummary


class BillingConfigResponse(BaseModel):
    success: bool = True
    publishable_key: Optional[str] = Field(alias="publishableKey", default=None)
    plans: List[PlanResponse]

    model_config = ConfigDict(populate_by_name=True)


class WebhookAck(BaseModel):
    received: bool = True
    outcome: str
    event_id: str = Field(alias="eventId")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: ReconciliationResult) -> "WebhookAck":
        return cls(outcome=result.outcome.value, event_id=result.event_id)


__all__ = [
    "BillingConfigResponse",
    "CheckoutRequest",
    "CheckoutResponse",
    "CheckoutSessionDetailResponse",
    "CheckoutSessionSummary",
    "PlanDetailResponse",
    "PlanListResponse",
    "PlanResponse",
    "PortalRequest",
    "PortalResponse",
    "ProviderSubscriptionResponse",
    "ProviderSubscriptionSummary",
    "WebhookAck",
]
