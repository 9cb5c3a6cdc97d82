"""Public billing routes: plans, hosted checkout and portal sessions."""
from __future__ import annotations

import logging
from typing import NoReturn

import stripe
from fastapi import APIRouter, HTTPException, status

from ..schemas.billing import (
    BillingConfigResponse,
    CheckoutRequest,
    CheckoutResponse,
    CheckoutSessionDetailResponse,
    CheckoutSessionSummary,
    PlanDetailResponse,
    PlanListResponse,
    PlanResponse,
    PortalRequest,
    PortalResponse,
    ProviderSubscriptionResponse,
    ProviderSubscriptionSummary,
)
from ..services.billing import get_payment_gateway, get_settings, get_subscription_repository

logger = logging.getLogger("billing")

router = APIRouter(prefix="/billing", tags=["billing"])


def _payment_error(exc: stripe.StripeError) -> NoReturn:
    logger.error("Stripe request failed: %s", exc)
    raise HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={"error": "Payment processing error", "message": str(exc)},
    ) from exc


@router.get("/plans", response_model=PlanListResponse)
def list_plans() -> PlanListResponse:
    plans = get_subscription_repository().list_plans()
    return PlanListResponse(plans=[PlanResponse.from_plan(plan) for plan in plans])


@router.get("/plans/{plan_id}", response_model=PlanDetailResponse)
def get_plan(plan_id: str) -> PlanDetailResponse:
    plan = get_subscription_repository().get_plan(plan_id)
    if plan is None or not plan.active:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Plan not found")
    return PlanDetailResponse(plan=PlanResponse.from_plan(plan))


@router.post("/checkout", response_model=CheckoutResponse)
def create_checkout(payload: CheckoutRequest) -> CheckoutResponse:
    plan = get_subscription_repository().get_plan(payload.plan_id)
    if plan is None or not plan.active:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid plan ID")
    if not plan.price_reference:
        logger.error("Stripe price ID not configured for plan: %s", plan.plan_id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Plan configuration error",
        )

    settings = get_settings()
    gateway = get_payment_gateway()
    logger.info("Creating checkout session for %s plan=%s", payload.email, plan.plan_id)
    try:
        session = gateway.create_checkout_session(
            plan=plan,
            email=payload.email,
            success_url=settings.success_url,
            cancel_url=settings.cancel_url,
            metadata=payload.metadata,
        )
    except stripe.StripeError as exc:
        _payment_error(exc)
    return CheckoutResponse(
        session_id=session["id"],
        session_url=session.get("url"),
        publishable_key=gateway.publishable_key,
    )


@router.post("/portal", response_model=PortalResponse)
def create_portal(payload: PortalRequest) -> PortalResponse:
    return_url = get_settings().frontend_url
    logger.info("Creating portal session for customer %s", payload.customer_id)
    try:
        session = get_payment_gateway().create_portal_session(payload.customer_id, return_url)
    except stripe.StripeError as exc:
        _payment_error(exc)
    return PortalResponse(url=session["url"])


@router.get("/session/{session_id}", response_model=CheckoutSessionDetailResponse)
def get_checkout_session(session_id: str) -> CheckoutSessionDetailResponse:
    try:
        session = get_payment_gateway().retrieve_checkout_session(session_id)
    except stripe.StripeError as exc:
        _payment_error(exc)
    return CheckoutSessionDetailResponse(session=CheckoutSessionSummary(**session))


@router.get("/subscription/{subscription_id}", response_model=ProviderSubscriptionResponse)
def get_provider_subscription(subscription_id: str) -> ProviderSubscriptionResponse:
    try:
        subscription = get_payment_gateway().retrieve_subscription(subscription_id)
    except stripe.StripeError as exc:
        _payment_error(exc)
    return ProviderSubscriptionResponse(subscription=ProviderSubscriptionSummary(**subscription))


@router.get("/config", response_model=BillingConfigResponse)
def get_billing_config() -> BillingConfigResponse:
    plans = get_subscription_repository().list_plans()
    return BillingConfigResponse(
        publishable_key=get_settings().stripe_publishable_key,
        plans=[PlanResponse.from_plan(plan) for plan in plans],
    )
