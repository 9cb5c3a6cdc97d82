"""Operator routes for subscription state, device ownership and maintenance."""
from __future__ import annotations

import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status

from ..billing import DeviceAllowance, DeviceOwnership, SubscriptionStatusView
from ..errors import DirectoryError, SubscriptionNotFoundError
from ..reconciliation import DirectorySubscriptionMirror
from ..schemas.subscriptions import (
    AnalyticsResponse,
    CancelRequest,
    CredentialCheckRequest,
    CredentialCheckResponse,
    DeviceListResponse,
    DeviceTransferRequest,
    HistoryResponse,
    PurgeRequest,
    PurgeResponse,
    SubscriptionChangeResponse,
)
from ..services.billing import (
    get_directory_client,
    get_event_store,
    get_settings,
    get_subscription_repository,
)

logger = logging.getLogger("billing")


def require_admin_token(x_admin_token: Optional[str] = Header(None, alias="X-Admin-Token")) -> None:
    expected = get_settings().admin_api_token
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin API is not configured",
        )
    if not x_admin_token or not hmac.compare_digest(x_admin_token, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin token")


router = APIRouter(
    prefix="/api/subscriptions",
    tags=["subscriptions"],
    dependencies=[Depends(require_admin_token)],
)


@router.get("/users/{user_id}", response_model=SubscriptionStatusView)
def get_subscription_status(user_id: int) -> SubscriptionStatusView:
    return get_subscription_repository().get_subscription_status(user_id)


@router.get("/users/{user_id}/can-add-device", response_model=DeviceAllowance)
def can_add_device(user_id: int) -> DeviceAllowance:
    return get_subscription_repository().can_add_device(user_id)


@router.get("/users/{user_id}/devices", response_model=DeviceListResponse)
def list_owned_devices(user_id: int) -> DeviceListResponse:
    devices = get_subscription_repository().list_owned_devices(user_id)
    return DeviceListResponse(user_id=user_id, devices=devices)


@router.put("/devices/{device_id}/owner", response_model=DeviceOwnership)
def transfer_device(device_id: int, payload: DeviceTransferRequest) -> DeviceOwnership:
    return get_subscription_repository().transfer_device_ownership(device_id, payload.new_owner_id)


@router.get("/users/{user_id}/history", response_model=HistoryResponse)
def list_history(user_id: int, limit: int = Query(50, ge=1, le=500)) -> HistoryResponse:
    entries = get_subscription_repository().list_history(user_id, limit=limit)
    return HistoryResponse(user_id=user_id, entries=entries)


@router.get("/analytics", response_model=AnalyticsResponse)
def subscription_analytics() -> AnalyticsResponse:
    return AnalyticsResponse(plans=get_subscription_repository().subscription_analytics())


@router.post("/users/{user_id}/cancel", response_model=SubscriptionChangeResponse)
def cancel_subscription(user_id: int, payload: Optional[CancelRequest] = None) -> SubscriptionChangeResponse:
    flag = payload.cancel_at_period_end if payload is not None else True
    try:
        write = get_subscription_repository().cancel_at_period_end(user_id, flag)
    except SubscriptionNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return SubscriptionChangeResponse.from_write(write)


@router.post("/users/{user_id}/reactivate", response_model=SubscriptionChangeResponse)
def reactivate_subscription(user_id: int) -> SubscriptionChangeResponse:
    try:
        write = get_subscription_repository().cancel_at_period_end(user_id, False)
    except SubscriptionNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return SubscriptionChangeResponse.from_write(write)


@router.post("/users/{user_id}/end", response_model=SubscriptionChangeResponse)
def end_subscription(user_id: int) -> SubscriptionChangeResponse:
    try:
        write = get_subscription_repository().end_subscription_now(user_id)
    except SubscriptionNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return SubscriptionChangeResponse.from_write(write)


@router.post("/maintenance/purge", response_model=PurgeResponse)
def purge_old_records(payload: PurgeRequest) -> PurgeResponse:
    history_deleted = get_subscription_repository().purge_history_before(payload.before)
    events_deleted = 0
    if payload.include_events:
        events_deleted = get_event_store().purge_processed_before(payload.before)
    return PurgeResponse(history_deleted=history_deleted, events_deleted=events_deleted)


@router.post("/users/{user_id}/resync", response_model=SubscriptionChangeResponse)
def resync_directory(user_id: int) -> SubscriptionChangeResponse:
    """Push the stored subscription to the directory again."""

    subscription = get_subscription_repository().get_subscription(user_id)
    if subscription is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Subscription not found")
    try:
        DirectorySubscriptionMirror(get_directory_client())(subscription)
    except DirectoryError as exc:
        logger.error("Manual resync failed for user %s: %s", user_id, exc)
        raise exc.to_http_exception() from exc
    logger.info("Resynced subscription %s to directory user %s", subscription.id, user_id)
    return SubscriptionChangeResponse(changed=False, subscription=subscription)


@router.post("/diagnostics/credentials", response_model=CredentialCheckResponse)
def check_directory_credentials(payload: CredentialCheckRequest) -> CredentialCheckResponse:
    valid = get_directory_client().verify_credentials(payload.email, payload.password)
    return CredentialCheckResponse(email=payload.email, valid=valid)
