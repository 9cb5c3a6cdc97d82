"""API schemas for the subscription query and admin endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..billing import (
    DeviceAllowance,
    DeviceOwnership,
    PlanAnalytics,
    Subscription,
    SubscriptionHistoryEntry,
    SubscriptionStatusView,
    SubscriptionWrite,
)


class DeviceListResponse(BaseModel):
    user_id: int = Field(alias="userId")
    devices: List[DeviceOwnership]

    model_config = ConfigDict(populate_by_name=True)


class DeviceTransferRequest(BaseModel):
    new_owner_id: int = Field(alias="newOwnerId", gt=0)

    model_config = ConfigDict(populate_by_name=True)


class HistoryResponse(BaseModel):
    user_id: int = Field(alias="userId")
    entries: List[SubscriptionHistoryEntry]

    model_config = ConfigDict(populate_by_name=True)


class AnalyticsResponse(BaseModel):
    plans: List[PlanAnalytics]


class CancelRequest(BaseModel):
    cancel_at_period_end: bool = Field(alias="cancelAtPeriodEnd", default=True)

    model_config = ConfigDict(populate_by_name=True)


class SubscriptionChangeResponse(BaseModel):
    changed: bool
    subscription: Optional[Subscription] = None
    sync_error: Optional[str] = Field(alias="syncError", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_write(cls, write: SubscriptionWrite) -> "SubscriptionChangeResponse":
        return cls(changed=write.written, subscription=write.subscription, sync_error=write.sync_error)


class PurgeRequest(BaseModel):
    before: datetime
    include_events: bool = Field(alias="includeEvents", default=False)

    model_config = ConfigDict(populate_by_name=True)


class PurgeResponse(BaseModel):
    history_deleted: int = Field(alias="historyDeleted")
    events_deleted: int = Field(alias="eventsDeleted", default=0)

    model_config = ConfigDict(populate_by_name=True)


class CredentialCheckRequest(BaseModel):
    email: str
    password: str = Field(repr=False)


class CredentialCheckResponse(BaseModel):
    email: str
    valid: bool


__all__ = [
    "AnalyticsResponse",
    "CancelRequest",
    "CredentialCheckRequest",
    "CredentialCheckResponse",
    "DeviceAllowance",
    "DeviceListResponse",
    "DeviceTransferRequest",
    "HistoryResponse",
    "PurgeRequest",
    "PurgeResponse",
    "SubscriptionChangeResponse",
    "SubscriptionStatusView",
]
