"""Error taxonomy shared by the billing synchronization components."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import HTTPException, status


class BillingSyncError(Exception):
    """Base class for errors raised by the synchronization core."""


class ConfigurationError(BillingSyncError):
    """Raised at startup when required settings are missing or invalid."""


class WebhookSignatureError(BillingSyncError):
    """The inbound provider payload failed signature verification."""


class RepositoryError(BillingSyncError):
    """A relational store operation failed and its transaction was rolled back."""


class PlanNotFoundError(LookupError):
    """No plan matches the requested identifier or price reference."""


class SubscriptionNotFoundError(LookupError):
    """The user has no subscription row matching the request."""


@dataclass
class DirectoryError(BillingSyncError):
    """Non-2xx or transport failure returned by the external user directory."""

    message: str
    status_code: Optional[int] = None
    endpoint: Optional[str] = None

    def __post_init__(self) -> None:
        super().__init__(self.message)

    @property
    def is_auth_failure(self) -> bool:
        return self.status_code == status.HTTP_401_UNAUTHORIZED

    def to_http_exception(self) -> HTTPException:
        """Convert the directory failure into a gateway error for API callers."""

        detail: Dict[str, Any] = {"error": "directory_error", "message": self.message}
        if self.status_code is not None:
            detail["status"] = self.status_code
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=detail)


__all__ = [
    "BillingSyncError",
    "ConfigurationError",
    "DirectoryError",
    "PlanNotFoundError",
    "RepositoryError",
    "SubscriptionNotFoundError",
    "WebhookSignatureError",
]
