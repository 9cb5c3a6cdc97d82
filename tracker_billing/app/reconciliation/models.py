"""Result types produced by the reconciliation engine."""
from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict


class ReconciliationOutcome(str, Enum):
    """How a single provider event was handled."""

    PROCESSED = "processed"
    # Local write committed, directory sync failed.
    DEGRADED = "degraded"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    SKIPPED = "skipped"
    STALE = "stale"
    FAILED = "failed"


# Outcomes acknowledged to the provider with a 2xx response.
ACCEPTED_OUTCOMES = frozenset(
    {
        ReconciliationOutcome.PROCESSED,
        ReconciliationOutcome.DEGRADED,
        ReconciliationOutcome.DUPLICATE,
        ReconciliationOutcome.IGNORED,
        ReconciliationOutcome.SKIPPED,
        ReconciliationOutcome.STALE,
    }
)


class ReconciliationResult(BaseModel):
    event_id: str
    event_type: str
    outcome: ReconciliationOutcome
    user_id: Optional[int] = None
    subscription_id: Optional[int] = None
    directory_error: Optional[str] = None
    error: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @property
    def accepted(self) -> bool:
        return self.outcome in ACCEPTED_OUTCOMES


__all__ = ["ACCEPTED_OUTCOMES", "ReconciliationOutcome", "ReconciliationResult"]
