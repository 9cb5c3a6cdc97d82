"""Coordinator applying provider billing events to the store and the directory."""

from .engine import EventStore, ReconciliationEngine, SubscriptionRepository, UserDirectory
from .events import ProviderEventType
from .mirror import DirectorySubscriptionMirror
from .models import ACCEPTED_OUTCOMES, ReconciliationOutcome, ReconciliationResult

__all__ = [
    "ACCEPTED_OUTCOMES",
    "DirectorySubscriptionMirror",
    "EventStore",
    "ProviderEventType",
    "ReconciliationEngine",
    "ReconciliationOutcome",
    "ReconciliationResult",
    "SubscriptionRepository",
    "UserDirectory",
]
