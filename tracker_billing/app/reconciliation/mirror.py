"""Post-commit hook pushing committed subscription state to the directory."""
from __future__ import annotations

import logging
from typing import Any, Mapping, Optional, Protocol

from ..billing.models import Subscription, SubscriptionStatus

logger = logging.getLogger(__name__)


class LimitWriter(Protocol):
    def update_device_limit_and_attributes(
        self,
        user_id: int,
        device_limit: Optional[int],
        attribute_delta: Optional[Mapping[str, Any]] = None,
    ) -> Any:
        ...


def directory_device_limit(subscription: Subscription) -> int:
    """Limit the directory enforces; only canceled subscriptions lose their devices."""
    return 0 if subscription.status == SubscriptionStatus.CANCELED else subscription.device_limit


class DirectorySubscriptionMirror:
    """Repository sync hook.

    Writes the device limit, plan and status of every committed subscription
    to the directory account with the same user id. Errors propagate to the
    repository, which records them on the write result.
    """

    def __init__(self, directory: LimitWriter) -> None:
        self._directory = directory

    def __call__(self, subscription: Subscription) -> None:
        limit = directory_device_limit(subscription)
        self._directory.update_device_limit_and_attributes(
            subscription.user_id,
            limit,
            {
                "subscriptionPlan": subscription.plan_id,
                "subscriptionStatus": subscription.status.value,
            },
        )
        logger.debug(
            "Mirrored subscription %s to directory user %s limit=%s",
            subscription.id,
            subscription.user_id,
            limit,
        )


__all__ = ["DirectorySubscriptionMirror", "LimitWriter", "directory_device_limit"]
