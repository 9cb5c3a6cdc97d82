"""Static catalog definitions for the subscription plans."""
from __future__ import annotations

from decimal import Decimal
from typing import Dict, Mapping, Optional, Tuple

from ..errors import PlanNotFoundError
from .models import Plan


PLAN_CATALOG: Dict[str, Plan] = {
    "test": Plan(
        plan_id="test",
        name="Test Plan",
        description="Perfect for testing with up to 5 devices",
        price=Decimal("5.00"),
        device_limit=5,
        features=(
            "Up to 5 devices",
            "Real-time tracking",
            "Basic reports",
            "Email support",
        ),
    ),
    "basic": Plan(
        plan_id="basic",
        name="Basic Plan",
        description="Ideal for small fleets with up to 30 devices",
        price=Decimal("20.00"),
        device_limit=30,
        features=(
            "Up to 30 devices",
            "Real-time tracking",
            "Basic reports",
            "Email support",
        ),
    ),
    "moderate": Plan(
        plan_id="moderate",
        name="Moderate Plan",
        description="Great for growing businesses with up to 80 devices",
        price=Decimal("40.00"),
        device_limit=80,
        features=(
            "Up to 80 devices",
            "Real-time tracking",
            "Advanced reports",
            "Geofencing",
            "Priority email support",
        ),
    ),
    "advance": Plan(
        plan_id="advance",
        name="Advance Plan",
        description="Enterprise solution with up to 350 devices",
        price=Decimal("100.00"),
        device_limit=350,
        features=(
            "Up to 350 devices",
            "Real-time tracking",
            "All reports",
            "Advanced geofencing",
            "API access",
            "24/7 priority support",
        ),
    ),
}


def get_plan_definition(plan_id: str) -> Plan:
    """Return a catalog plan, raising if unsupported."""

    try:
        return PLAN_CATALOG[plan_id.strip().lower()]
    except KeyError as exc:
        raise PlanNotFoundError(f"Unknown plan id: {plan_id}") from exc


def is_valid_plan(plan_id: Optional[str]) -> bool:
    return bool(plan_id) and plan_id.strip().lower() in PLAN_CATALOG


def build_catalog(price_references: Mapping[str, Optional[str]]) -> Tuple[Plan, ...]:
    """Attach configured provider price references to the catalog plans."""

    plans = []
    for plan_id, plan in PLAN_CATALOG.items():
        reference = price_references.get(plan_id) or plan.price_reference
        plans.append(plan.model_copy(update={"price_reference": reference}))
    return tuple(plans)


__all__ = ["PLAN_CATALOG", "build_catalog", "get_plan_definition", "is_valid_plan"]
