"""
mintrelay/features/plans/registry.py

Static plan table: price, monthly mint quota and gasless eligibility.
"""

from typing import Dict, Union

from mintrelay.core.config import settings
from mintrelay.core.errors import ValidationError
from mintrelay.models.plan import Plan, PlanConfig


PLAN_DEFINITIONS: Dict[Plan, dict] = {
    Plan.FREE: {
        "name": "Free Plan",
        "price_cents": 0,
        "monthly_quota": 1,
        "duration_days": None,
    },
    Plan.MASTER: {
        "name": "Master Plan",
        "price_cents": 499,
        "monthly_quota": 10,
        "duration_days": 30,
    },
    Plan.ELITE: {
        "name": "Elite Creator",
        "price_cents": 999,
        "monthly_quota": 25,
        "duration_days": 30,
    },
}

PAID_PLAN_DURATION_DAYS = 30


def cents_to_minor_units(cents: int, decimals: int) -> int:
    """Convert a cent amount to the token's smallest unit (decimals >= 2)."""
    if decimals < 2:
        raise ValueError(f"Stable token must have at least 2 decimals, got {decimals}")
    return cents * 10 ** (decimals - 2)


def plan_config(plan: Plan, decimals: int = None) -> PlanConfig:
    """
    Look up a plan's static configuration.

    An unknown plan is a programmer error and raises KeyError.
    """
    definition = PLAN_DEFINITIONS[plan]
    token_decimals = settings.STABLE_TOKEN_DECIMALS if decimals is None else decimals
    return PlanConfig(
        plan=plan,
        name=definition["name"],
        price_cents=definition["price_cents"],
        price_minor_units=cents_to_minor_units(definition["price_cents"], token_decimals),
        monthly_quota=definition["monthly_quota"],
        gasless_eligible=True,
        duration_days=definition["duration_days"],
    )


def list_plans(decimals: int = None):
    return [plan_config(plan, decimals) for plan in Plan]


def plan_from_value(value: Union[str, int, Plan]) -> Plan:
    """Parse a plan name ("master", "MASTER") or on-chain id (1)."""
    if isinstance(value, Plan):
        return value
    if isinstance(value, int) and not isinstance(value, bool):
        for plan in Plan:
            if plan.chain_id == value:
                return plan
        raise ValidationError(f"Unknown plan id: {value}", details={"plan": value})
    text = str(value or "").strip().upper()
    if text.isdigit():
        return plan_from_value(int(text))
    try:
        return Plan(text)
    except ValueError:
        raise ValidationError(
            f"Unknown plan: {value!r}",
            details={"plan": value, "allowed": [p.value for p in Plan]},
        ) from None
