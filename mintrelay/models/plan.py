"""
mintrelay/models/plan.py

Subscription plan tiers.

Plans are defined at deploy time and never mutated; prices live in the
registry (mintrelay/features/plans/registry.py).
"""

from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


class Plan(str, Enum):
    FREE = "FREE"
    MASTER = "MASTER"
    ELITE = "ELITE"

    @property
    def chain_id(self) -> int:
        """Plan id as encoded by the subscription manager (uint8)."""
        return _CHAIN_IDS[self]

    @property
    def is_paid(self) -> bool:
        return self is not Plan.FREE


_CHAIN_IDS = {Plan.FREE: 0, Plan.MASTER: 1, Plan.ELITE: 2}


class PlanConfig(BaseModel):
    """
    PlanConfig is the static description of a tier.

    price_minor_units is expressed in the stable token's smallest unit.
    """
    model_config = ConfigDict(frozen=True)

    plan: Plan
    name: str
    price_cents: int
    price_minor_units: int
    monthly_quota: int
    gasless_eligible: bool = True
    duration_days: Optional[int] = None  # None = never expires
