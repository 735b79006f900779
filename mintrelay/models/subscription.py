"""
mintrelay/models/subscription.py

Subscription state as read from the ledger (or the mirror during outages).
"""

from datetime import datetime, timezone
from typing import Optional
from pydantic import BaseModel, ConfigDict, field_validator

from mintrelay.models.plan import Plan


class Subscription(BaseModel):
    """
    Subscription for one wallet.

    enrolled=False marks the virtual Free subscription returned for wallets
    the ledger has never seen; on-chain enrollment happens on first use.
    """
    model_config = ConfigDict(frozen=True)

    wallet: str
    plan: Plan
    expires_at: Optional[datetime] = None
    minted_this_period: int = 0
    monthly_quota: int
    auto_renew: bool = False
    plan_active: bool = True
    has_gasless_minting: bool = True
    enrolled: bool = True

    def is_active(self, now: Optional[datetime] = None) -> bool:
        if not self.plan_active:
            return False
        if self.expires_at is None:
            return True
        now = now or datetime.now(timezone.utc)
        return now < self.expires_at


class QuotaStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    wallet: str
    plan: Plan
    limit: int
    used: int
    remaining: int
    is_active: bool
    expires_at: Optional[datetime] = None
    source: str = "ledger"  # ledger | mirror


class PermitSignature(BaseModel):
    """EIP-2612 permit authorizing the subscription manager to pull the plan price."""
    model_config = ConfigDict(frozen=True)

    deadline: int
    v: int
    r: str
    s: str

    @field_validator("r", "s")
    @classmethod
    def _bytes32_hex(cls, value: str) -> str:
        text = value.strip()
        if not text.startswith("0x") or len(text) != 66:
            raise ValueError("must be a 0x-prefixed 32-byte hex string")
        int(text, 16)
        return text.lower()

    @field_validator("v")
    @classmethod
    def _recovery_id(cls, value: int) -> int:
        if value not in (0, 1, 27, 28):
            raise ValueError("v must be 27 or 28 (or 0/1)")
        return value if value >= 27 else value + 27
