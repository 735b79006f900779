"""
Subscription endpoints: plan changes, subscription state and quota.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, Field, field_validator

from mintrelay.api.deps import envelope, get_services, relay_envelope, require_wallet
from mintrelay.core.idempotency import idempotency_guard
from mintrelay.features.chain.client import normalize_address
from mintrelay.features.plans.registry import list_plans, plan_config, plan_from_value
from mintrelay.models.subscription import PermitSignature

router = APIRouter(tags=["subscriptions"])


class SubscribeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    plan: str
    auto_renew: bool = Field(False, alias="autoRenew")

    @field_validator("plan")
    @classmethod
    def _trim(cls, value: str) -> str:
        return value.strip()


class PermitSubscribeRequest(SubscribeRequest):
    permit: PermitSignature


def _subscription_view(sub, decimals: int) -> dict:
    config = plan_config(sub.plan, decimals)
    return {
        "wallet": sub.wallet,
        "plan": sub.plan.value,
        "planName": config.name,
        "expiresAt": sub.expires_at,
        "mintedThisPeriod": sub.minted_this_period,
        "monthlyQuota": config.monthly_quota,
        "autoRenew": sub.auto_renew,
        "isActive": sub.is_active(),
        "hasGaslessMinting": sub.has_gasless_minting,
        "enrolledOnChain": sub.enrolled,
    }


@router.get("/plans")
def get_plans(request: Request, services=Depends(get_services)):
    decimals = services.ledger.token_decimals
    return envelope(request, [
        {
            "plan": config.plan.value,
            "name": config.name,
            "priceMinorUnits": config.price_minor_units,
            "priceCents": config.price_cents,
            "monthlyQuota": config.monthly_quota,
            "gaslessEligible": config.gasless_eligible,
            "durationDays": config.duration_days,
        }
        for config in list_plans(decimals)
    ])


@router.post("/subscribe")
async def subscribe(body: SubscribeRequest, request: Request, wallet: str = Depends(require_wallet), services=Depends(get_services)):
    """Change plan (paid plans need a prior approve() of the plan price)."""
    plan = plan_from_value(body.plan)
    with idempotency_guard(request, "subscribe"):
        result = await services.ledger.change_plan(wallet, plan, body.auto_renew)
    return relay_envelope(request, result, wallet=wallet, plan=plan.value)


@router.post("/subscribe/permit")
async def subscribe_with_permit(body: PermitSubscribeRequest, request: Request, wallet: str = Depends(require_wallet), services=Depends(get_services)):
    """Fully gasless paid plan change using an EIP-2612 permit signature."""
    plan = plan_from_value(body.plan)
    with idempotency_guard(request, "subscribe"):
        result = await services.ledger.change_plan_with_permit(wallet, plan, body.auto_renew, body.permit)
    return relay_envelope(request, result, wallet=wallet, plan=plan.value)


@router.get("/subscriptions/{wallet}")
async def get_subscription(wallet: str, request: Request, services=Depends(get_services)):
    sub = await services.ledger.get_subscription(normalize_address(wallet, "wallet"))
    return envelope(request, _subscription_view(sub, services.ledger.token_decimals))


@router.get("/subscriptions/{wallet}/quota")
async def get_quota(wallet: str, request: Request, count: Optional[int] = None, services=Depends(get_services)):
    status = await services.ledger.quota(normalize_address(wallet, "wallet"))
    data = {
        "wallet": status.wallet,
        "plan": status.plan.value,
        "limit": status.limit,
        "used": status.used,
        "remaining": status.remaining,
        "isActive": status.is_active,
        "expiresAt": status.expires_at,
        "source": status.source,
    }
    if count is not None:
        data["canMint"] = status.is_active and status.used + count <= status.limit
    return envelope(request, data)
