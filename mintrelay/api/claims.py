"""
Claim endpoints for claimable drops.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, Field

from mintrelay.api.deps import envelope, get_services, relay_envelope, require_wallet
from mintrelay.core.idempotency import idempotency_guard

router = APIRouter(prefix="/claims", tags=["claims"])


class ClaimRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    claim_code: str = Field(..., alias="claimCode")


@router.post("/{drop_id}")
async def claim_drop(drop_id: str, body: ClaimRequest, request: Request, wallet: str = Depends(require_wallet), services=Depends(get_services)):
    with idempotency_guard(request, "claims"):
        outcome = await services.claims.claim(drop_id, wallet, body.claim_code)
    return relay_envelope(
        request,
        outcome.result,
        dropId=outcome.drop.id,
        claimer=wallet,
        contractAddress=outcome.drop.contract_address,
    )


@router.get("/{drop_id}/verify")
def verify_claim(drop_id: str, code: str, request: Request, wallet: Optional[str] = None, services=Depends(get_services)):
    """Pre-flight validation; no chain writes."""
    candidate = wallet or request.headers.get("X-Wallet-Address")
    return envelope(request, services.claims.verify_claim(drop_id, code, candidate))
