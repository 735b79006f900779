"""
Collection and NFT mint endpoints (gas paid by the relayer).
"""
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, Field

from mintrelay.api.deps import envelope, get_services, relay_envelope, require_wallet
from mintrelay.core.errors import AppError
from mintrelay.core.idempotency import idempotency_guard
from mintrelay.core.logging import log_event
from mintrelay.features.chain.client import normalize_address

router = APIRouter(tags=["minting"])


class CreateCollectionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    symbol: str
    description: str = ""
    image: str = ""
    external_url: str = Field("", alias="externalUrl")
    royalty_recipient: Optional[str] = Field(None, alias="royaltyRecipient")
    royalty_bps: int = Field(0, alias="royaltyBPS")


class MintRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    collection_address: str = Field(..., alias="collectionAddress")
    token_uri: str = Field(..., alias="tokenURI")
    recipient: Optional[str] = None


def _enrollment_data(outcome) -> Optional[dict]:
    if outcome.enrollment is None:
        return None
    return {"txHash": outcome.enrollment.tx_hash, "status": outcome.enrollment.status.value}


@router.post("/collections")
async def create_collection(body: CreateCollectionRequest, request: Request, wallet: str = Depends(require_wallet), services=Depends(get_services)):
    with idempotency_guard(request, "collections"):
        outcome = await services.minting.create_collection(
            wallet,
            name=body.name,
            symbol=body.symbol,
            description=body.description,
            image=body.image,
            external_url=body.external_url,
            royalty_recipient=body.royalty_recipient,
            royalty_bps=body.royalty_bps,
        )
    return relay_envelope(request, outcome.result, owner=wallet, enrollment=_enrollment_data(outcome))


@router.get("/collections")
def list_collections(owner: str, request: Request, services=Depends(get_services)):
    items = services.mirror.list_collections(normalize_address(owner, "owner"))
    return envelope(request, [item.model_dump(mode="json") for item in items])


async def _quota_after_mint(services, wallet: str) -> Optional[dict]:
    # The mint already happened; a failed quota read only drops the summary
    try:
        status = await services.ledger.quota(wallet)
    except AppError as exc:
        log_event("warning", "nfts.quota_unavailable", wallet=wallet, error_code=exc.code)
        return None
    return {"limit": status.limit, "used": status.used, "remaining": status.remaining}


@router.post("/nfts")
async def mint_nft(body: MintRequest, request: Request, wallet: str = Depends(require_wallet), services=Depends(get_services)):
    with idempotency_guard(request, "nfts"):
        outcome = await services.minting.mint_nft(
            wallet,
            collection_address=body.collection_address,
            token_uri=body.token_uri,
            recipient=body.recipient,
        )
    quota = await _quota_after_mint(services, wallet) if outcome.result.confirmed else None
    return relay_envelope(request, outcome.result, creator=wallet, quota=quota, enrollment=_enrollment_data(outcome))


@router.get("/nfts")
def list_nfts(wallet: str, request: Request, services=Depends(get_services)):
    return envelope(request, services.mirror.list_mints(normalize_address(wallet, "wallet")))
