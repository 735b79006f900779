"""
Relay status polling and quota reconciliation.
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from mintrelay.api.deps import envelope, get_services
from mintrelay.core.admin_auth import AdminActor, require_admin
from mintrelay.core.errors import ValidationError
from mintrelay.features.chain.client import normalize_address
from mintrelay.features.subscriptions.reconciler import run_quota_reconciliation

router = APIRouter(prefix="/v1", tags=["relay"])


class ReconcileRequest(BaseModel):
    wallets: Optional[List[str]] = None


@router.get("/relay/tx/{tx_hash}")
async def relay_tx_status(tx_hash: str, request: Request, services=Depends(get_services)):
    """Poll an ambiguous relay outcome instead of resubmitting it."""
    if not tx_hash.startswith("0x") or len(tx_hash) != 66:
        raise ValidationError("Invalid transaction hash", details={"tx_hash": tx_hash})
    status = await services.executor.check_status(tx_hash)
    return envelope(request, {
        "txHash": status.tx_hash,
        "status": status.status,
        "confirmation": status.confirmation,
        "blockNumber": status.block_number,
    })


@router.post("/quota/reconcile")
async def reconcile_quota(request: Request, body: Optional[ReconcileRequest] = None, actor: AdminActor = Depends(require_admin), services=Depends(get_services)):
    wallets = None
    if body is not None and body.wallets is not None:
        wallets = [normalize_address(w, "wallet") for w in body.wallets]
    report = await run_quota_reconciliation(services.ledger.reconciler, wallets)
    report["actor"] = actor.actor_id
    return envelope(request, report)
