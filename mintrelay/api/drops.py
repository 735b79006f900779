"""
Drop authoring (admin only).
"""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, Field

from mintrelay.api.deps import envelope, get_services, relay_data
from mintrelay.core.admin_auth import AdminActor, require_admin
from mintrelay.core.logging import log_event

router = APIRouter(prefix="/v1/drops", tags=["drops"])


class CreateDropRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: str
    claim_code: str = Field(..., alias="claimCode")
    metadata_uri: str = Field(..., alias="metadataURI")
    max_claims: int = Field(0, alias="maxClaims")
    start_time: Optional[datetime] = Field(None, alias="startTime")
    end_time: Optional[datetime] = Field(None, alias="endTime")


@router.post("")
def create_drop(body: CreateDropRequest, request: Request, actor: AdminActor = Depends(require_admin), services=Depends(get_services)):
    drop = services.claims.create_drop(
        title=body.title,
        claim_code=body.claim_code,
        metadata_uri=body.metadata_uri,
        max_claims=body.max_claims,
        start_time=body.start_time,
        end_time=body.end_time,
    )
    log_event("info", "admin.drop_created", event_type="admin_action", extra={"actor": actor.actor_id, "drop_id": drop.id})
    return envelope(request, drop.public_view(), status_code=201)


@router.get("/{drop_id}")
def get_drop(drop_id: str, request: Request, actor: AdminActor = Depends(require_admin), services=Depends(get_services)):
    drop = services.claims.get_drop(drop_id)
    return envelope(request, drop.public_view(claims=services.mirror.count_claims(drop.id)))


@router.post("/{drop_id}/publish")
async def publish_drop(drop_id: str, request: Request, actor: AdminActor = Depends(require_admin), services=Depends(get_services)):
    drop, result = await services.claims.publish_drop(drop_id)
    log_event("info", "admin.drop_published", event_type="admin_action", extra={"actor": actor.actor_id, "drop_id": drop.id})
    data = drop.public_view()
    if result is not None:
        data["deployment"] = relay_data(result)
    status_code = 202 if result is not None and result.ambiguous else 200
    return envelope(request, data, status_code=status_code)


@router.post("/{drop_id}/unpublish")
def unpublish_drop(drop_id: str, request: Request, actor: AdminActor = Depends(require_admin), services=Depends(get_services)):
    drop = services.claims.unpublish_drop(drop_id)
    log_event("info", "admin.drop_unpublished", event_type="admin_action", extra={"actor": actor.actor_id, "drop_id": drop.id})
    return envelope(request, drop.public_view())
