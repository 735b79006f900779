"""
mintrelay/models/drop.py

Claimable drops and their lazy on-chain claim-code registration state.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


class DropStatus(str, Enum):
    DRAFT = "draft"
    PUBLISHED = "published"
    UNPUBLISHED = "unpublished"


class RegistrationState(str, Enum):
    UNREGISTERED = "unregistered"
    REGISTERING = "registering"
    REGISTERED = "registered"


class Drop(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    claim_code: str
    metadata_uri: str
    max_claims: int = 0  # 0 = unlimited
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    status: DropStatus = DropStatus.DRAFT
    contract_address: Optional[str] = None
    registration_state: RegistrationState = RegistrationState.UNREGISTERED
    registration_tx_hash: Optional[str] = None
    deploy_tx_hash: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def code_registered_on_chain(self) -> bool:
        return self.registration_state == RegistrationState.REGISTERED

    def public_view(self, claims: Optional[int] = None) -> dict:
        """Drop as shown to callers; the claim code is never echoed."""
        data = self.model_dump(mode="json", exclude={"claim_code"})
        data["code_registered_on_chain"] = self.code_registered_on_chain
        if claims is not None:
            data["claims"] = claims
        return data
