"""
mintrelay/models/relay.py

Relay requests are ephemeral units of work: they live for one execution
and are only persisted through logs.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Tuple
from uuid import uuid4

from pydantic import BaseModel, ConfigDict

from mintrelay.features.chain.client import ContractCall


class RelayType(str, Enum):
    DEPLOY_COLLECTION = "deployCollection"
    MINT_NFT = "mintNFT"
    SUBSCRIBE = "subscribe"
    UPGRADE = "upgrade"
    ADD_CLAIM_CODE = "addClaimCode"
    DEPLOY_DROP = "deployDrop"
    CLAIM_NFT = "claimNFT"


class RelayStatus(str, Enum):
    PENDING = "pending"
    SIMULATED = "simulated"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"


_TRANSITIONS = {
    RelayStatus.PENDING: {RelayStatus.SIMULATED, RelayStatus.FAILED},
    RelayStatus.SIMULATED: {RelayStatus.SUBMITTED, RelayStatus.FAILED},
    RelayStatus.SUBMITTED: {RelayStatus.CONFIRMED, RelayStatus.FAILED},
    RelayStatus.CONFIRMED: set(),
    RelayStatus.FAILED: set(),
}


@dataclass
class RelayRequest:
    type: RelayType
    call: ContractCall
    # (address, role) pairs that must hold code before anything is signed
    verify_targets: List[Tuple[str, str]] = field(default_factory=list)
    creates_contract: bool = False
    # Ordered interface descriptors probed on the target (best effort)
    interfaces: list = field(default_factory=list)
    wallet: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid4()))
    status: RelayStatus = RelayStatus.PENDING
    sponsor: Optional[str] = None
    nonce: Optional[int] = None
    tx_hash: Optional[str] = None
    attempts: int = 0
    error_code: Optional[str] = None
    # Invoked with the tx hash right after broadcast, before confirmation
    on_submitted: Optional[Callable[[str], None]] = field(default=None, repr=False)

    def transition(self, new_status: RelayStatus) -> None:
        if new_status not in _TRANSITIONS[self.status]:
            raise ValueError(f"Illegal relay transition {self.status.value} -> {new_status.value}")
        self.status = new_status

    @property
    def terminal(self) -> bool:
        return self.status in (RelayStatus.CONFIRMED, RelayStatus.FAILED)


class RelayResult(BaseModel):
    """
    Outcome returned to callers.

    status=submitted with confirmation=unknown is the ambiguous outcome:
    poll the tx status, never resubmit.
    """
    model_config = ConfigDict(frozen=True)

    type: RelayType
    status: RelayStatus
    confirmation: str  # confirmed | unknown | reverted
    tx_hash: Optional[str] = None
    contract_address: Optional[str] = None
    interface: Optional[str] = None
    sponsor: Optional[str] = None
    nonce: Optional[int] = None
    block_number: Optional[int] = None

    @property
    def confirmed(self) -> bool:
        return self.status == RelayStatus.CONFIRMED

    @property
    def ambiguous(self) -> bool:
        return self.status == RelayStatus.SUBMITTED and self.confirmation == "unknown"


class TxStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    tx_hash: str
    status: str  # confirmed | failed | submitted
    confirmation: str  # confirmed | reverted | unknown
    block_number: Optional[int] = None
