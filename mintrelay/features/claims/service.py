"""
mintrelay/features/claims/service.py

Claimable drops: authoring, publishing and claiming.

Handles:
- Drop authoring (draft -> published -> unpublished)
- Lazy contract deployment on first publish (claim code NOT registered)
- Off-chain claim checks with a per-drop reservation so max_claims and
  one-claim-per-wallet hold under concurrency
- Deferred claim-code registration through the ClaimRegistrar
- Owner-level mint of the drop token to the claimant
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Tuple
from uuid import uuid4

from mintrelay.core.errors import (
    AppError,
    ClaimRejectedError,
    ConflictError,
    DeploymentVerificationError,
    NotFoundError,
    RegistrationPendingError,
    TargetNotDeployedError,
    TransactionRevertedError,
    ValidationError,
)
from mintrelay.core.logging import log_event
from mintrelay.features.chain import abis
from mintrelay.features.chain.client import ContractCall, normalize_address
from mintrelay.features.claims.registrar import ClaimRegistrar, KeyedLocks
from mintrelay.features.relay.verifier import CLAIMABLE_FACTORY_INTERFACES
from mintrelay.models.drop import Drop, DropStatus
from mintrelay.models.relay import RelayRequest, RelayResult, RelayType

logger = logging.getLogger("mintrelay.claims")

CLAIM_CODE_RE = re.compile(r"^[A-Za-z0-9_-]{3,100}$")


@dataclass
class ClaimOutcome:
    drop: Drop
    result: RelayResult


def _normalize_code(code: Optional[str]) -> str:
    return (code or "").strip().lower()


def _symbol_for(title: str) -> str:
    letters = re.sub(r"[^A-Za-z0-9]", "", title).upper()
    return letters[:6] or "DROP"


def claim_rejection(drop: Drop, code: str, wallet: Optional[str], *, claims: int, already_claimed: bool, now: datetime) -> Optional[Tuple[str, str]]:
    """(reason, message) when the claim must be refused off-chain, else None."""
    if drop.status != DropStatus.PUBLISHED or not drop.contract_address:
        return "not_published", "This drop is not available for claiming"
    if _normalize_code(code) != drop.claim_code:
        return "invalid_code", "Invalid claim code"
    if drop.start_time and now < drop.start_time:
        return "not_started", "Claiming has not started yet"
    if drop.end_time and now >= drop.end_time:
        return "ended", "Claiming period has ended"
    if drop.max_claims and claims >= drop.max_claims:
        return "sold_out", "Maximum number of claims reached"
    if wallet and already_claimed:
        return "already_claimed", "This wallet has already claimed this drop"
    return None


class ClaimService:
    def __init__(self, chain, executor, mirror, *, factory_address: Optional[str], registrar: Optional[ClaimRegistrar] = None):
        self.chain = chain
        self.executor = executor
        self.mirror = mirror
        self.factory_address = factory_address
        self.registrar = registrar or ClaimRegistrar(executor, mirror)
        self._drop_locks = KeyedLocks()

    # ------------------------------------------------------------------
    # Authoring
    # ------------------------------------------------------------------

    def create_drop(
        self,
        *,
        title: str,
        claim_code: str,
        metadata_uri: str,
        max_claims: int = 0,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
    ) -> Drop:
        if not title or not title.strip():
            raise ValidationError("Drop title is required", details={"field": "title"})
        if not CLAIM_CODE_RE.match((claim_code or "").strip()):
            raise ValidationError(
                "Claim code must be 3-100 characters of letters, digits, '-' or '_'",
                details={"field": "claim_code"},
            )
        if not metadata_uri:
            raise ValidationError("metadata_uri is required", details={"field": "metadata_uri"})
        if max_claims < 0:
            raise ValidationError("max_claims must be >= 0 (0 = unlimited)", details={"field": "max_claims"})
        if start_time and end_time and end_time <= start_time:
            raise ValidationError("end_time must be after start_time", details={"field": "end_time"})

        code = _normalize_code(claim_code)
        if self.mirror.get_drop_by_code(code) is not None:
            raise ConflictError("Claim code already in use", code="claim_code_taken")

        drop = Drop(
            id=str(uuid4()),
            title=title.strip(),
            claim_code=code,
            metadata_uri=metadata_uri,
            max_claims=max_claims,
            start_time=start_time,
            end_time=end_time,
            status=DropStatus.DRAFT,
        )
        stored = self.mirror.upsert_drop(drop)
        log_event("info", "drops.created", event_type="drop_created", extra={"drop_id": stored.id})
        return stored

    def get_drop(self, drop_id: str) -> Drop:
        drop = self.mirror.get_drop(drop_id)
        if drop is None:
            raise NotFoundError(f"Drop {drop_id} not found")
        return drop

    def _deploy_call(self, drop: Drop) -> ContractCall:
        return ContractCall(
            self.factory_address,
            abis.CLAIMABLE_FACTORY_ABI,
            "deployClaimableNFT",
            (drop.title, _symbol_for(drop.title), drop.metadata_uri, self.executor.sponsor),
            creation_event="ClaimableNFTDeployed",
            creation_arg="nftContract",
        )

    async def _resume_deploy(self, drop: Drop) -> Optional[str]:
        """Contract address of an earlier ambiguous deployment, None if it failed."""
        receipt = await self.chain.get_receipt(drop.deploy_tx_hash)
        if receipt is None:
            raise RegistrationPendingError(
                "Drop contract deployment is still pending",
                code="deployment_pending",
                details={"drop_id": drop.id, "tx_hash": drop.deploy_tx_hash},
            )
        if not receipt.succeeded:
            self.mirror.set_drop_deploy_tx(drop.id, None)
            return None
        address = self.chain.decode_created_address(receipt, self._deploy_call(drop))
        if not address or not await self.executor.verifier.has_code(address):
            raise DeploymentVerificationError(
                "Drop deployment receipt succeeded but no contract code was found",
                details={"tx_hash": drop.deploy_tx_hash, "contract_address": address},
            )
        return address

    async def publish_drop(self, drop_id: str) -> Tuple[Drop, Optional[RelayResult]]:
        """
        Publish a drop, deploying its claimable contract the first time.

        The claim code is not registered here; the first claim does that.
        """
        async with self._drop_locks.get(drop_id):
            drop = self.get_drop(drop_id)
            if drop.contract_address:
                self.mirror.set_drop_status(drop.id, DropStatus.PUBLISHED)
                return self.get_drop(drop.id), None

            if drop.deploy_tx_hash:
                address = await self._resume_deploy(drop)
                if address:
                    self.mirror.set_drop_status(drop.id, DropStatus.PUBLISHED, contract_address=address)
                    return self.get_drop(drop.id), None

            if not self.factory_address:
                raise TargetNotDeployedError("<unset>", role="claimable_factory")
            request = RelayRequest(
                type=RelayType.DEPLOY_DROP,
                call=self._deploy_call(drop),
                verify_targets=[(self.factory_address, "claimable_factory")],
                creates_contract=True,
                interfaces=list(CLAIMABLE_FACTORY_INTERFACES),
                on_submitted=lambda tx_hash: self.mirror.set_drop_deploy_tx(drop.id, tx_hash),
            )
            result = await self.executor.execute(request)
            if result.confirmed:
                self.mirror.set_drop_status(drop.id, DropStatus.PUBLISHED, contract_address=result.contract_address)
            elif not self.get_drop(drop.id).deploy_tx_hash:
                # resuming needs the hash; retry the write the executor could not make
                self.mirror.set_drop_deploy_tx(drop.id, result.tx_hash)
            log_event(
                "info",
                "drops.deployed",
                tx_hash=result.tx_hash,
                event_type="drop_deployed",
                extra={"drop_id": drop.id, "confirmation": result.confirmation},
            )
            return self.get_drop(drop.id), result

    def unpublish_drop(self, drop_id: str) -> Drop:
        drop = self.get_drop(drop_id)
        self.mirror.set_drop_status(drop.id, DropStatus.UNPUBLISHED)
        return self.get_drop(drop.id)

    # ------------------------------------------------------------------
    # Claiming
    # ------------------------------------------------------------------

    def verify_claim(self, drop_id: str, code: str, wallet: Optional[str] = None) -> dict:
        """Pre-flight check without any chain writes."""
        drop = self.get_drop(drop_id)
        address = normalize_address(wallet, "wallet") if wallet else None
        rejection = claim_rejection(
            drop,
            code,
            address,
            claims=self.mirror.count_claims(drop.id),
            already_claimed=bool(address) and self.mirror.has_claimed(drop.id, address),
            now=datetime.now(timezone.utc),
        )
        if rejection:
            reason, message = rejection
            return {"valid": False, "reason": reason, "message": message, "drop_id": drop.id}
        return {"valid": True, "reason": None, "message": "Claim code is valid", "drop_id": drop.id}

    async def _reserve(self, drop: Drop, code: str, wallet: str) -> None:
        async with self._drop_locks.get(drop.id):
            rejection = claim_rejection(
                drop,
                code,
                wallet,
                claims=self.mirror.count_claims(drop.id),
                already_claimed=self.mirror.has_claimed(drop.id, wallet),
                now=datetime.now(timezone.utc),
            )
            if rejection is None and not self.mirror.record_claim(drop.id, wallet):
                rejection = ("already_claimed", "This wallet has already claimed this drop")
        if rejection:
            reason, message = rejection
            raise ClaimRejectedError(message, details={"reason": reason, "drop_id": drop.id})

    async def _validate_on_chain(self, drop: Drop, code: str, wallet: str) -> None:
        valid, message = await self.chain.call(
            ContractCall(drop.contract_address, abis.CLAIMABLE_NFT_ABI, "validateClaimCode", (code, wallet))
        )
        if not valid:
            raise ClaimRejectedError(
                message or "Claim code rejected by contract",
                details={"reason": "on_chain", "drop_id": drop.id},
            )

    async def claim(self, drop_id: str, wallet: str, code: str) -> ClaimOutcome:
        address = normalize_address(wallet, "wallet")
        drop = self.get_drop(drop_id)
        await self._reserve(drop, code, address)

        mint_request: Optional[RelayRequest] = None
        try:
            drop = await self.registrar.ensure_registered(drop)
            await self._validate_on_chain(drop, drop.claim_code, address)
            mint_request = RelayRequest(
                type=RelayType.CLAIM_NFT,
                call=ContractCall(drop.contract_address, abis.CLAIMABLE_NFT_ABI, "ownerMint", (address, drop.metadata_uri)),
                verify_targets=[(drop.contract_address, "drop_contract")],
                wallet=address,
                on_submitted=lambda tx_hash: self.mirror.attach_claim_tx(drop.id, address, tx_hash),
            )
            result = await self.executor.execute(mint_request)
        except AppError as exc:
            # A broadcast mint keeps the wallet's reservation unless it reverted
            if mint_request is None or mint_request.tx_hash is None or isinstance(exc, TransactionRevertedError):
                self.mirror.release_claim(drop.id, address)
            raise

        self.mirror.record_mint(
            address,
            kind="claim",
            collection_address=drop.contract_address,
            token_uri=drop.metadata_uri,
            tx_hash=result.tx_hash,
            status="confirmed" if result.confirmed else "submitted",
        )
        log_event(
            "info",
            "claims.claimed",
            wallet=address,
            tx_hash=result.tx_hash,
            event_type="nft_claimed",
            extra={"drop_id": drop.id, "confirmation": result.confirmation},
        )
        return ClaimOutcome(drop=drop, result=result)
