"""
mintrelay/features/minting/service.py

Gasless collection creation and NFT minting for subscribed creators.

Both paths check eligibility against the ledger (plus the reconciled
quota for mints), enroll the wallet in the Free plan on first use, then
relay the factory call and mirror the confirmed outcome.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from mintrelay.core.errors import (
    MirrorUnavailableError,
    PermissionError,
    RegistrationPendingError,
    TargetNotDeployedError,
    ValidationError,
)
from mintrelay.core.logging import log_event
from mintrelay.features.chain import abis
from mintrelay.features.chain.client import ContractCall, normalize_address
from mintrelay.features.relay.verifier import COLLECTION_FACTORY_INTERFACES
from mintrelay.models.collection import Collection
from mintrelay.models.relay import RelayRequest, RelayResult, RelayType

logger = logging.getLogger("mintrelay.minting")

MAX_ROYALTY_BPS = 10_000


@dataclass
class MintOutcome:
    result: RelayResult
    enrollment: Optional[RelayResult] = None
    collection: Optional[Collection] = None


class MintingService:
    def __init__(self, ledger, executor, mirror, *, factory_address: Optional[str]):
        self.ledger = ledger
        self.executor = executor
        self.mirror = mirror
        self.factory_address = factory_address

    def _require_factory(self) -> str:
        if not self.factory_address:
            raise TargetNotDeployedError("<unset>", role="collection_factory")
        return self.factory_address

    async def _prepare(self, wallet: str, count: int) -> Optional[RelayResult]:
        """Eligibility check, then deferred Free enrollment."""
        reconciled = await self.ledger.require_mint_allowance(wallet, count)
        enrollment = await self.ledger.ensure_enrolled(wallet, reconciled.subscription)
        if enrollment is not None and enrollment.ambiguous:
            raise RegistrationPendingError(
                "Free plan enrollment is pending confirmation; retry shortly",
                code="enrollment_pending",
                details={"tx_hash": enrollment.tx_hash},
            )
        return enrollment

    async def create_collection(
        self,
        wallet: str,
        *,
        name: str,
        symbol: str,
        description: str = "",
        image: str = "",
        external_url: str = "",
        royalty_recipient: Optional[str] = None,
        royalty_bps: int = 0,
    ) -> MintOutcome:
        owner = normalize_address(wallet, "wallet")
        if not name or not name.strip():
            raise ValidationError("Collection name is required", details={"field": "name"})
        if not symbol or not symbol.strip():
            raise ValidationError("Collection symbol is required", details={"field": "symbol"})
        if not 0 <= royalty_bps <= MAX_ROYALTY_BPS:
            raise ValidationError(f"royalty_bps must be between 0 and {MAX_ROYALTY_BPS}", details={"field": "royalty_bps"})
        recipient = normalize_address(royalty_recipient, "royalty_recipient") if royalty_recipient else owner
        factory = self._require_factory()

        # Creating a collection needs an active plan but consumes no quota
        enrollment = await self._prepare(owner, 0)

        request = RelayRequest(
            type=RelayType.DEPLOY_COLLECTION,
            call=ContractCall(
                factory,
                abis.COLLECTION_FACTORY_ABI,
                "createCollectionFor",
                (owner, name.strip(), symbol.strip().upper(), description, image, external_url, recipient, royalty_bps),
                creation_event="CollectionCreated",
                creation_arg="collection",
            ),
            verify_targets=[(factory, "collection_factory")],
            creates_contract=True,
            interfaces=list(COLLECTION_FACTORY_INTERFACES),
            wallet=owner,
        )
        result = await self.executor.execute(request)

        collection = None
        if result.confirmed and result.contract_address:
            collection = Collection(
                address=result.contract_address,
                owner=owner,
                name=name.strip(),
                symbol=symbol.strip().upper(),
                royalty_bps=royalty_bps,
                tx_hash=result.tx_hash,
            )
            try:
                self.mirror.record_collection(collection)
            except MirrorUnavailableError:
                log_event("warning", "minting.collection_mirror_skipped", wallet=owner, tx_hash=result.tx_hash)
        log_event(
            "info",
            "minting.collection_created",
            wallet=owner,
            tx_hash=result.tx_hash,
            event_type="collection_created",
            extra={"contract_address": result.contract_address, "confirmation": result.confirmation},
        )
        return MintOutcome(result=result, enrollment=enrollment, collection=collection)

    async def mint_nft(self, wallet: str, *, collection_address: str, token_uri: str, recipient: Optional[str] = None) -> MintOutcome:
        creator = normalize_address(wallet, "wallet")
        collection = normalize_address(collection_address, "collection_address")
        to = normalize_address(recipient, "recipient") if recipient else creator
        if not token_uri:
            raise ValidationError("token_uri is required", details={"field": "token_uri"})
        factory = self._require_factory()

        known = self.mirror.get_collection(collection)
        if known is not None and known.owner.lower() != creator.lower():
            raise PermissionError("Only the collection owner can mint into it", details={"collection": collection})

        enrollment = await self._prepare(creator, 1)

        result = await self.executor.execute(
            RelayRequest(
                type=RelayType.MINT_NFT,
                call=ContractCall(factory, abis.COLLECTION_FACTORY_ABI, "mintNFTFor", (collection, to, token_uri)),
                verify_targets=[(factory, "collection_factory"), (collection, "collection")],
                wallet=creator,
            )
        )

        # Submitted-but-unconfirmed mints count toward quota until reconciled
        try:
            self.mirror.record_mint(
                creator,
                kind="mint",
                collection_address=collection.lower(),
                token_uri=token_uri,
                tx_hash=result.tx_hash,
                status="confirmed" if result.confirmed else "submitted",
            )
        except MirrorUnavailableError:
            log_event("warning", "minting.mint_mirror_skipped", wallet=creator, tx_hash=result.tx_hash)
        log_event(
            "info",
            "minting.nft_minted",
            wallet=creator,
            tx_hash=result.tx_hash,
            event_type="nft_minted",
            extra={"collection": collection, "recipient": to, "confirmation": result.confirmation},
        )
        return MintOutcome(result=result, enrollment=enrollment)
