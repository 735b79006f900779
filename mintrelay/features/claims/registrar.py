"""
Deferred claim-code registration.

A drop's claim code is written to its contract on the first claim attempt,
not at publish time. Registration state is a persisted tagged value
(unregistered | registering | registered); transitions happen under a
per-drop asyncio lock plus a compare-and-set in the mirror, so concurrent
first claims register at most once.
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from mintrelay.core.errors import (
    AppError,
    ConflictError,
    MirrorUnavailableError,
    NotFoundError,
    RegistrationPendingError,
    TransactionRevertedError,
)
from mintrelay.core.logging import log_event
from mintrelay.core.metrics import claim_registrations_total
from mintrelay.features.chain import abis
from mintrelay.features.chain.client import ContractCall
from mintrelay.models.drop import Drop, RegistrationState
from mintrelay.models.relay import RelayRequest, RelayType

logger = logging.getLogger("mintrelay.claims.registrar")

DEFAULT_CLAIM_WINDOW = timedelta(days=365)
# A "registering" row with no tx hash older than this was abandoned before broadcast
STALE_REGISTRATION = timedelta(minutes=5)


class KeyedLocks:
    """Lazily created asyncio locks keyed by id."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}

    def get(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock


def claim_window(drop: Drop, now: Optional[datetime] = None):
    """(start, end) unix seconds written on chain for the drop's claim code."""
    now = now or datetime.now(timezone.utc)
    start = drop.start_time or now
    end = drop.end_time or (start + DEFAULT_CLAIM_WINDOW)
    return int(start.timestamp()), int(end.timestamp())


class ClaimRegistrar:
    def __init__(self, executor, mirror, locks: Optional[KeyedLocks] = None):
        self.executor = executor
        self.mirror = mirror
        self._locks = locks or KeyedLocks()

    def _reload(self, drop_id: str) -> Drop:
        drop = self.mirror.get_drop(drop_id)
        if drop is None:
            raise NotFoundError(f"Drop {drop_id} not found")
        return drop

    def _pending(self, drop: Drop) -> RegistrationPendingError:
        return RegistrationPendingError(
            "Claim code registration is in flight; retry the claim shortly",
            details={"drop_id": drop.id, "tx_hash": drop.registration_tx_hash},
        )

    async def _resolve_in_flight(self, drop: Drop) -> Optional[Drop]:
        """
        Settle a registration left in "registering".

        Returns the drop when it is (now) registered, None when the prior
        attempt is known to have failed and registration may be retried.
        """
        if drop.registration_tx_hash:
            status = await self.executor.check_status(drop.registration_tx_hash)
            if status.status == "confirmed":
                self.mirror.finish_registration(drop.id, drop.registration_tx_hash)
                claim_registrations_total.inc(labels={"outcome": "resolved"})
                return self._reload(drop.id)
            if status.status == "failed":
                self.mirror.reset_registration(drop.id)
                claim_registrations_total.inc(labels={"outcome": "reverted"})
                return None
            raise self._pending(drop)

        updated = drop.updated_at or datetime.now(timezone.utc)
        if datetime.now(timezone.utc) - updated < STALE_REGISTRATION:
            raise self._pending(drop)
        self.mirror.reset_registration(drop.id)
        return None

    async def ensure_registered(self, drop: Drop) -> Drop:
        """
        Make sure the drop's claim code is on chain, registering it if needed.

        Raises:
            RegistrationPendingError: Registration tx broadcast but unconfirmed
            ConflictError: Drop has no deployed contract yet
        """
        if drop.code_registered_on_chain:
            return drop
        if not drop.contract_address:
            raise ConflictError("Drop has no deployed contract", code="drop_not_deployed", details={"drop_id": drop.id})

        async with self._locks.get(drop.id):
            current = self._reload(drop.id)
            if current.registration_state == RegistrationState.REGISTERED:
                return current
            if current.registration_state == RegistrationState.REGISTERING:
                resolved = await self._resolve_in_flight(current)
                if resolved is not None:
                    return resolved

            if not self.mirror.begin_registration(current.id):
                # Another process holds the registration
                current = self._reload(drop.id)
                if current.code_registered_on_chain:
                    return current
                raise self._pending(current)

            return await self._register(current)

    async def _register(self, drop: Drop) -> Drop:
        start, end = claim_window(drop)
        request = RelayRequest(
            type=RelayType.ADD_CLAIM_CODE,
            call=ContractCall(
                drop.contract_address,
                abis.CLAIMABLE_NFT_ABI,
                "addClaimCode",
                (drop.claim_code, drop.max_claims, start, end, drop.metadata_uri),
            ),
            verify_targets=[(drop.contract_address, "drop_contract")],
            on_submitted=lambda tx_hash: self.mirror.set_registration_tx(drop.id, tx_hash),
        )
        try:
            result = await self.executor.execute(request)
        except AppError as exc:
            if request.tx_hash is None or isinstance(exc, TransactionRevertedError):
                self.mirror.reset_registration(drop.id)
            claim_registrations_total.inc(labels={"outcome": "failed"})
            log_event(
                "warning",
                "claims.registration_failed",
                tx_hash=request.tx_hash,
                error_code=exc.code,
                extra={"drop_id": drop.id},
            )
            raise

        if result.ambiguous:
            claim_registrations_total.inc(labels={"outcome": "pending"})
            raise self._pending(self._keep_registration_tx(drop.id, result.tx_hash))

        self.mirror.finish_registration(drop.id, result.tx_hash)
        claim_registrations_total.inc(labels={"outcome": "registered"})
        log_event(
            "info",
            "claims.code_registered",
            tx_hash=result.tx_hash,
            event_type="claim_code_registered",
            extra={"drop_id": drop.id},
        )
        return self._reload(drop.id)

    def _keep_registration_tx(self, drop_id: str, tx_hash: str) -> Drop:
        """Make sure an in-flight registration's tx hash is stored on the drop."""
        drop = self._reload(drop_id)
        if drop.registration_tx_hash:
            return drop
        try:
            self.mirror.set_registration_tx(drop_id, tx_hash)
        except MirrorUnavailableError:
            log_event("error", "claims.registration_tx_unsaved", tx_hash=tx_hash, extra={"drop_id": drop_id})
            return drop.model_copy(update={"registration_tx_hash": tx_hash})
        return self._reload(drop_id)
