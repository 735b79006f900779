"""
Relay executor: runs one RelayRequest end-to-end on a sponsoring account.

Pipeline: verify targets -> sponsor balance -> simulate -> submit (under the
account's nonce lock) -> confirm with a bounded wait -> re-verify created
contracts. A failure before broadcast, a mined revert or a missing deployment
marks the request failed and propagates; any other trouble after broadcast
is reported as submitted/unknown. The executor never resubmits a
transaction on its own.
"""
import asyncio
import logging
from typing import Optional

from mintrelay.core.config import confirmation_timeout, settings
from mintrelay.core.errors import (
    AppError,
    ChainUnavailableError,
    DeploymentVerificationError,
    NonceIntegrityError,
    RelayerUnderfundedError,
    SimulationRevertedError,
    TransactionRevertedError,
)
from mintrelay.core.idempotency import note_broadcast
from mintrelay.core.logging import get_request_id, log_event
from mintrelay.core.metrics import relay_confirmation_timeouts_total, relay_requests_total
from mintrelay.features.relay.nonce import NonceRegistry
from mintrelay.features.relay.verifier import ContractVerifier
from mintrelay.models.relay import RelayRequest, RelayResult, RelayStatus, TxStatus

logger = logging.getLogger("mintrelay.relay")

# Revert reasons the caller can fix (fund, approve, wait for the next period)
CALLER_REVERT_MARKERS = ("balance", "allowance", "quota", "limit reached", "exceeds", "insufficient")


def classify_revert(reason: str) -> str:
    text = (reason or "").lower()
    return "caller" if any(marker in text for marker in CALLER_REVERT_MARKERS) else "system"


class RelayExecutor:
    def __init__(
        self,
        chain,
        *,
        verifier: Optional[ContractVerifier] = None,
        nonces: Optional[NonceRegistry] = None,
        sponsor: Optional[str] = None,
        min_balance_wei: Optional[int] = None,
        confirmation_timeout_seconds: Optional[float] = None,
        poll_interval_seconds: Optional[float] = None,
    ):
        self.chain = chain
        self.verifier = verifier or ContractVerifier(chain)
        self.nonces = nonces or NonceRegistry(chain)
        self._sponsor = sponsor
        self.min_balance_wei = settings.RELAYER_MIN_BALANCE_WEI if min_balance_wei is None else min_balance_wei
        self.confirmation_timeout = (
            confirmation_timeout() if confirmation_timeout_seconds is None else confirmation_timeout_seconds
        )
        self.poll_interval = settings.CONFIRMATION_POLL_SECONDS if poll_interval_seconds is None else poll_interval_seconds

    @property
    def sponsor(self) -> str:
        if self._sponsor:
            return self._sponsor
        addresses = list(self.chain.relayer_addresses)
        if not addresses:
            raise AppError("No sponsoring account configured", code="relayer_unconfigured", status_code=503)
        return addresses[0]

    def _log(self, level: str, msg: str, request: RelayRequest, **extra):
        payload = {
            "relay_type": request.type.value,
            "relay_id": request.id,
            "status": request.status.value,
            "sponsor": request.sponsor,
            "nonce": request.nonce,
        }
        payload.update(extra)
        log_event(
            level,
            msg,
            wallet=request.wallet,
            tx_hash=request.tx_hash,
            event_type=f"relay_{request.status.value}",
            error_code=request.error_code,
            extra=payload,
            logger_name="mintrelay.relay",
        )

    def _fail(self, request: RelayRequest, exc: AppError) -> None:
        request.error_code = exc.code
        if not request.terminal:
            request.transition(RelayStatus.FAILED)
        relay_requests_total.inc(labels={"type": request.type.value, "status": RelayStatus.FAILED.value})
        system_failure = isinstance(exc, (NonceIntegrityError, DeploymentVerificationError, TransactionRevertedError)) or (
            isinstance(exc, SimulationRevertedError) and exc.category == "system"
        )
        self._log(
            "error" if system_failure else "warning",
            "relay.failed",
            request,
            error_message=exc.message,
            call=request.call.describe(),
        )

    async def execute(self, request: RelayRequest) -> RelayResult:
        try:
            request.sponsor = request.sponsor or self.sponsor
            self._log("info", "relay.pending", request)
            return await self._run(request)
        except AppError as exc:
            if exc.request_id is None:
                exc.request_id = get_request_id()
            self._fail(request, exc)
            raise

    async def _run(self, request: RelayRequest) -> RelayResult:
        call = request.call

        # 1. Verify every target before anything is signed
        for address, role in request.verify_targets:
            await self.verifier.require_code(address, role)
        interface = None
        if request.interfaces:
            interface = await self.verifier.probe_interface(call.address, request.interfaces)

        balance = await self.chain.get_balance(request.sponsor)
        if balance < self.min_balance_wei:
            raise RelayerUnderfundedError(
                "Sponsoring account balance below minimum",
                details={"sponsor": request.sponsor, "balance_wei": balance, "minimum_wei": self.min_balance_wei},
            )

        # 2. Simulate
        try:
            await self.chain.simulate(call, request.sponsor)
        except SimulationRevertedError as exc:
            raise SimulationRevertedError(
                exc.reason,
                category=classify_revert(exc.reason),
                details={"relay_type": request.type.value, "function": call.function},
            ) from exc
        request.transition(RelayStatus.SIMULATED)
        self._log("info", "relay.simulated", request, interface=interface)

        # 3. Submit under the account's nonce lock
        async def _broadcast(nonce: int) -> str:
            request.nonce = nonce
            request.attempts += 1
            return await self.chain.send_transaction(call, request.sponsor, nonce)

        nonce, tx_hash = await self.nonces.get(request.sponsor).submit(_broadcast)
        request.nonce = nonce
        request.tx_hash = tx_hash
        request.transition(RelayStatus.SUBMITTED)
        note_broadcast(tx_hash)
        self._log("info", "relay.submitted", request)
        if request.on_submitted is not None:
            try:
                request.on_submitted(tx_hash)
            except AppError as exc:
                self._log("warning", "relay.on_submitted_failed", request, hook_error=exc.code)

        # From here on the transaction exists; only a mined revert or a
        # missing deployment is a failure, anything else is ambiguous.
        try:
            return await self._confirm(request, interface)
        except (TransactionRevertedError, DeploymentVerificationError):
            raise
        except AppError as exc:
            self._log("warning", "relay.confirm_check_failed", request, check_error=exc.code)
            return self._unknown(request, interface)

    def _unknown(self, request: RelayRequest, interface: Optional[str]) -> RelayResult:
        relay_requests_total.inc(labels={"type": request.type.value, "status": RelayStatus.SUBMITTED.value})
        return RelayResult(
            type=request.type,
            status=RelayStatus.SUBMITTED,
            confirmation="unknown",
            tx_hash=request.tx_hash,
            interface=interface,
            sponsor=request.sponsor,
            nonce=request.nonce,
        )

    async def _confirm(self, request: RelayRequest, interface: Optional[str]) -> RelayResult:
        call, tx_hash = request.call, request.tx_hash

        # 4. Confirm (bounded)
        receipt = await self._wait_for_receipt(tx_hash)
        if receipt is None:
            relay_confirmation_timeouts_total.inc(labels={"type": request.type.value})
            self._log("warning", "relay.confirmation_unknown", request, timeout_seconds=self.confirmation_timeout)
            return self._unknown(request, interface)
        if not receipt.succeeded:
            raise TransactionRevertedError(
                f"Transaction {tx_hash} reverted on chain",
                details={"tx_hash": tx_hash, "block_number": receipt.block_number, "relay_type": request.type.value},
            )

        # 5. Re-verify newly created contracts
        contract_address = None
        if request.creates_contract:
            contract_address = self.chain.decode_created_address(receipt, call)
            if not contract_address or not await self.verifier.has_code(contract_address):
                raise DeploymentVerificationError(
                    "Deployment receipt succeeded but no contract code was found",
                    details={"tx_hash": tx_hash, "contract_address": contract_address},
                )

        request.transition(RelayStatus.CONFIRMED)
        relay_requests_total.inc(labels={"type": request.type.value, "status": RelayStatus.CONFIRMED.value})
        self._log("info", "relay.confirmed", request, contract_address=contract_address, block=receipt.block_number)
        return RelayResult(
            type=request.type,
            status=RelayStatus.CONFIRMED,
            confirmation="confirmed",
            tx_hash=tx_hash,
            contract_address=contract_address,
            interface=interface,
            sponsor=request.sponsor,
            nonce=request.nonce,
            block_number=receipt.block_number,
        )

    async def _wait_for_receipt(self, tx_hash: str):
        """Poll until mined or the deadline passes (None). RPC hiccups keep polling."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.confirmation_timeout
        while True:
            try:
                receipt = await self.chain.get_receipt(tx_hash)
            except ChainUnavailableError:
                logger.warning("receipt poll failed for %s; retrying", tx_hash)
                receipt = None
            if receipt is not None:
                return receipt
            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(self.poll_interval, remaining))

    async def check_status(self, tx_hash: str) -> TxStatus:
        """Status-polling path for callers holding an ambiguous result."""
        receipt = await self.chain.get_receipt(tx_hash)
        if receipt is None:
            return TxStatus(tx_hash=tx_hash, status="submitted", confirmation="unknown")
        if receipt.succeeded:
            return TxStatus(tx_hash=tx_hash, status="confirmed", confirmation="confirmed", block_number=receipt.block_number)
        return TxStatus(tx_hash=tx_hash, status="failed", confirmation="reverted", block_number=receipt.block_number)
