"""
web3.py implementation of the chain client.

Signs locally with the relayer key(s) and broadcasts raw transactions, so
the RPC endpoint never holds credentials.
"""
import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence

import aiohttp
from eth_account import Account
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import BadFunctionCallOutput, ContractLogicError, TransactionNotFound, Web3RPCError
from web3.logs import DISCARD

from mintrelay.core.errors import (
    ChainUnavailableError,
    NonceIntegrityError,
    SimulationRevertedError,
    ValidationError,
)
from mintrelay.features.chain.client import ContractCall, TxReceipt

logger = logging.getLogger("mintrelay.chain")

_TRANSPORT_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, OSError)
_NONCE_ERROR_MARKERS = ("nonce too low", "already known", "replacement transaction underpriced")


def _revert_reason(exc: ContractLogicError) -> str:
    message = getattr(exc, "message", None) or str(exc)
    return message.replace("execution reverted: ", "").replace("execution reverted", "").strip() or "execution reverted"


class Web3ChainClient:
    """ChainClient backed by an AsyncWeb3 HTTP provider."""

    def __init__(self, rpc_url: str, chain_id: int, private_keys: Iterable[str], request_timeout: float = 30.0):
        self.chain_id = chain_id
        self.w3 = AsyncWeb3(AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout}))
        self._accounts = {}
        for key in private_keys:
            if not key:
                continue
            account = Account.from_key(key)
            self._accounts[account.address.lower()] = account

    @property
    def relayer_addresses(self) -> Sequence[str]:
        return [account.address for account in self._accounts.values()]

    def _contract(self, call: ContractCall):
        return self.w3.eth.contract(address=Web3.to_checksum_address(call.address), abi=call.abi)

    def _function(self, call: ContractCall):
        return self._contract(call).functions[call.function](*call.args)

    def _account(self, sender: str):
        try:
            return self._accounts[sender.lower()]
        except KeyError:
            raise ValidationError(f"No signing key configured for {sender}") from None

    async def get_code(self, address: str) -> bytes:
        try:
            code = await self.w3.eth.get_code(Web3.to_checksum_address(address))
        except _TRANSPORT_ERRORS as exc:
            raise ChainUnavailableError(f"RPC error reading code at {address}") from exc
        return bytes(code)

    async def get_balance(self, address: str) -> int:
        try:
            return int(await self.w3.eth.get_balance(Web3.to_checksum_address(address)))
        except _TRANSPORT_ERRORS as exc:
            raise ChainUnavailableError(f"RPC error reading balance of {address}") from exc

    async def call(self, call: ContractCall) -> Any:
        try:
            return await self._function(call).call()
        except ContractLogicError as exc:
            raise SimulationRevertedError(_revert_reason(exc), details={"function": call.function}) from exc
        except BadFunctionCallOutput as exc:
            raise SimulationRevertedError(
                f"Could not decode {call.function} output", details={"function": call.function}
            ) from exc
        except _TRANSPORT_ERRORS as exc:
            raise ChainUnavailableError(f"RPC error calling {call.function}") from exc

    async def simulate(self, call: ContractCall, sender: str) -> Any:
        tx_params = {"from": Web3.to_checksum_address(sender), "value": call.value}
        try:
            return await self._function(call).call(tx_params)
        except ContractLogicError as exc:
            raise SimulationRevertedError(_revert_reason(exc), details={"function": call.function}) from exc
        except _TRANSPORT_ERRORS as exc:
            raise ChainUnavailableError(f"RPC error simulating {call.function}") from exc

    async def get_pending_nonce(self, address: str) -> int:
        try:
            return int(await self.w3.eth.get_transaction_count(Web3.to_checksum_address(address), "pending"))
        except _TRANSPORT_ERRORS as exc:
            raise ChainUnavailableError(f"RPC error reading nonce of {address}") from exc

    async def send_transaction(self, call: ContractCall, sender: str, nonce: int) -> str:
        account = self._account(sender)
        try:
            tx = await self._function(call).build_transaction({
                "from": account.address,
                "nonce": nonce,
                "chainId": self.chain_id,
                "value": call.value,
            })
            signed = account.sign_transaction(tx)
            tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
        except ContractLogicError as exc:
            raise SimulationRevertedError(_revert_reason(exc), details={"function": call.function}) from exc
        except Web3RPCError as exc:
            message = str(exc).lower()
            if any(marker in message for marker in _NONCE_ERROR_MARKERS):
                raise NonceIntegrityError(
                    f"Node rejected nonce {nonce} for {account.address}: {exc}",
                    details={"nonce": nonce, "account": account.address},
                ) from exc
            raise ChainUnavailableError(f"RPC rejected transaction: {exc}") from exc
        except _TRANSPORT_ERRORS as exc:
            raise ChainUnavailableError(f"RPC error broadcasting {call.function}") from exc
        return Web3.to_hex(tx_hash)

    async def get_receipt(self, tx_hash: str) -> Optional[TxReceipt]:
        try:
            receipt = await self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        except _TRANSPORT_ERRORS as exc:
            raise ChainUnavailableError(f"RPC error reading receipt {tx_hash}") from exc
        return TxReceipt(
            tx_hash=tx_hash,
            status=int(receipt["status"]),
            block_number=receipt.get("blockNumber"),
            gas_used=receipt.get("gasUsed"),
            raw=receipt,
        )

    def decode_created_address(self, receipt: TxReceipt, call: ContractCall) -> Optional[str]:
        if not call.creation_event or receipt.raw is None:
            return None
        event = self._contract(call).events[call.creation_event]()
        decoded: List[Dict[str, Any]] = list(event.process_receipt(receipt.raw, errors=DISCARD))
        for entry in decoded:
            created = entry["args"].get(call.creation_arg)
            if created:
                return Web3.to_checksum_address(created)
        return None
