"""
Chain client protocol.

Defines the interface the relay core uses to talk to the ledger. The web3
implementation lives in web3_client.py; tests use an in-memory fake.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from web3 import Web3

from mintrelay.core.errors import ValidationError


@dataclass(frozen=True, eq=False)
class ContractCall:
    """A single contract function invocation."""
    address: str
    abi: List[Dict[str, Any]]
    function: str
    args: Tuple[Any, ...] = ()
    value: int = 0
    # Event emitted by factories carrying the new contract's address
    creation_event: Optional[str] = None
    creation_arg: Optional[str] = None

    def describe(self) -> Dict[str, Any]:
        """Call context for logs (args truncated by the logger)."""
        return {"address": self.address, "function": self.function, "args": list(self.args)}


@dataclass
class TxReceipt:
    tx_hash: str
    status: int  # 1 success, 0 reverted
    block_number: Optional[int] = None
    gas_used: Optional[int] = None
    raw: Any = field(default=None, repr=False)

    @property
    def succeeded(self) -> bool:
        return self.status == 1


class ChainClient(Protocol):
    """
    Protocol for ledger access.

    Implementations must map transport failures to ChainUnavailableError and
    contract reverts during simulate() to SimulationRevertedError.
    """

    chain_id: int

    @property
    def relayer_addresses(self) -> Sequence[str]:
        """Checksummed addresses of the sponsoring accounts this client can sign for."""
        ...

    async def get_code(self, address: str) -> bytes:
        """Deployed bytecode at address (empty when nothing is deployed)."""
        ...

    async def get_balance(self, address: str) -> int:
        """Native balance in wei."""
        ...

    async def call(self, call: ContractCall) -> Any:
        """Read-only call; returns the decoded output."""
        ...

    async def simulate(self, call: ContractCall, sender: str) -> Any:
        """
        Dry-run a state-changing call from sender against current state.

        Raises:
            SimulationRevertedError: If the call would revert
        """
        ...

    async def get_pending_nonce(self, address: str) -> int:
        ...

    async def send_transaction(self, call: ContractCall, sender: str, nonce: int) -> str:
        """Sign with sender's key using the given nonce and broadcast; returns the tx hash."""
        ...

    async def get_receipt(self, tx_hash: str) -> Optional[TxReceipt]:
        """Mined receipt, or None while the transaction is still pending."""
        ...

    def decode_created_address(self, receipt: TxReceipt, call: ContractCall) -> Optional[str]:
        """Address of a contract created by call, read from its creation event."""
        ...


def normalize_address(value: Optional[str], field_name: str = "address") -> str:
    """Validate an address and return its checksummed form."""
    candidate = (value or "").strip()
    if not candidate or not Web3.is_address(candidate):
        raise ValidationError(f"Invalid {field_name}: {value!r}", details={"field": field_name})
    return Web3.to_checksum_address(candidate)
