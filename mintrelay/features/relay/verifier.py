"""
Contract verification: bytecode presence and best-effort interface probing.

Interface descriptors are ordered newest first, so supporting a new
contract version means prepending a descriptor.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence, Tuple

from mintrelay.core.errors import AppError, TargetNotDeployedError
from mintrelay.core.logging import log_event
from mintrelay.features.chain import abis
from mintrelay.features.chain.client import ContractCall

logger = logging.getLogger("mintrelay.relay.verifier")

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


@dataclass(frozen=True, eq=False)
class InterfaceDescriptor:
    name: str
    abi: List[dict]
    probe_function: str
    probe_args: Tuple[Any, ...] = field(default=())


SUBSCRIPTION_MANAGER_INTERFACES: Sequence[InterfaceDescriptor] = (
    InterfaceDescriptor("subscription-manager-v2", abis.SUBSCRIPTION_MANAGER_ABI, "getSubscription", (ZERO_ADDRESS,)),
    InterfaceDescriptor("subscription-manager-v1", abis.SUBSCRIPTION_MANAGER_LEGACY_ABI, "getSubscription", (ZERO_ADDRESS,)),
)

COLLECTION_FACTORY_INTERFACES: Sequence[InterfaceDescriptor] = (
    InterfaceDescriptor("collection-factory-v2", abis.COLLECTION_FACTORY_ABI, "getTotalCollections"),
    InterfaceDescriptor("collection-factory-v1", abis.COLLECTION_FACTORY_ABI, "totalCollections"),
)

CLAIMABLE_FACTORY_INTERFACES: Sequence[InterfaceDescriptor] = (
    InterfaceDescriptor("claimable-factory-v1", abis.CLAIMABLE_FACTORY_ABI, "getDeployedContracts"),
)

CLAIMABLE_NFT_INTERFACES: Sequence[InterfaceDescriptor] = (
    InterfaceDescriptor("claimable-nft-v1", abis.CLAIMABLE_NFT_ABI, "owner"),
)


class ContractVerifier:
    def __init__(self, chain):
        self._chain = chain

    async def has_code(self, address: str) -> bool:
        code = await self._chain.get_code(address)
        return len(code or b"") > 0

    async def require_code(self, address: str, role: str = "target") -> None:
        if not address or not await self.has_code(address):
            raise TargetNotDeployedError(address or "<unset>", role=role)

    async def probe_interface(self, address: str, candidates: Sequence[InterfaceDescriptor]) -> Optional[str]:
        """Name of the first descriptor the contract answers to, or None (non-fatal)."""
        for descriptor in candidates:
            try:
                await self._chain.call(
                    ContractCall(address, descriptor.abi, descriptor.probe_function, tuple(descriptor.probe_args))
                )
            except AppError as exc:
                logger.debug("interface probe %s failed at %s: %s", descriptor.name, address, exc.code)
                continue
            return descriptor.name
        if candidates:
            log_event(
                "warning",
                "verifier.interface_unknown",
                event_type="interface_unknown",
                extra={"address": address, "candidates": [d.name for d in candidates]},
            )
        return None
