"""Known networks and their default public RPC endpoints."""
from dataclasses import dataclass
from typing import Dict, Optional


@dataclass(frozen=True)
class Network:
    chain_id: int
    name: str
    default_rpc_url: str
    testnet: bool


NETWORKS: Dict[int, Network] = {
    84532: Network(84532, "base-sepolia", "https://sepolia.base.org", True),
    8453: Network(8453, "base", "https://mainnet.base.org", False),
}


def get_network(chain_id: int) -> Network:
    try:
        return NETWORKS[chain_id]
    except KeyError:
        raise ValueError(f"Unsupported chain ID: {chain_id}") from None


def resolve_rpc_url(chain_id: int, override: Optional[str] = None) -> str:
    if override:
        return override
    return get_network(chain_id).default_rpc_url
