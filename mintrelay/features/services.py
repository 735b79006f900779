"""
Wiring for the relay core: one chain client, one executor (with its nonce
registry) and the services built on them, shared by the whole process.
"""
from dataclasses import dataclass
from typing import Optional

from mintrelay.core.config import Settings, settings
from mintrelay.features.chain.networks import resolve_rpc_url
from mintrelay.features.chain.web3_client import Web3ChainClient
from mintrelay.features.claims.service import ClaimService
from mintrelay.features.mirror.store import MirrorStore
from mintrelay.features.minting.service import MintingService
from mintrelay.features.relay.executor import RelayExecutor
from mintrelay.features.subscriptions.ledger_client import SubscriptionLedgerClient


@dataclass
class RelayServices:
    chain: object
    mirror: MirrorStore
    executor: RelayExecutor
    ledger: SubscriptionLedgerClient
    minting: MintingService
    claims: ClaimService


def build_chain_client(cfg: Settings):
    keys = [cfg.RELAYER_PRIVATE_KEY] if cfg.RELAYER_PRIVATE_KEY else []
    return Web3ChainClient(resolve_rpc_url(cfg.CHAIN_ID, cfg.RPC_URL), cfg.CHAIN_ID, keys)


def build_services(
    cfg: Optional[Settings] = None,
    *,
    chain=None,
    mirror: Optional[MirrorStore] = None,
    executor: Optional[RelayExecutor] = None,
) -> RelayServices:
    cfg = cfg or settings
    chain = chain or build_chain_client(cfg)
    mirror = mirror or MirrorStore()
    executor = executor or RelayExecutor(chain)
    ledger = SubscriptionLedgerClient(
        chain,
        executor,
        mirror,
        manager_address=cfg.SUBSCRIPTION_MANAGER_ADDRESS,
        token_address=cfg.STABLE_TOKEN_ADDRESS,
        token_decimals=cfg.STABLE_TOKEN_DECIMALS,
        supports_permit=cfg.LEDGER_SUPPORTS_PERMIT,
    )
    minting = MintingService(ledger, executor, mirror, factory_address=cfg.COLLECTION_FACTORY_ADDRESS)
    claims = ClaimService(chain, executor, mirror, factory_address=cfg.CLAIMABLE_FACTORY_ADDRESS)
    return RelayServices(chain=chain, mirror=mirror, executor=executor, ledger=ledger, minting=minting, claims=claims)
