"""
Per-account nonce sequencing for the sponsoring account(s).

Each relayer account has exactly one NonceSequencer. submit() is the only
way to obtain a nonce: the account lock is held from "read next nonce"
until the transaction has been broadcast, so broadcast order is serialized
per account while confirmation polling happens outside the lock.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional, Tuple

from mintrelay.core.errors import NonceIntegrityError
from mintrelay.core.logging import log_event
from mintrelay.core.metrics import relayer_nonce_cursor

logger = logging.getLogger("mintrelay.relay.nonce")


class NonceSequencer:
    def __init__(self, account: str, chain):
        self.account = account
        self._chain = chain
        self._lock = asyncio.Lock()
        self._next: Optional[int] = None
        self._last_used: Optional[int] = None

    @property
    def cursor(self) -> Optional[int]:
        """Next nonce this sequencer expects to hand out."""
        return self._next

    @property
    def last_used(self) -> Optional[int]:
        return self._last_used

    def _reserve(self, chain_pending: int) -> int:
        if self._next is None:
            nonce = chain_pending
        elif chain_pending > self._next:
            log_event(
                "warning",
                "relay.nonce_adopted",
                event_type="nonce_adopted",
                extra={"sponsor": self.account, "local": self._next, "chain": chain_pending},
            )
            nonce = chain_pending
        else:
            # Node may lag behind our own broadcasts
            nonce = self._next

        if self._last_used is not None and nonce <= self._last_used:
            raise NonceIntegrityError(
                f"Nonce {nonce} for {self.account} would repeat or move backwards (last used {self._last_used})",
                details={"account": self.account, "nonce": nonce, "last_used": self._last_used},
            )
        return nonce

    async def submit(self, build_and_send: Callable[[int], Awaitable[str]]) -> Tuple[int, str]:
        """
        Reserve the next nonce, broadcast with it and return (nonce, tx_hash).

        A broadcast failure does not consume the nonce; the next submission
        re-reads the chain's pending count and adopts it if the failed
        broadcast actually reached the mempool.
        """
        async with self._lock:
            chain_pending = await self._chain.get_pending_nonce(self.account)
            nonce = self._reserve(chain_pending)
            try:
                tx_hash = await build_and_send(nonce)
            except NonceIntegrityError:
                self._next = None
                raise
            self._last_used = nonce
            self._next = nonce + 1
            relayer_nonce_cursor.set(self._next, labels={"account": self.account})
            return nonce, tx_hash


class NonceRegistry:
    """One sequencer per relayer account; accounts are independent."""

    def __init__(self, chain):
        self._chain = chain
        self._sequencers: Dict[str, NonceSequencer] = {}

    def get(self, account: str) -> NonceSequencer:
        key = account.lower()
        sequencer = self._sequencers.get(key)
        if sequencer is None:
            sequencer = NonceSequencer(account, self._chain)
            self._sequencers[key] = sequencer
        return sequencer

    def snapshot(self) -> Dict[str, Optional[int]]:
        return {seq.account: seq.cursor for seq in self._sequencers.values()}
