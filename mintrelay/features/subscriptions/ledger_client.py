"""
mintrelay/features/subscriptions/ledger_client.py

Subscription ledger client.

Reads plan state from the subscription manager contract and issues plan
changes through the relay executor. The ledger is authoritative; the
mirror only receives snapshots after confirmed changes.

Handles:
- Virtual Free subscriptions for wallets the ledger has never seen
- Deferred on-chain Free enrollment on first use
- Paid plan changes gated on stable-token balance and allowance
- Fully gasless plan changes via EIP-2612 permit, when the ledger supports it
- Mint eligibility (active plan and reconciled quota)
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from web3 import Web3

from mintrelay.core.errors import (
    ChainUnavailableError,
    ConflictError,
    InsufficientAllowanceError,
    InsufficientBalanceError,
    MirrorUnavailableError,
    QuotaExceededError,
    SubscriptionInactiveError,
    TargetNotDeployedError,
    ValidationError,
)
from mintrelay.core.logging import log_event
from mintrelay.features.chain import abis
from mintrelay.features.chain.client import ContractCall, normalize_address
from mintrelay.features.plans.registry import plan_config, plan_from_value
from mintrelay.features.relay.verifier import SUBSCRIPTION_MANAGER_INTERFACES
from mintrelay.features.subscriptions.reconciler import QuotaReconciler, ReconciledCount, virtual_free_subscription
from mintrelay.models.plan import Plan
from mintrelay.models.relay import RelayRequest, RelayResult, RelayType
from mintrelay.models.subscription import PermitSignature, QuotaStatus, Subscription

logger = logging.getLogger("mintrelay.subscriptions")

_LEGACY_INTERFACE = "subscription-manager-v1"


class SubscriptionLedgerClient:
    def __init__(
        self,
        chain,
        executor,
        mirror,
        *,
        manager_address: Optional[str],
        token_address: Optional[str],
        token_decimals: int,
        supports_permit: bool = False,
    ):
        self.chain = chain
        self.executor = executor
        self.mirror = mirror
        self.manager_address = manager_address
        self.token_address = token_address
        self.token_decimals = token_decimals
        self.supports_permit = supports_permit
        self.reconciler = QuotaReconciler(self, mirror)
        self._manager_interface: Optional[str] = None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _require_manager(self) -> str:
        if not self.manager_address:
            raise TargetNotDeployedError("<unset>", role="subscription_manager")
        return self.manager_address

    async def _subscription_abi(self):
        if self._manager_interface is None:
            manager = self._require_manager()
            await self.executor.verifier.require_code(manager, "subscription_manager")
            matched = await self.executor.verifier.probe_interface(manager, SUBSCRIPTION_MANAGER_INTERFACES)
            if matched is None:
                return abis.SUBSCRIPTION_MANAGER_ABI
            self._manager_interface = matched
        if self._manager_interface == _LEGACY_INTERFACE:
            return abis.SUBSCRIPTION_MANAGER_LEGACY_ABI
        return abis.SUBSCRIPTION_MANAGER_ABI

    async def get_subscription(self, wallet: str) -> Subscription:
        """
        Read the wallet's subscription from the ledger.

        A wallet the ledger has never seen (nftLimit == 0) gets a virtual,
        active Free subscription instead of an error.
        """
        address = normalize_address(wallet, "wallet")
        abi = await self._subscription_abi()
        raw = await self.chain.call(ContractCall(self._require_manager(), abi, "getSubscription", (address,)))
        plan_id, expires_at, minted, nft_limit, is_active, gasless = (int(raw[0]), int(raw[1]), int(raw[2]), int(raw[3]), bool(raw[4]), bool(raw[5]))
        auto_renew = bool(raw[6]) if len(raw) > 6 else False

        if nft_limit == 0:
            return virtual_free_subscription(address)

        plan = plan_from_value(plan_id)
        return Subscription(
            wallet=address,
            plan=plan,
            expires_at=datetime.fromtimestamp(expires_at, timezone.utc) if plan.is_paid and expires_at else None,
            minted_this_period=minted,
            monthly_quota=plan_config(plan, self.token_decimals).monthly_quota,
            auto_renew=auto_renew,
            plan_active=is_active,
            has_gasless_minting=gasless,
            enrolled=True,
        )

    async def _token_read(self, function: str, *args) -> int:
        if not self.token_address:
            raise TargetNotDeployedError("<unset>", role="stable_token")
        return int(await self.chain.call(ContractCall(self.token_address, abis.STABLE_TOKEN_ABI, function, tuple(args))))

    async def token_balance(self, wallet: str) -> int:
        return await self._token_read("balanceOf", normalize_address(wallet, "wallet"))

    async def token_allowance(self, wallet: str) -> int:
        return await self._token_read("allowance", normalize_address(wallet, "wallet"), self._require_manager())

    # ------------------------------------------------------------------
    # Quota
    # ------------------------------------------------------------------

    async def quota(self, wallet: str) -> QuotaStatus:
        """Quota view; falls back to the mirror snapshot when the ledger is down."""
        address = normalize_address(wallet, "wallet")
        count = await self.reconciler.effective_minted(address)
        sub = count.subscription
        limit = plan_config(sub.plan, self.token_decimals).monthly_quota
        return QuotaStatus(
            wallet=address,
            plan=sub.plan,
            limit=limit,
            used=count.effective,
            remaining=max(0, limit - count.effective),
            is_active=sub.is_active(),
            expires_at=sub.expires_at,
            source="ledger" if count.ledger is not None else "mirror",
        )

    async def can_mint(self, wallet: str, count: int = 1) -> bool:
        reconciled = await self.reconciler.effective_minted(normalize_address(wallet, "wallet"))
        sub = reconciled.subscription
        limit = plan_config(sub.plan, self.token_decimals).monthly_quota
        return sub.is_active() and reconciled.effective + count <= limit

    async def require_mint_allowance(self, wallet: str, count: int = 1) -> ReconciledCount:
        """
        Raise unless the wallet may mint count more tokens this period.

        Raises:
            ValidationError: If count is negative
            SubscriptionInactiveError: If the plan has expired or been deactivated
            QuotaExceededError: With remaining/over_by numbers
        """
        if count < 0:
            raise ValidationError("Mint count must not be negative", details={"count": count})
        reconciled = await self.reconciler.effective_minted(normalize_address(wallet, "wallet"))
        sub = reconciled.subscription
        if not sub.is_active():
            raise SubscriptionInactiveError(
                f"{sub.plan.value} subscription is not active",
                details={"plan": sub.plan.value, "expires_at": sub.expires_at.isoformat() if sub.expires_at else None},
            )
        limit = plan_config(sub.plan, self.token_decimals).monthly_quota
        if reconciled.effective + count > limit:
            raise QuotaExceededError(plan=sub.plan.value, limit=limit, used=reconciled.effective, requested=count)
        return reconciled

    # ------------------------------------------------------------------
    # Writes (relayed)
    # ------------------------------------------------------------------

    def _manager_request(self, relay_type: RelayType, function: str, args: tuple, wallet: str, *, with_token: bool = False) -> RelayRequest:
        manager = self._require_manager()
        targets = [(manager, "subscription_manager")]
        if with_token and self.token_address:
            targets.append((self.token_address, "stable_token"))
        return RelayRequest(
            type=relay_type,
            call=ContractCall(manager, abis.SUBSCRIPTION_MANAGER_ABI, function, args),
            verify_targets=targets,
            wallet=wallet,
        )

    async def _mirror_after_change(self, wallet: str, result: RelayResult) -> None:
        if not result.confirmed:
            return
        try:
            subscription = await self.get_subscription(wallet)
            self.mirror.upsert_subscription(subscription, tx_hash=result.tx_hash)
        except (ChainUnavailableError, MirrorUnavailableError) as exc:
            log_event("warning", "subscription.mirror_skipped", wallet=wallet, tx_hash=result.tx_hash, error_code=exc.code)

    async def enroll_free(self, wallet: str) -> Optional[RelayResult]:
        """On-chain Free enrollment; None when the wallet is already enrolled."""
        address = normalize_address(wallet, "wallet")
        current = await self.get_subscription(address)
        if current.enrolled:
            return None
        result = await self.executor.execute(
            self._manager_request(RelayType.SUBSCRIBE, "subscribeToFreePlanForUser", (address,), address)
        )
        log_event("info", "subscription.free_enrolled", wallet=address, tx_hash=result.tx_hash, event_type="enroll_free")
        await self._mirror_after_change(address, result)
        return result

    async def ensure_enrolled(self, wallet: str, subscription: Optional[Subscription] = None) -> Optional[RelayResult]:
        if subscription is not None and subscription.enrolled:
            return None
        return await self.enroll_free(wallet)

    async def _require_funds(self, wallet: str, price: int, *, check_allowance: bool) -> None:
        token = self.token_address or "<unset>"
        balance = await self.token_balance(wallet)
        if balance < price:
            raise InsufficientBalanceError(required=price, available=balance, token=token)
        if check_allowance:
            allowance = await self.token_allowance(wallet)
            if allowance < price:
                raise InsufficientAllowanceError(required=price, available=allowance, token=token)

    async def change_plan(self, wallet: str, target, auto_renew: bool = False) -> RelayResult:
        """
        Change the wallet's plan. Re-subscribing to the same paid plan renews it.

        Paid targets need a prior user-signed approve() of at least the plan
        price to the subscription manager; the plan-change call itself is
        sponsored.
        """
        address = normalize_address(wallet, "wallet")
        plan = plan_from_value(target)
        current = await self.get_subscription(address)

        if plan is Plan.FREE:
            if not current.enrolled:
                return await self.enroll_free(address)
            if current.plan is Plan.FREE:
                raise ConflictError("Wallet is already on the Free plan", code="already_subscribed", details={"plan": plan.value})
            request = self._manager_request(RelayType.UPGRADE, "downgradeSubscriptionForUser", (address, plan.chain_id), address)
        else:
            price = plan_config(plan, self.token_decimals).price_minor_units
            await self._require_funds(address, price, check_allowance=True)
            request = self._manager_request(
                RelayType.UPGRADE,
                "subscribeToPlanForUser",
                (address, plan.chain_id, bool(auto_renew)),
                address,
                with_token=True,
            )

        result = await self.executor.execute(request)
        log_event(
            "info",
            "subscription.plan_changed",
            wallet=address,
            tx_hash=result.tx_hash,
            event_type="plan_change",
            extra={"from_plan": current.plan.value, "to_plan": plan.value, "confirmation": result.confirmation},
        )
        await self._mirror_after_change(address, result)
        return result

    async def change_plan_with_permit(self, wallet: str, target, auto_renew: bool, permit: PermitSignature) -> RelayResult:
        """Fully gasless paid plan change: the permit replaces the approve() step."""
        if not self.supports_permit:
            raise ValidationError(
                "This ledger does not accept permit signatures; approve the plan price and use /subscribe",
                code="permit_unsupported",
            )
        address = normalize_address(wallet, "wallet")
        plan = plan_from_value(target)
        if not plan.is_paid:
            raise ValidationError("Permit upgrades only apply to paid plans", details={"plan": plan.value})
        if permit.deadline <= int(datetime.now(timezone.utc).timestamp()):
            raise ValidationError("Permit deadline has passed", details={"deadline": permit.deadline})

        price = plan_config(plan, self.token_decimals).price_minor_units
        await self._require_funds(address, price, check_allowance=False)
        request = self._manager_request(
            RelayType.UPGRADE,
            "subscribeToPlanWithPermit",
            (
                address,
                plan.chain_id,
                bool(auto_renew),
                permit.deadline,
                permit.v,
                Web3.to_bytes(hexstr=permit.r),
                Web3.to_bytes(hexstr=permit.s),
            ),
            address,
            with_token=True,
        )
        result = await self.executor.execute(request)
        log_event("info", "subscription.plan_changed_permit", wallet=address, tx_hash=result.tx_hash, event_type="plan_change")
        await self._mirror_after_change(address, result)
        return result
