"""
mintrelay/features/subscriptions/reconciler.py

Quota reconciliation between the ledger counter and the mirror tally.

effective = max(ledger, mirror) within the current billing period. Some
mint paths (owner-level mints) move only one of the two counters, so the
maximum is the conservative choice against overselling. Either source may
be unavailable; the other one is used alone.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

from mintrelay.core.errors import AppError, ChainUnavailableError, MirrorUnavailableError
from mintrelay.core.logging import log_event
from mintrelay.features.plans.registry import PAID_PLAN_DURATION_DAYS, plan_config
from mintrelay.models.plan import Plan
from mintrelay.models.subscription import Subscription

logger = logging.getLogger("mintrelay.quota")


def billing_period(subscription: Optional[Subscription], now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """
    [start, end) of the period mints are counted in.

    Paid plans: the 30 days ending at expiry. Free (or no expiry): the
    current UTC calendar month.
    """
    now = now or datetime.now(timezone.utc)
    if subscription is not None and subscription.plan.is_paid and subscription.expires_at is not None:
        end = subscription.expires_at
        return end - timedelta(days=PAID_PLAN_DURATION_DAYS), end
    start = now.astimezone(timezone.utc).replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return start, end


def virtual_free_subscription(wallet: str) -> Subscription:
    return Subscription(
        wallet=wallet,
        plan=Plan.FREE,
        expires_at=None,
        minted_this_period=0,
        monthly_quota=plan_config(Plan.FREE).monthly_quota,
        enrolled=False,
    )


@dataclass(frozen=True)
class ReconciledCount:
    wallet: str
    effective: int
    ledger: Optional[int]
    mirror: Optional[int]
    subscription: Subscription
    period_start: datetime
    period_end: datetime

    @property
    def source(self) -> str:
        if self.ledger is not None and self.mirror is not None:
            return "both"
        return "ledger" if self.ledger is not None else "mirror"

    @property
    def drift(self) -> int:
        if self.ledger is None or self.mirror is None:
            return 0
        return self.mirror - self.ledger


class QuotaReconciler:
    def __init__(self, ledger, mirror):
        self._ledger = ledger
        self._mirror = mirror

    async def effective_minted(
        self,
        wallet: str,
        subscription: Optional[Subscription] = None,
        *,
        now: Optional[datetime] = None,
    ) -> ReconciledCount:
        """
        Combine both counters. A subscription passed in is treated as a fresh
        ledger read; otherwise the ledger is queried here.

        Raises:
            ChainUnavailableError: If neither source answered
        """
        ledger_error: Optional[AppError] = None
        if subscription is None:
            try:
                subscription = await self._ledger.get_subscription(wallet)
            except ChainUnavailableError as exc:
                ledger_error = exc
                log_event("warning", "quota.ledger_unavailable", wallet=wallet, error_code=exc.code)

        ledger_count = subscription.minted_this_period if subscription is not None else None

        period_sub = subscription
        if period_sub is None:
            try:
                period_sub = self._mirror.get_subscription_snapshot(wallet)
            except MirrorUnavailableError:
                period_sub = None
        start, end = billing_period(period_sub, now)

        mirror_count: Optional[int]
        try:
            mirror_count = self._mirror.count_mints(wallet, start, end)
        except MirrorUnavailableError as exc:
            mirror_count = None
            log_event("warning", "quota.mirror_unavailable", wallet=wallet, error_code=exc.code)

        if ledger_count is None and mirror_count is None:
            raise ChainUnavailableError(
                "Neither the ledger nor the mirror could report minted count",
                details={"wallet": wallet},
            ) from ledger_error

        effective = max(c for c in (ledger_count, mirror_count) if c is not None)
        resolved = subscription or period_sub or virtual_free_subscription(wallet)
        return ReconciledCount(
            wallet=wallet,
            effective=effective,
            ledger=ledger_count,
            mirror=mirror_count,
            subscription=resolved,
            period_start=start,
            period_end=end,
        )

    async def reconcile(self, wallets: Optional[List[str]] = None) -> Dict:
        """
        Compare ledger and mirror counts per wallet and refresh mirror snapshots.

        The refreshed snapshot carries the effective count, so it never
        lowers what either source reported.
        """
        targets = wallets if wallets is not None else self._mirror.list_mirrored_wallets()
        drift: List[Dict] = []
        errors: List[Dict] = []
        refreshed = 0

        for wallet in targets:
            try:
                count = await self.effective_minted(wallet)
            except AppError as exc:
                errors.append({"wallet": wallet, "error": exc.code})
                continue
            if count.ledger is None or count.mirror is None:
                errors.append({"wallet": wallet, "error": f"{'ledger' if count.ledger is None else 'mirror'}_unavailable"})
                continue
            if count.ledger != count.mirror:
                entry = {
                    "wallet": wallet,
                    "ledger": count.ledger,
                    "mirror": count.mirror,
                    "effective": count.effective,
                    "difference": count.drift,
                }
                drift.append(entry)
                log_event("warning", "quota.drift_detected", wallet=wallet, event_type="quota_drift", extra=entry)
            if count.subscription.enrolled:
                snapshot = count.subscription.model_copy(update={"minted_this_period": count.effective})
                self._mirror.upsert_subscription(snapshot)
                refreshed += 1

        report = {
            "status": "completed",
            "checked": len(targets),
            "refreshed": refreshed,
            "drift": drift,
            "errors": errors,
            "reconciled_at": datetime.now(timezone.utc).isoformat(),
        }
        logger.info("quota reconciliation: %d checked, %d drifted", len(targets), len(drift))
        return report


async def run_quota_reconciliation(reconciler: QuotaReconciler, wallets: Optional[List[str]] = None) -> Dict:
    """Batch entry point shared by the worker and the admin endpoint."""
    return await reconciler.reconcile(wallets)
