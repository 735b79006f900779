"""
mintrelay/tests/test_subscription_ledger.py
Tests for ledger reads, plan changes and mint eligibility.
"""

from datetime import datetime, timedelta, timezone

import pytest

from mintrelay.core.errors import (
    ConflictError,
    InsufficientAllowanceError,
    InsufficientBalanceError,
    QuotaExceededError,
    SubscriptionInactiveError,
    ValidationError,
)
from mintrelay.features.subscriptions.ledger_client import SubscriptionLedgerClient
from mintrelay.models.plan import Plan
from mintrelay.models.subscription import PermitSignature
from mintrelay.tests.mocks import ALICE, BOB, MANAGER, TOKEN

MASTER_PRICE_6DP = 4_990_000


def _permit(deadline=None):
    return PermitSignature(
        deadline=deadline or int((datetime.now(timezone.utc) + timedelta(hours=1)).timestamp()),
        v=27,
        r="0x" + "12" * 32,
        s="0x" + "34" * 32,
    )


@pytest.mark.asyncio
async def test_unknown_wallet_gets_virtual_free_plan(services, chain):
    sub = await services.ledger.get_subscription(ALICE)

    assert sub.plan is Plan.FREE
    assert sub.enrolled is False
    assert sub.is_active()
    assert sub.monthly_quota == 1
    assert sub.expires_at is None
    assert chain.sent == []


@pytest.mark.asyncio
async def test_paid_subscription_read(services, chain):
    chain.set_subscription(ALICE, Plan.ELITE, minted=4)
    sub = await services.ledger.get_subscription(ALICE.lower())

    assert sub.wallet == ALICE
    assert sub.plan is Plan.ELITE
    assert sub.minted_this_period == 4
    assert sub.monthly_quota == 25
    assert sub.expires_at > datetime.now(timezone.utc)


@pytest.mark.asyncio
async def test_legacy_manager_interface_is_detected(services, chain):
    chain.legacy_manager = True
    chain.set_subscription(ALICE, Plan.MASTER, minted=2)

    sub = await services.ledger.get_subscription(ALICE)

    assert sub.plan is Plan.MASTER
    assert sub.auto_renew is False
    assert services.ledger._manager_interface == "subscription-manager-v1"


@pytest.mark.asyncio
async def test_upgrade_with_exact_approval_two_decimal_token(chain, executor, mirror):
    """A 2-decimal token: approving exactly 499 is enough for Master."""
    chain.token_decimals = 2
    ledger = SubscriptionLedgerClient(
        chain, executor, mirror, manager_address=MANAGER, token_address=TOKEN, token_decimals=2
    )
    chain.fund(ALICE, 1_000, approve=499)

    result = await ledger.change_plan(ALICE, "master", auto_renew=True)

    assert result.confirmed
    assert chain.sent_functions() == ["subscribeToPlanForUser"]
    assert chain.token_balances[ALICE.lower()] == 501
    sub = await ledger.get_subscription(ALICE)
    assert sub.plan is Plan.MASTER
    assert sub.auto_renew is True
    snapshot = mirror.get_subscription_snapshot(ALICE)
    assert snapshot.plan is Plan.MASTER


@pytest.mark.asyncio
async def test_upgrade_balance_shortfall(services, chain):
    chain.fund(ALICE, MASTER_PRICE_6DP - 1, approve=MASTER_PRICE_6DP)

    with pytest.raises(InsufficientBalanceError) as exc_info:
        await services.ledger.change_plan(ALICE, Plan.MASTER)

    assert exc_info.value.details["shortfall"] == 1
    assert exc_info.value.details["required"] == MASTER_PRICE_6DP
    assert chain.sent == []


@pytest.mark.asyncio
async def test_upgrade_allowance_shortfall(services, chain):
    chain.fund(ALICE, 10 * MASTER_PRICE_6DP, approve=1_000_000)

    with pytest.raises(InsufficientAllowanceError) as exc_info:
        await services.ledger.change_plan(ALICE, Plan.MASTER)

    assert exc_info.value.details["shortfall"] == MASTER_PRICE_6DP - 1_000_000
    assert exc_info.value.status_code == 402
    assert chain.sent == []


@pytest.mark.asyncio
async def test_free_on_unenrolled_wallet_enrolls(services, chain):
    result = await services.ledger.change_plan(ALICE, Plan.FREE)
    assert result.confirmed
    assert chain.sent_functions() == ["subscribeToFreePlanForUser"]
    assert (await services.ledger.get_subscription(ALICE)).enrolled


@pytest.mark.asyncio
async def test_free_to_free_conflicts(services, chain):
    chain.set_subscription(ALICE, Plan.FREE)
    with pytest.raises(ConflictError) as exc_info:
        await services.ledger.change_plan(ALICE, Plan.FREE)
    assert exc_info.value.code == "already_subscribed"


@pytest.mark.asyncio
async def test_paid_to_free_downgrades(services, chain):
    chain.set_subscription(ALICE, Plan.MASTER, minted=3)
    result = await services.ledger.change_plan(ALICE, Plan.FREE)
    assert result.confirmed
    assert chain.sent_functions() == ["downgradeSubscriptionForUser"]
    assert (await services.ledger.get_subscription(ALICE)).plan is Plan.FREE


@pytest.mark.asyncio
async def test_permit_upgrade_skips_allowance(services, chain):
    chain.fund(ALICE, MASTER_PRICE_6DP, approve=0)

    result = await services.ledger.change_plan_with_permit(ALICE, Plan.MASTER, False, _permit())

    assert result.confirmed
    assert chain.sent_functions() == ["subscribeToPlanWithPermit"]
    args = chain.sent[0]["args"]
    assert args[4] == 27
    assert args[5] == bytes.fromhex("12" * 32)


@pytest.mark.asyncio
async def test_permit_rejected_when_unsupported(services, chain):
    services.ledger.supports_permit = False
    with pytest.raises(ValidationError) as exc_info:
        await services.ledger.change_plan_with_permit(ALICE, Plan.MASTER, False, _permit())
    assert exc_info.value.code == "permit_unsupported"


@pytest.mark.asyncio
async def test_permit_rejects_expired_deadline_and_free_target(services, chain):
    chain.fund(ALICE, MASTER_PRICE_6DP)
    with pytest.raises(ValidationError):
        await services.ledger.change_plan_with_permit(ALICE, Plan.MASTER, False, _permit(deadline=1))
    with pytest.raises(ValidationError):
        await services.ledger.change_plan_with_permit(ALICE, Plan.FREE, False, _permit())
    assert chain.sent == []


@pytest.mark.asyncio
async def test_mint_allowance_quota_exceeded(services, chain):
    chain.set_subscription(BOB, Plan.MASTER, minted=10)

    assert await services.ledger.can_mint(BOB, 1) is False
    with pytest.raises(QuotaExceededError) as exc_info:
        await services.ledger.require_mint_allowance(BOB, 2)

    details = exc_info.value.details
    assert details["remaining"] == 0
    assert details["over_by"] == 2
    assert details["limit"] == 10


@pytest.mark.asyncio
async def test_mint_allowance_inactive_plan(services, chain):
    chain.set_subscription(BOB, Plan.MASTER, expires_at=datetime.now(timezone.utc) - timedelta(days=1))
    with pytest.raises(SubscriptionInactiveError):
        await services.ledger.require_mint_allowance(BOB, 1)


@pytest.mark.asyncio
async def test_mint_allowance_rejects_negative_count(services):
    with pytest.raises(ValidationError):
        await services.ledger.require_mint_allowance(BOB, -1)


@pytest.mark.asyncio
async def test_quota_falls_back_to_mirror_during_outage(services, chain, mirror):
    chain.set_subscription(ALICE, Plan.MASTER, minted=2)
    mirror.upsert_subscription(await services.ledger.get_subscription(ALICE))
    for i in range(3):
        mirror.record_mint(ALICE, tx_hash=f"0x{i:064x}")

    chain.unavailable = True
    status = await services.ledger.quota(ALICE)

    assert status.source == "mirror"
    assert status.plan is Plan.MASTER
    assert status.used == 3
    assert status.remaining == 7
