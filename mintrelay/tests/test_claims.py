"""Tests for drops, deferred claim-code registration and claiming."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from mintrelay.core.errors import (
    ClaimRejectedError,
    ConflictError,
    MirrorUnavailableError,
    RegistrationPendingError,
    TransactionRevertedError,
    ValidationError,
)
from mintrelay.core.metrics import claim_registrations_total
from mintrelay.features.claims.registrar import DEFAULT_CLAIM_WINDOW, claim_window
from mintrelay.models.drop import Drop, DropStatus, RegistrationState
from mintrelay.tests.mocks import ALICE, BOB, CAROL


def _drop(services, **overrides):
    params = {"title": "Genesis Pass", "claim_code": "Genesis-2026", "metadata_uri": "ipfs://drop/meta.json"}
    params.update(overrides)
    return services.claims.create_drop(**params)


async def _published(services, **overrides):
    drop = _drop(services, **overrides)
    drop, _ = await services.claims.publish_drop(drop.id)
    return drop


def test_create_drop_normalizes_and_guards_code(services):
    drop = _drop(services)
    assert drop.claim_code == "genesis-2026"
    assert drop.status == DropStatus.DRAFT
    assert "claim_code" not in drop.public_view()

    with pytest.raises(ConflictError) as exc_info:
        _drop(services, claim_code="GENESIS-2026")
    assert exc_info.value.code == "claim_code_taken"

    with pytest.raises(ValidationError):
        _drop(services, claim_code="no spaces!")
    with pytest.raises(ValidationError):
        _drop(services, claim_code="ok-code", max_claims=-1)


def test_claim_window_defaults():
    now = datetime(2026, 10, 18, tzinfo=timezone.utc)
    drop = Drop(id="d", title="t", claim_code="abc", metadata_uri="ipfs://x")
    start, end = claim_window(drop, now)
    assert start == int(now.timestamp())
    assert end == int((now + DEFAULT_CLAIM_WINDOW).timestamp())


@pytest.mark.asyncio
async def test_publish_deploys_without_registering_code(services, chain):
    drop = await _published(services)

    assert drop.status == DropStatus.PUBLISHED
    assert drop.contract_address is not None
    assert drop.registration_state == RegistrationState.UNREGISTERED
    assert chain.sent_functions() == ["deployClaimableNFT"]
    # sponsor owns the deployed contract
    assert chain.sent[0]["args"][3] == chain.relayer

    # republishing reuses the contract
    again, result = await services.claims.publish_drop(drop.id)
    assert result is None
    assert again.contract_address == drop.contract_address
    assert chain.sent_functions() == ["deployClaimableNFT"]


@pytest.mark.asyncio
async def test_ambiguous_deploy_resumes_from_stored_tx(services, chain, mirror):
    drop = _drop(services)
    chain.withhold_receipts = True
    pending, result = await services.claims.publish_drop(drop.id)
    assert result.ambiguous
    assert pending.status == DropStatus.DRAFT
    assert mirror.get_drop(drop.id).deploy_tx_hash == result.tx_hash

    chain.release_receipts()
    published, result = await services.claims.publish_drop(drop.id)
    assert result is None
    assert published.status == DropStatus.PUBLISHED
    assert chain.sent_functions() == ["deployClaimableNFT"]


@pytest.mark.asyncio
async def test_first_claim_registers_then_mints(services, chain, mirror):
    drop = await _published(services)

    outcome = await services.claims.claim(drop.id, ALICE, "GENESIS-2026")

    assert outcome.result.confirmed
    assert chain.sent_functions() == ["deployClaimableNFT", "addClaimCode", "ownerMint"]
    assert mirror.get_drop(drop.id).registration_state == RegistrationState.REGISTERED
    assert mirror.has_claimed(drop.id, ALICE)
    assert mirror.list_mints(ALICE)[0]["kind"] == "claim"

    await services.claims.claim(drop.id, BOB, "genesis-2026")
    assert chain.sent_functions().count("addClaimCode") == 1


@pytest.mark.asyncio
async def test_concurrent_first_claims_register_once(services, chain):
    drop = await _published(services)

    outcomes = await asyncio.gather(
        *[services.claims.claim(drop.id, wallet, "genesis-2026") for wallet in (ALICE, BOB, CAROL)]
    )

    assert all(o.result.confirmed for o in outcomes)
    assert chain.sent_functions().count("addClaimCode") == 1
    assert chain.sent_functions().count("ownerMint") == 3
    assert claim_registrations_total.value({"outcome": "registered"}) == 1


@pytest.mark.asyncio
async def test_double_claim_rejected(services, chain):
    drop = await _published(services)
    await services.claims.claim(drop.id, ALICE, "genesis-2026")

    with pytest.raises(ClaimRejectedError) as exc_info:
        await services.claims.claim(drop.id, ALICE, "genesis-2026")
    assert exc_info.value.details["reason"] == "already_claimed"
    assert chain.sent_functions().count("ownerMint") == 1


@pytest.mark.asyncio
async def test_max_claims_enforced_under_concurrency(services, chain):
    drop = await _published(services, max_claims=2)

    results = await asyncio.gather(
        *[services.claims.claim(drop.id, wallet, "genesis-2026") for wallet in (ALICE, BOB, CAROL)],
        return_exceptions=True,
    )

    rejected = [r for r in results if isinstance(r, ClaimRejectedError)]
    assert len(rejected) == 1
    assert rejected[0].details["reason"] == "sold_out"
    assert chain.sent_functions().count("ownerMint") == 2


@pytest.mark.asyncio
async def test_claim_rejections(services, chain):
    draft = _drop(services)
    with pytest.raises(ClaimRejectedError) as exc_info:
        await services.claims.claim(draft.id, ALICE, "genesis-2026")
    assert exc_info.value.details["reason"] == "not_published"

    future = await _published(
        services,
        claim_code="later",
        start_time=datetime.now(timezone.utc) + timedelta(days=1),
    )
    with pytest.raises(ClaimRejectedError) as exc_info:
        await services.claims.claim(future.id, ALICE, "later")
    assert exc_info.value.details["reason"] == "not_started"

    published = await _published(services, claim_code="right-code")
    with pytest.raises(ClaimRejectedError) as exc_info:
        await services.claims.claim(published.id, ALICE, "wrong-code")
    assert exc_info.value.details["reason"] == "invalid_code"
    assert "ownerMint" not in chain.sent_functions()


@pytest.mark.asyncio
async def test_failed_mint_releases_reservation(services, chain, mirror):
    drop = await _published(services)
    chain.revert_on_chain.add("ownerMint")

    with pytest.raises(TransactionRevertedError):
        await services.claims.claim(drop.id, ALICE, "genesis-2026")
    assert not mirror.has_claimed(drop.id, ALICE)

    chain.revert_on_chain.clear()
    outcome = await services.claims.claim(drop.id, ALICE, "genesis-2026")
    assert outcome.result.confirmed


@pytest.mark.asyncio
async def test_ambiguous_registration_is_resolved_on_retry(services, chain, mirror):
    drop = await _published(services)
    chain.withhold_receipts = True

    with pytest.raises(RegistrationPendingError):
        await services.claims.claim(drop.id, ALICE, "genesis-2026")
    stored = mirror.get_drop(drop.id)
    assert stored.registration_state == RegistrationState.REGISTERING
    assert stored.registration_tx_hash is not None
    assert not mirror.has_claimed(drop.id, ALICE)

    chain.release_receipts()
    outcome = await services.claims.claim(drop.id, ALICE, "genesis-2026")
    assert outcome.result.confirmed
    assert chain.sent_functions().count("addClaimCode") == 1
    assert mirror.get_drop(drop.id).registration_state == RegistrationState.REGISTERED


@pytest.mark.asyncio
async def test_reverted_registration_can_be_retried(services, chain, mirror):
    drop = await _published(services)
    chain.revert_on_chain.add("addClaimCode")

    with pytest.raises(TransactionRevertedError):
        await services.claims.claim(drop.id, ALICE, "genesis-2026")
    assert mirror.get_drop(drop.id).registration_state == RegistrationState.UNREGISTERED

    chain.revert_on_chain.clear()
    await services.claims.claim(drop.id, ALICE, "genesis-2026")
    assert chain.sent_functions().count("addClaimCode") == 2


def _fail_first(monkeypatch, mirror, name):
    original = getattr(mirror, name)
    calls = {"n": 0}

    def flaky(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] == 1:
            raise MirrorUnavailableError("mirror down")
        return original(*args, **kwargs)

    monkeypatch.setattr(mirror, name, flaky)
    return calls


@pytest.mark.asyncio
async def test_unsaved_registration_tx_does_not_register_twice(services, chain, mirror, monkeypatch):
    drop = await _published(services)
    _fail_first(monkeypatch, mirror, "set_registration_tx")

    first = await services.claims.claim(drop.id, ALICE, "genesis-2026")
    second = await services.claims.claim(drop.id, BOB, "genesis-2026")

    assert first.result.confirmed and second.result.confirmed
    assert chain.sent_functions().count("addClaimCode") == 1
    assert mirror.get_drop(drop.id).registration_state == RegistrationState.REGISTERED


@pytest.mark.asyncio
async def test_pending_registration_tx_is_saved_on_retry(services, chain, mirror, monkeypatch):
    drop = await _published(services)
    calls = _fail_first(monkeypatch, mirror, "set_registration_tx")
    chain.withhold_receipts = True

    with pytest.raises(RegistrationPendingError):
        await services.claims.claim(drop.id, ALICE, "genesis-2026")
    assert calls["n"] == 2
    stored = mirror.get_drop(drop.id)
    assert stored.registration_state == RegistrationState.REGISTERING
    assert stored.registration_tx_hash == chain.sent[-1]["tx_hash"]

    chain.release_receipts()
    outcome = await services.claims.claim(drop.id, BOB, "genesis-2026")
    assert outcome.result.confirmed
    assert chain.sent_functions().count("addClaimCode") == 1


@pytest.mark.asyncio
async def test_broadcast_mint_keeps_reservation(services, chain, mirror, monkeypatch):
    drop = await _published(services)
    _fail_first(monkeypatch, mirror, "attach_claim_tx")

    outcome = await services.claims.claim(drop.id, ALICE, "genesis-2026")
    assert outcome.result.confirmed
    assert mirror.has_claimed(drop.id, ALICE)

    with pytest.raises(ClaimRejectedError) as exc_info:
        await services.claims.claim(drop.id, ALICE, "genesis-2026")
    assert exc_info.value.details["reason"] == "already_claimed"
    assert chain.sent_functions().count("ownerMint") == 1


@pytest.mark.asyncio
async def test_pending_deploy_tx_is_saved_on_retry(services, chain, mirror, monkeypatch):
    drop = _drop(services)
    _fail_first(monkeypatch, mirror, "set_drop_deploy_tx")
    chain.withhold_receipts = True

    _, result = await services.claims.publish_drop(drop.id)
    assert result.ambiguous
    assert mirror.get_drop(drop.id).deploy_tx_hash == result.tx_hash

    chain.release_receipts()
    published, _ = await services.claims.publish_drop(drop.id)
    assert published.status == DropStatus.PUBLISHED
    assert chain.sent_functions() == ["deployClaimableNFT"]


def test_verify_claim_is_read_only(services, chain):
    drop = _drop(services)
    result = services.claims.verify_claim(drop.id, "genesis-2026", ALICE)
    assert result["valid"] is False
    assert result["reason"] == "not_published"
    assert chain.sent == []
