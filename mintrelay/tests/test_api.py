"""End-to-end tests for the HTTP surface."""

from mintrelay.core.errors import ChainUnavailableError
from mintrelay.models.plan import Plan
from mintrelay.tests.mocks import ALICE, BOB

MASTER_PRICE_6DP = 4_990_000


def wallet(address):
    return {"X-Wallet-Address": address}


def test_healthz(client):
    resp = client.get("/healthz")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_readyz_reports_sponsor(client, chain):
    resp = client.get("/readyz")
    assert resp.status_code == 200
    body = resp.json()
    assert body["sponsor"] == chain.relayer
    assert body["sponsorFunded"] is True


def test_readyz_fails_when_chain_down(client, chain):
    chain.unavailable = True
    resp = client.get("/readyz")
    assert resp.status_code == 503
    assert resp.json()["detail"] == "chain_unavailable"


def test_readyz_fails_when_database_down(client, monkeypatch):
    monkeypatch.setattr("mintrelay.api.health.check_connection", lambda: False)
    resp = client.get("/readyz")
    assert resp.status_code == 503
    assert resp.json()["detail"] == "database unreachable"


def test_plans_listing(client):
    resp = client.get("/plans")
    assert resp.status_code == 200
    plans = {p["plan"]: p for p in resp.json()["data"]}
    assert plans["MASTER"]["priceMinorUnits"] == MASTER_PRICE_6DP
    assert plans["ELITE"]["monthlyQuota"] == 25


def test_subscription_of_unknown_wallet_is_virtual_free(client):
    resp = client.get(f"/subscriptions/{ALICE}")
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["plan"] == "FREE"
    assert data["enrolledOnChain"] is False
    assert data["isActive"] is True


def test_subscribe_paid_plan(client, chain):
    chain.fund(ALICE, MASTER_PRICE_6DP, approve=MASTER_PRICE_6DP)

    resp = client.post("/subscribe", headers=wallet(ALICE), json={"plan": "master", "autoRenew": True})

    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["status"] == "confirmed"
    assert data["plan"] == "MASTER"
    assert data["txHash"].startswith("0x")

    quota = client.get(f"/subscriptions/{ALICE}/quota", params={"count": 3}).json()["data"]
    assert quota["limit"] == 10
    assert quota["canMint"] is True


def test_subscribe_allowance_shortfall_shape(client, chain):
    chain.fund(ALICE, MASTER_PRICE_6DP, approve=0)

    resp = client.post("/subscribe", headers=wallet(ALICE), json={"plan": "MASTER"})

    assert resp.status_code == 402
    error = resp.json()["error"]
    assert error["code"] == "insufficient_allowance"
    assert error["details"]["shortfall"] == MASTER_PRICE_6DP
    assert error["request_id"] == resp.headers["x-request-id"]
    assert chain.sent == []


def test_subscribe_requires_wallet_header(client):
    resp = client.post("/subscribe", json={"plan": "MASTER"})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "validation_error"


def test_subscribe_unknown_plan(client):
    resp = client.post("/subscribe", headers=wallet(ALICE), json={"plan": "platinum"})
    assert resp.status_code == 400


def test_permit_subscription(client, chain):
    chain.fund(ALICE, MASTER_PRICE_6DP, approve=0)
    body = {
        "plan": "MASTER",
        "permit": {"deadline": 4_102_444_800, "v": 28, "r": "0x" + "ab" * 32, "s": "0x" + "cd" * 32},
    }
    resp = client.post("/subscribe/permit", headers=wallet(ALICE), json=body)
    assert resp.status_code == 200
    assert chain.sent_functions() == ["subscribeToPlanWithPermit"]


def test_idempotency_key_replay_is_rejected(client, chain):
    chain.set_subscription(ALICE, Plan.FREE)
    chain.set_subscription(BOB, Plan.FREE)
    headers = {**wallet(ALICE), "Idempotency-Key": "req-1"}
    first = client.post("/collections", headers=headers, json={"name": "A", "symbol": "A"})
    assert first.status_code == 200

    replay = client.post("/collections", headers=headers, json={"name": "A", "symbol": "A"})
    assert replay.status_code == 409
    assert replay.json()["error"]["code"] == "duplicate_request"
    assert chain.sent_functions().count("createCollectionFor") == 1

    # same key from another wallet is a different request
    other = client.post("/collections", headers={**wallet(BOB), "Idempotency-Key": "req-1"}, json={"name": "B", "symbol": "B"})
    assert other.status_code == 200


def test_idempotency_key_freed_when_nothing_was_sent(client, chain):
    headers = {**wallet(ALICE), "Idempotency-Key": "k-1"}
    chain.unavailable = True
    first = client.post("/collections", headers=headers, json={"name": "A", "symbol": "A"})
    assert first.status_code == 503
    assert first.json()["error"]["retryable"] is True
    assert chain.sent == []

    chain.unavailable = False
    retry = client.post("/collections", headers=headers, json={"name": "A", "symbol": "A"})
    assert retry.status_code == 200
    assert chain.sent_functions().count("createCollectionFor") == 1

    replay = client.post("/collections", headers=headers, json={"name": "A", "symbol": "A"})
    assert replay.status_code == 409


def test_mint_succeeds_when_quota_summary_unavailable(client, chain, services, monkeypatch):
    chain.set_subscription(ALICE, Plan.MASTER)
    collection = client.post("/collections", headers=wallet(ALICE), json={"name": "Q", "symbol": "Q"}).json()["data"]["contractAddress"]

    async def quota_down(wallet_address):
        raise ChainUnavailableError("RPC endpoint unreachable")

    monkeypatch.setattr(services.ledger, "quota", quota_down)
    resp = client.post("/nfts", headers=wallet(ALICE), json={"collectionAddress": collection, "tokenURI": "ipfs://1"})

    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["status"] == "confirmed"
    assert data["quota"] is None


def test_collection_then_mint_flow(client, chain):
    created = client.post("/collections", headers=wallet(ALICE), json={"name": "Dawn", "symbol": "dawn", "royaltyBPS": 250})
    assert created.status_code == 200
    data = created.json()["data"]
    assert data["enrollment"]["status"] == "confirmed"
    collection = data["contractAddress"]

    listed = client.get("/collections", params={"owner": ALICE}).json()["data"]
    assert listed[0]["address"] == collection.lower()

    minted = client.post("/nfts", headers=wallet(ALICE), json={"collectionAddress": collection, "tokenURI": "ipfs://1"})
    assert minted.status_code == 200
    assert minted.json()["data"]["quota"] == {"limit": 1, "used": 1, "remaining": 0}

    blocked = client.post("/nfts", headers=wallet(ALICE), json={"collectionAddress": collection, "tokenURI": "ipfs://2"})
    assert blocked.status_code == 403
    error = blocked.json()["error"]
    assert error["code"] == "quota_exceeded"
    assert error["details"]["over_by"] == 1

    history = client.get("/nfts", params={"wallet": ALICE}).json()["data"]
    assert len(history) == 1


def test_ambiguous_mint_returns_202_and_can_be_polled(client, chain):
    chain.set_subscription(ALICE, Plan.MASTER)
    collection = client.post("/collections", headers=wallet(ALICE), json={"name": "X", "symbol": "X"}).json()["data"]["contractAddress"]

    chain.withhold_receipts = True
    resp = client.post("/nfts", headers=wallet(ALICE), json={"collectionAddress": collection, "tokenURI": "ipfs://1"})
    assert resp.status_code == 202
    data = resp.json()["data"]
    assert data["status"] == "submitted"
    assert data["confirmation"] == "unknown"

    chain.release_receipts()
    polled = client.get(f"/v1/relay/tx/{data['txHash']}")
    assert polled.status_code == 200
    assert polled.json()["data"]["status"] == "confirmed"


def test_relay_tx_rejects_malformed_hash(client):
    assert client.get("/v1/relay/tx/0x123").status_code == 400


def test_missing_contract_maps_to_424(client, chain, services):
    chain.code.pop(services.ledger.manager_address.lower())
    resp = client.post("/collections", headers=wallet(ALICE), json={"name": "A", "symbol": "A"})
    assert resp.status_code == 424
    assert resp.json()["error"]["code"] == "target_not_deployed"
    assert chain.sent == []


def test_drop_admin_and_claim_flow(client, chain, admin_headers):
    created = client.post(
        "/v1/drops",
        headers=admin_headers,
        json={"title": "Launch Party", "claimCode": "PARTY-2026", "metadataURI": "ipfs://party", "maxClaims": 10},
    )
    assert created.status_code == 201
    drop = created.json()["data"]
    assert "claim_code" not in drop

    published = client.post(f"/v1/drops/{drop['id']}/publish", headers=admin_headers)
    assert published.status_code == 200
    assert published.json()["data"]["code_registered_on_chain"] is False

    check = client.get(f"/claims/{drop['id']}/verify", params={"code": "party-2026", "wallet": ALICE})
    assert check.json()["data"]["valid"] is True

    claimed = client.post(f"/claims/{drop['id']}", headers=wallet(ALICE), json={"claimCode": "party-2026"})
    assert claimed.status_code == 200
    assert claimed.json()["data"]["status"] == "confirmed"

    again = client.post(f"/claims/{drop['id']}", headers=wallet(ALICE), json={"claimCode": "party-2026"})
    assert again.status_code == 400
    assert again.json()["error"]["details"]["reason"] == "already_claimed"

    detail = client.get(f"/v1/drops/{drop['id']}", headers=admin_headers).json()["data"]
    assert detail["claims"] == 1
    assert detail["code_registered_on_chain"] is True

    unpublished = client.post(f"/v1/drops/{drop['id']}/unpublish", headers=admin_headers)
    assert unpublished.json()["data"]["status"] == "unpublished"


def test_drop_admin_requires_key(client, admin_headers):
    resp = client.post("/v1/drops", headers={"X-Admin-Key": "wrong"}, json={"title": "t", "claimCode": "abc", "metadataURI": "x"})
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "forbidden"


def test_pending_registration_returns_202(client, chain, admin_headers):
    drop = client.post(
        "/v1/drops", headers=admin_headers, json={"title": "Slow", "claimCode": "slow-code", "metadataURI": "ipfs://s"}
    ).json()["data"]
    client.post(f"/v1/drops/{drop['id']}/publish", headers=admin_headers)

    chain.withhold_receipts = True
    resp = client.post(f"/claims/{drop['id']}", headers=wallet(ALICE), json={"claimCode": "slow-code"})
    assert resp.status_code == 202
    body = resp.json()
    assert body["success"] is False
    assert body["error"]["code"] == "registration_pending"
    assert body["error"]["retryable"] is True


def test_reconcile_endpoint(client, chain, mirror, admin_headers):
    chain.set_subscription(ALICE, Plan.MASTER, minted=2)
    resp = client.post("/v1/quota/reconcile", headers=admin_headers, json={"wallets": [ALICE]})
    assert resp.status_code == 200
    report = resp.json()["data"]
    assert report["checked"] == 1
    assert report["refreshed"] == 1
    assert mirror.get_subscription_snapshot(ALICE).minted_this_period == 2


def test_metrics_exposed(client, chain):
    client.get(f"/subscriptions/{ALICE}")
    body = client.get("/metrics").text
    assert "http_requests_total" in body
    assert 'path="/subscriptions/:id"' in body
