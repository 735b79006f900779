"""Tests for the quota reconciliation worker entry point."""

import json

from mintrelay.models.plan import Plan
from mintrelay.tests.mocks import ALICE
from mintrelay.workers import reconcile_quota


def test_worker_reconciles_given_wallets(monkeypatch, capsys, services, chain):
    chain.set_subscription(ALICE, Plan.MASTER, minted=3)
    monkeypatch.setattr(reconcile_quota, "configure_logging", lambda env: None)
    monkeypatch.setattr(reconcile_quota, "init_engine", lambda: None)
    monkeypatch.setattr(reconcile_quota, "build_services", lambda cfg: services)

    code = reconcile_quota.main(["--wallet", ALICE])

    assert code == 0
    out = capsys.readouterr().out
    report, _ = json.JSONDecoder().raw_decode(out[out.index("{\n"):])
    assert report["checked"] == 1
    assert report["refreshed"] == 1
