"""
Quota reconciliation job.

Refreshes mirrored subscription snapshots so their minted counts match
max(ledger, mirror) for the current billing period, and reports drift.

Usage:
    python -m mintrelay.workers.reconcile_quota [--wallet 0x...]...
"""
import argparse
import asyncio
import json
import logging

from dotenv import load_dotenv

from mintrelay.core.config import settings
from mintrelay.core.database import create_all_tables, init_engine
from mintrelay.core.logging import configure_logging
from mintrelay.features.services import build_services
from mintrelay.features.subscriptions.reconciler import run_quota_reconciliation

logger = logging.getLogger("mintrelay.workers.reconcile_quota")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Reconcile mirrored mint counts against the ledger")
    parser.add_argument("--wallet", action="append", dest="wallets", help="Limit to this wallet (repeatable)")
    args = parser.parse_args(argv)

    load_dotenv()
    configure_logging(settings.ENV)
    init_engine()
    create_all_tables()

    services = build_services(settings)
    report = asyncio.run(run_quota_reconciliation(services.ledger.reconciler, args.wallets))
    print(json.dumps(report, default=str, indent=2))
    return 0 if not report.get("errors") else 1


if __name__ == "__main__":
    raise SystemExit(main())
