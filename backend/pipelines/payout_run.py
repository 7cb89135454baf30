"""Operator job that drains the payout, refund and collection queues."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

from loguru import logger

from app.core.config import get_settings
from app.core.keystore import EncryptedKeyStore
from app.db import SessionLocal, init_db
from app.domain import DispatchSummary
from app.services.payouts import PayoutDispatcher
from ledger.client import SolanaRpcClient

ACTIONS = ("payouts", "refunds", "collect", "all")


def run(dispatcher: PayoutDispatcher, action: str) -> dict[str, DispatchSummary]:
    results: dict[str, DispatchSummary] = {}
    if action in {"payouts", "all"}:
        results["payouts"] = dispatcher.process_payouts()
    if action in {"refunds", "all"}:
        results["refunds"] = dispatcher.process_refunds()
    if action in {"collect", "all"}:
        results["collect"] = dispatcher.collect_deposits()
    return results


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Send pending payouts and refunds, or sweep confirmed deposits")
    parser.add_argument("action", choices=ACTIONS, help="Which queue to process")
    parser.add_argument(
        "--summary-path",
        type=Path,
        default=None,
        help="Optional path where a JSON summary report will be written",
    )
    return parser.parse_args()


def main() -> int:
    args = _parse_args()
    settings = get_settings()
    logger.remove()
    logger.add(sys.stderr, level=settings.log_level.upper())

    keystore = EncryptedKeyStore.from_settings(settings)
    keystore.warn_if_plaintext()
    init_db()

    with SolanaRpcClient(
        rpc_url=str(settings.solana_rpc_url),
        timeout=settings.rpc_timeout_seconds,
        confirm_timeout=settings.confirm_timeout_seconds,
    ) as client:
        dispatcher = PayoutDispatcher.from_settings(settings, client, SessionLocal, keystore)
        results = run(dispatcher, args.action)

    report = {name: summary.to_dict() for name, summary in results.items()}
    if args.summary_path:
        args.summary_path.parent.mkdir(parents=True, exist_ok=True)
        args.summary_path.write_text(json.dumps(report, indent=2))
        logger.info("Payout summary written to {}", args.summary_path)
    print(json.dumps(report, indent=2))
    incomplete = any(summary.error or summary.failed or summary.unconfirmed for summary in results.values())
    return 1 if incomplete else 0


if __name__ == "__main__":
    raise SystemExit(main())
