from __future__ import annotations

import argparse
import json
from dataclasses import asdict
from datetime import timedelta
from functools import partial

from settlement.api.utils import parse_period
from settlement.core.config import get_settings
from settlement.core.logging import configure_logging
from settlement.core.security import Actor, create_access_token
from settlement.domain.commissions import CommissionLedger, handle_commission_calculate
from settlement.domain.orders.workflow import OrderSettlementService
from settlement.integrations.jobs import COMMISSION_CALCULATE, JobRunner
from settlement.integrations.tracking import LoggingEventTracker
from settlement.ledger.statements import build_retailer_statement
from settlement.payments.gateway import build_payment_gateway
from settlement.persistence.pg import init_db, session_scope
from settlement.reconciliation.sweep import reconcile_payments


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Marketplace settlement engine CLI")
    top = parser.add_subparsers(dest="command", required=True)

    top.add_parser("init-db", help="Create database tables")

    reconcile = top.add_parser("reconcile", help="Resolve payments stuck in PENDING/AUTHORIZED")
    reconcile.add_argument("--older-than", type=int, default=None, help="Seconds (default: settings)")

    jobs = top.add_parser("run-jobs", help="Run queued background jobs")
    jobs.add_argument("--limit", type=int, default=100)

    statement = top.add_parser("statement", help="Print a retailer statement")
    statement.add_argument("retailer_id")
    statement.add_argument("--period", default=None, help="start/end in ISO-8601")
    statement.add_argument("--ledger", action="store_true", help="Include the beancount ledger text")

    token = top.add_parser("issue-token", help="Issue a customer access token")
    token.add_argument("customer_id")
    token.add_argument("--ttl", type=int, default=None, help="Seconds (default: settings)")

    return parser


def _print(payload: dict) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2, default=str))


def _reconcile(args: argparse.Namespace) -> int:
    service = OrderSettlementService(build_payment_gateway(), tracker=LoggingEventTracker())
    older_than = timedelta(seconds=args.older_than) if args.older_than is not None else None
    summary = reconcile_payments(service, older_than=older_than)
    _print(asdict(summary))
    return 0


def _run_jobs(args: argparse.Namespace) -> int:
    settings = get_settings()
    ledger = CommissionLedger(default_rate_bps=settings.default_commission_rate_bps)
    runner = JobRunner({COMMISSION_CALCULATE: partial(handle_commission_calculate, ledger=ledger)})
    summary = runner.run_pending(limit=args.limit)
    _print(asdict(summary))
    return 0 if summary.failed == 0 else 1


def _statement(args: argparse.Namespace) -> int:
    start = end = None
    if args.period:
        start, end = parse_period(args.period)
    with session_scope() as session:
        statement = build_retailer_statement(session, args.retailer_id, start=start, end=end)
    if not args.ledger:
        statement.pop("beancount_ledger")
    _print(statement)
    return 0


def main() -> int:
    configure_logging()
    parser = _build_parser()
    args = parser.parse_args()

    if args.command == "init-db":
        init_db()
        _print({"initialized": True})
        return 0
    if args.command == "issue-token":
        _print({"access_token": create_access_token(Actor(type="customer", id=args.customer_id), args.ttl)})
        return 0

    init_db()
    if args.command == "reconcile":
        return _reconcile(args)
    if args.command == "run-jobs":
        return _run_jobs(args)
    if args.command == "statement":
        return _statement(args)

    parser.error("unsupported command")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
