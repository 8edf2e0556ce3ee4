"""Retailer ledger statements.

Ledger entries are turned into balanced double-entry postings, rendered as a
beancount ledger and loaded back through beancount before any total is
reported, so a statement that would not balance is never returned.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Iterable

from beancount.loader import load_string
from sqlalchemy import select
from sqlalchemy.orm import Session

from settlement.core.config import get_settings
from settlement.domain.states import LedgerEntryType
from settlement.persistence.models import LedgerEntryModel, RetailerModel

PAYABLE_ACCOUNT = "Liabilities:Retailer:Payable"
COMMISSION_ACCOUNT = "Income:Commission"
REFUND_CLEARING_ACCOUNT = "Assets:Clearing:Refunds"

ACCOUNTS = [PAYABLE_ACCOUNT, COMMISSION_ACCOUNT, REFUND_CLEARING_ACCOUNT]


@dataclass
class PostingRecord:
    day: date
    narration: str
    debit_account: str
    credit_account: str
    amount_fils: int
    entry_id: str


def fils_to_amount(fils: int) -> Decimal:
    return Decimal(fils).scaleb(-2)


def entries_to_postings(entries: Iterable[LedgerEntryModel]) -> list[PostingRecord]:
    rows: list[PostingRecord] = []
    for entry in entries:
        if entry.amount_fils == 0:
            continue
        day = entry.created_at.date()
        narration = entry.description.replace('"', "'")
        if entry.entry_type == LedgerEntryType.COMMISSION.value:
            # Commission withheld from the retailer's payout.
            rows.append(
                PostingRecord(day, narration, PAYABLE_ACCOUNT, COMMISSION_ACCOUNT, entry.amount_fils, entry.entry_id)
            )
        elif entry.entry_type == LedgerEntryType.REFUND.value:
            # Refund entries carry the negative net adjustment.
            rows.append(
                PostingRecord(
                    day, narration, PAYABLE_ACCOUNT, REFUND_CLEARING_ACCOUNT, -entry.amount_fils, entry.entry_id
                )
            )
    return rows


def postings_to_beancount_text(postings: list[PostingRecord], title: str, currency: str) -> str:
    lines = [
        f'option "title" "{title}"',
        f'option "operating_currency" "{currency}"',
    ]
    first_day = min((posting.day for posting in postings), default=datetime.now(timezone.utc).date())
    for account in ACCOUNTS:
        lines.append(f"{first_day.isoformat()} open {account} {currency}")

    for posting in postings:
        amount = fils_to_amount(posting.amount_fils)
        lines.append(f'{posting.day.isoformat()} * "{posting.narration}"')
        lines.append(f'  entry_id: "{posting.entry_id}"')
        lines.append(f"  {posting.debit_account}  {amount} {currency}")
        lines.append(f"  {posting.credit_account}  {-amount} {currency}")

    return "\n".join(lines) + "\n"


def _sum_account(entries, account: str) -> Decimal:
    total = Decimal("0")
    for entry in entries:
        if getattr(entry, "postings", None) is None:
            continue
        for posting in entry.postings:
            if posting.account == account:
                total += posting.units.number
    return total


def _to_fils(amount: Decimal) -> int:
    return int(amount * 100)


def _entries_between(
    session: Session, retailer_id: str, start: datetime | None, end: datetime | None
) -> list[LedgerEntryModel]:
    stmt = select(LedgerEntryModel).where(LedgerEntryModel.retailer_id == retailer_id)
    if start is not None:
        stmt = stmt.where(LedgerEntryModel.created_at >= start)
    if end is not None:
        stmt = stmt.where(LedgerEntryModel.created_at < end)
    return list(session.scalars(stmt.order_by(LedgerEntryModel.seq_id)).all())


def build_retailer_statement(
    session: Session,
    retailer_id: str,
    start: datetime | None = None,
    end: datetime | None = None,
    currency: str | None = None,
) -> dict:
    currency = currency or get_settings().currency
    retailer = session.get(RetailerModel, retailer_id)
    title = f"Statement {retailer.name if retailer else retailer_id}".replace('"', "'")

    entries = _entries_between(session, retailer_id, start, end)
    postings = entries_to_postings(entries)
    ledger_text = postings_to_beancount_text(postings, title, currency)
    loaded, errors, _ = load_string(ledger_text)
    if errors:
        raise ValueError(f"beancount parse errors: {errors}")

    commission = -_sum_account(loaded, COMMISSION_ACCOUNT)
    refund_adjustments = _sum_account(loaded, REFUND_CLEARING_ACCOUNT)
    return {
        "retailer_id": retailer_id,
        "currency": currency,
        "start": start,
        "end": end,
        "commission_fils": _to_fils(commission),
        "refund_adjustment_fils": _to_fils(refund_adjustments),
        "net_fils": _to_fils(commission + refund_adjustments),
        "entry_count": len(entries),
        "posting_count": len(postings),
        "beancount_ledger": ledger_text,
    }


def list_ledger_entries(session: Session, retailer_id: str, cursor: int | None = None, limit: int = 20) -> dict:
    """Newest-first page of a retailer's ledger; ``cursor`` is the first ``seq_id`` to return."""
    stmt = select(LedgerEntryModel).where(LedgerEntryModel.retailer_id == retailer_id)
    if cursor is not None:
        stmt = stmt.where(LedgerEntryModel.seq_id <= cursor)
    rows = list(session.scalars(stmt.order_by(LedgerEntryModel.seq_id.desc()).limit(limit + 1)).all())
    next_cursor = None
    if len(rows) > limit:
        next_cursor = rows[limit].seq_id
        rows = rows[:limit]
    return {
        "items": [
            {
                "seq_id": row.seq_id,
                "entry_id": row.entry_id,
                "entry_type": row.entry_type,
                "amount_fils": row.amount_fils,
                "order_id": row.order_id,
                "refund_id": row.refund_id,
                "description": row.description,
                "created_at": row.created_at,
            }
            for row in rows
        ],
        "next_cursor": next_cursor,
    }
