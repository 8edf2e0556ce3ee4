from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from settlement.core.config import get_settings
from settlement.domain.money import apply_bps, prorate, validate_bps
from settlement.domain.result import Err, ErrorKind, Ok, Result
from settlement.domain.states import LedgerEntryType, PaymentStatus
from settlement.persistence import pg
from settlement.persistence.models import (
    CommissionModel,
    LedgerEntryModel,
    OrderLineItemModel,
    OrderModel,
    PaymentModel,
    RetailerModel,
)

logger = logging.getLogger(__name__)


@dataclass
class PostingResult:
    order_id: str
    posted: list[str] = field(default_factory=list)
    already_posted: list[str] = field(default_factory=list)


@dataclass
class RetailerAdjustment:
    retailer_id: str
    commission_adjustment: int
    net_adjustment: int


@dataclass
class AdjustmentResult:
    refund_id: str
    adjustments: list[RetailerAdjustment] = field(default_factory=list)
    already_applied: bool = False


def group_line_totals(line_items) -> dict[str, int]:
    totals: dict[str, int] = defaultdict(int)
    for item in line_items:
        totals[item.retailer_id] += int(item.total_fils)
    return dict(sorted(totals.items()))


def _retailer_rates(session: Session, retailer_ids: list[str], default_rate_bps: int) -> dict[str, int]:
    rows = session.execute(
        select(RetailerModel.id, RetailerModel.commission_rate_bps).where(RetailerModel.id.in_(retailer_ids))
    ).all()
    configured = {row.id: row.commission_rate_bps for row in rows}
    return {
        retailer_id: validate_bps(configured[retailer_id])
        if configured.get(retailer_id) is not None
        else default_rate_bps
        for retailer_id in retailer_ids
    }


def post_commissions(session: Session, order_id: str, default_rate_bps: int | None = None) -> Result[PostingResult]:
    order = session.get(OrderModel, order_id)
    if order is None:
        return Err(kind=ErrorKind.NOT_FOUND, detail="Order not found")

    captured = session.scalar(
        select(func.count())
        .select_from(PaymentModel)
        .where(PaymentModel.order_id == order_id)
        .where(PaymentModel.status == PaymentStatus.CAPTURED.value)
    )
    if not captured:
        return Err(kind=ErrorKind.NO_CAPTURED_PAYMENT, detail="No captured payment found for this order")

    line_items = session.scalars(
        select(OrderLineItemModel).where(OrderLineItemModel.order_id == order_id).order_by(OrderLineItemModel.id)
    ).all()
    totals = group_line_totals(line_items)
    existing = set(
        session.scalars(select(CommissionModel.retailer_id).where(CommissionModel.order_id == order_id)).all()
    )

    result = PostingResult(order_id=order_id)
    default_rate = validate_bps(
        default_rate_bps if default_rate_bps is not None else get_settings().default_commission_rate_bps
    )
    rates = _retailer_rates(session, [r for r in totals if r not in existing], default_rate)

    for retailer_id, gross in totals.items():
        if retailer_id in existing:
            logger.info("commission already exists, skipping: order=%s retailer=%s", order_id, retailer_id)
            result.already_posted.append(retailer_id)
            continue

        rate_bps = rates[retailer_id]
        amount = apply_bps(gross, rate_bps)
        session.add(
            CommissionModel(
                order_id=order_id,
                order_ref=order.order_ref,
                retailer_id=retailer_id,
                gross_fils=gross,
                rate_bps=rate_bps,
                amount_fils=amount,
                net_amount_fils=gross - amount,
            )
        )
        session.add(
            LedgerEntryModel(
                retailer_id=retailer_id,
                entry_type=LedgerEntryType.COMMISSION.value,
                amount_fils=amount,
                order_id=order_id,
                description=f"Commission for order {order.order_ref}",
            )
        )
        result.posted.append(retailer_id)
        logger.info(
            "commission created: order=%s retailer=%s rate_bps=%s commission_fils=%s",
            order_id,
            retailer_id,
            rate_bps,
            amount,
        )

    session.flush()
    return Ok(result)


def adjust_for_refund(
    session: Session,
    order_id: str,
    refund_id: str,
    refund_amount: int,
    order_total: int,
    label: str = "Refund",
    refunded_before: int = 0,
) -> Result[AdjustmentResult]:
    """Bring each commission down to its share of the order total still unrefunded."""
    refunded_after = refunded_before + refund_amount
    if order_total <= 0 or refunded_before < 0 or not 0 < refund_amount <= order_total - refunded_before:
        return Err(
            kind=ErrorKind.INVALID_AMOUNT,
            detail=f"refund amount {refund_amount} is outside 1..{order_total - refunded_before}",
        )

    applied = session.scalar(
        select(func.count()).select_from(LedgerEntryModel).where(LedgerEntryModel.refund_id == refund_id)
    )
    if applied:
        logger.info("refund adjustment already applied: order=%s refund=%s", order_id, refund_id)
        return Ok(AdjustmentResult(refund_id=refund_id, already_applied=True))

    commissions = session.scalars(
        select(CommissionModel).where(CommissionModel.order_id == order_id).order_by(CommissionModel.retailer_id)
    ).all()

    result = AdjustmentResult(refund_id=refund_id)
    now = datetime.now(timezone.utc)
    for commission in commissions:
        original = apply_bps(commission.gross_fils, commission.rate_bps)
        original_net = commission.gross_fils - original
        target = original - prorate(original, refunded_after, order_total)
        target_net = original_net - prorate(original_net, refunded_after, order_total)
        commission_adjustment = commission.amount_fils - target
        net_adjustment = commission.net_amount_fils - target_net
        commission.amount_fils = target
        commission.net_amount_fils = target_net
        commission.updated_at = now
        session.add(
            LedgerEntryModel(
                retailer_id=commission.retailer_id,
                entry_type=LedgerEntryType.REFUND.value,
                amount_fils=-net_adjustment,
                order_id=order_id,
                refund_id=refund_id,
                description=f"{label} adjustment for order {commission.order_ref}",
            )
        )
        result.adjustments.append(
            RetailerAdjustment(
                retailer_id=commission.retailer_id,
                commission_adjustment=commission_adjustment,
                net_adjustment=net_adjustment,
            )
        )
    session.flush()
    return Ok(result)


class CommissionLedger:
    def __init__(self, session_factory: pg.SessionFactory | None = None, default_rate_bps: int | None = None):
        self.session_factory = session_factory
        self.default_rate_bps = default_rate_bps

    def post(self, order_id: str) -> Result[PostingResult]:
        try:
            with pg.session_scope(self.session_factory) as session:
                return post_commissions(session, order_id, self.default_rate_bps)
        except IntegrityError:
            # A concurrent poster won the (order, retailer) constraint; the second
            # pass sees its rows and reports them as already posted.
            logger.info("commission posting raced for order=%s, re-reading", order_id)
        with pg.session_scope(self.session_factory) as session:
            return post_commissions(session, order_id, self.default_rate_bps)

    def list_for_order(self, order_id: str) -> list[dict[str, Any]]:
        with pg.session_scope(self.session_factory) as session:
            rows = session.scalars(
                select(CommissionModel)
                .where(CommissionModel.order_id == order_id)
                .order_by(CommissionModel.retailer_id)
            ).all()
            return [
                {
                    "retailer_id": row.retailer_id,
                    "gross_fils": row.gross_fils,
                    "rate_bps": row.rate_bps,
                    "amount_fils": row.amount_fils,
                    "net_amount_fils": row.net_amount_fils,
                }
                for row in rows
            ]


def handle_commission_calculate(payload: dict[str, Any], ledger: CommissionLedger | None = None) -> None:
    order_id = str(payload["order_id"])
    result = (ledger or CommissionLedger()).post(order_id)
    if isinstance(result, Err):
        logger.warning("commission job skipped: order=%s reason=%s", order_id, result.detail)
        return
    logger.info(
        "commission calculation completed: order=%s posted=%s already_posted=%s",
        order_id,
        len(result.value.posted),
        len(result.value.already_posted),
    )
