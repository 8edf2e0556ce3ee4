from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from settlement.domain.result import Err, ErrorKind, Ok, Result
from settlement.domain.states import LedgerEntryType, OrderStatus, PaymentStatus
from settlement.persistence.models import (
    CommissionModel,
    LedgerEntryModel,
    OrderLineItemModel,
    OrderModel,
    PaymentModel,
)

SETTLED_PAYMENT_STATUSES = {PaymentStatus.CAPTURED.value, PaymentStatus.REFUNDED.value}
PAID_ORDER_STATUSES = {
    OrderStatus.PAID.value,
    OrderStatus.PROCESSING.value,
    OrderStatus.SHIPPED.value,
    OrderStatus.DELIVERED.value,
    OrderStatus.DISPUTED.value,
    OrderStatus.REFUNDED.value,
}


@dataclass
class ReconciliationResult:
    rule: str
    passed: bool
    detail: str


def check_total_equals_parts(order: OrderModel) -> ReconciliationResult:
    expected = order.subtotal_fils + order.delivery_fee_fils
    return ReconciliationResult(
        rule="total_equals_subtotal_plus_fee",
        passed=order.total_fils == expected,
        detail=f"total={order.total_fils}, subtotal+fee={expected}",
    )


def check_line_items_sum(order: OrderModel, line_items: Iterable[OrderLineItemModel]) -> ReconciliationResult:
    items = list(line_items)
    for item in items:
        if item.total_fils != item.unit_price_fils * item.quantity:
            return ReconciliationResult(
                rule="line_items_sum_to_subtotal",
                passed=False,
                detail=f"line item {item.id} total={item.total_fils} != {item.unit_price_fils}x{item.quantity}",
            )
    line_total = sum(item.total_fils for item in items)
    return ReconciliationResult(
        rule="line_items_sum_to_subtotal",
        passed=line_total == order.subtotal_fils,
        detail=f"line_items={line_total}, subtotal={order.subtotal_fils}",
    )


def check_single_settled_payment(payments: Iterable[PaymentModel]) -> ReconciliationResult:
    settled = [payment for payment in payments if payment.status in SETTLED_PAYMENT_STATUSES]
    return ReconciliationResult(
        rule="at_most_one_captured_payment",
        passed=len(settled) <= 1,
        detail=f"settled_payments={len(settled)}",
    )


def check_captured_amount(order: OrderModel, payments: Iterable[PaymentModel]) -> ReconciliationResult:
    settled = [payment for payment in payments if payment.status in SETTLED_PAYMENT_STATUSES]
    if order.status in PAID_ORDER_STATUSES and not settled:
        return ReconciliationResult(
            rule="captured_amount_equals_total",
            passed=False,
            detail=f"order is {order.status} without a captured payment",
        )
    for payment in settled:
        if payment.amount_fils != order.total_fils:
            return ReconciliationResult(
                rule="captured_amount_equals_total",
                passed=False,
                detail=f"payment {payment.payment_ref} amount={payment.amount_fils}, total={order.total_fils}",
            )
        if not 0 <= payment.refunded_fils <= payment.amount_fils:
            return ReconciliationResult(
                rule="captured_amount_equals_total",
                passed=False,
                detail=f"payment {payment.payment_ref} refunded={payment.refunded_fils} outside 0..{payment.amount_fils}",
            )
    return ReconciliationResult(rule="captured_amount_equals_total", passed=True, detail="ok")


def check_commission_within_subtotal(
    order: OrderModel, commissions: Iterable[CommissionModel]
) -> ReconciliationResult:
    commission_total = sum(commission.amount_fils for commission in commissions)
    return ReconciliationResult(
        rule="commission_within_subtotal",
        passed=commission_total <= order.subtotal_fils,
        detail=f"commissions={commission_total}, subtotal={order.subtotal_fils}",
    )


def check_commission_entries(
    commissions: Iterable[CommissionModel], entries: Iterable[LedgerEntryModel]
) -> ReconciliationResult:
    posted: dict[str, int] = {}
    for entry in entries:
        if entry.entry_type == LedgerEntryType.COMMISSION.value:
            posted[entry.retailer_id] = posted.get(entry.retailer_id, 0) + 1
    for commission in commissions:
        count = posted.pop(commission.retailer_id, 0)
        if count != 1:
            return ReconciliationResult(
                rule="one_ledger_entry_per_commission",
                passed=False,
                detail=f"retailer={commission.retailer_id} has {count} commission entries",
            )
    if posted:
        return ReconciliationResult(
            rule="one_ledger_entry_per_commission",
            passed=False,
            detail=f"entries without commission for retailers={sorted(posted)}",
        )
    return ReconciliationResult(rule="one_ledger_entry_per_commission", passed=True, detail="ok")


def run_order_reconciliation(session: Session, order_id: str) -> Result[dict]:
    order = session.get(OrderModel, order_id)
    if order is None:
        return Err(kind=ErrorKind.NOT_FOUND, detail="Order not found")

    line_items = session.scalars(select(OrderLineItemModel).where(OrderLineItemModel.order_id == order_id)).all()
    payments = session.scalars(select(PaymentModel).where(PaymentModel.order_id == order_id)).all()
    commissions = session.scalars(select(CommissionModel).where(CommissionModel.order_id == order_id)).all()
    entries = session.scalars(select(LedgerEntryModel).where(LedgerEntryModel.order_id == order_id)).all()

    results = [
        check_total_equals_parts(order),
        check_line_items_sum(order, line_items),
        check_single_settled_payment(payments),
        check_captured_amount(order, payments),
        check_commission_within_subtotal(order, commissions),
        check_commission_entries(commissions, entries),
    ]
    return Ok(
        {
            "order_id": order_id,
            "status": order.status,
            "passed": all(result.passed for result in results),
            "results": [asdict(result) for result in results],
        }
    )
