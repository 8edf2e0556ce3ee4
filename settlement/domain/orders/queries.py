from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from settlement.core.security import Actor
from settlement.domain.pagination import keyset_page
from settlement.domain.result import Err, ErrorKind, Ok, Result
from settlement.domain.states import OrderStatus
from settlement.persistence.models import (
    CommissionModel,
    OrderLineItemModel,
    OrderModel,
    PaymentModel,
    RefundModel,
)


def find_order(session: Session, actor: Actor, order_id: str) -> OrderModel | None:
    stmt = select(OrderModel).where(OrderModel.id == order_id)
    # Customers only ever see their own orders; a foreign id reads as missing.
    if not actor.privileged:
        stmt = stmt.where(OrderModel.customer_id == actor.id)
    return session.scalar(stmt)


def order_detail(session: Session, order: OrderModel, include_commissions: bool = False) -> dict:
    line_items = session.scalars(
        select(OrderLineItemModel).where(OrderLineItemModel.order_id == order.id).order_by(OrderLineItemModel.id)
    ).all()
    payments = session.scalars(
        select(PaymentModel).where(PaymentModel.order_id == order.id).order_by(PaymentModel.created_at)
    ).all()
    refunds = session.scalars(
        select(RefundModel).where(RefundModel.order_id == order.id).order_by(RefundModel.created_at)
    ).all()

    detail = {
        "id": order.id,
        "order_ref": order.order_ref,
        "customer_id": order.customer_id,
        "status": order.status,
        "subtotal_fils": order.subtotal_fils,
        "delivery_fee_fils": order.delivery_fee_fils,
        "total_fils": order.total_fils,
        "shipping_address": order.shipping_address,
        "notes": order.notes,
        "paid_at": order.paid_at,
        "created_at": order.created_at,
        "line_items": [
            {
                "id": item.id,
                "product_id": item.product_id,
                "retailer_id": item.retailer_id,
                "product_name": item.product_name,
                "sku": item.sku,
                "quantity": item.quantity,
                "unit_price_fils": item.unit_price_fils,
                "total_fils": item.total_fils,
            }
            for item in line_items
        ],
        "payments": [
            {
                "id": payment.id,
                "payment_ref": payment.payment_ref,
                "method": payment.method,
                "status": payment.status,
                "amount_fils": payment.amount_fils,
                "refunded_fils": payment.refunded_fils,
                "failure_code": payment.failure_code,
                "captured_at": payment.captured_at,
            }
            for payment in payments
        ],
        "refunds": [
            {
                "id": refund.id,
                "refund_ref": refund.refund_ref,
                "amount_fils": refund.amount_fils,
                "status": refund.status,
                "reason": refund.reason,
            }
            for refund in refunds
        ],
    }
    if include_commissions:
        commissions = session.scalars(
            select(CommissionModel).where(CommissionModel.order_id == order.id).order_by(CommissionModel.retailer_id)
        ).all()
        detail["commissions"] = [
            {
                "retailer_id": commission.retailer_id,
                "rate_bps": commission.rate_bps,
                "gross_fils": commission.gross_fils,
                "amount_fils": commission.amount_fils,
                "net_amount_fils": commission.net_amount_fils,
            }
            for commission in commissions
        ]
    return detail


def get_order(session: Session, actor: Actor, order_id: str) -> Result[dict]:
    order = find_order(session, actor, order_id)
    if order is None:
        return Err(kind=ErrorKind.NOT_FOUND, detail="Order not found")
    return Ok(order_detail(session, order, include_commissions=actor.privileged))


def list_orders(
    session: Session,
    actor: Actor,
    status: OrderStatus | None = None,
    cursor: str | None = None,
    limit: int = 20,
) -> dict:
    stmt = select(OrderModel)
    if not actor.privileged:
        stmt = stmt.where(OrderModel.customer_id == actor.id)
    if status is not None:
        stmt = stmt.where(OrderModel.status == status.value)

    page = keyset_page(session, stmt, OrderModel, cursor, limit)
    counts = dict(
        session.execute(
            select(OrderLineItemModel.order_id, func.count())
            .where(OrderLineItemModel.order_id.in_([order.id for order in page.items]))
            .group_by(OrderLineItemModel.order_id)
        ).all()
    )
    return {
        "items": [
            {
                "id": order.id,
                "order_ref": order.order_ref,
                "status": order.status,
                "total_fils": order.total_fils,
                "created_at": order.created_at,
                "line_item_count": counts.get(order.id, 0),
            }
            for order in page.items
        ],
        "next_cursor": page.next_cursor,
    }
