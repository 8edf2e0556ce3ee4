from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from settlement.api.dependencies import get_order_service
from settlement.api.errors import unwrap
from settlement.api.schemas import (
    AdvanceOrderRequest,
    CreateOrderRequest,
    ProcessPaymentRequest,
    RefundOrderRequest,
)
from settlement.core.config import get_settings
from settlement.core.security import Actor, get_actor, require_customer, require_privileged
from settlement.domain.orders import queries
from settlement.domain.orders.workflow import OrderSettlementService
from settlement.domain.states import OrderStatus
from settlement.payments.gateway import CustomerDetails
from settlement.persistence.pg import get_session

router = APIRouter(tags=["orders"])
settings = get_settings()


@router.post("/orders", status_code=201)
def create_order(
    req: CreateOrderRequest,
    actor: Actor = Depends(get_actor),
    service: OrderSettlementService = Depends(get_order_service),
):
    require_customer(actor)
    return unwrap(service.create_order(actor.id, req.shipping_address.model_dump(), req.notes))


@router.post("/orders/{order_id}/payments")
def process_payment(
    order_id: str,
    req: ProcessPaymentRequest,
    actor: Actor = Depends(get_actor),
    service: OrderSettlementService = Depends(get_order_service),
):
    customer = None
    if req.customer_email or req.customer_name:
        customer = CustomerDetails(email=req.customer_email, name=req.customer_name)
    outcome = unwrap(service.process_payment(actor, order_id, req.method, req.token, customer))
    return asdict(outcome)


@router.get("/orders/{order_id}")
def get_order(order_id: str, actor: Actor = Depends(get_actor), session: Session = Depends(get_session)):
    return unwrap(queries.get_order(session, actor, order_id))


@router.get("/orders")
def list_orders(
    status: OrderStatus | None = Query(default=None),
    cursor: str | None = Query(default=None),
    limit: int = Query(default=settings.page_limit_default, ge=1, le=settings.page_limit_max),
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    return queries.list_orders(session, actor, status=status, cursor=cursor, limit=limit)


@router.post("/orders/{order_id}/cancel")
def cancel_order(
    order_id: str,
    actor: Actor = Depends(get_actor),
    service: OrderSettlementService = Depends(get_order_service),
):
    return unwrap(service.cancel_order(actor, order_id))


@router.post("/orders/{order_id}/refund")
def refund_order(
    order_id: str,
    req: RefundOrderRequest | None = None,
    actor: Actor = Depends(get_actor),
    service: OrderSettlementService = Depends(get_order_service),
):
    applied = unwrap(service.refund_order(actor, order_id, req.reason if req else None))
    return asdict(applied)


@router.post("/orders/{order_id}/advance")
def advance_order(
    order_id: str,
    req: AdvanceOrderRequest,
    actor: Actor = Depends(get_actor),
    service: OrderSettlementService = Depends(get_order_service),
):
    require_privileged(actor)
    return unwrap(service.advance_order(order_id, req.status))


@router.post("/payments/{payment_id}/capture")
def capture_payment(
    payment_id: str,
    actor: Actor = Depends(get_actor),
    service: OrderSettlementService = Depends(get_order_service),
):
    require_privileged(actor)
    return asdict(unwrap(service.retry_capture(payment_id, actor.id)))
