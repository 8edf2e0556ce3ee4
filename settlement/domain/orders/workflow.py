from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from settlement.core.config import Settings, get_settings
from settlement.core.security import Actor
from settlement.domain.cart import clear_cart
from settlement.domain.commissions import post_commissions
from settlement.domain.money import new_reference
from settlement.domain.orders.queries import find_order, order_detail
from settlement.domain.refunds import RefundApplied, RefundService
from settlement.domain.result import (
    Err,
    ErrorKind,
    Ok,
    Result,
    UnitOfWorkAborted,
    abort,
    invalid_state,
)
from settlement.domain.states import (
    CANCELLABLE,
    FULFILLMENT_NEXT,
    REFUNDABLE,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    ProductStatus,
)
from settlement.domain.stock import release, reserve
from settlement.domain.transitions import transition_order
from settlement.integrations.jobs import COMMISSION_CALCULATE, JobQueue, OutboxJobQueue
from settlement.integrations.tracking import EventTracker, track_safely
from settlement.payments.gateway import (
    CustomerDetails,
    GatewayErrorCode,
    PaymentGateway,
    PaymentGatewayError,
    PaymentIntentResult,
    is_simulated_id,
    map_decline_reason,
)
from settlement.persistence import pg
from settlement.persistence.models import (
    CartItemModel,
    CartModel,
    OrderLineItemModel,
    OrderModel,
    PaymentModel,
    ProductModel,
)

logger = logging.getLogger(__name__)

IN_FLIGHT_PAYMENT_STATUSES = (PaymentStatus.PENDING.value, PaymentStatus.AUTHORIZED.value)
ORDER_NOT_PAYABLE = "ORDER_NOT_PAYABLE"
# Money captured for an order that had already left PENDING_PAYMENT, not yet returned.
STRAY_CAPTURE = "STRAY_CAPTURE"


@dataclass
class PaymentOutcome:
    payment_id: str
    payment_ref: str
    status: str
    order_id: str
    order_status: str
    external_id: str | None = None
    capture_failed: bool = False
    simulated: bool = False


@dataclass
class _PaymentIntent:
    payment_id: str
    payment_ref: str
    order_id: str
    order_ref: str
    amount_fils: int


class OrderSettlementService:
    def __init__(
        self,
        gateway: PaymentGateway,
        jobs: JobQueue | None = None,
        tracker: EventTracker | None = None,
        session_factory: pg.SessionFactory | None = None,
        settings: Settings | None = None,
    ):
        self.gateway = gateway
        self.jobs = jobs or OutboxJobQueue()
        self.tracker = tracker
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.refunds = RefundService(gateway, tracker, session_factory, self.settings)

    # checkout

    def create_order(self, customer_id: str, shipping_address: dict[str, Any], notes: str | None = None) -> Result[dict]:
        """Turn the customer's cart into a ``PENDING_PAYMENT`` order."""
        try:
            with pg.session_scope(self.session_factory) as session:
                order = self._place_order(session, customer_id, shipping_address, notes)
                detail = order_detail(session, order)
        except UnitOfWorkAborted as exc:
            return exc.error

        track_safely(
            self.tracker,
            "order.created",
            customer_id,
            {
                "order_id": detail["id"],
                "order_ref": detail["order_ref"],
                "total_fils": detail["total_fils"],
                "item_count": len(detail["line_items"]),
            },
        )
        return Ok(detail)

    def _place_order(
        self,
        session: Session,
        customer_id: str,
        shipping_address: dict[str, Any],
        notes: str | None,
    ) -> OrderModel:
        cart = session.scalar(select(CartModel).where(CartModel.customer_id == customer_id))
        items = []
        if cart is not None:
            items = session.scalars(
                select(CartItemModel).where(CartItemModel.cart_id == cart.id).order_by(CartItemModel.created_at)
            ).all()
        if not items:
            raise abort(ErrorKind.EMPTY_CART, "Cart is empty")

        lines: list[tuple[ProductModel, int]] = []
        for item in items:
            product = session.get(ProductModel, item.product_id)
            if product is None or product.validation_status != ProductStatus.ACTIVE.value:
                raise abort(
                    ErrorKind.PRODUCT_UNAVAILABLE,
                    f"Product {item.product_id} is no longer available",
                    product_id=item.product_id,
                )
            if product.stock_quantity < item.quantity:
                raise abort(
                    ErrorKind.INSUFFICIENT_STOCK,
                    f"Insufficient stock for {product.name}",
                    product_id=product.id,
                    available=product.stock_quantity,
                    requested=item.quantity,
                )
            lines.append((product, item.quantity))

        subtotal = sum(product.price_fils * quantity for product, quantity in lines)
        delivery_fee = self.settings.delivery_fee_fils
        order = OrderModel(
            order_ref=new_reference("ORD"),
            customer_id=customer_id,
            status=OrderStatus.PENDING_PAYMENT.value,
            subtotal_fils=subtotal,
            delivery_fee_fils=delivery_fee,
            total_fils=subtotal + delivery_fee,
            shipping_address=shipping_address,
            notes=notes,
        )
        session.add(order)
        session.flush()

        for product, quantity in lines:
            reserved = reserve(session, product.id, quantity)
            if isinstance(reserved, Err):
                raise UnitOfWorkAborted(reserved)
            session.add(
                OrderLineItemModel(
                    order_id=order.id,
                    product_id=product.id,
                    retailer_id=product.retailer_id,
                    product_name=product.name,
                    sku=product.sku,
                    quantity=quantity,
                    unit_price_fils=product.price_fils,
                    total_fils=product.price_fils * quantity,
                )
            )

        clear_cart(session, customer_id)
        session.flush()
        logger.info(
            "order created: order=%s ref=%s customer=%s total_fils=%s",
            order.id,
            order.order_ref,
            customer_id,
            order.total_fils,
        )
        return order

    # payment

    def process_payment(
        self,
        actor: Actor,
        order_id: str,
        method: PaymentMethod,
        token: str,
        customer: CustomerDetails | None = None,
    ) -> Result[PaymentOutcome]:
        try:
            with pg.session_scope(self.session_factory) as session:
                intent = self._record_payment_intent(session, actor, order_id, method)
        except UnitOfWorkAborted as exc:
            return exc.error

        try:
            result = self.gateway.authorize(
                amount=intent.amount_fils,
                token=token,
                reference=intent.payment_ref,
                capture=True,
                method=method.value,
                currency=self.settings.currency,
                description=f"Order {intent.order_ref}",
                customer=customer,
            )
        except PaymentGatewayError as exc:
            self.record_payment_failure(intent.payment_id, exc.code.value, str(exc))
            return Err(
                kind=ErrorKind.PAYMENT_FAILED,
                detail=f"Payment failed: {exc}",
                gateway_code=exc.code.value,
                client_error=exc.client_error,
                context={"payment_id": intent.payment_id},
            )

        return self.apply_gateway_result(intent.payment_id, result, actor.id)

    def _record_payment_intent(
        self, session: Session, actor: Actor, order_id: str, method: PaymentMethod
    ) -> _PaymentIntent:
        order = find_order(session, actor, order_id)
        if order is None:
            raise abort(ErrorKind.NOT_FOUND, "Order not found")
        if order.status != OrderStatus.PENDING_PAYMENT.value:
            raise UnitOfWorkAborted(invalid_state("Order", order.status, "paid"))

        in_flight = session.scalar(
            select(PaymentModel.id)
            .where(PaymentModel.order_id == order.id)
            .where(PaymentModel.status.in_(IN_FLIGHT_PAYMENT_STATUSES))
        )
        if in_flight is not None:
            raise abort(
                ErrorKind.INVALID_STATE,
                "A payment attempt for this order is still being processed",
                payment_id=in_flight,
            )

        payment = PaymentModel(
            payment_ref=new_reference("PAY"),
            order_id=order.id,
            method=method.value,
            status=PaymentStatus.PENDING.value,
            amount_fils=order.total_fils,
        )
        session.add(payment)
        session.flush()
        return _PaymentIntent(
            payment_id=payment.id,
            payment_ref=payment.payment_ref,
            order_id=order.id,
            order_ref=order.order_ref,
            amount_fils=order.total_fils,
        )

    def apply_gateway_result(
        self, payment_id: str, result: PaymentIntentResult, user_id: str
    ) -> Result[PaymentOutcome]:
        if result.status == "Declined":
            code = map_decline_reason(result.response_code)
            reason = result.response_summary or "Payment declined"
            self.record_payment_failure(payment_id, code.value, reason)
            return Err(
                kind=ErrorKind.PAYMENT_FAILED,
                detail=f"Payment failed: {reason}",
                gateway_code=code.value,
                client_error=True,
                context={"payment_id": payment_id},
            )

        if result.status == "Pending":
            with pg.session_scope(self.session_factory) as session:
                payment = session.get(PaymentModel, payment_id)
                payment.external_id = result.external_id
                payment.updated_at = datetime.now(timezone.utc)
                logger.info("payment pending at gateway: payment=%s external=%s", payment_id, result.external_id)
                return Ok(self._outcome(session, payment))

        if result.status == "Authorized":
            self._mark_authorized(payment_id, result.external_id)
            return self._capture(payment_id, result.external_id, user_id)

        return self._record_capture(payment_id, result.external_id, user_id)

    def retry_capture(self, payment_id: str, user_id: str | None = None) -> Result[PaymentOutcome]:
        """Capture an ``AUTHORIZED`` payment whose earlier capture call failed."""
        with pg.session_scope(self.session_factory) as session:
            payment = session.get(PaymentModel, payment_id)
            if payment is None:
                return Err(kind=ErrorKind.NOT_FOUND, detail="Payment not found")
            if payment.status == PaymentStatus.CAPTURED.value:
                return Ok(self._outcome(session, payment))
            if payment.status != PaymentStatus.AUTHORIZED.value or not payment.external_id:
                return invalid_state("Payment", payment.status, "captured")
            external_id = payment.external_id
        return self._capture(payment_id, external_id, user_id or self.settings.system_actor_id)

    def _capture(self, payment_id: str, external_id: str, user_id: str) -> Result[PaymentOutcome]:
        with pg.session_scope(self.session_factory) as session:
            payment = session.get(PaymentModel, payment_id)
            stray = payment.failure_code == STRAY_CAPTURE
            order_status = session.get(OrderModel, payment.order_id).status
        if stray:
            return self._return_stray_capture(payment_id, external_id)
        if order_status != OrderStatus.PENDING_PAYMENT.value:
            self.record_payment_failure(
                payment_id, ORDER_NOT_PAYABLE, f"Order is {order_status}, authorization was not captured"
            )
            return invalid_state("Order", order_status, "paid")

        try:
            self.gateway.capture(external_id)
        except PaymentGatewayError as exc:
            if exc.code != GatewayErrorCode.ALREADY_CAPTURED:
                logger.error(
                    "capture failed, payment left AUTHORIZED: payment=%s code=%s: %s",
                    payment_id,
                    exc.code.value,
                    exc,
                )
                with pg.session_scope(self.session_factory) as session:
                    payment = session.get(PaymentModel, payment_id)
                    payment.failure_code = exc.code.value
                    payment.failure_reason = str(exc)
                    return Ok(self._outcome(session, payment, capture_failed=True))
            logger.info("gateway reports payment=%s already captured", payment_id)
        return self._record_capture(payment_id, external_id, user_id)

    def _mark_authorized(self, payment_id: str, external_id: str) -> None:
        now = datetime.now(timezone.utc)
        with pg.session_scope(self.session_factory) as session:
            payment = session.get(PaymentModel, payment_id)
            payment.status = PaymentStatus.AUTHORIZED.value
            payment.external_id = external_id
            payment.authorized_at = now
            payment.updated_at = now

    def record_payment_failure(self, payment_id: str, code: str, reason: str) -> None:
        logger.warning("payment failed: payment=%s code=%s reason=%s", payment_id, code, reason)
        with pg.session_scope(self.session_factory) as session:
            payment = session.get(PaymentModel, payment_id)
            if payment.status not in IN_FLIGHT_PAYMENT_STATUSES:
                logger.warning("payment=%s already settled as %s, failure not recorded", payment_id, payment.status)
                return
            payment.status = PaymentStatus.FAILED.value
            payment.failure_code = code
            payment.failure_reason = reason
            payment.updated_at = datetime.now(timezone.utc)

    def _record_capture(self, payment_id: str, external_id: str, user_id: str) -> Result[PaymentOutcome]:
        now = datetime.now(timezone.utc)
        with pg.session_scope(self.session_factory) as session:
            payment = session.get(PaymentModel, payment_id)
            if payment.status == PaymentStatus.CAPTURED.value:
                return Ok(self._outcome(session, payment))

            paid = transition_order(
                session, payment.order_id, {OrderStatus.PENDING_PAYMENT}, OrderStatus.PAID, paid_at=now
            )
            payment.external_id = external_id
            payment.updated_at = now
            if not paid:
                logger.error(
                    "payment=%s captured but order=%s was no longer awaiting payment", payment_id, payment.order_id
                )
                payment.failure_code = STRAY_CAPTURE
                payment.failure_reason = "Captured after the order stopped awaiting payment"
                outcome = None
            else:
                outcome = self._settle_capture(session, payment, now)
        if outcome is None:
            return self._return_stray_capture(payment_id, external_id)

        logger.info("payment captured: payment=%s order=%s", payment_id, outcome.order_id)
        track_safely(
            self.tracker,
            "order.paid",
            user_id,
            {
                "order_id": outcome.order_id,
                "payment_id": payment_id,
                "amount_fils": payment.amount_fils,
                "method": payment.method,
                "simulated": outcome.simulated,
            },
        )
        return Ok(outcome)

    def _settle_capture(self, session: Session, payment: PaymentModel, now: datetime) -> PaymentOutcome:
        payment.status = PaymentStatus.CAPTURED.value
        payment.authorized_at = payment.authorized_at or now
        payment.captured_at = now
        payment.failure_code = None
        payment.failure_reason = None
        session.flush()

        if self.settings.commission_mode == "queue":
            self.jobs.enqueue(session, COMMISSION_CALCULATE, {"order_id": payment.order_id})
        else:
            posted = post_commissions(session, payment.order_id, self.settings.default_commission_rate_bps)
            if isinstance(posted, Err):
                logger.error("commission posting failed: order=%s: %s", payment.order_id, posted.detail)
        return self._outcome(session, payment)

    def _return_stray_capture(self, payment_id: str, external_id: str) -> Result[PaymentOutcome]:
        with pg.session_scope(self.session_factory) as session:
            amount = session.get(PaymentModel, payment_id).amount_fils
        try:
            self.gateway.refund(external_id, amount)
        except PaymentGatewayError as exc:
            if exc.code != GatewayErrorCode.ALREADY_REFUNDED:
                logger.error(
                    "stray capture not returned: payment=%s code=%s: %s", payment_id, exc.code.value, exc
                )
                return Err(
                    kind=ErrorKind.REFUND_FAILED,
                    detail=f"Captured amount could not be returned: {exc}",
                    gateway_code=exc.code.value,
                    client_error=False,
                    context={"payment_id": payment_id},
                )

        with pg.session_scope(self.session_factory) as session:
            payment = session.get(PaymentModel, payment_id)
            payment.status = PaymentStatus.FAILED.value
            payment.refunded_fils = payment.amount_fils
            payment.failure_code = ORDER_NOT_PAYABLE
            payment.failure_reason = "Captured after the order stopped awaiting payment; amount returned"
            payment.updated_at = datetime.now(timezone.utc)
            order_status = session.get(OrderModel, payment.order_id).status
        logger.warning("stray capture returned: payment=%s amount=%s", payment_id, amount)
        return Err(
            kind=ErrorKind.INVALID_STATE,
            detail=f"Order cannot be paid in its current status ({order_status}); the captured amount was returned",
            context={"status": order_status, "payment_id": payment_id},
        )

    @staticmethod
    def _outcome(session: Session, payment: PaymentModel, capture_failed: bool = False) -> PaymentOutcome:
        order = session.get(OrderModel, payment.order_id)
        session.refresh(order)
        return PaymentOutcome(
            payment_id=payment.id,
            payment_ref=payment.payment_ref,
            status=payment.status,
            order_id=order.id,
            order_status=order.status,
            external_id=payment.external_id,
            capture_failed=capture_failed,
            simulated=is_simulated_id(payment.external_id),
        )

    # lifecycle

    def cancel_order(self, actor: Actor, order_id: str) -> Result[dict]:
        now = datetime.now(timezone.utc)
        try:
            with pg.session_scope(self.session_factory) as session:
                order = find_order(session, actor, order_id)
                if order is None:
                    raise abort(ErrorKind.NOT_FOUND, "Order not found")
                in_flight = session.scalar(
                    select(PaymentModel.id)
                    .where(PaymentModel.order_id == order.id)
                    .where(PaymentModel.status.in_(IN_FLIGHT_PAYMENT_STATUSES))
                )
                if in_flight is not None:
                    raise abort(
                        ErrorKind.INVALID_STATE,
                        "A payment attempt for this order is still being processed",
                        payment_id=in_flight,
                    )
                if not transition_order(session, order.id, CANCELLABLE, OrderStatus.CANCELLED, cancelled_at=now):
                    session.refresh(order)
                    raise UnitOfWorkAborted(invalid_state("Order", order.status, "cancelled"))

                line_items = session.scalars(
                    select(OrderLineItemModel).where(OrderLineItemModel.order_id == order.id)
                ).all()
                for item in line_items:
                    release(session, item.product_id, item.quantity)
                result = {"id": order.id, "order_ref": order.order_ref, "status": OrderStatus.CANCELLED.value}
        except UnitOfWorkAborted as exc:
            return exc.error

        logger.info("order cancelled: order=%s by=%s", order_id, actor.id)
        track_safely(self.tracker, "order.cancelled", actor.id, {"order_id": order_id})
        return Ok(result)

    def advance_order(self, order_id: str, target: OrderStatus) -> Result[dict]:
        sources = [source for source, following in FULFILLMENT_NEXT.items() if following == target]
        if not sources:
            return Err(kind=ErrorKind.INVALID_STATE, detail=f"Orders cannot be advanced to {target.value}")

        with pg.session_scope(self.session_factory) as session:
            order = session.get(OrderModel, order_id)
            if order is None:
                return Err(kind=ErrorKind.NOT_FOUND, detail="Order not found")
            if not transition_order(session, order.id, sources, target):
                return invalid_state("Order", order.status, f"advanced to {target.value}")
            logger.info("order advanced: order=%s status=%s", order_id, target.value)
            return Ok({"id": order.id, "order_ref": order.order_ref, "status": target.value})

    def refund_order(self, actor: Actor, order_id: str, reason: str | None = None) -> Result[RefundApplied]:
        """Refund whatever is still captured on the order, adjusting commissions."""
        with pg.session_scope(self.session_factory) as session:
            if find_order(session, actor, order_id) is None:
                return Err(kind=ErrorKind.NOT_FOUND, detail="Order not found")
        return self.refunds.refund(order_id, None, reason, REFUNDABLE, actor.id)
