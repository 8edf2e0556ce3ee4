from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from settlement.core.config import Settings, get_settings
from settlement.domain.commissions import RetailerAdjustment, adjust_for_refund, post_commissions
from settlement.domain.money import new_reference
from settlement.domain.result import (
    Err,
    ErrorKind,
    Ok,
    Result,
    UnitOfWorkAborted,
    abort,
    invalid_state,
)
from settlement.domain.states import OrderStatus, PaymentStatus, RefundStatus
from settlement.domain.transitions import transition_order
from settlement.integrations.tracking import EventTracker, track_safely
from settlement.payments.gateway import PaymentGateway, PaymentGatewayError
from settlement.persistence import pg
from settlement.persistence.models import OrderModel, PaymentModel, RefundModel

logger = logging.getLogger(__name__)


@dataclass
class RefundApplied:
    refund_id: str
    refund_ref: str
    order_id: str
    payment_id: str
    amount_fils: int
    full: bool
    order_status: str
    payment_status: str
    adjustments: list[RetailerAdjustment] = field(default_factory=list)


@dataclass
class _RefundIntent:
    refund_id: str
    payment_id: str
    external_id: str
    amount_fils: int


RefundHook = Callable[[Session, RefundApplied], None]
IntentHook = Callable[[Session], None]


class RefundService:
    def __init__(
        self,
        gateway: PaymentGateway,
        tracker: EventTracker | None = None,
        session_factory: pg.SessionFactory | None = None,
        settings: Settings | None = None,
    ):
        self.gateway = gateway
        self.tracker = tracker
        self.session_factory = session_factory
        self.settings = settings or get_settings()

    def refund(
        self,
        order_id: str,
        amount: int | None,
        reason: str | None,
        allowed: Iterable[OrderStatus],
        actor_id: str,
        ticket_id: str | None = None,
        label: str = "Refund",
        on_intent: IntentHook | None = None,
        on_applied: RefundHook | None = None,
    ) -> Result[RefundApplied]:
        """Refund ``amount`` (or everything still refundable when ``None``)."""
        allowed = frozenset(allowed)
        try:
            with pg.session_scope(self.session_factory) as session:
                if on_intent is not None:
                    on_intent(session)
                intent = self._record_intent(session, order_id, amount, reason, allowed, ticket_id)
        except UnitOfWorkAborted as exc:
            return exc.error
        except IntegrityError:
            # A concurrent refund for the same payment or dispute got its row in first.
            return Err(kind=ErrorKind.INVALID_STATE, detail="A refund is already in progress for this order")

        try:
            action = self.gateway.refund(intent.external_id, intent.amount_fils)
        except PaymentGatewayError as exc:
            logger.error("refund failed: order=%s refund=%s code=%s: %s", order_id, intent.refund_id, exc.code.value, exc)
            self._record_failure(intent.refund_id, str(exc))
            return Err(
                kind=ErrorKind.REFUND_FAILED,
                detail=f"Refund failed: {exc}",
                gateway_code=exc.code.value,
                client_error=False,
                context={"refund_id": intent.refund_id},
            )

        with pg.session_scope(self.session_factory) as session:
            applied = self._record_success(session, intent, action.action_id, allowed, label)
            if on_applied is not None:
                on_applied(session, applied)

        track_safely(
            self.tracker,
            "order.refunded",
            actor_id,
            {
                "order_id": order_id,
                "payment_id": applied.payment_id,
                "amount_fils": applied.amount_fils,
                "full": applied.full,
                "reason": reason,
            },
        )
        return Ok(applied)

    def _record_intent(
        self,
        session: Session,
        order_id: str,
        amount: int | None,
        reason: str | None,
        allowed: frozenset[OrderStatus],
        ticket_id: str | None,
    ) -> _RefundIntent:
        order = session.get(OrderModel, order_id)
        if order is None:
            raise abort(ErrorKind.NOT_FOUND, "Order not found")
        if OrderStatus(order.status) not in allowed:
            raise UnitOfWorkAborted(invalid_state("Order", order.status, "refunded"))

        captured = session.scalars(
            select(PaymentModel)
            .where(PaymentModel.order_id == order_id)
            .where(PaymentModel.status == PaymentStatus.CAPTURED.value)
        ).all()
        if len(captured) != 1:
            raise abort(ErrorKind.NO_CAPTURED_PAYMENT, "No captured payment found for this order")
        payment = captured[0]

        in_flight = session.scalar(
            select(RefundModel.id)
            .where(RefundModel.payment_id == payment.id)
            .where(RefundModel.status == RefundStatus.PENDING.value)
        )
        if in_flight is not None:
            raise abort(ErrorKind.INVALID_STATE, "A refund is already in progress for this payment")
        if ticket_id is not None:
            issued = session.scalar(
                select(RefundModel.id)
                .where(RefundModel.ticket_id == ticket_id)
                .where(RefundModel.status == RefundStatus.SUCCEEDED.value)
            )
            if issued is not None:
                raise abort(
                    ErrorKind.INVALID_STATE, "A refund has already been issued for this dispute", refund_id=issued
                )

        remaining = payment.amount_fils - payment.refunded_fils
        refund_amount = remaining if amount is None else amount
        if refund_amount <= 0:
            raise abort(ErrorKind.INVALID_AMOUNT, "Refund amount must be positive")
        if refund_amount > remaining:
            raise abort(
                ErrorKind.INVALID_AMOUNT,
                "Refund amount cannot exceed payment amount",
                refundable_fils=remaining,
            )
        if not payment.external_id:
            raise UnitOfWorkAborted(
                Err(
                    kind=ErrorKind.REFUND_FAILED,
                    detail="No external payment reference available",
                    gateway_code="NOT_REFUNDABLE",
                    client_error=False,
                )
            )

        refund = RefundModel(
            refund_ref=new_reference("RFD"),
            order_id=order_id,
            payment_id=payment.id,
            ticket_id=ticket_id,
            amount_fils=refund_amount,
            reason=reason,
            status=RefundStatus.PENDING.value,
        )
        session.add(refund)
        session.flush()
        return _RefundIntent(
            refund_id=refund.id,
            payment_id=payment.id,
            external_id=payment.external_id,
            amount_fils=refund_amount,
        )

    def _record_failure(self, refund_id: str, reason: str) -> None:
        with pg.session_scope(self.session_factory) as session:
            refund = session.get(RefundModel, refund_id)
            if refund is not None:
                refund.status = RefundStatus.FAILED.value
                refund.failure_reason = reason

    def _record_success(
        self,
        session: Session,
        intent: _RefundIntent,
        action_id: str,
        allowed: frozenset[OrderStatus],
        label: str,
    ) -> RefundApplied:
        now = datetime.now(timezone.utc)
        refund = session.get(RefundModel, intent.refund_id)
        payment = session.get(PaymentModel, intent.payment_id)
        order = session.get(OrderModel, refund.order_id)

        # Commissions queued for async posting may not exist yet; post them
        # first so the adjustment below has something to unwind.
        post_commissions(session, order.id, self.settings.default_commission_rate_bps)

        refund.status = RefundStatus.SUCCEEDED.value
        refund.action_id = action_id
        refunded_before = payment.refunded_fils
        payment.refunded_fils += intent.amount_fils
        payment.updated_at = now
        full = payment.refunded_fils >= payment.amount_fils

        if full:
            payment.status = PaymentStatus.REFUNDED.value
            moved = transition_order(
                session, order.id, allowed | {OrderStatus.DISPUTED}, OrderStatus.REFUNDED, refunded_at=now
            )
        else:
            moved = transition_order(session, order.id, {OrderStatus.DISPUTED}, OrderStatus.PAID)
        if full and not moved:
            logger.warning("refunded payment=%s but order=%s left in status=%s", payment.id, order.id, order.status)
        session.flush()

        adjusted = adjust_for_refund(
            session,
            order.id,
            refund.id,
            intent.amount_fils,
            order.total_fils,
            label=label,
            refunded_before=refunded_before,
        )
        if isinstance(adjusted, Err):
            raise UnitOfWorkAborted(adjusted)

        session.refresh(order)
        logger.info(
            "refund recorded: order=%s refund=%s amount_fils=%s full=%s",
            order.id,
            refund.refund_ref,
            intent.amount_fils,
            full,
        )
        return RefundApplied(
            refund_id=refund.id,
            refund_ref=refund.refund_ref,
            order_id=order.id,
            payment_id=payment.id,
            amount_fils=intent.amount_fils,
            full=full,
            order_status=order.status,
            payment_status=payment.status,
            adjustments=adjusted.value.adjustments,
        )
