from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from settlement.domain.money import format_fils, new_reference
from settlement.domain.pagination import keyset_page
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
    DISPUTABLE,
    OPEN_TICKET_STATUSES,
    REFUNDABLE,
    TICKET_TRANSITIONS,
    DisputeResolution,
    OrderStatus,
    TicketStatus,
    values,
)
from settlement.domain.transitions import transition_order
from settlement.integrations.tracking import EventTracker, track_safely
from settlement.persistence import pg
from settlement.persistence.models import OrderModel, SupportTicketModel, TicketMessageModel

logger = logging.getLogger(__name__)

DISPUTE_CATEGORY = "DISPUTE"
SYSTEM_ROLE = "system"

# Where a disputed order goes when no money moves.
RESOLUTION_ORDER_STATUS = {
    DisputeResolution.REPLACEMENT: OrderStatus.PROCESSING,
    DisputeResolution.REJECTED: OrderStatus.DELIVERED,
}


def _with_notes(body: str, notes: str | None) -> str:
    return f"{body} Notes: {notes}" if notes else body


def _add_message(session: Session, ticket_id: str, sender_id: str, body: str) -> None:
    session.add(TicketMessageModel(ticket_id=ticket_id, sender_id=sender_id, sender_role=SYSTEM_ROLE, body=body))


def _move_open_ticket(session: Session, ticket_id: str, target: TicketStatus, **fields) -> bool:
    result = session.execute(
        update(SupportTicketModel)
        .where(SupportTicketModel.id == ticket_id)
        .where(SupportTicketModel.status.in_(values(OPEN_TICKET_STATUSES)))
        .values(status=target.value, updated_at=datetime.now(timezone.utc), **fields)
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount == 1


def _load_dispute(session: Session, ticket_id: str, customer_id: str | None = None) -> SupportTicketModel:
    stmt = select(SupportTicketModel).where(SupportTicketModel.id == ticket_id)
    if customer_id is not None:
        stmt = stmt.where(SupportTicketModel.customer_id == customer_id)
    ticket = session.scalar(stmt)
    if ticket is None:
        raise abort(ErrorKind.NOT_FOUND, "Ticket not found")
    if ticket.category != DISPUTE_CATEGORY:
        raise abort(ErrorKind.INVALID_STATE, "Ticket is not a dispute")
    return ticket


def _ticket_dict(ticket: SupportTicketModel) -> dict:
    return {
        "id": ticket.id,
        "ticket_ref": ticket.ticket_ref,
        "customer_id": ticket.customer_id,
        "category": ticket.category,
        "priority": ticket.priority,
        "status": ticket.status,
        "order_id": ticket.order_id,
        "reason": ticket.reason,
        "subject": ticket.subject,
        "description": ticket.description,
        "resolution": ticket.resolution,
        "refund_fils": ticket.refund_fils,
        "resolved_at": ticket.resolved_at,
        "created_at": ticket.created_at,
        "updated_at": ticket.updated_at,
    }


class DisputeService:
    def __init__(
        self,
        refunds: RefundService,
        tracker: EventTracker | None = None,
        session_factory: pg.SessionFactory | None = None,
    ):
        self.refunds = refunds
        self.tracker = tracker
        self.session_factory = session_factory

    def create_dispute(self, customer_id: str, order_id: str, reason: str, description: str) -> Result[dict]:
        try:
            with pg.session_scope(self.session_factory) as session:
                ticket = self._open(session, customer_id, order_id, reason, description)
                created = _ticket_dict(ticket)
        except UnitOfWorkAborted as exc:
            return exc.error
        except IntegrityError:
            # Lost the race against a concurrent dispute on the same order.
            return Err(kind=ErrorKind.DUPLICATE_DISPUTE, detail="An active dispute already exists for this order")

        logger.info("dispute opened: ticket=%s order=%s", created["ticket_ref"], order_id)
        track_safely(
            self.tracker,
            "dispute.created",
            customer_id,
            {"order_id": order_id, "ticket_id": created["id"], "reason": reason},
        )
        return Ok(created)

    def _open(
        self, session: Session, customer_id: str, order_id: str, reason: str, description: str
    ) -> SupportTicketModel:
        order = session.scalar(
            select(OrderModel).where(OrderModel.id == order_id).where(OrderModel.customer_id == customer_id)
        )
        if order is None:
            raise abort(ErrorKind.NOT_FOUND, "Order not found")
        if OrderStatus(order.status) not in DISPUTABLE:
            raise UnitOfWorkAborted(invalid_state("Order", order.status, "disputed"))

        existing = session.scalar(
            select(SupportTicketModel.id)
            .where(SupportTicketModel.order_id == order.id)
            .where(SupportTicketModel.category == DISPUTE_CATEGORY)
            .where(SupportTicketModel.status.in_(values(OPEN_TICKET_STATUSES)))
        )
        if existing is not None:
            raise abort(
                ErrorKind.DUPLICATE_DISPUTE,
                "An active dispute already exists for this order",
                ticket_id=existing,
            )

        prior_status = order.status
        if not transition_order(session, order.id, DISPUTABLE, OrderStatus.DISPUTED):
            session.refresh(order)
            raise UnitOfWorkAborted(invalid_state("Order", order.status, "disputed"))

        ticket = SupportTicketModel(
            ticket_ref=new_reference("TKT"),
            customer_id=customer_id,
            category=DISPUTE_CATEGORY,
            priority="HIGH",
            status=TicketStatus.OPEN.value,
            order_id=order.id,
            reason=reason,
            subject=f"Dispute: {reason} - Order {order.order_ref}",
            description=description,
            prior_order_status=prior_status,
        )
        session.add(ticket)
        session.flush()
        _add_message(
            session,
            ticket.id,
            customer_id,
            f"Dispute opened. Reason: {reason}. Order total: {format_fils(order.total_fils)}.",
        )
        session.flush()
        return ticket

    def resolve_dispute(
        self,
        actor_id: str,
        ticket_id: str,
        resolution: DisputeResolution,
        refund_amount: int | None = None,
        notes: str | None = None,
    ) -> Result[dict]:
        try:
            with pg.session_scope(self.session_factory) as session:
                ticket = _load_dispute(session, ticket_id)
                if TicketStatus(ticket.status) not in OPEN_TICKET_STATUSES:
                    raise UnitOfWorkAborted(invalid_state("Dispute", ticket.status, "resolved"))
                order_id = ticket.order_id
                if session.get(OrderModel, order_id) is None:
                    raise abort(ErrorKind.NOT_FOUND, "Linked order not found")
        except UnitOfWorkAborted as exc:
            return exc.error

        if resolution in (DisputeResolution.FULL_REFUND, DisputeResolution.PARTIAL_REFUND):
            resolved = self._resolve_with_refund(actor_id, ticket_id, order_id, resolution, refund_amount, notes)
        else:
            resolved = self._resolve_without_refund(actor_id, ticket_id, order_id, resolution, notes)
        if isinstance(resolved, Err):
            return resolved

        logger.info("dispute resolved: ticket=%s resolution=%s", ticket_id, resolution.value)
        track_safely(
            self.tracker,
            "dispute.resolved",
            actor_id,
            {"ticket_id": ticket_id, "order_id": order_id, "resolution": resolution.value},
        )
        return resolved

    def _resolve_with_refund(
        self,
        actor_id: str,
        ticket_id: str,
        order_id: str,
        resolution: DisputeResolution,
        refund_amount: int | None,
        notes: str | None,
    ) -> Result[dict]:
        full = resolution == DisputeResolution.FULL_REFUND
        if not full and (refund_amount is None or refund_amount <= 0):
            return Err(kind=ErrorKind.INVALID_AMOUNT, detail="Refund amount must be specified for partial refund")

        def claim_ticket(session: Session) -> None:
            ticket = session.get(SupportTicketModel, ticket_id)
            if TicketStatus(ticket.status) not in OPEN_TICKET_STATUSES:
                raise UnitOfWorkAborted(invalid_state("Dispute", ticket.status, "resolved"))

        def record_resolution(session: Session, applied: RefundApplied) -> None:
            moved = _move_open_ticket(
                session,
                ticket_id,
                TicketStatus.RESOLVED,
                resolution=resolution.value,
                refund_fils=applied.amount_fils,
                resolved_at=datetime.now(timezone.utc),
            )
            if not moved:
                logger.warning("refund=%s applied but ticket=%s was already closed", applied.refund_id, ticket_id)
            _add_message(
                session,
                ticket_id,
                actor_id,
                _with_notes(
                    f"Dispute resolved: {resolution.value}. Refund amount: {format_fils(applied.amount_fils)}.",
                    notes,
                ),
            )

        refunded = self.refunds.refund(
            order_id,
            None if full else refund_amount,
            notes or f"Dispute {resolution.value}",
            REFUNDABLE | {OrderStatus.DISPUTED},
            actor_id,
            ticket_id=ticket_id,
            label="Full refund" if full else "Partial refund",
            on_intent=claim_ticket,
            on_applied=record_resolution,
        )
        if isinstance(refunded, Err):
            return refunded
        applied = refunded.value
        return Ok(
            {
                "resolved": True,
                "ticket_id": ticket_id,
                "resolution": resolution.value,
                "order_status": applied.order_status,
                "refund": {
                    "id": applied.refund_id,
                    "refund_ref": applied.refund_ref,
                    "amount_fils": applied.amount_fils,
                    "full": applied.full,
                },
            }
        )

    def _resolve_without_refund(
        self,
        actor_id: str,
        ticket_id: str,
        order_id: str,
        resolution: DisputeResolution,
        notes: str | None,
    ) -> Result[dict]:
        target = RESOLUTION_ORDER_STATUS[resolution]
        if resolution == DisputeResolution.REPLACEMENT:
            body = "Dispute resolved: REPLACEMENT ordered."
        else:
            body = "Dispute rejected."

        try:
            with pg.session_scope(self.session_factory) as session:
                now = datetime.now(timezone.utc)
                if not _move_open_ticket(
                    session, ticket_id, TicketStatus.RESOLVED, resolution=resolution.value, resolved_at=now
                ):
                    ticket = session.get(SupportTicketModel, ticket_id)
                    raise UnitOfWorkAborted(invalid_state("Dispute", ticket.status, "resolved"))
                # Only a still-disputed order moves; anything else keeps its status.
                transition_order(session, order_id, {OrderStatus.DISPUTED}, target)
                _add_message(session, ticket_id, actor_id, _with_notes(body, notes))
                order_status = session.scalar(select(OrderModel.status).where(OrderModel.id == order_id))
        except UnitOfWorkAborted as exc:
            return exc.error

        return Ok(
            {
                "resolved": True,
                "ticket_id": ticket_id,
                "resolution": resolution.value,
                "order_status": order_status,
                "refund": None,
            }
        )

    def update_dispute_status(self, ticket_id: str, status: TicketStatus) -> Result[dict]:
        sources = [source for source, targets in TICKET_TRANSITIONS.items() if status in targets]
        if not sources:
            return Err(kind=ErrorKind.INVALID_STATE, detail=f"Disputes cannot be moved to {status.value}")

        try:
            with pg.session_scope(self.session_factory) as session:
                ticket = _load_dispute(session, ticket_id)
                result = session.execute(
                    update(SupportTicketModel)
                    .where(SupportTicketModel.id == ticket_id)
                    .where(SupportTicketModel.status.in_(values(sources)))
                    .values(status=status.value, updated_at=datetime.now(timezone.utc))
                    .execution_options(synchronize_session="fetch")
                )
                if result.rowcount != 1:
                    raise UnitOfWorkAborted(invalid_state("Dispute", ticket.status, f"moved to {status.value}"))
                updated = _ticket_dict(ticket)
        except UnitOfWorkAborted as exc:
            return exc.error
        return Ok(updated)

    def withdraw_dispute(self, customer_id: str, ticket_id: str) -> Result[dict]:
        """Customer closes an unresolved dispute; the order gets its pre-dispute status back."""
        try:
            with pg.session_scope(self.session_factory) as session:
                ticket = _load_dispute(session, ticket_id, customer_id=customer_id)
                if not _move_open_ticket(session, ticket_id, TicketStatus.CLOSED):
                    raise UnitOfWorkAborted(invalid_state("Dispute", ticket.status, "withdrawn"))
                transition_order(
                    session, ticket.order_id, {OrderStatus.DISPUTED}, OrderStatus(ticket.prior_order_status)
                )
                _add_message(session, ticket_id, customer_id, "Dispute withdrawn by customer.")
                withdrawn = _ticket_dict(ticket)
                withdrawn["order_status"] = session.scalar(
                    select(OrderModel.status).where(OrderModel.id == ticket.order_id)
                )
        except UnitOfWorkAborted as exc:
            return exc.error

        track_safely(self.tracker, "dispute.withdrawn", customer_id, {"ticket_id": ticket_id})
        return Ok(withdrawn)

    def list_disputes(self, status: TicketStatus | None = None, cursor: str | None = None, limit: int = 20) -> dict:
        with pg.session_scope(self.session_factory) as session:
            stmt = select(SupportTicketModel).where(SupportTicketModel.category == DISPUTE_CATEGORY)
            if status is not None:
                stmt = stmt.where(SupportTicketModel.status == status.value)
            page = keyset_page(session, stmt, SupportTicketModel, cursor, limit)

            order_ids = {ticket.order_id for ticket in page.items}
            orders = {
                order.id: {
                    "id": order.id,
                    "order_ref": order.order_ref,
                    "total_fils": order.total_fils,
                    "status": order.status,
                    "customer_id": order.customer_id,
                }
                for order in session.scalars(select(OrderModel).where(OrderModel.id.in_(order_ids))).all()
            }
            items = []
            for ticket in page.items:
                item = _ticket_dict(ticket)
                item["order"] = orders.get(ticket.order_id)
                items.append(item)
            return {"items": items, "next_cursor": page.next_cursor}
