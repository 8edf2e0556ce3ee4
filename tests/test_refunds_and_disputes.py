from __future__ import annotations

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

import settlement.persistence.pg as pg
from settlement.domain.money import new_reference
from settlement.domain.result import Err, ErrorKind, Ok
from settlement.domain.states import DisputeResolution, PaymentStatus, TicketStatus
from settlement.payments.gateway import GatewayErrorCode, PaymentGatewayError
from settlement.persistence.models import (
    CommissionModel,
    LedgerEntryModel,
    OrderModel,
    PaymentModel,
    RefundModel,
    SupportTicketModel,
    TicketMessageModel,
)


def _status(order_id: str) -> str:
    with pg.session_scope() as session:
        return session.get(OrderModel, order_id).status


def _payment(order_id: str) -> PaymentModel:
    with pg.session_scope() as session:
        return session.scalar(select(PaymentModel).where(PaymentModel.order_id == order_id))


def _commissions(order_id: str) -> list[CommissionModel]:
    with pg.session_scope() as session:
        return list(session.scalars(select(CommissionModel).where(CommissionModel.order_id == order_id)).all())


def _refund_entries(order_id: str) -> list[LedgerEntryModel]:
    with pg.session_scope() as session:
        return list(
            session.scalars(
                select(LedgerEntryModel)
                .where(LedgerEntryModel.order_id == order_id)
                .where(LedgerEntryModel.entry_type == "REFUND")
            ).all()
        )


def _single_retailer_order(catalog, customer, paid_order) -> dict:
    # 5 x 10,000 + 5,000 delivery: total 55,000, commission 6,000, net 44,000.
    return paid_order(customer, [(catalog.product(catalog.retailer(), price_fils=10_000), 5)])


def test_refund_order_refunds_everything_and_adjusts_commissions(service, catalog, customer, paid_order, gateway, tracker):
    order = _single_retailer_order(catalog, customer, paid_order)

    refunded = service.refund_order(customer, order["id"], "changed my mind")
    assert isinstance(refunded, Ok)
    assert refunded.value.full
    assert refunded.value.amount_fils == 55_000
    assert refunded.value.order_status == "REFUNDED"
    assert gateway.calls[-1] == ("refund", _payment(order["id"]).external_id, 55_000)

    payment = _payment(order["id"])
    assert payment.status == "REFUNDED"
    assert payment.refunded_fils == 55_000
    assert [c.amount_fils for c in _commissions(order["id"])] == [0]
    assert [e.amount_fils for e in _refund_entries(order["id"])] == [-44_000]
    assert "order.refunded" in tracker.names()

    again = service.refund_order(customer, order["id"])
    assert again.kind == ErrorKind.INVALID_STATE


def test_refund_requires_refundable_status(service, catalog, customer, place_order, gateway):
    order = place_order(customer, [(catalog.product(catalog.retailer(), price_fils=10_000), 1)])

    result = service.refund_order(customer, order["id"])
    assert result.kind == ErrorKind.INVALID_STATE
    assert "PENDING_PAYMENT" in result.detail
    assert gateway.count("refund") == 0


def test_refund_without_captured_payment(service, catalog, customer, paid_order, gateway):
    order = _single_retailer_order(catalog, customer, paid_order)
    with pg.session_scope() as session:
        session.scalar(select(PaymentModel).where(PaymentModel.order_id == order["id"])).status = "FAILED"

    result = service.refund_order(customer, order["id"])
    assert result.kind == ErrorKind.NO_CAPTURED_PAYMENT
    assert gateway.count("refund") == 0


def test_gateway_refund_failure_changes_nothing_but_the_refund_record(
    service, catalog, customer, paid_order, gateway
):
    order = _single_retailer_order(catalog, customer, paid_order)
    gateway.refund_error = PaymentGatewayError("not refundable", GatewayErrorCode.NOT_REFUNDABLE)

    result = service.refund_order(customer, order["id"])
    assert isinstance(result, Err)
    assert result.kind == ErrorKind.REFUND_FAILED
    assert result.gateway_code == "NOT_REFUNDABLE"
    assert not result.client_error

    assert _status(order["id"]) == "PAID"
    assert _payment(order["id"]).status == PaymentStatus.CAPTURED.value
    assert [c.amount_fils for c in _commissions(order["id"])] == [6_000]
    with pg.session_scope() as session:
        refund = session.scalar(select(RefundModel).where(RefundModel.order_id == order["id"]))
    assert refund.status == "FAILED"


def test_dispute_lifecycle_with_full_refund(disputes, admin, catalog, customer, paid_order):
    order = _single_retailer_order(catalog, customer, paid_order)

    created = disputes.create_dispute(customer.id, order["id"], "DAMAGED", "The table arrived with a cracked top.")
    ticket = created.value
    assert ticket["status"] == "OPEN"
    assert ticket["priority"] == "HIGH"
    assert ticket["ticket_ref"].startswith("TKT-")
    assert _status(order["id"]) == "DISPUTED"

    duplicate = disputes.create_dispute(customer.id, order["id"], "DAMAGED", "Second attempt at the same issue.")
    assert duplicate.kind == ErrorKind.DUPLICATE_DISPUTE

    resolved = disputes.resolve_dispute(admin.id, ticket["id"], DisputeResolution.FULL_REFUND, notes="courier fault")
    assert resolved.value["order_status"] == "REFUNDED"
    assert resolved.value["refund"]["amount_fils"] == 55_000
    assert _payment(order["id"]).status == "REFUNDED"
    assert [e.amount_fils for e in _refund_entries(order["id"])] == [-44_000]

    with pg.session_scope() as session:
        stored = session.get(SupportTicketModel, ticket["id"])
        messages = session.scalars(
            select(TicketMessageModel.body).where(TicketMessageModel.ticket_id == ticket["id"]).order_by(TicketMessageModel.id)
        ).all()
    assert stored.status == "RESOLVED"
    assert stored.resolution == "FULL_REFUND"
    assert stored.refund_fils == 55_000
    assert messages[0] == "Dispute opened. Reason: DAMAGED. Order total: 550.00 AED."
    assert messages[1] == "Dispute resolved: FULL_REFUND. Refund amount: 550.00 AED. Notes: courier fault"

    twice = disputes.resolve_dispute(admin.id, ticket["id"], DisputeResolution.REJECTED)
    assert twice.kind == ErrorKind.INVALID_STATE


def test_partial_refund_returns_order_to_paid(disputes, admin, catalog, customer, paid_order):
    order = _single_retailer_order(catalog, customer, paid_order)
    ticket = disputes.create_dispute(customer.id, order["id"], "MISSING_PART", "One chair leg is missing.").value

    resolved = disputes.resolve_dispute(admin.id, ticket["id"], DisputeResolution.PARTIAL_REFUND, refund_amount=27_500)
    assert resolved.value["order_status"] == "PAID"

    payment = _payment(order["id"])
    assert payment.status == "CAPTURED"
    assert payment.refunded_fils == 27_500
    commission = _commissions(order["id"])[0]
    assert commission.amount_fils == 3_000
    assert commission.net_amount_fils == 22_000
    assert [e.amount_fils for e in _refund_entries(order["id"])] == [-22_000]


def test_partial_then_full_refund_unwinds_all_commission(service, disputes, admin, catalog, customer, paid_order):
    order = _single_retailer_order(catalog, customer, paid_order)
    ticket = disputes.create_dispute(customer.id, order["id"], "MISSING_PART", "The shelf pins are missing.").value
    disputes.resolve_dispute(admin.id, ticket["id"], DisputeResolution.PARTIAL_REFUND, refund_amount=27_500)

    rest = service.refund_order(customer, order["id"], "returned the rest")
    assert rest.value.full
    assert rest.value.amount_fils == 27_500
    assert rest.value.adjustments[0].commission_adjustment == 3_000
    assert _status(order["id"]) == "REFUNDED"

    commission = _commissions(order["id"])[0]
    assert commission.amount_fils == 0
    assert commission.net_amount_fils == 0
    assert sorted(e.amount_fils for e in _refund_entries(order["id"])) == [-22_000, -22_000]


def test_stale_dispute_resolution_does_not_refund_twice(disputes, admin, catalog, customer, paid_order, gateway):
    order = _single_retailer_order(catalog, customer, paid_order)
    ticket = disputes.create_dispute(customer.id, order["id"], "DAMAGED", "The wardrobe door is dented.").value
    first = disputes.resolve_dispute(admin.id, ticket["id"], DisputeResolution.PARTIAL_REFUND, refund_amount=5_000)
    assert isinstance(first, Ok)

    # A second resolver that checked the ticket before the first one finished.
    stale = disputes._resolve_with_refund(
        admin.id, ticket["id"], order["id"], DisputeResolution.PARTIAL_REFUND, 1_000, None
    )
    assert stale.kind == ErrorKind.INVALID_STATE
    assert gateway.count("refund") == 1
    assert _payment(order["id"]).refunded_fils == 5_000
    assert len(_refund_entries(order["id"])) == 1


def test_store_allows_one_refund_per_dispute(disputes, admin, catalog, customer, paid_order):
    order = _single_retailer_order(catalog, customer, paid_order)
    ticket = disputes.create_dispute(customer.id, order["id"], "DAMAGED", "The sofa fabric is torn.").value
    disputes.resolve_dispute(admin.id, ticket["id"], DisputeResolution.PARTIAL_REFUND, refund_amount=5_000)
    payment_id = _payment(order["id"]).id

    with pytest.raises(IntegrityError):
        with pg.session_scope() as session:
            session.add(
                RefundModel(
                    refund_ref=new_reference("RFD"),
                    order_id=order["id"],
                    payment_id=payment_id,
                    ticket_id=ticket["id"],
                    amount_fils=1_000,
                    status="PENDING",
                )
            )


def test_partial_refund_amount_validation(disputes, admin, catalog, customer, paid_order, gateway):
    order = _single_retailer_order(catalog, customer, paid_order)
    ticket = disputes.create_dispute(customer.id, order["id"], "LATE", "Delivery was two weeks late.").value

    missing = disputes.resolve_dispute(admin.id, ticket["id"], DisputeResolution.PARTIAL_REFUND)
    assert missing.kind == ErrorKind.INVALID_AMOUNT
    too_much = disputes.resolve_dispute(admin.id, ticket["id"], DisputeResolution.PARTIAL_REFUND, refund_amount=55_001)
    assert too_much.kind == ErrorKind.INVALID_AMOUNT
    assert gateway.count("refund") == 0
    assert _status(order["id"]) == "DISPUTED"


def test_replacement_and_rejection_move_order_without_money(disputes, admin, catalog, customer, paid_order, gateway):
    order = _single_retailer_order(catalog, customer, paid_order)

    first = disputes.create_dispute(customer.id, order["id"], "WRONG_ITEM", "Received the oak version.").value
    replaced = disputes.resolve_dispute(admin.id, first["id"], DisputeResolution.REPLACEMENT)
    assert replaced.value["order_status"] == "PROCESSING"

    # A resolved dispute no longer blocks a new one.
    second = disputes.create_dispute(customer.id, order["id"], "WRONG_ITEM", "The replacement is wrong too.").value
    rejected = disputes.resolve_dispute(admin.id, second["id"], DisputeResolution.REJECTED, notes="matches listing")
    assert rejected.value["order_status"] == "DELIVERED"
    assert gateway.count("refund") == 0


def test_dispute_requires_disputable_owned_order(disputes, catalog, customer, place_order):
    order = place_order(customer, [(catalog.product(catalog.retailer(), price_fils=10_000), 1)])

    pending = disputes.create_dispute(customer.id, order["id"], "LATE", "Still waiting for delivery.")
    assert pending.kind == ErrorKind.INVALID_STATE
    foreign = disputes.create_dispute("stranger", order["id"], "LATE", "Still waiting for delivery.")
    assert foreign.kind == ErrorKind.NOT_FOUND


def test_status_moves_and_customer_withdrawal(disputes, catalog, customer, paid_order):
    order = _single_retailer_order(catalog, customer, paid_order)
    ticket = disputes.create_dispute(customer.id, order["id"], "DAMAGED", "Scratches along the side panel.").value

    assert disputes.update_dispute_status(ticket["id"], TicketStatus.WAITING_ON_CUSTOMER).kind == ErrorKind.INVALID_STATE
    assert disputes.update_dispute_status(ticket["id"], TicketStatus.IN_PROGRESS).value["status"] == "IN_PROGRESS"
    assert disputes.update_dispute_status(ticket["id"], TicketStatus.WAITING_ON_CUSTOMER).value["status"] == (
        "WAITING_ON_CUSTOMER"
    )
    assert disputes.update_dispute_status(ticket["id"], TicketStatus.RESOLVED).kind == ErrorKind.INVALID_STATE

    assert disputes.withdraw_dispute("stranger", ticket["id"]).kind == ErrorKind.NOT_FOUND
    withdrawn = disputes.withdraw_dispute(customer.id, ticket["id"])
    assert withdrawn.value["status"] == "CLOSED"
    assert withdrawn.value["order_status"] == "PAID"
    assert disputes.withdraw_dispute(customer.id, ticket["id"]).kind == ErrorKind.INVALID_STATE


def test_list_disputes_is_enriched_with_orders(disputes, catalog, customer, paid_order):
    order = _single_retailer_order(catalog, customer, paid_order)
    ticket = disputes.create_dispute(customer.id, order["id"], "DAMAGED", "Broken glass on arrival.").value

    listed = disputes.list_disputes(status=TicketStatus.OPEN, limit=100)
    match = next(item for item in listed["items"] if item["id"] == ticket["id"])
    assert match["order"]["order_ref"] == order["order_ref"]
    assert match["order"]["total_fils"] == 55_000
