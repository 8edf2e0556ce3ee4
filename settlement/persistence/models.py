from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import JSON


def _json_type():
    return JSON().with_variant(JSONB(astext_type=Text()), "postgresql")


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class RetailerModel(Base):
    __tablename__ = "retailers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    # None falls back to the platform default rate.
    commission_rate_bps: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)


class ProductModel(Base):
    __tablename__ = "products"
    __table_args__ = (CheckConstraint("stock_quantity >= 0", name="ck_products_stock_non_negative"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    retailer_id: Mapped[str] = mapped_column(String(36), ForeignKey("retailers.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    sku: Mapped[str] = mapped_column(String(64), nullable=False)
    price_fils: Mapped[int] = mapped_column(BigInteger, nullable=False)
    stock_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    validation_status: Mapped[str] = mapped_column(String(16), nullable=False, default="PENDING")
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)


class CartModel(Base):
    __tablename__ = "carts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    customer_id: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)


class CartItemModel(Base):
    __tablename__ = "cart_items"
    __table_args__ = (UniqueConstraint("cart_id", "product_id", name="uq_cart_items_cart_product"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    cart_id: Mapped[str] = mapped_column(String(36), ForeignKey("carts.id", ondelete="CASCADE"), nullable=False)
    product_id: Mapped[str] = mapped_column(String(36), ForeignKey("products.id"), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    price_fils: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)


class OrderModel(Base):
    __tablename__ = "orders"
    __table_args__ = (
        CheckConstraint("total_fils = subtotal_fils + delivery_fee_fils", name="ck_orders_total"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    order_ref: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    customer_id: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="PENDING_PAYMENT")
    subtotal_fils: Mapped[int] = mapped_column(BigInteger, nullable=False)
    delivery_fee_fils: Mapped[int] = mapped_column(BigInteger, nullable=False)
    total_fils: Mapped[int] = mapped_column(BigInteger, nullable=False)
    shipping_address: Mapped[dict] = mapped_column(_json_type(), nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    refunded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)


class OrderLineItemModel(Base):
    __tablename__ = "order_line_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)
    product_id: Mapped[str] = mapped_column(String(36), ForeignKey("products.id"), nullable=False)
    retailer_id: Mapped[str] = mapped_column(String(36), nullable=False)
    product_name: Mapped[str] = mapped_column(String(256), nullable=False)
    sku: Mapped[str] = mapped_column(String(64), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price_fils: Mapped[int] = mapped_column(BigInteger, nullable=False)
    total_fils: Mapped[int] = mapped_column(BigInteger, nullable=False)


class PaymentModel(Base):
    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    payment_ref: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    order_id: Mapped[str] = mapped_column(String(36), ForeignKey("orders.id"), nullable=False)
    method: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="PENDING")
    amount_fils: Mapped[int] = mapped_column(BigInteger, nullable=False)
    refunded_fils: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    external_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    failure_code: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    authorized_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    captured_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)


class RefundModel(Base):
    __tablename__ = "refunds"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    refund_ref: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    order_id: Mapped[str] = mapped_column(String(36), ForeignKey("orders.id"), nullable=False)
    payment_id: Mapped[str] = mapped_column(String(36), ForeignKey("payments.id"), nullable=False)
    ticket_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    amount_fils: Mapped[int] = mapped_column(BigInteger, nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="PENDING")
    action_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)


class CommissionModel(Base):
    __tablename__ = "commissions"
    __table_args__ = (UniqueConstraint("order_id", "retailer_id", name="uq_commissions_order_retailer"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    order_id: Mapped[str] = mapped_column(String(36), ForeignKey("orders.id"), nullable=False)
    order_ref: Mapped[str] = mapped_column(String(32), nullable=False)
    retailer_id: Mapped[str] = mapped_column(String(36), nullable=False)
    gross_fils: Mapped[int] = mapped_column(BigInteger, nullable=False)
    rate_bps: Mapped[int] = mapped_column(Integer, nullable=False)
    amount_fils: Mapped[int] = mapped_column(BigInteger, nullable=False)
    net_amount_fils: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)


class LedgerEntryModel(Base):
    __tablename__ = "ledger_entries"

    seq_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entry_id: Mapped[str] = mapped_column(String(36), unique=True, nullable=False, default=_uuid)
    retailer_id: Mapped[str] = mapped_column(String(36), nullable=False)
    entry_type: Mapped[str] = mapped_column(String(16), nullable=False)
    amount_fils: Mapped[int] = mapped_column(BigInteger, nullable=False)
    order_id: Mapped[str] = mapped_column(String(36), nullable=False)
    refund_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)


class SupportTicketModel(Base):
    __tablename__ = "support_tickets"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    ticket_ref: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    customer_id: Mapped[str] = mapped_column(String(128), nullable=False)
    category: Mapped[str] = mapped_column(String(32), nullable=False, default="DISPUTE")
    priority: Mapped[str] = mapped_column(String(16), nullable=False, default="HIGH")
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="OPEN")
    order_id: Mapped[str] = mapped_column(String(36), ForeignKey("orders.id"), nullable=False)
    reason: Mapped[str] = mapped_column(String(64), nullable=False)
    subject: Mapped[str] = mapped_column(String(512), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    prior_order_status: Mapped[str] = mapped_column(String(32), nullable=False)
    resolution: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    refund_fils: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)


class TicketMessageModel(Base):
    __tablename__ = "ticket_messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ticket_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("support_tickets.id", ondelete="CASCADE"),
        nullable=False,
    )
    sender_id: Mapped[str] = mapped_column(String(128), nullable=False)
    sender_role: Mapped[str] = mapped_column(String(16), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)


class JobModel(Base):
    __tablename__ = "jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_key: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[dict] = mapped_column(_json_type(), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="queued")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)


_SETTLED_PAYMENT = PaymentModel.status.in_(["CAPTURED", "REFUNDED"])
_OPEN_DISPUTE = (SupportTicketModel.category == "DISPUTE") & SupportTicketModel.status.in_(
    ["OPEN", "IN_PROGRESS", "WAITING_ON_CUSTOMER"]
)
_COMMISSION_ENTRY = LedgerEntryModel.entry_type == "COMMISSION"
_REFUND_ENTRY = LedgerEntryModel.entry_type == "REFUND"
_PENDING_REFUND = RefundModel.status == "PENDING"
_ACTIVE_TICKET_REFUND = RefundModel.ticket_id.is_not(None) & RefundModel.status.in_(["PENDING", "SUCCEEDED"])

Index(
    "uq_payments_one_settled_per_order",
    PaymentModel.order_id,
    unique=True,
    sqlite_where=_SETTLED_PAYMENT,
    postgresql_where=_SETTLED_PAYMENT,
)
Index(
    "uq_refunds_one_pending_per_payment",
    RefundModel.payment_id,
    unique=True,
    sqlite_where=_PENDING_REFUND,
    postgresql_where=_PENDING_REFUND,
)
Index(
    "uq_refunds_one_per_ticket",
    RefundModel.ticket_id,
    unique=True,
    sqlite_where=_ACTIVE_TICKET_REFUND,
    postgresql_where=_ACTIVE_TICKET_REFUND,
)
Index(
    "uq_support_tickets_one_open_dispute",
    SupportTicketModel.order_id,
    unique=True,
    sqlite_where=_OPEN_DISPUTE,
    postgresql_where=_OPEN_DISPUTE,
)
Index(
    "uq_ledger_commission_per_order",
    LedgerEntryModel.retailer_id,
    LedgerEntryModel.order_id,
    unique=True,
    sqlite_where=_COMMISSION_ENTRY,
    postgresql_where=_COMMISSION_ENTRY,
)
Index(
    "uq_ledger_refund_per_retailer",
    LedgerEntryModel.retailer_id,
    LedgerEntryModel.refund_id,
    unique=True,
    sqlite_where=_REFUND_ENTRY,
    postgresql_where=_REFUND_ENTRY,
)
Index("ix_orders_customer_created", OrderModel.customer_id, OrderModel.created_at)
Index("ix_payments_order_id", PaymentModel.order_id)
Index("ix_ledger_entries_retailer_created", LedgerEntryModel.retailer_id, LedgerEntryModel.created_at)
Index("ix_support_tickets_category_created", SupportTicketModel.category, SupportTicketModel.created_at)
