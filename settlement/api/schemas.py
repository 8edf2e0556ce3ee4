from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, StrictInt

from settlement.domain.states import DisputeResolution, OrderStatus, PaymentMethod, TicketStatus

MAX_CART_QUANTITY = 50


class AddCartItemRequest(BaseModel):
    product_id: str = Field(min_length=1)
    quantity: StrictInt = Field(default=1, ge=1, le=MAX_CART_QUANTITY)


class UpdateCartItemRequest(BaseModel):
    # 0 removes the line.
    quantity: StrictInt = Field(ge=0, le=MAX_CART_QUANTITY)


class ShippingAddress(BaseModel):
    model_config = ConfigDict(extra="forbid")

    full_name: str = Field(min_length=1, max_length=200)
    phone: str = Field(min_length=5, max_length=32)
    line1: str = Field(min_length=1, max_length=300)
    line2: str | None = Field(default=None, max_length=300)
    city: str = Field(min_length=1, max_length=100)
    emirate: str | None = Field(default=None, max_length=100)
    country: str = Field(default="AE", min_length=2, max_length=2)


class CreateOrderRequest(BaseModel):
    shipping_address: ShippingAddress
    notes: str | None = Field(default=None, max_length=1000)


class ProcessPaymentRequest(BaseModel):
    method: PaymentMethod
    token: str = Field(min_length=1)
    customer_email: str | None = None
    customer_name: str | None = None


class RefundOrderRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class AdvanceOrderRequest(BaseModel):
    status: OrderStatus


class CreateDisputeRequest(BaseModel):
    order_id: str = Field(min_length=1)
    reason: str = Field(min_length=1, max_length=64)
    description: str = Field(min_length=10, max_length=5000)


class ResolveDisputeRequest(BaseModel):
    resolution: DisputeResolution
    refund_amount_fils: StrictInt | None = Field(default=None, gt=0)
    notes: str | None = Field(default=None, max_length=2000)


class DisputeStatusRequest(BaseModel):
    status: TicketStatus
