from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from settlement.domain.result import Err, ErrorKind, Ok, Result
from settlement.domain.states import ProductStatus
from settlement.integrations.tracking import EventTracker, track_safely
from settlement.persistence.models import CartItemModel, CartModel, ProductModel


def _cart_for(session: Session, customer_id: str) -> CartModel | None:
    return session.scalar(select(CartModel).where(CartModel.customer_id == customer_id))


def _item_dict(item: CartItemModel) -> dict:
    return {
        "id": item.id,
        "product_id": item.product_id,
        "quantity": item.quantity,
        "price_fils": item.price_fils,
    }


def get_cart(session: Session, customer_id: str) -> dict:
    cart = _cart_for(session, customer_id)
    if cart is None:
        return {"id": None, "items": [], "total_fils": 0}
    items = session.scalars(
        select(CartItemModel).where(CartItemModel.cart_id == cart.id).order_by(CartItemModel.created_at, CartItemModel.id)
    ).all()
    return {
        "id": cart.id,
        "items": [_item_dict(item) for item in items],
        "total_fils": sum(item.price_fils * item.quantity for item in items),
        "updated_at": cart.updated_at,
    }


def add_to_cart(
    session: Session,
    customer_id: str,
    product_id: str,
    quantity: int,
    tracker: EventTracker | None = None,
) -> Result[dict]:
    product = session.get(ProductModel, product_id)
    if product is None or product.validation_status != ProductStatus.ACTIVE.value:
        return Err(kind=ErrorKind.NOT_FOUND, detail="Product not found or not available")

    cart = _cart_for(session, customer_id)
    if cart is None:
        cart = CartModel(customer_id=customer_id)
        session.add(cart)
        session.flush()

    existing = session.scalar(
        select(CartItemModel).where(CartItemModel.cart_id == cart.id).where(CartItemModel.product_id == product_id)
    )
    wanted = quantity + (existing.quantity if existing else 0)
    if product.stock_quantity < wanted:
        return Err(
            kind=ErrorKind.INSUFFICIENT_STOCK,
            detail="Insufficient stock",
            context={"product_id": product_id, "available": product.stock_quantity},
        )

    if existing is not None:
        existing.quantity = wanted
        existing.price_fils = product.price_fils
        item = existing
    else:
        item = CartItemModel(cart_id=cart.id, product_id=product_id, quantity=quantity, price_fils=product.price_fils)
        session.add(item)
    cart.updated_at = datetime.now(timezone.utc)
    session.flush()

    track_safely(
        tracker,
        "cart.item_added",
        customer_id,
        {"product_id": product_id, "quantity": quantity, "price_fils": product.price_fils},
    )
    return Ok(_item_dict(item))


def _owned_item(session: Session, customer_id: str, item_id: str) -> Result[CartItemModel]:
    cart = _cart_for(session, customer_id)
    if cart is None:
        return Err(kind=ErrorKind.NOT_FOUND, detail="Cart not found")
    item = session.scalar(
        select(CartItemModel).where(CartItemModel.id == item_id).where(CartItemModel.cart_id == cart.id)
    )
    if item is None:
        return Err(kind=ErrorKind.NOT_FOUND, detail="Cart item not found")
    return Ok(item)


def update_cart_item(session: Session, customer_id: str, item_id: str, quantity: int) -> Result[dict]:
    found = _owned_item(session, customer_id, item_id)
    if isinstance(found, Err):
        return found
    item = found.value

    if quantity == 0:
        session.delete(item)
        session.flush()
        return Ok({"removed": True})

    item.quantity = quantity
    session.flush()
    return Ok(_item_dict(item))


def remove_cart_item(session: Session, customer_id: str, item_id: str) -> Result[dict]:
    found = _owned_item(session, customer_id, item_id)
    if isinstance(found, Err):
        return found
    session.delete(found.value)
    session.flush()
    return Ok({"removed": True})


def clear_cart(session: Session, customer_id: str, tracker: EventTracker | None = None) -> dict:
    cart = _cart_for(session, customer_id)
    if cart is not None:
        session.execute(delete(CartItemModel).where(CartItemModel.cart_id == cart.id))
    track_safely(tracker, "cart.cleared", customer_id, {})
    return {"cleared": True}
