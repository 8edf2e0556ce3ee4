from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from settlement.api.dependencies import get_tracker
from settlement.api.errors import unwrap
from settlement.api.schemas import AddCartItemRequest, UpdateCartItemRequest
from settlement.core.security import Actor, get_actor, require_customer
from settlement.domain import cart
from settlement.integrations.tracking import EventTracker
from settlement.persistence.pg import get_session

router = APIRouter(tags=["cart"])


@router.get("/cart")
def get_cart(actor: Actor = Depends(get_actor), session: Session = Depends(get_session)):
    require_customer(actor)
    return cart.get_cart(session, actor.id)


@router.post("/cart/items", status_code=201)
def add_cart_item(
    req: AddCartItemRequest,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
    tracker: EventTracker = Depends(get_tracker),
):
    require_customer(actor)
    return unwrap(cart.add_to_cart(session, actor.id, req.product_id, req.quantity, tracker))


@router.patch("/cart/items/{item_id}")
def update_cart_item(
    item_id: str,
    req: UpdateCartItemRequest,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    require_customer(actor)
    return unwrap(cart.update_cart_item(session, actor.id, item_id, req.quantity))


@router.delete("/cart/items/{item_id}")
def remove_cart_item(item_id: str, actor: Actor = Depends(get_actor), session: Session = Depends(get_session)):
    require_customer(actor)
    return unwrap(cart.remove_cart_item(session, actor.id, item_id))


@router.delete("/cart")
def clear_cart(
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
    tracker: EventTracker = Depends(get_tracker),
):
    require_customer(actor)
    return cart.clear_cart(session, actor.id, tracker)
