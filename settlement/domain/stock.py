from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from settlement.domain.result import Err, ErrorKind, Ok, Result
from settlement.domain.states import ProductStatus
from settlement.persistence.models import ProductModel


def reserve(session: Session, product_id: str, qty: int) -> Result[int]:
    """Decrement stock by ``qty`` iff enough is on hand and the product is active.

    The guard lives in the UPDATE itself, so concurrent reservations against the
    same row cannot oversell. Runs in the caller's unit of work.
    """
    if qty <= 0:
        return Err(kind=ErrorKind.INVALID_AMOUNT, detail=f"quantity must be positive, got {qty}")

    result = session.execute(
        update(ProductModel)
        .where(ProductModel.id == product_id)
        .where(ProductModel.validation_status == ProductStatus.ACTIVE.value)
        .where(ProductModel.stock_quantity >= qty)
        .values(
            stock_quantity=ProductModel.stock_quantity - qty,
            updated_at=datetime.now(timezone.utc),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        return Ok(qty)

    status = session.scalar(select(ProductModel.validation_status).where(ProductModel.id == product_id))
    if status != ProductStatus.ACTIVE.value:
        return Err(
            kind=ErrorKind.PRODUCT_UNAVAILABLE,
            detail=f"Product {product_id} is no longer available",
            context={"product_id": product_id},
        )
    return Err(
        kind=ErrorKind.INSUFFICIENT_STOCK,
        detail=f"Insufficient stock for product {product_id}",
        context={"product_id": product_id, "requested": qty},
    )


def release(session: Session, product_id: str, qty: int) -> None:
    session.execute(
        update(ProductModel)
        .where(ProductModel.id == product_id)
        .values(
            stock_quantity=ProductModel.stock_quantity + qty,
            updated_at=datetime.now(timezone.utc),
        )
        .execution_options(synchronize_session=False)
    )
