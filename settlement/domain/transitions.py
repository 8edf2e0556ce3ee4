from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable

from sqlalchemy import update
from sqlalchemy.orm import Session

from settlement.domain.states import OrderStatus, values
from settlement.persistence.models import OrderModel


def transition_order(
    session: Session,
    order_id: str,
    allowed: Iterable[OrderStatus],
    target: OrderStatus,
    **fields: Any,
) -> bool:
    """Move an order to ``target`` only if it is still in one of ``allowed``.

    The status check and the write are one UPDATE; the row count tells the
    caller whether it won.
    """
    result = session.execute(
        update(OrderModel)
        .where(OrderModel.id == order_id)
        .where(OrderModel.status.in_(values(allowed)))
        .values(status=target.value, updated_at=datetime.now(timezone.utc), **fields)
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount == 1
