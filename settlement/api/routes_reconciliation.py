from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from settlement.api.errors import unwrap
from settlement.core.security import Actor, get_actor, require_privileged
from settlement.persistence.pg import get_session
from settlement.reconciliation.rules import run_order_reconciliation

router = APIRouter(tags=["reconciliation"])


@router.get("/reconciliation/orders/{order_id}")
def reconcile_order(order_id: str, actor: Actor = Depends(get_actor), session: Session = Depends(get_session)):
    require_privileged(actor)
    return unwrap(run_order_reconciliation(session, order_id))
