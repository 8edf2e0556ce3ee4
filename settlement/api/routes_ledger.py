from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from settlement.api.utils import parse_period
from settlement.core.config import get_settings
from settlement.core.security import Actor, get_actor, require_privileged
from settlement.ledger.statements import build_retailer_statement, list_ledger_entries
from settlement.persistence.pg import get_session

router = APIRouter(tags=["ledger"])
settings = get_settings()


@router.get("/ledger/retailers/{retailer_id}/entries")
def list_retailer_entries(
    retailer_id: str,
    cursor: int | None = Query(default=None, ge=1),
    limit: int = Query(default=settings.page_limit_default, ge=1, le=settings.page_limit_max),
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    require_privileged(actor)
    return list_ledger_entries(session, retailer_id, cursor=cursor, limit=limit)


@router.get("/ledger/retailers/{retailer_id}/statement")
def retailer_statement(
    retailer_id: str,
    period: str | None = Query(default=None, description="start/end in ISO-8601"),
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    require_privileged(actor)
    start = end = None
    if period:
        try:
            start, end = parse_period(period)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
    return build_retailer_statement(session, retailer_id, start=start, end=end)
