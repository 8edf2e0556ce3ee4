from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from settlement.api.dependencies import get_dispute_service
from settlement.api.errors import unwrap
from settlement.api.schemas import CreateDisputeRequest, DisputeStatusRequest, ResolveDisputeRequest
from settlement.core.config import get_settings
from settlement.core.security import Actor, get_actor, require_customer, require_privileged
from settlement.domain.disputes import DisputeService
from settlement.domain.states import TicketStatus

router = APIRouter(tags=["disputes"])
settings = get_settings()


@router.post("/disputes", status_code=201)
def create_dispute(
    req: CreateDisputeRequest,
    actor: Actor = Depends(get_actor),
    service: DisputeService = Depends(get_dispute_service),
):
    require_customer(actor)
    return unwrap(service.create_dispute(actor.id, req.order_id, req.reason, req.description))


@router.post("/disputes/{ticket_id}/resolve")
def resolve_dispute(
    ticket_id: str,
    req: ResolveDisputeRequest,
    actor: Actor = Depends(get_actor),
    service: DisputeService = Depends(get_dispute_service),
):
    require_privileged(actor)
    return unwrap(service.resolve_dispute(actor.id, ticket_id, req.resolution, req.refund_amount_fils, req.notes))


@router.post("/disputes/{ticket_id}/status")
def update_dispute_status(
    ticket_id: str,
    req: DisputeStatusRequest,
    actor: Actor = Depends(get_actor),
    service: DisputeService = Depends(get_dispute_service),
):
    require_privileged(actor)
    return unwrap(service.update_dispute_status(ticket_id, req.status))


@router.post("/disputes/{ticket_id}/withdraw")
def withdraw_dispute(
    ticket_id: str,
    actor: Actor = Depends(get_actor),
    service: DisputeService = Depends(get_dispute_service),
):
    require_customer(actor)
    return unwrap(service.withdraw_dispute(actor.id, ticket_id))


@router.get("/disputes")
def list_disputes(
    status: TicketStatus | None = Query(default=None),
    cursor: str | None = Query(default=None),
    limit: int = Query(default=settings.page_limit_default, ge=1, le=settings.page_limit_max),
    actor: Actor = Depends(get_actor),
    service: DisputeService = Depends(get_dispute_service),
):
    require_privileged(actor)
    return service.list_disputes(status=status, cursor=cursor, limit=limit)
