"""Resolve payment attempts stuck between intent and outcome by asking the gateway."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from settlement.domain.orders.workflow import OrderSettlementService
from settlement.domain.result import Err
from settlement.domain.states import PaymentStatus
from settlement.payments.gateway import GatewayErrorCode, PaymentGatewayError
from settlement.persistence import pg
from settlement.persistence.models import PaymentModel

logger = logging.getLogger(__name__)


@dataclass
class SweepSummary:
    examined: int = 0
    captured: int = 0
    failed: int = 0
    still_pending: int = 0
    errors: int = 0


def reconcile_payments(
    service: OrderSettlementService,
    older_than: timedelta | None = None,
    now: datetime | None = None,
) -> SweepSummary:
    now = now or datetime.now(timezone.utc)
    age = older_than if older_than is not None else timedelta(seconds=service.settings.reconcile_after_seconds)
    cutoff = now - age
    actor_id = service.settings.system_actor_id

    with pg.session_scope(service.session_factory) as session:
        stuck = session.execute(
            select(PaymentModel.id, PaymentModel.payment_ref, PaymentModel.status)
            .where(PaymentModel.status.in_([PaymentStatus.PENDING.value, PaymentStatus.AUTHORIZED.value]))
            .where(PaymentModel.updated_at <= cutoff)
            .order_by(PaymentModel.created_at)
        ).all()

    summary = SweepSummary()
    for payment_id, payment_ref, status in stuck:
        summary.examined += 1
        if status == PaymentStatus.AUTHORIZED.value:
            result = service.retry_capture(payment_id, actor_id)
        else:
            try:
                found = service.gateway.find_by_reference(payment_ref)
            except PaymentGatewayError as exc:
                logger.warning("reconcile lookup failed: payment=%s code=%s: %s", payment_id, exc.code.value, exc)
                summary.errors += 1
                continue
            if found is None:
                service.record_payment_failure(
                    payment_id, GatewayErrorCode.NOT_FOUND.value, "No gateway record for this payment attempt"
                )
                summary.failed += 1
                continue
            result = service.apply_gateway_result(payment_id, found, actor_id)

        if isinstance(result, Err):
            summary.failed += 1
        elif result.value.status == PaymentStatus.CAPTURED.value:
            summary.captured += 1
        else:
            summary.still_pending += 1

    logger.info(
        "payment reconciliation: examined=%s captured=%s failed=%s pending=%s errors=%s",
        summary.examined,
        summary.captured,
        summary.failed,
        summary.still_pending,
        summary.errors,
    )
    return summary
