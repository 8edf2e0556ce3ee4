from __future__ import annotations

from functools import lru_cache

from fastapi import Depends

from settlement.domain.disputes import DisputeService
from settlement.domain.orders.workflow import OrderSettlementService
from settlement.integrations.tracking import EventTracker, LoggingEventTracker
from settlement.payments.gateway import PaymentGateway, build_payment_gateway


@lru_cache(maxsize=1)
def get_gateway() -> PaymentGateway:
    return build_payment_gateway()


@lru_cache(maxsize=1)
def get_tracker() -> EventTracker:
    return LoggingEventTracker()


def get_order_service(
    gateway: PaymentGateway = Depends(get_gateway),
    tracker: EventTracker = Depends(get_tracker),
) -> OrderSettlementService:
    return OrderSettlementService(gateway, tracker=tracker)


def get_dispute_service(orders: OrderSettlementService = Depends(get_order_service)) -> DisputeService:
    return DisputeService(orders.refunds, tracker=orders.tracker, session_factory=orders.session_factory)
