from __future__ import annotations

import logging

from fastapi import FastAPI

from settlement.api.errors import SettlementHTTPError, settlement_error_handler
from settlement.api.routes_cart import router as cart_router
from settlement.api.routes_disputes import router as disputes_router
from settlement.api.routes_ledger import router as ledger_router
from settlement.api.routes_orders import router as orders_router
from settlement.api.routes_reconciliation import router as reconciliation_router
from settlement.core.config import get_settings
from settlement.core.logging import configure_logging
from settlement.persistence.pg import init_db

configure_logging()
logger = logging.getLogger(__name__)
settings = get_settings()

app = FastAPI(title=settings.app_name)


@app.on_event("startup")
def on_startup() -> None:
    init_db()
    if settings.gateway_simulated:
        logger.warning("payment gateway is simulated; no real money will move")
    logger.info("settlement engine ready: env=%s commission_mode=%s", settings.env, settings.commission_mode)


app.add_exception_handler(SettlementHTTPError, settlement_error_handler)


@app.get("/healthz")
def healthz() -> dict:
    return {"status": "ok"}


app.include_router(cart_router)
app.include_router(orders_router)
app.include_router(disputes_router)
app.include_router(ledger_router)
app.include_router(reconciliation_router)
