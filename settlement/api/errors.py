from __future__ import annotations

from typing import TypeVar

from fastapi import Request
from fastapi.responses import JSONResponse

from settlement.domain.result import Err, ErrorKind, Result

T = TypeVar("T")

STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.INVALID_STATE: 409,
    ErrorKind.INSUFFICIENT_STOCK: 409,
    ErrorKind.PRODUCT_UNAVAILABLE: 409,
    ErrorKind.DUPLICATE_DISPUTE: 409,
    ErrorKind.INVALID_AMOUNT: 400,
    ErrorKind.EMPTY_CART: 400,
    ErrorKind.NO_CAPTURED_PAYMENT: 400,
    ErrorKind.REFUND_FAILED: 502,
}


class SettlementHTTPError(Exception):
    def __init__(self, error: Err):
        super().__init__(error.detail)
        self.error = error


def http_status(error: Err) -> int:
    if error.kind == ErrorKind.PAYMENT_FAILED:
        # Card-holder problems are 402; anything on the gateway side is 502.
        return 402 if error.client_error else 502
    return STATUS_BY_KIND.get(error.kind, 400)


def unwrap(result: Result[T]) -> T:
    if isinstance(result, Err):
        raise SettlementHTTPError(result)
    return result.value


async def settlement_error_handler(_: Request, exc: SettlementHTTPError) -> JSONResponse:
    error = exc.error
    content = {"detail": error.detail, "error": error.kind.value}
    if error.gateway_code:
        content["gateway_code"] = error.gateway_code
    if error.context:
        content["context"] = error.context
    return JSONResponse(status_code=http_status(error), content=content)
