from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, TypeVar, Union

T = TypeVar("T")


class ErrorKind(str, Enum):
    NOT_FOUND = "NOT_FOUND"
    FORBIDDEN = "FORBIDDEN"
    INVALID_STATE = "INVALID_STATE"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    EMPTY_CART = "EMPTY_CART"
    INSUFFICIENT_STOCK = "INSUFFICIENT_STOCK"
    PRODUCT_UNAVAILABLE = "PRODUCT_UNAVAILABLE"
    DUPLICATE_DISPUTE = "DUPLICATE_DISPUTE"
    NO_CAPTURED_PAYMENT = "NO_CAPTURED_PAYMENT"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    REFUND_FAILED = "REFUND_FAILED"


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    kind: ErrorKind
    detail: str
    gateway_code: str | None = None
    client_error: bool = True
    context: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return False


Result = Union[Ok[T], Err]


class UnitOfWorkAborted(Exception):
    """Raised inside a ``session_scope`` to roll it back and surface ``error``."""

    def __init__(self, error: Err):
        super().__init__(f"{error.kind.value}: {error.detail}")
        self.error = error


def abort(kind: ErrorKind, detail: str, **context: Any) -> UnitOfWorkAborted:
    return UnitOfWorkAborted(Err(kind=kind, detail=detail, context=context))


def invalid_state(entity: str, status: str, action: str) -> Err:
    return Err(
        kind=ErrorKind.INVALID_STATE,
        detail=f"{entity} cannot be {action} in its current status ({status})",
        context={"status": status},
    )
