"""Card-payment gateway adapter.

One protocol, two implementations: ``CheckoutGateway`` talks to a
Checkout.com-style REST API over HTTPS; ``SimulatedGateway`` approves
everything without touching the network and is selected whenever no secret
key is configured. Simulated ids always carry the ``sim_`` sentinel.

The adapter keeps no local state of record: callers persist outcomes.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Protocol
from uuid import uuid4

import httpx

from settlement.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

GatewayStatus = Literal["Authorized", "Captured", "Declined", "Pending"]
GatewayAction = Literal["authorize", "capture", "refund", "lookup"]

SIMULATION_MARKER = "sim_"


class GatewayErrorCode(str, Enum):
    DECLINED = "DECLINED"
    EXPIRED_CARD = "EXPIRED_CARD"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    INVALID_TOKEN = "INVALID_TOKEN"
    PROCESSING_ERROR = "PROCESSING_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    NOT_FOUND = "NOT_FOUND"
    NOT_CAPTURABLE = "NOT_CAPTURABLE"
    NOT_REFUNDABLE = "NOT_REFUNDABLE"
    ALREADY_CAPTURED = "ALREADY_CAPTURED"
    ALREADY_REFUNDED = "ALREADY_REFUNDED"


# Card-holder correctable failures; everything else is on our side or the gateway's.
CLIENT_DECLINE_CODES = frozenset(
    {GatewayErrorCode.DECLINED, GatewayErrorCode.INSUFFICIENT_FUNDS, GatewayErrorCode.EXPIRED_CARD}
)

DECLINE_REASONS: dict[str, GatewayErrorCode] = {
    "20005": GatewayErrorCode.INSUFFICIENT_FUNDS,
    "20051": GatewayErrorCode.INSUFFICIENT_FUNDS,
    "20054": GatewayErrorCode.EXPIRED_CARD,
    "20014": GatewayErrorCode.INVALID_TOKEN,
    "20087": GatewayErrorCode.INVALID_TOKEN,
}

SOURCE_TYPES = {"APPLE_PAY": "applepay", "GOOGLE_PAY": "googlepay"}

# Lookup responses can carry statuses beyond the four an authorization returns.
_CAPTURED_LIKE = {"Captured", "Partially Captured", "Refunded", "Partially Refunded"}
_DECLINED_LIKE = {"Declined", "Card Verified", "Voided", "Canceled", "Expired"}


class PaymentGatewayError(Exception):
    def __init__(
        self,
        message: str,
        code: GatewayErrorCode,
        http_status: int | None = None,
        request_id: str | None = None,
        error_codes: list[str] | None = None,
    ):
        super().__init__(message)
        self.code = code
        self.http_status = http_status
        self.request_id = request_id
        self.error_codes = error_codes or []

    @property
    def client_error(self) -> bool:
        return self.code in CLIENT_DECLINE_CODES


@dataclass
class PaymentIntentResult:
    external_id: str
    action_id: str | None
    approved: bool
    status: GatewayStatus
    response_code: str | None
    response_summary: str | None = None
    processed_on: str | None = None

    @property
    def simulated(self) -> bool:
        return is_simulated_id(self.external_id)


@dataclass
class ActionResult:
    action_id: str


@dataclass
class CustomerDetails:
    email: str | None = None
    name: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)


class PaymentGateway(Protocol):
    backend: str

    def authorize(
        self,
        amount: int,
        token: str,
        reference: str,
        capture: bool,
        method: str,
        currency: str | None = None,
        description: str | None = None,
        customer: CustomerDetails | None = None,
    ) -> PaymentIntentResult:
        ...

    def capture(self, external_id: str, amount: int | None = None) -> ActionResult:
        ...

    def refund(self, external_id: str, amount: int | None = None) -> ActionResult:
        ...

    def find_by_reference(self, reference: str) -> PaymentIntentResult | None:
        ...


def is_simulated_id(external_id: str | None) -> bool:
    return bool(external_id) and f"_{SIMULATION_MARKER}" in str(external_id)


def map_decline_reason(response_code: str | None) -> GatewayErrorCode:
    return DECLINE_REASONS.get(str(response_code or ""), GatewayErrorCode.DECLINED)


def map_http_error(status: int, action: GatewayAction, error_codes: list[str] | None = None) -> GatewayErrorCode:
    codes = set(error_codes or [])
    if status == 404:
        return GatewayErrorCode.NOT_FOUND
    if status == 422:
        if {"token_expired", "card_expired"} & codes:
            return GatewayErrorCode.EXPIRED_CARD
        if "token_invalid" in codes:
            return GatewayErrorCode.INVALID_TOKEN
        return GatewayErrorCode.DECLINED
    if status == 409:
        return GatewayErrorCode.ALREADY_REFUNDED if action == "refund" else GatewayErrorCode.ALREADY_CAPTURED
    if status == 403 and action == "capture":
        return GatewayErrorCode.NOT_CAPTURABLE
    if status == 403 and action == "refund":
        return GatewayErrorCode.NOT_REFUNDABLE
    return GatewayErrorCode.PROCESSING_ERROR


def _normalize_status(raw: str | None) -> GatewayStatus:
    if raw in {"Authorized", "Captured", "Declined", "Pending"}:
        return raw  # type: ignore[return-value]
    if raw in _CAPTURED_LIKE:
        return "Captured"
    if raw in _DECLINED_LIKE:
        return "Declined"
    return "Pending"


def _intent_from_payload(payload: Any) -> PaymentIntentResult:
    if not isinstance(payload, dict) or not payload.get("id"):
        raise PaymentGatewayError(
            "payment gateway response is missing a payment id", GatewayErrorCode.PROCESSING_ERROR
        )
    return PaymentIntentResult(
        external_id=str(payload["id"]),
        action_id=payload.get("action_id"),
        approved=bool(payload.get("approved", False)),
        status=_normalize_status(payload.get("status")),
        response_code=payload.get("response_code"),
        response_summary=payload.get("response_summary"),
        processed_on=payload.get("processed_on"),
    )


class CheckoutGateway:
    backend = "checkout"

    def __init__(self, settings: Settings | None = None, transport: httpx.BaseTransport | None = None):
        self.settings = settings or get_settings()
        if self.settings.gateway_simulated:
            raise ValueError("gateway secret key is not configured")
        self.base_url = self.settings.gateway_base_url.rstrip("/")
        self.timeout = max(1, self.settings.gateway_timeout_seconds)
        self.transport = transport

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.settings.gateway_secret_key}",
            "Content-Type": "application/json",
        }

    def _request(
        self,
        method: str,
        path: str,
        action: GatewayAction,
        *,
        json_body: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.request(method, url, headers=self._headers(), json=json_body, params=params)
        except httpx.HTTPError as exc:
            raise PaymentGatewayError(
                f"Network error calling payment gateway: {exc}",
                GatewayErrorCode.NETWORK_ERROR,
            ) from exc

        if response.is_error:
            try:
                body = response.json()
            except ValueError:
                body = {}
            if not isinstance(body, dict):
                body = {}
            error_codes = [str(code) for code in body.get("error_codes") or []]
            raise PaymentGatewayError(
                body.get("error_type") or f"payment gateway error: {response.status_code} {response.reason_phrase}",
                map_http_error(response.status_code, action, error_codes),
                http_status=response.status_code,
                request_id=body.get("request_id"),
                error_codes=error_codes,
            )

        if not response.content:
            return {}
        try:
            payload = response.json()
        except ValueError as exc:
            raise PaymentGatewayError(
                "payment gateway returned a non-JSON response",
                GatewayErrorCode.PROCESSING_ERROR,
                http_status=response.status_code,
            ) from exc
        if isinstance(payload, dict):
            return payload
        return {"data": payload}

    def authorize(
        self,
        amount: int,
        token: str,
        reference: str,
        capture: bool,
        method: str,
        currency: str | None = None,
        description: str | None = None,
        customer: CustomerDetails | None = None,
    ) -> PaymentIntentResult:
        body: dict[str, Any] = {
            "source": {"type": SOURCE_TYPES.get(method, "token"), "token": token},
            "amount": amount,
            "currency": currency or self.settings.currency,
            "reference": reference,
            "capture": capture,
        }
        if description:
            body["description"] = description
        if customer and (customer.email or customer.name):
            body["customer"] = {
                key: value for key, value in {"email": customer.email, "name": customer.name}.items() if value
            }

        payload = self._request("POST", "/payments", "authorize", json_body=body)
        result = _intent_from_payload(payload)
        if not result.approved and result.status == "Declined":
            raise PaymentGatewayError(
                result.response_summary or "Payment declined",
                map_decline_reason(result.response_code),
                error_codes=[result.response_code] if result.response_code else [],
            )
        return result

    def capture(self, external_id: str, amount: int | None = None) -> ActionResult:
        body = {"amount": amount} if amount is not None else {}
        payload = self._request("POST", f"/payments/{external_id}/captures", "capture", json_body=body)
        return ActionResult(action_id=str(payload.get("action_id", "")))

    def refund(self, external_id: str, amount: int | None = None) -> ActionResult:
        body = {"amount": amount} if amount is not None else {}
        payload = self._request("POST", f"/payments/{external_id}/refunds", "refund", json_body=body)
        return ActionResult(action_id=str(payload.get("action_id", "")))

    def find_by_reference(self, reference: str) -> PaymentIntentResult | None:
        payload = self._request("GET", "/payments", "lookup", params={"reference": reference})
        items = payload.get("data") or []
        if not items:
            return None
        # Newest attempt first.
        return _intent_from_payload(items[0])


class SimulatedGateway:
    backend = "simulated"

    def __init__(self, max_remembered: int = 10_000) -> None:
        self.max_remembered = max_remembered
        self._by_reference: OrderedDict[str, PaymentIntentResult] = OrderedDict()

    @staticmethod
    def _sim_id(prefix: str) -> str:
        return f"{prefix}_{SIMULATION_MARKER}{uuid4().hex[:20]}"

    def authorize(
        self,
        amount: int,
        token: str,
        reference: str,
        capture: bool,
        method: str,
        currency: str | None = None,
        description: str | None = None,
        customer: CustomerDetails | None = None,
    ) -> PaymentIntentResult:
        logger.warning("gateway secret key not set, simulating payment: reference=%s amount=%s", reference, amount)
        result = PaymentIntentResult(
            external_id=self._sim_id("pay"),
            action_id=self._sim_id("act"),
            approved=True,
            status="Captured" if capture else "Authorized",
            response_code="10000",
            response_summary="Approved",
            processed_on=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        )
        self._by_reference[reference] = result
        self._by_reference.move_to_end(reference)
        while len(self._by_reference) > self.max_remembered:
            self._by_reference.popitem(last=False)
        return result

    def capture(self, external_id: str, amount: int | None = None) -> ActionResult:
        logger.warning("gateway secret key not set, simulating capture: payment=%s", external_id)
        return ActionResult(action_id=self._sim_id("act"))

    def refund(self, external_id: str, amount: int | None = None) -> ActionResult:
        logger.warning("gateway secret key not set, simulating refund: payment=%s amount=%s", external_id, amount)
        return ActionResult(action_id=self._sim_id("act"))

    def find_by_reference(self, reference: str) -> PaymentIntentResult | None:
        return self._by_reference.get(reference)


def build_payment_gateway(settings: Settings | None = None) -> PaymentGateway:
    cfg = settings or get_settings()
    if cfg.gateway_simulated:
        logger.warning("payment gateway running in simulation mode")
        return SimulatedGateway()
    return CheckoutGateway(cfg)
