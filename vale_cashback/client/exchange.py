"""
Client side of the QR payment exchange.

Every call returns a ``Success`` or ``Failure`` instead of raising, so a
caller can always show a message. Redemption is never retried here: a
timeout is reported as a network failure with unknown outcome, and a second
redemption is refused while the first is still outstanding.
"""
from __future__ import annotations
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable

import httpx
from loguru import logger

from ..core.qr import is_well_formed, parse_qr_data

PAYMENT_METHODS = ("wallet", "bonus")


@dataclass(frozen=True)
class Success:
    data: Any
    ok = True


@dataclass(frozen=True)
class Failure:
    kind: str
    message: str
    ok = False


Result = Success | Failure


@dataclass(frozen=True)
class PaymentToken:
    """Immutable snapshot of a server-owned token."""
    id: str
    code: str
    amount: Decimal
    status: str
    expires_at: datetime
    issued_at: datetime | None = None
    description: str | None = None

    @classmethod
    def from_json(cls, d: dict) -> "PaymentToken":
        return cls(
            id=str(d["id"]),
            code=d.get("code") or "",
            amount=Decimal(str(d["amount"])),
            status=d.get("status", "pending"),
            expires_at=_parse_dt(d.get("expires_at") or d.get("expiresAt")),
            issued_at=_parse_dt(d["issued_at"]) if d.get("issued_at") else None,
            description=d.get("description"),
        )


@dataclass(frozen=True)
class SettlementResult:
    id: str
    code: str
    amount: Decimal
    payment_method: str
    client_cashback: Decimal
    merchant_receives: Decimal
    settled_at: datetime
    replayed: bool = False

    @classmethod
    def from_json(cls, d: dict) -> "SettlementResult":
        return cls(
            id=str(d["id"]),
            code=d["code"],
            amount=Decimal(str(d["amount"])),
            payment_method=d["payment_method"],
            client_cashback=Decimal(str(d["client_cashback"])),
            merchant_receives=Decimal(str(d["merchant_receives"])),
            settled_at=_parse_dt(d["settled_at"]),
            replayed=bool(d.get("replayed", False)),
        )


def _token_status(body: dict) -> dict:
    settlement = body.get("settlement")
    return {
        "token": PaymentToken.from_json(body["token"]),
        "settlement": SettlementResult.from_json(settlement) if settlement else None,
    }


def _parse_dt(value: str) -> datetime:
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def _validate_amount(amount) -> Decimal | Failure:
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        return Failure("validation", "Amount must be a number")
    if not value.is_finite() or value <= 0:
        return Failure("validation", "Amount must be greater than zero")
    if value != value.quantize(Decimal("0.01")):
        return Failure("validation", "Amount supports at most two decimal places")
    return value


def failure_from_response(r: httpx.Response) -> Failure:
    """Map an error response to a Failure without trusting its shape."""
    try:
        body = r.json()
    except ValueError:
        body = None
    detail = body.get("detail") if isinstance(body, dict) else None
    if isinstance(detail, dict) and isinstance(detail.get("kind"), str):
        return Failure(detail["kind"], str(detail.get("message") or detail["kind"]))
    if r.status_code == 401:
        return Failure("unauthorized", "Please sign in again")
    if r.status_code == 422:
        msg = "Invalid request"
        if isinstance(detail, list) and detail and isinstance(detail[0], dict):
            msg = str(detail[0].get("msg") or msg)
        return Failure("validation", msg)
    if r.status_code == 429:
        return Failure("rate_limited", "Too many attempts, wait a moment")
    if isinstance(detail, str):
        return Failure("error", detail)
    return Failure("error", f"Unexpected response ({r.status_code})")


_MALFORMED = (ValueError, KeyError, TypeError, AttributeError, InvalidOperation)


def success_from_response(r: httpx.Response, build: Callable[[Any], Any], message: str) -> Result:
    try:
        return Success(build(r.json()))
    except _MALFORMED as exc:
        logger.warning("Malformed response body", status=r.status_code, error=repr(exc))
        return Failure("error", message)


class PaymentExchangeClient:
    def __init__(self, http: httpx.AsyncClient, *, request_id_factory: Callable[[], str] | None = None):
        self._http = http
        self._new_request_id = request_id_factory or (lambda: uuid.uuid4().hex)
        self._in_flight: set[str] = set()

    def in_flight(self, op: str) -> bool:
        return op in self._in_flight

    @asynccontextmanager
    async def _guard(self, op: str):
        self._in_flight.add(op)
        try:
            yield
        finally:
            self._in_flight.discard(op)

    async def _post(self, path: str, payload: dict) -> httpx.Response | Failure:
        try:
            return await self._http.post(path, json=payload)
        except httpx.TimeoutException:
            logger.warning("Request timed out; outcome unknown", path=path)
            return Failure("network", "The request timed out. Check the payment status before trying again.")
        except httpx.TransportError as exc:
            logger.warning("Network error", path=path, error=str(exc))
            return Failure("network", "No connection to the server")

    async def issue(self, amount, description: str | None = None, *, as_merchant: bool = False) -> Result:
        value = _validate_amount(amount)
        if isinstance(value, Failure):
            return value
        op = "issue"
        if self.in_flight(op):
            return Failure("in_flight", "A QR code is already being generated")
        path = "/api/merchant/generate-payment" if as_merchant else "/api/client/qr-code/generate"
        payload: dict[str, Any] = {"amount": str(value)}
        if description:
            payload["description"] = description
        async with self._guard(op):
            r = await self._post(path, payload)
        if isinstance(r, Failure):
            return r
        if r.status_code != 201:
            return failure_from_response(r)
        return success_from_response(r, PaymentToken.from_json, "The server sent an unreadable QR code")

    async def redeem(self, code: str, method: str = "wallet") -> Result:
        code = (code or "").strip()
        if not is_well_formed(code):
            return Failure("validation", "Invalid QR code")
        if method not in PAYMENT_METHODS:
            return Failure("validation", f"Unsupported payment method: {method}")
        payload = {"code": code, "payment_method": method, "request_id": self._new_request_id()}
        return await self._settle("/api/client/pay-qrcode", payload)

    async def process(self, qr_data: str, method: str = "wallet") -> Result:
        """Merchant scanning flow: redeem a code read from a client's QR."""
        if parse_qr_data(qr_data) is None:
            return Failure("validation", "QR data does not contain a payment code")
        payload = {"qrData": qr_data, "payment_method": method, "request_id": self._new_request_id()}
        return await self._settle("/api/merchant/process-qrcode", payload)

    async def _settle(self, path: str, payload: dict) -> Result:
        op = "redeem"
        if self.in_flight(op):
            return Failure("in_flight", "A payment is already being processed")
        async with self._guard(op):
            r = await self._post(path, payload)
        if isinstance(r, Failure):
            return r
        if r.status_code != 200:
            failure = failure_from_response(r)
            logger.info("Redemption failed", kind=failure.kind)
            return failure
        return success_from_response(
            r, SettlementResult.from_json, "The payment response was unreadable. Check the payment status before trying again.",
        )

    async def lookup(self, code: str) -> Result:
        if not is_well_formed(code):
            return Failure("validation", "Invalid QR code")
        try:
            r = await self._http.get(f"/api/payment-qr/{code}")
        except httpx.TransportError as exc:
            logger.warning("Network error", path="/api/payment-qr", error=str(exc))
            return Failure("network", "No connection to the server")
        if r.status_code != 200:
            return failure_from_response(r)
        return success_from_response(r, _token_status, "The server sent an unreadable payment status")

    async def cancel(self, code: str) -> Result:
        if not is_well_formed(code):
            return Failure("validation", "Invalid QR code")
        r = await self._post(f"/api/payment-qr/{code}/cancel", {})
        if isinstance(r, Failure):
            return r
        if r.status_code != 200:
            return failure_from_response(r)
        return success_from_response(r, PaymentToken.from_json, "The server sent an unreadable QR code")
