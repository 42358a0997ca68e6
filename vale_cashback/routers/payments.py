from __future__ import annotations
from datetime import datetime, timezone
from fastapi import APIRouter, Depends, HTTPException, Response, Request
from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from ..deps import get_db, get_actor, require_role, Actor
from ..core.qr import parse_qr_data, render_png
from ..core.redis import allow_request
from ..core.nats import publish_settlement
from ..models import ActorRole, PaymentToken, Settlement, TokenStatus, as_utc
from ..schemas import (
    QRGenerateRequest, MerchantPaymentRequest, PaymentTokenRead, PayQRRequest, ProcessQRRequest,
    SettlementRead, PaymentTokenStatus,
)
from ..services import payments
from ..services.exceptions import PaymentServiceError, ValidationError, InvalidToken, Expired, NotAllowed, AlreadyRedeemed

router = APIRouter(prefix="/api", tags=["payments"])

def _now_iso():
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")

def _http_error(exc: PaymentServiceError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail={"kind": exc.kind, "message": exc.message})

def _token_read(t: PaymentToken) -> PaymentTokenRead:
    return PaymentTokenRead(
        id=t.id, code=t.code, amount=t.amount, description=t.description,
        status=t.effective_status().value, issuer_role=t.issuer_role.value,
        issued_at=as_utc(t.issued_at), expires_at=as_utc(t.expires_at),
        redeemed_by=t.redeemed_by, redeemed_at=as_utc(t.redeemed_at),
    )

def _settlement_read(s: Settlement, code: str, replayed: bool = False) -> SettlementRead:
    return SettlementRead(
        id=s.id, token_id=s.token_id, code=code, amount=s.amount, payment_method=s.payment_method.value,
        payer_id=s.payer_id, payee_id=s.payee_id, platform_fee=s.platform_fee,
        client_cashback=s.client_cashback, merchant_receives=s.merchant_receives,
        settled_at=as_utc(s.settled_at), replayed=replayed,
    )

async def _rate_limit(request: Request, route_key: str):
    ip = request.client.host if request.client else "unknown"
    if not await allow_request(ip, route_key):
        raise HTTPException(status_code=429, detail={"kind": "rate_limited", "message": "Too many requests"})

async def _announce(s: Settlement, code: str):
    try:
        await publish_settlement({
            "token_id": str(s.token_id),
            "code": code,
            "payer_id": str(s.payer_id),
            "payee_id": str(s.payee_id),
            "amount": str(s.amount),
            "settled_at": _now_iso(),
            "idempotency_key": f"settlement:{s.token_id}",
        })
    except Exception as exc:
        # non-fatal for the settlement response; issuer can still poll
        logger.warning("Settlement event not published", token_id=str(s.token_id), error=str(exc))

async def _redeem(db: AsyncSession, *, code: str, actor: Actor, method: str, request_id: str | None) -> SettlementRead:
    try:
        settlement, replayed = await payments.redeem_token(
            db, code=code, redeemer_id=actor.user_id, redeemer_role=actor.role,
            method=method, request_id=request_id,
        )
    except PaymentServiceError as exc:
        raise _http_error(exc)
    if not replayed:
        await _announce(settlement, code)
    return _settlement_read(settlement, code, replayed)

# --- 1) Client issues a QR for a pending charge (merchant scans it)
@router.post("/client/qr-code/generate", response_model=PaymentTokenRead, status_code=201)
async def generate_client_qr(
    payload: QRGenerateRequest,
    actor: Actor = Depends(require_role(ActorRole.CLIENT)),
    db: AsyncSession = Depends(get_db),
):
    try:
        token = await payments.issue_token(
            db, issuer_id=actor.user_id, issuer_role=actor.role,
            amount=payload.amount, description=payload.description,
        )
    except PaymentServiceError as exc:
        raise _http_error(exc)
    return _token_read(token)

# --- 2) Merchant issues a payment request QR (client scans and pays)
@router.post("/merchant/generate-payment", response_model=PaymentTokenRead, status_code=201)
async def generate_merchant_payment(
    payload: MerchantPaymentRequest,
    actor: Actor = Depends(require_role(ActorRole.MERCHANT)),
    db: AsyncSession = Depends(get_db),
):
    try:
        token = await payments.issue_token(
            db, issuer_id=actor.user_id, issuer_role=actor.role,
            amount=payload.amount, description=payload.description,
        )
    except PaymentServiceError as exc:
        raise _http_error(exc)
    return _token_read(token)

# --- 3) Status lookup; issuers poll this for the outcome
@router.get("/payment-qr/{code}", response_model=PaymentTokenStatus)
async def lookup_qr(code: str, actor: Actor = Depends(get_actor), db: AsyncSession = Depends(get_db)):
    try:
        token = await payments.get_token(db, code)
    except PaymentServiceError as exc:
        raise _http_error(exc)
    settlement = None
    if token.status == TokenStatus.REDEEMED:
        s = await payments.get_settlement(db, token.id)
        if s is not None and actor.user_id in (s.payer_id, s.payee_id):
            settlement = _settlement_read(s, token.code)
    return PaymentTokenStatus(token=_token_read(token), settlement=settlement)

# (Optional) PNG for kiosk / counter display
@router.get("/payment-qr/{code}/qr.png")
async def qr_png(code: str, actor: Actor = Depends(get_actor), db: AsyncSession = Depends(get_db)):
    try:
        token = await payments.get_token(db, code)
        if token.issuer_id != actor.user_id:
            raise NotAllowed("Only the issuer can display this QR code")
        status = token.effective_status()
        if status == TokenStatus.EXPIRED:
            raise Expired()
        if status == TokenStatus.REDEEMED:
            raise AlreadyRedeemed()
        if status == TokenStatus.CANCELLED:
            raise InvalidToken("QR code was cancelled")
    except PaymentServiceError as exc:
        raise _http_error(exc)
    return Response(content=render_png(token.code), media_type="image/png")

@router.post("/payment-qr/{code}/cancel", response_model=PaymentTokenRead)
async def cancel_qr(code: str, actor: Actor = Depends(get_actor), db: AsyncSession = Depends(get_db)):
    try:
        token = await payments.cancel_token(db, code=code, actor_id=actor.user_id)
    except PaymentServiceError as exc:
        raise _http_error(exc)
    return _token_read(token)

# --- 4) Client pays a merchant's payment request
@router.post("/client/pay-qrcode", response_model=SettlementRead)
async def pay_qrcode(
    payload: PayQRRequest,
    request: Request,
    actor: Actor = Depends(require_role(ActorRole.CLIENT)),
    db: AsyncSession = Depends(get_db),
):
    await _rate_limit(request, "qr.pay")
    return await _redeem(db, code=payload.code.strip(), actor=actor,
                         method=payload.payment_method, request_id=payload.request_id)

# --- 5) Merchant scans a client's QR
@router.post("/merchant/process-qrcode", response_model=SettlementRead)
async def process_qrcode(
    payload: ProcessQRRequest,
    request: Request,
    actor: Actor = Depends(require_role(ActorRole.MERCHANT)),
    db: AsyncSession = Depends(get_db),
):
    await _rate_limit(request, "qr.process")
    code = parse_qr_data(payload.qrData)
    if code is None:
        raise _http_error(ValidationError("QR data does not contain a payment code"))
    return await _redeem(db, code=code, actor=actor,
                         method=payload.payment_method, request_id=payload.request_id)
