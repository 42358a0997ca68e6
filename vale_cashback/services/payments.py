"""
QR payment token lifecycle.

A token is issued ``pending`` with a short TTL and may move to ``redeemed``
exactly once. The transition is a single conditional UPDATE guarded by status
and expiry, so concurrent redemptions race on the database row and only one
of them changes it. Everything the settlement touches (wallets, the
settlement row) is written in the same transaction as the claim.
"""
from __future__ import annotations
import uuid
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import get_settings
from ..core.qr import new_code, is_well_formed
from ..models import PaymentToken, Settlement, TokenStatus, ActorRole, PaymentMethod, utcnow
from . import wallets
from .exceptions import (
    PaymentServiceError, ValidationError, InvalidToken, AlreadyRedeemed, Expired, NotAllowed,
)
from .fees import calculate_fees, quantize

settings = get_settings()

DEFAULT_MERCHANT_DESCRIPTION = "Vale Cashback payment"

def validate_amount(amount, *, minimum: Decimal | None = None) -> Decimal:
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError("Amount must be a number")
    if not value.is_finite() or value <= 0:
        raise ValidationError("Amount must be greater than zero")
    if value != quantize(value):
        raise ValidationError("Amount supports at most two decimal places")
    if minimum is not None and value < minimum:
        raise ValidationError(f"Minimum amount for payments is {minimum}")
    return quantize(value)

def parse_method(method: str | PaymentMethod | None) -> PaymentMethod:
    try:
        return PaymentMethod(method or PaymentMethod.WALLET)
    except ValueError:
        raise ValidationError(f"Unsupported payment method: {method}")

async def issue_token(
    db: AsyncSession,
    *,
    issuer_id: uuid.UUID,
    issuer_role: ActorRole,
    amount,
    description: str | None = None,
    ttl_seconds: int | None = None,
) -> PaymentToken:
    minimum = settings.merchant_min_payment if issuer_role == ActorRole.MERCHANT else None
    value = validate_amount(amount, minimum=minimum)
    if issuer_role == ActorRole.MERCHANT and not description:
        description = DEFAULT_MERCHANT_DESCRIPTION
    ttl = settings.qr_ttl_seconds if ttl_seconds is None else ttl_seconds
    if ttl <= 0:
        raise ValidationError("TTL must be positive")
    now = utcnow()
    token = PaymentToken(
        code=new_code(),
        amount=value,
        description=description,
        status=TokenStatus.PENDING,
        issuer_id=issuer_id,
        issuer_role=issuer_role,
        issued_at=now,
        expires_at=now + timedelta(seconds=ttl),
    )
    db.add(token)
    await db.commit()
    await db.refresh(token)
    logger.info("Issued payment token", token_id=str(token.id), issuer_role=issuer_role.value, amount=str(value))
    return token

async def get_token(db: AsyncSession, code: str) -> PaymentToken:
    if not is_well_formed(code):
        raise ValidationError("Malformed QR code")
    token = (await db.execute(
        select(PaymentToken).where(PaymentToken.code == code).execution_options(populate_existing=True)
    )).scalar_one_or_none()
    if token is None:
        raise InvalidToken()
    return token

async def get_settlement(db: AsyncSession, token_id: uuid.UUID) -> Settlement | None:
    return (await db.execute(select(Settlement).where(Settlement.token_id == token_id))).scalar_one_or_none()

async def _settlement_for_request(db: AsyncSession, request_id: str) -> Settlement | None:
    return (await db.execute(select(Settlement).where(Settlement.request_id == request_id))).scalar_one_or_none()

def _replay_or_reject(existing: Settlement, token_id: uuid.UUID, redeemer_id: uuid.UUID) -> Settlement:
    if existing.token_id != token_id or existing.redeemed_by != redeemer_id:
        raise ValidationError("request_id was already used for a different payment")
    logger.info("Replaying settlement for repeated request", token_id=str(token_id), request_id=existing.request_id)
    return existing

def _classify_unclaimed(token: PaymentToken, now: datetime) -> PaymentServiceError:
    status = token.effective_status(now)
    if status == TokenStatus.REDEEMED:
        return AlreadyRedeemed()
    if status == TokenStatus.EXPIRED:
        return Expired()
    if status == TokenStatus.CANCELLED:
        return InvalidToken("QR code was cancelled")
    # still pending and unexpired: the claim lost to a concurrent writer that later rolled back
    return AlreadyRedeemed("QR code is being processed by another request")

async def redeem_token(
    db: AsyncSession,
    *,
    code: str,
    redeemer_id: uuid.UUID,
    redeemer_role: ActorRole,
    method: str | PaymentMethod | None = PaymentMethod.WALLET,
    request_id: str | None = None,
) -> tuple[Settlement, bool]:
    """
    Settle the token identified by ``code``.

    Returns ``(settlement, replayed)``; ``replayed`` is True when ``request_id``
    matches a settlement already recorded for this token and redeemer.
    Raises ValidationError, InvalidToken, AlreadyRedeemed, Expired,
    InsufficientFunds or NotAllowed.
    """
    if not is_well_formed(code):
        raise ValidationError("Malformed QR code")
    pm = parse_method(method)
    token = await get_token(db, code)
    # rollback expires loaded rows; keep the key for the log and replay paths
    token_id = token.id

    if request_id:
        existing = await _settlement_for_request(db, request_id)
        if existing is not None:
            return _replay_or_reject(existing, token_id, redeemer_id), True

    if token.issuer_role == redeemer_role or token.issuer_id == redeemer_id:
        raise NotAllowed("A QR code must be redeemed by the other party")

    now = utcnow()
    claim = await db.execute(
        update(PaymentToken)
        .where(
            PaymentToken.id == token_id,
            PaymentToken.status == TokenStatus.PENDING,
            PaymentToken.expires_at > now,
        )
        .values(status=TokenStatus.REDEEMED, redeemed_by=redeemer_id, redeemed_at=now)
        .execution_options(synchronize_session=False)
    )
    if claim.rowcount != 1:
        await db.rollback()
        if request_id:
            existing = await _settlement_for_request(db, request_id)
            if existing is not None:
                return _replay_or_reject(existing, token_id, redeemer_id), True
        await db.refresh(token)
        err = _classify_unclaimed(token, now)
        logger.info("Redemption rejected", token_id=str(token_id), kind=err.kind)
        raise err

    if redeemer_role == ActorRole.CLIENT:
        payer_id, payee_id = redeemer_id, token.issuer_id
    else:
        payer_id, payee_id = token.issuer_id, redeemer_id

    fees = calculate_fees(token.amount)
    try:
        await wallets.debit(db, payer_id, fees.amount, pm)
        await wallets.credit(db, payer_id, fees.client_cashback)
        await wallets.credit(db, payee_id, fees.merchant_receives)
        settlement = Settlement(
            token_id=token_id,
            request_id=request_id,
            payer_id=payer_id,
            payee_id=payee_id,
            redeemed_by=redeemer_id,
            amount=fees.amount,
            payment_method=pm,
            platform_fee=fees.platform_fee,
            client_cashback=fees.client_cashback,
            merchant_receives=fees.merchant_receives,
            settled_at=now,
        )
        db.add(settlement)
        await db.commit()
    except PaymentServiceError as exc:
        await db.rollback()
        logger.info("Settlement aborted; token left pending", token_id=str(token_id), kind=exc.kind)
        raise
    except IntegrityError:
        await db.rollback()
        if request_id:
            existing = await _settlement_for_request(db, request_id)
            if existing is not None:
                return _replay_or_reject(existing, token_id, redeemer_id), True
        raise AlreadyRedeemed()

    await db.refresh(settlement)
    logger.info(
        "Settled payment token",
        token_id=str(token_id),
        settlement_id=str(settlement.id),
        amount=str(settlement.amount),
        method=pm.value,
    )
    return settlement, False

async def cancel_token(db: AsyncSession, *, code: str, actor_id: uuid.UUID) -> PaymentToken:
    token = await get_token(db, code)
    if token.issuer_id != actor_id:
        raise NotAllowed("Only the issuer can cancel a QR code")
    now = utcnow()
    res = await db.execute(
        update(PaymentToken)
        .where(PaymentToken.id == token.id, PaymentToken.status == TokenStatus.PENDING, PaymentToken.expires_at > now)
        .values(status=TokenStatus.CANCELLED)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        await db.rollback()
        await db.refresh(token)
        raise _classify_unclaimed(token, now)
    await db.commit()
    await db.refresh(token)
    logger.info("Cancelled payment token", token_id=str(token.id))
    return token

async def expire_stale_tokens(db: AsyncSession, *, now: datetime | None = None) -> int:
    """Archive pass: persist ``expired`` for pending tokens already past their expiry."""
    now = now or utcnow()
    res = await db.execute(
        update(PaymentToken)
        .where(PaymentToken.status == TokenStatus.PENDING, PaymentToken.expires_at <= now)
        .values(status=TokenStatus.EXPIRED)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if res.rowcount:
        logger.info("Expired stale payment tokens", count=res.rowcount)
    return res.rowcount or 0
