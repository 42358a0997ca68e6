from __future__ import annotations
import uuid
from decimal import Decimal
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import func, select, update

from ..core.config import get_settings
from ..models import Wallet, PaymentMethod, Money
from .exceptions import InsufficientFunds
from .fees import quantize

settings = get_settings()

def _cents(expr):
    # SQLite keeps Numeric as REAL; round every stored sum and comparison to cents
    return func.round(expr, 2, type_=Money)

async def get_or_create_wallet(db: AsyncSession, user_id: uuid.UUID) -> Wallet:
    w = (await db.execute(
        select(Wallet).where(Wallet.user_id == user_id).execution_options(populate_existing=True)
    )).scalar_one_or_none()
    if w:
        return w
    w = Wallet(user_id=user_id, balance=Decimal("0.00"), total_earned=Decimal("0.00"))
    db.add(w)
    await db.flush()
    return w

def spendable(wallet: Wallet, method: PaymentMethod) -> Decimal:
    if method == PaymentMethod.BONUS:
        return quantize(wallet.balance * settings.bonus_balance_ratio)
    return quantize(wallet.balance)

async def debit(db: AsyncSession, user_id: uuid.UUID, amount: Decimal, method: PaymentMethod) -> None:
    """Conditional decrement: the balance check and the write are one statement."""
    await get_or_create_wallet(db, user_id)
    if method == PaymentMethod.BONUS:
        enough = _cents(Wallet.balance * settings.bonus_balance_ratio) >= amount
    else:
        enough = _cents(Wallet.balance) >= amount
    res = await db.execute(
        update(Wallet)
        .where(Wallet.user_id == user_id, enough)
        .values(balance=_cents(Wallet.balance - amount))
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        wallet = await get_or_create_wallet(db, user_id)
        raise InsufficientFunds(
            f"Insufficient {method.value} balance: {spendable(wallet, method)} available, {amount} required"
        )

async def credit(db: AsyncSession, user_id: uuid.UUID, amount: Decimal) -> None:
    if amount <= 0:
        return
    await get_or_create_wallet(db, user_id)
    await db.execute(
        update(Wallet)
        .where(Wallet.user_id == user_id)
        .values(balance=_cents(Wallet.balance + amount), total_earned=_cents(Wallet.total_earned + amount))
        .execution_options(synchronize_session=False)
    )
