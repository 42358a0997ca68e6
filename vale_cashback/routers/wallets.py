from __future__ import annotations
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ..deps import get_db, get_actor, Actor
from ..models import PaymentMethod
from ..schemas import WalletRead
from ..services.wallets import get_or_create_wallet, spendable

router = APIRouter(prefix="/api/wallets", tags=["wallets"])

@router.get("/me", response_model=WalletRead)
async def my_wallet(actor: Actor = Depends(get_actor), db: AsyncSession = Depends(get_db)):
    w = await get_or_create_wallet(db, actor.user_id)
    await db.commit()
    return WalletRead(
        user_id=w.user_id, balance=w.balance,
        bonus_available=spendable(w, PaymentMethod.BONUS), total_earned=w.total_earned,
    )
