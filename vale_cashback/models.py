from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

from sqlalchemy import CheckConstraint, Index, String, Text, Enum as SqlEnum, ForeignKey, UniqueConstraint
from sqlalchemy.orm import declarative_base, Mapped, mapped_column
from sqlalchemy.types import DateTime, Numeric

Base = declarative_base()

Money = Numeric(12, 2)

def utcnow():
    return datetime.now(timezone.utc)

def as_utc(dt: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything is stored in UTC
    if dt is None or dt.tzinfo is not None:
        return dt
    return dt.replace(tzinfo=timezone.utc)

class TokenStatus(str, Enum):
    PENDING = "pending"
    REDEEMED = "redeemed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

class ActorRole(str, Enum):
    CLIENT = "client"
    MERCHANT = "merchant"

class PaymentMethod(str, Enum):
    WALLET = "wallet"
    BONUS = "bonus"

class PaymentToken(Base):
    __tablename__ = "qr_codes"
    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    code: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    status: Mapped[TokenStatus] = mapped_column(SqlEnum(TokenStatus), default=TokenStatus.PENDING, nullable=False)
    issuer_id: Mapped[uuid.UUID] = mapped_column(nullable=False)
    issuer_role: Mapped[ActorRole] = mapped_column(SqlEnum(ActorRole), nullable=False)
    issued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    redeemed_by: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
    redeemed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_qr_amount"),
        CheckConstraint("expires_at > issued_at", name="ck_qr_expiry"),
        Index("ix_qr_issuer", "issuer_id"),
        Index("ix_qr_status_expiry", "status", "expires_at"),
    )

    def effective_status(self, now: datetime | None = None) -> TokenStatus:
        """Stored status, except that a pending token past its expiry reads as expired."""
        now = now or utcnow()
        if self.status == TokenStatus.PENDING and as_utc(self.expires_at) <= now:
            return TokenStatus.EXPIRED
        return self.status

class Wallet(Base):
    __tablename__ = "wallets"
    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(nullable=False, unique=True)
    balance: Mapped[Decimal] = mapped_column(Money, default=Decimal("0.00"), nullable=False)
    total_earned: Mapped[Decimal] = mapped_column(Money, default=Decimal("0.00"), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

class Settlement(Base):
    __tablename__ = "settlements"
    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    token_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("qr_codes.id", ondelete="RESTRICT"), nullable=False)
    request_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    payer_id: Mapped[uuid.UUID] = mapped_column(nullable=False)
    payee_id: Mapped[uuid.UUID] = mapped_column(nullable=False)
    redeemed_by: Mapped[uuid.UUID] = mapped_column(nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    payment_method: Mapped[PaymentMethod] = mapped_column(SqlEnum(PaymentMethod), nullable=False)
    platform_fee: Mapped[Decimal] = mapped_column(Money, nullable=False)
    client_cashback: Mapped[Decimal] = mapped_column(Money, nullable=False)
    merchant_receives: Mapped[Decimal] = mapped_column(Money, nullable=False)
    settled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        UniqueConstraint("token_id", name="uq_settlement_per_token"),
        UniqueConstraint("request_id", name="uq_settlement_request_id"),
        Index("ix_settlements_payer", "payer_id"),
        Index("ix_settlements_payee", "payee_id"),
    )
