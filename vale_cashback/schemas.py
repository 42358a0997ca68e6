from __future__ import annotations
from pydantic import BaseModel, Field
from typing import Annotated, Literal
from uuid import UUID
from datetime import datetime
from decimal import Decimal

Amount     = Annotated[Decimal, Field(gt=0, max_digits=12, decimal_places=2)]
Desc255    = Annotated[str, Field(max_length=255)]
RequestId  = Annotated[str, Field(min_length=8, max_length=64)]

Method     = Literal["wallet", "bonus"]
Status     = Literal["pending", "redeemed", "expired", "cancelled"]

# --- issuance
class QRGenerateRequest(BaseModel):
    amount: Amount
    description: Desc255 | None = None

class MerchantPaymentRequest(BaseModel):
    amount: Amount
    description: Desc255 | None = None

class PaymentTokenRead(BaseModel):
    id: UUID
    code: str
    amount: Decimal
    description: str | None = None
    status: Status
    issuer_role: Literal["client", "merchant"]
    issued_at: datetime
    expires_at: datetime
    redeemed_by: UUID | None = None
    redeemed_at: datetime | None = None

# --- redemption
class PayQRRequest(BaseModel):
    code: str
    payment_method: Method = "wallet"
    request_id: RequestId | None = None

class ProcessQRRequest(BaseModel):
    qrData: str
    payment_method: Method = "wallet"
    request_id: RequestId | None = None

class SettlementRead(BaseModel):
    id: UUID
    token_id: UUID
    code: str
    amount: Decimal
    payment_method: Method
    payer_id: UUID
    payee_id: UUID
    platform_fee: Decimal
    client_cashback: Decimal
    merchant_receives: Decimal
    settled_at: datetime
    replayed: bool = False

class PaymentTokenStatus(BaseModel):
    token: PaymentTokenRead
    settlement: SettlementRead | None = None

# --- wallets
class WalletRead(BaseModel):
    user_id: UUID
    balance: Decimal
    bonus_available: Decimal
    total_earned: Decimal
