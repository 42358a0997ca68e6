from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP

from ..core.config import get_settings

settings = get_settings()

CENT = Decimal("0.01")

def quantize(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)

@dataclass(frozen=True)
class FeeBreakdown:
    amount: Decimal
    platform_fee: Decimal
    client_cashback: Decimal
    merchant_receives: Decimal

def calculate_fees(
    amount: Decimal,
    *,
    platform_fee_rate: Decimal | None = None,
    client_cashback_rate: Decimal | None = None,
) -> FeeBreakdown:
    """
    Merchant pays the platform fee out of the sale; the client earns cashback
    on the full amount.
    """
    pf_rate = settings.platform_fee_rate if platform_fee_rate is None else platform_fee_rate
    cb_rate = settings.client_cashback_rate if client_cashback_rate is None else client_cashback_rate
    amount = quantize(amount)
    platform_fee = quantize(amount * pf_rate)
    return FeeBreakdown(
        amount=amount,
        platform_fee=platform_fee,
        client_cashback=quantize(amount * cb_rate),
        merchant_receives=amount - platform_fee,
    )
