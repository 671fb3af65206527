# src/domain/fees.py

from decimal import Decimal, ROUND_HALF_UP
from typing import NamedTuple


class PayoutSplit(NamedTuple):
    gross_cents: int
    platform_fee_cents: int
    vendor_net_cents: int


def platform_fee_cents(gross_cents: int, commission_percent: Decimal | float | int) -> int:
    """
    Platform commission on a gross amount, rounded half-up to whole cents.
    """
    if gross_cents < 0:
        raise ValueError("gross_cents must be non-negative")
    percent = Decimal(str(commission_percent))
    if percent < 0 or percent > 100:
        raise ValueError("commission_percent must be between 0 and 100")

    fee = (Decimal(gross_cents) * percent / Decimal(100)).quantize(
        Decimal("1"),
        rounding=ROUND_HALF_UP,
    )
    return int(fee)


def split_payout(gross_cents: int, commission_percent: Decimal | float | int) -> PayoutSplit:
    fee = platform_fee_cents(gross_cents, commission_percent)
    return PayoutSplit(
        gross_cents=gross_cents,
        platform_fee_cents=fee,
        vendor_net_cents=gross_cents - fee,
    )
