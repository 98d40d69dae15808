"""
Fee & revenue-share calculation.

Pure functions only: nothing here touches the database or reads the live
referral configuration. Callers pass a ``ReferralContext`` built from a
``ReferralConfigSnapshot`` taken once per transaction.
"""

from dataclasses import asdict, dataclass
from decimal import ROUND_CEILING, ROUND_HALF_UP, Decimal
from typing import Optional

from ticket_exchange.config import settings
from ticket_exchange.models import PaymentType

CHARGED_WITH_SERVICE_FEE = (PaymentType.PRIMARY_PURCHASE.value, PaymentType.FAVOR_TICKET_PURCHASE.value)


@dataclass(frozen=True)
class FeeSchedule:
    platform_rate: Decimal
    processor_rate: Decimal
    processor_fixed_cents: int
    mint_fee_cents: int
    resale_rate: Decimal
    vendor_rate: Decimal
    cash_rate: Decimal

    @classmethod
    def from_settings(cls, config=settings) -> "FeeSchedule":
        return cls(
            platform_rate=Decimal(config.PLATFORM_FEE_RATE),
            processor_rate=Decimal(config.PROCESSOR_FEE_RATE),
            processor_fixed_cents=config.PROCESSOR_FEE_FIXED_CENTS,
            mint_fee_cents=config.MINT_FEE_CENTS,
            resale_rate=Decimal(config.RESALE_FEE_RATE),
            vendor_rate=Decimal(config.VENDOR_FEE_RATE),
            cash_rate=Decimal(config.CASH_SALE_FEE_RATE),
        )


@dataclass(frozen=True)
class ReferralContext:
    """Terms of an active referral, as they stood when the transaction began"""
    referrer_id: str
    discount_percent: Decimal
    revenue_share_percent: Decimal


@dataclass(frozen=True)
class FeeBreakdown:
    payment_type: str
    base_amount_cents: int
    discount_cents: int
    effective_base_cents: int
    platform_fee_cents: int
    processor_fee_cents: int
    mint_fee_cents: int
    service_fee_cents: int
    total_cents: int
    seller_payout_cents: int
    referral_earning_cents: int = 0
    referrer_id: Optional[str] = None
    discount_percent_applied: Decimal = Decimal("0")
    revenue_share_percent_applied: Decimal = Decimal("0")

    def to_dict(self) -> dict:
        data = asdict(self)
        data["discount_percent_applied"] = str(self.discount_percent_applied)
        data["revenue_share_percent_applied"] = str(self.revenue_share_percent_applied)
        return data


def _ceil(value: Decimal) -> int:
    return int(value.to_integral_value(rounding=ROUND_CEILING))


def _half_up(value: Decimal) -> int:
    return int(value.to_integral_value(rounding=ROUND_HALF_UP))


def calculate_fees(payment_type: str, base_amount_cents: int, referral: Optional[ReferralContext] = None,
                   schedule: Optional[FeeSchedule] = None, include_mint_fee: bool = False) -> FeeBreakdown:
    """Derive what the payer is charged and what the seller keeps.

    Primary and favor purchases pay a service fee on top of the base: the
    platform's cut (rounded up), an optional mint fee, and a processor fee
    grossed up so the processor's percentage is covered by the total. A
    referral discount reduces the base before any of that is computed.

    Resale and vendor sales charge the buyer exactly the base; the platform
    fee comes out of the seller's share.
    """
    if base_amount_cents < 0:
        raise ValueError("Amount cannot be negative")
    schedule = schedule or FeeSchedule.from_settings()
    payment_type = PaymentType(payment_type).value

    if payment_type in CHARGED_WITH_SERVICE_FEE:
        discount = 0
        if referral is not None:
            discount = _half_up(Decimal(base_amount_cents) * referral.discount_percent)
        effective = base_amount_cents - discount
        platform_fee = _ceil(Decimal(effective) * schedule.platform_rate)
        mint_fee = schedule.mint_fee_cents if include_mint_fee else 0
        subtotal = effective + platform_fee + mint_fee
        if subtotal == 0:
            total = 0
        else:
            total = _ceil((Decimal(subtotal) + schedule.processor_fixed_cents) / (1 - schedule.processor_rate))
        processor_fee = total - subtotal

        earning = 0
        if referral is not None:
            earning = _half_up(Decimal(platform_fee) * referral.revenue_share_percent)
        return FeeBreakdown(
            payment_type=payment_type,
            base_amount_cents=base_amount_cents,
            discount_cents=discount,
            effective_base_cents=effective,
            platform_fee_cents=platform_fee,
            processor_fee_cents=processor_fee,
            mint_fee_cents=mint_fee,
            service_fee_cents=platform_fee + processor_fee + mint_fee,
            total_cents=total,
            seller_payout_cents=effective,
            referral_earning_cents=earning,
            referrer_id=referral.referrer_id if referral else None,
            discount_percent_applied=referral.discount_percent if referral else Decimal("0"),
            revenue_share_percent_applied=referral.revenue_share_percent if referral else Decimal("0"),
        )

    if payment_type == PaymentType.SUBSCRIPTION.value:
        fee, payout = base_amount_cents, 0
    else:
        rate = schedule.resale_rate if payment_type == PaymentType.RESALE_PURCHASE.value else schedule.vendor_rate
        fee = _half_up(Decimal(base_amount_cents) * rate)
        payout = base_amount_cents - fee

    return FeeBreakdown(
        payment_type=payment_type,
        base_amount_cents=base_amount_cents,
        discount_cents=0,
        effective_base_cents=base_amount_cents,
        platform_fee_cents=fee,
        processor_fee_cents=0,
        mint_fee_cents=0,
        service_fee_cents=0,
        total_cents=base_amount_cents,
        seller_payout_cents=payout,
    )


def cash_sale_fee(amount_cents: int, schedule: Optional[FeeSchedule] = None) -> int:
    """Platform fee billed to the organizer for a cash sale; never deducted from the sale"""
    if amount_cents < 0:
        raise ValueError("Amount cannot be negative")
    schedule = schedule or FeeSchedule.from_settings()
    return _half_up(Decimal(amount_cents) * schedule.cash_rate)
