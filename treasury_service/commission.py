"""
Commission math and subscription plan pricing.

Everything here is pure: amounts in, amounts out, no ledger access.
Money is rounded half-even to cents; the ledger stores integer cents.
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_EVEN, InvalidOperation
from typing import Dict

from common.error_handling import InvalidAmount, UnknownPlan
from common.settings import settings

CENT = Decimal("0.01")

def to_decimal(value, field: str = "amount") -> Decimal:
    """Coerce int/str/Decimal (or float via its repr) to Decimal"""
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value))
        except (InvalidOperation, ValueError, TypeError):
            raise InvalidAmount(f"{field} is not a valid amount: {value!r}", field=field)
    if not result.is_finite():
        raise InvalidAmount(f"{field} must be a finite amount", field=field)
    return result

def quantize(amount: Decimal) -> Decimal:
    return amount.quantize(CENT, rounding=ROUND_HALF_EVEN)

def to_cents(value, field: str = "amount") -> int:
    return int(quantize(to_decimal(value, field)) * 100)

def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)

@dataclass(frozen=True)
class CommissionBreakdown:
    gross_amount: Decimal
    rate: Decimal
    platform_commission: Decimal
    seller_earnings: Decimal

def calculate_commission(gross_amount, rate=None) -> CommissionBreakdown:
    """Split a gross amount into platform commission and seller earnings.

    Raises InvalidAmount for a non-positive gross amount or a rate outside [0, 1].
    """
    gross = quantize(to_decimal(gross_amount, "gross_amount"))
    rate = to_decimal(settings.commission_rate if rate is None else rate, "rate")
    if gross <= 0:
        raise InvalidAmount("gross_amount must be positive", field="gross_amount",
                            context={"gross_amount": str(gross)})
    if rate < 0 or rate > 1:
        raise InvalidAmount("commission rate must be between 0 and 1", field="rate",
                            context={"rate": str(rate)})

    commission = quantize(gross * rate)
    return CommissionBreakdown(
        gross_amount=gross,
        rate=rate,
        platform_commission=commission,
        seller_earnings=gross - commission,
    )

@dataclass(frozen=True)
class SubscriptionPlan:
    name: str
    price: Decimal
    duration_days: int

SUBSCRIPTION_PLANS: Dict[str, SubscriptionPlan] = {
    "bi_weekly": SubscriptionPlan("bi_weekly", Decimal("15"), 14),
    "monthly": SubscriptionPlan("monthly", Decimal("30"), 30),
    "quarterly": SubscriptionPlan("quarterly", Decimal("80"), 90),
    "semi_annually": SubscriptionPlan("semi_annually", Decimal("150"), 180),
    "annually": SubscriptionPlan("annually", Decimal("280"), 365),
    "bi_annually": SubscriptionPlan("bi_annually", Decimal("500"), 730),
}

@dataclass(frozen=True)
class SubscriptionQuote:
    plan: str
    base_price: Decimal
    commission_fee: Decimal
    discount_amount: Decimal
    discounted_price: Decimal
    tax_amount: Decimal
    final_price: Decimal
    currency: str
    duration_days: int

    def to_dict(self) -> dict:
        return {
            "plan": self.plan,
            "base_price": str(self.base_price),
            "commission_fee": str(self.commission_fee),
            "discount_amount": str(self.discount_amount),
            "discounted_price": str(self.discounted_price),
            "tax_amount": str(self.tax_amount),
            "final_price": str(self.final_price),
            "currency": self.currency,
            "duration_days": self.duration_days,
        }

def price_subscription(plan: str, tax_rate=None, discount_rate=None, currency: str = None) -> SubscriptionQuote:
    """Price a subscription plan: discount on the base price, tax on the discounted price."""
    details = SUBSCRIPTION_PLANS.get(plan)
    if details is None:
        raise UnknownPlan(plan)

    tax_rate = to_decimal(settings.tax_rate if tax_rate is None else tax_rate, "tax_rate")
    discount_rate = to_decimal(settings.discount_rate if discount_rate is None else discount_rate,
                               "discount_rate")

    base = quantize(details.price)
    commission = calculate_commission(base).platform_commission
    discount = quantize(base * discount_rate)
    discounted = base - discount
    tax = quantize(discounted * tax_rate)

    return SubscriptionQuote(
        plan=plan,
        base_price=base,
        commission_fee=commission,
        discount_amount=discount,
        discounted_price=discounted,
        tax_amount=tax,
        final_price=discounted + tax,
        currency=currency or settings.currency,
        duration_days=details.duration_days,
    )
