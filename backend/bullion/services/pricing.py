"""Checkout pricing.

Order of application matters and is fixed:

1. platform total = supplier quote amount (handling fee is already inside it)
2. markup on the platform total
3. processing fee on (platform total + markup), by payment method class
4. grand total = subtotal with markup + processing fee

Every step runs on unrounded Decimals and only the grand total is rounded to
cents. The displayed markup is rounded on its own and the fee takes whatever
cent is left over, so the breakdown still sums to the amount we capture.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Mapping, Optional, Union

from bullion.config import settings

Number = Union[Decimal, int, float, str]

CENT = Decimal("0.01")


@dataclass(frozen=True)
class FeeRule:
    percentage: Decimal
    fixed: Decimal = Decimal("0")
    cap: Optional[Decimal] = None


PROCESSING_FEES: Dict[str, FeeRule] = {
    "card": FeeRule(percentage=Decimal("2.9"), fixed=Decimal("0.30")),
    "us_bank_account": FeeRule(percentage=Decimal("0.8"), cap=Decimal("5.00")),
    "crypto": FeeRule(percentage=Decimal("1.5")),
    "default": FeeRule(percentage=Decimal("2.9"), fixed=Decimal("0.30")),
}


def to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    # str() first so 29.88 stays 29.88 and not its binary float expansion.
    return Decimal(str(value))


def to_cents(value: Number) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def _raw_processing_fee(amount: Number, payment_class: Optional[str], fee_table: Mapping[str, FeeRule]) -> Decimal:
    rule = fee_table.get(payment_class or "default") or fee_table["default"]
    fee = to_decimal(amount) * rule.percentage / Decimal(100) + rule.fixed
    if rule.cap is not None and fee > rule.cap:
        fee = rule.cap
    return fee


def calculate_processing_fee(
    amount: Number,
    payment_class: Optional[str],
    fee_table: Mapping[str, FeeRule] = PROCESSING_FEES,
) -> Decimal:
    return to_cents(_raw_processing_fee(amount, payment_class, fee_table))


@dataclass(frozen=True)
class PricedOrder:
    platform_total: Decimal
    handling_fee: Decimal
    markup_percentage: Decimal
    markup_amount: Decimal
    subtotal_with_markup: Decimal
    payment_class: str
    processing_fee: Decimal
    grand_total: Decimal

    @property
    def amount_minor_units(self) -> int:
        return int((self.grand_total * 100).to_integral_value(rounding=ROUND_HALF_UP))

    def to_metadata(self) -> Dict[str, str]:
        """Payment provider metadata values must be strings."""
        return {
            "platformGoldQuote": f"{self.platform_total:.2f}",
            "handlingFee": f"{self.handling_fee:.2f}",
            "markupPercentage": str(self.markup_percentage),
            "markup": f"{self.markup_amount:.2f}",
            "subtotal": f"{self.subtotal_with_markup:.2f}",
            "processingFee": f"{self.processing_fee:.2f}",
            "paymentMethodType": self.payment_class,
            "orderTotal": f"{self.grand_total:.2f}",
        }

    def to_response(self) -> Dict[str, float]:
        return {
            "subtotal": float(self.subtotal_with_markup),
            # Delivery is billed by the supplier inside the quote (handlingFee).
            "deliveryFee": 0.0,
            "handlingFee": float(self.handling_fee),
            "total": float(self.grand_total),
            "platformGoldQuote": float(self.platform_total),
            "markup": float(self.markup_amount),
            "markupPercentage": float(self.markup_percentage),
            "processingFee": float(self.processing_fee),
        }


def compute_total(
    quote_amount: Number,
    handling_fee: Number = 0,
    markup_pct: Optional[Number] = None,
    payment_class: Optional[str] = "card",
    fee_table: Mapping[str, FeeRule] = PROCESSING_FEES,
) -> PricedOrder:
    """Price a supplier quote for the given payment method class.

    ``handling_fee`` is informational only: ``quote_amount`` already contains it.
    """
    quote = to_decimal(quote_amount)
    pct = to_decimal(settings.MARKUP_PERCENTAGE if markup_pct is None else markup_pct)
    payment_class = payment_class or "card"

    raw_markup = quote * pct / Decimal(100)
    raw_subtotal = quote + raw_markup
    grand_total = to_cents(raw_subtotal + _raw_processing_fee(raw_subtotal, payment_class, fee_table))

    platform_total = to_cents(quote)
    markup_amount = to_cents(raw_markup)
    subtotal_with_markup = platform_total + markup_amount

    return PricedOrder(
        platform_total=platform_total,
        handling_fee=to_cents(handling_fee),
        markup_percentage=pct,
        markup_amount=markup_amount,
        subtotal_with_markup=subtotal_with_markup,
        payment_class=payment_class,
        processing_fee=grand_total - subtotal_with_markup,
        grand_total=grand_total,
    )


def reprice_for_payment_class(
    subtotal_with_markup: Number,
    payment_class: Optional[str],
    fee_table: Mapping[str, FeeRule] = PROCESSING_FEES,
) -> Dict[str, Decimal]:
    """Fee and grand total for an existing subtotal when the shopper switches method."""
    subtotal = to_decimal(subtotal_with_markup)
    grand_total = to_cents(subtotal + _raw_processing_fee(subtotal, payment_class, fee_table))
    display_subtotal = to_cents(subtotal)
    return {
        "subtotal": display_subtotal,
        "processing_fee": grand_total - display_subtotal,
        "grand_total": grand_total,
    }
