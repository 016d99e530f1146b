"""Order pricing.

All amounts are integers in minor currency units. Every division is a floor
division so that recomputing the same cart always yields the same numbers,
both for the stored order and for the line items sent to Stripe.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Union

from django.conf import settings


@dataclass(frozen=True)
class NoDiscount:
    pass


@dataclass(frozen=True)
class FreeAll:
    pass


@dataclass(frozen=True)
class MemberPrice:
    percent: int


@dataclass(frozen=True)
class FixedPrice:
    amount: int


@dataclass(frozen=True)
class ComponentWaiver:
    # free_venue, free_ondemand or exclude_party; priced at zero until the
    # component split exists in the catalog.
    kind: str


Discount = Union[NoDiscount, FreeAll, MemberPrice, FixedPrice, ComponentWaiver]


@dataclass(frozen=True)
class PricedLine:
    ticket_type_id: int
    name: str
    unit_price: int
    quantity: int

    @property
    def amount(self) -> int:
        return self.unit_price * self.quantity


@dataclass(frozen=True)
class Pricing:
    subtotal: int
    discount: int
    tax: int
    total: int

    @property
    def taxable(self) -> int:
        return self.subtotal - self.discount


def discount_for_promo(promo_code) -> Discount:
    if promo_code is None:
        return NoDiscount()
    discount_type = promo_code.discount_type
    if discount_type == "free_all":
        return FreeAll()
    if discount_type == "member_price":
        return MemberPrice(percent=settings.PROMO_MEMBER_DISCOUNT_PERCENT)
    if discount_type == "fixed_price" and promo_code.fixed_price is not None:
        return FixedPrice(amount=promo_code.fixed_price)
    if discount_type in {"free_venue", "free_ondemand", "exclude_party"}:
        return ComponentWaiver(kind=discount_type)
    return NoDiscount()


def discount_amount(subtotal: int, discount: Discount) -> int:
    if isinstance(discount, FreeAll):
        return subtotal
    if isinstance(discount, MemberPrice):
        return subtotal * discount.percent // 100
    if isinstance(discount, FixedPrice):
        return max(0, subtotal - discount.amount)
    return 0


def calculate_pricing(
    lines: Iterable[PricedLine],
    discount: Discount | None = None,
    *,
    tax_rate_percent: int | None = None,
) -> Pricing:
    if tax_rate_percent is None:
        tax_rate_percent = settings.TAX_RATE_PERCENT
    subtotal = sum(line.amount for line in lines)
    discount_value = min(subtotal, discount_amount(subtotal, discount or NoDiscount()))
    taxable = subtotal - discount_value
    tax = taxable * tax_rate_percent // 100
    return Pricing(
        subtotal=subtotal,
        discount=discount_value,
        tax=tax,
        total=taxable + tax,
    )


def discounted_unit_amount(unit_price: int, pricing: Pricing) -> int:
    if pricing.subtotal == 0:
        return 0
    return unit_price * pricing.taxable // pricing.subtotal


def build_stripe_line_items(
    lines: Iterable[PricedLine],
    pricing: Pricing,
    *,
    currency: str,
    tax_label: str | None = None,
) -> list[dict]:
    """Line items for a Checkout Session, discount spread pro rata and tax as its own line."""
    line_items = []
    for line in lines:
        line_items.append(
            {
                "price_data": {
                    "currency": currency,
                    "unit_amount": discounted_unit_amount(line.unit_price, pricing),
                    "product_data": {"name": line.name},
                },
                "quantity": line.quantity,
            }
        )
    if pricing.tax > 0:
        line_items.append(
            {
                "price_data": {
                    "currency": currency,
                    "unit_amount": pricing.tax,
                    "product_data": {
                        "name": tax_label or f"Consumption tax ({settings.TAX_RATE_PERCENT}%)",
                    },
                },
                "quantity": 1,
            }
        )
    return line_items
