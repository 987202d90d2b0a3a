# Overview: Pricing and tax engine; pure cent arithmetic over snapshots and resolved percents.

"""
Pricing & Tax Engine

WHY: Catalog prices are tax-inclusive. The order needs the excl-tax and tax
components, the effect of per-line discounts and an optional manual order
discount, and totals that satisfy total == subtotal_excl_tax + tax exactly.

Every stored value is rounded to a whole cent with ROUND_HALF_EVEN. No I/O.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from .catalog_service import CartLine, VariantSnapshot
from .errors import InvalidRequestError
from .money import HUNDRED, round_cents, to_percent


ORDER_DISCOUNT_PERCENTAGE = "PERCENTAGE"
ORDER_DISCOUNT_FIXED = "FIXED_AMOUNT"

VALID_ORDER_DISCOUNT_TYPES = [ORDER_DISCOUNT_PERCENTAGE, ORDER_DISCOUNT_FIXED]

ZERO = Decimal("0")


@dataclass(frozen=True)
class OrderDiscount:
    """Manual order-level discount typed in by staff."""
    discount_type: str
    value: Decimal  # percent for PERCENTAGE, cents for FIXED_AMOUNT


@dataclass(frozen=True)
class PricedLine:
    variant_id: int
    product_id: int
    quantity: int
    tax_rate: Decimal
    original_price_cents: int
    discount_percent: Decimal
    discount_source: str | None
    discount_amount_cents: int
    unit_price_cents: int
    line_total_cents: int
    line_excl_tax_cents: int
    line_tax_cents: int


@dataclass(frozen=True)
class OrderTotals:
    lines: list
    line_subtotal_excl_tax_cents: int
    line_tax_cents: int
    order_discount_type: str | None
    order_discount_cents: int
    subtotal_excl_tax_cents: int
    tax_cents: int
    discount_total_cents: int
    total_cents: int


def line_discount_cents(unit_price_cents: int, quantity: int, percent) -> int:
    gross = Decimal(unit_price_cents) * quantity
    return round_cents(gross * Decimal(percent) / HUNDRED)


def split_inclusive(amount_cents: int, tax_rate) -> tuple[int, int]:
    """
    Split a tax-inclusive amount into (excl_tax, tax).

    The tax part is the remainder, so the two always add back up exactly.
    """
    excl = round_cents(Decimal(amount_cents) / (1 + Decimal(tax_rate) / HUNDRED))
    return excl, amount_cents - excl


def price_line(
    snapshot: VariantSnapshot,
    quantity: int,
    percent=ZERO,
    source: str | None = None,
) -> PricedLine:
    if quantity <= 0:
        raise InvalidRequestError(
            "Quantity must be a positive integer",
            details={"variant_id": snapshot.variant_id, "quantity": quantity},
        )
    try:
        pct = to_percent(percent)
    except ValueError as exc:
        raise InvalidRequestError(str(exc), details={"variant_id": snapshot.variant_id})

    gross = snapshot.unit_price_cents * quantity
    discount_amount = line_discount_cents(snapshot.unit_price_cents, quantity, pct)
    line_total = gross - discount_amount
    line_excl, line_tax = split_inclusive(line_total, snapshot.tax_rate)

    return PricedLine(
        variant_id=snapshot.variant_id,
        product_id=snapshot.product_id,
        quantity=quantity,
        tax_rate=snapshot.tax_rate,
        original_price_cents=snapshot.unit_price_cents,
        discount_percent=pct,
        discount_source=source if discount_amount or pct else None,
        discount_amount_cents=discount_amount,
        unit_price_cents=round_cents(Decimal(line_total) / quantity),
        line_total_cents=line_total,
        line_excl_tax_cents=line_excl,
        line_tax_cents=line_tax,
    )


def order_discount_cents(subtotal_cents: int, order_discount: OrderDiscount | None) -> int:
    if order_discount is None or subtotal_cents <= 0:
        return 0
    if order_discount.discount_type == ORDER_DISCOUNT_PERCENTAGE:
        try:
            pct = to_percent(order_discount.value)
        except ValueError as exc:
            raise InvalidRequestError(str(exc), details={"field": "order_discount"})
        return round_cents(Decimal(subtotal_cents) * pct / HUNDRED)
    if order_discount.discount_type == ORDER_DISCOUNT_FIXED:
        amount = Decimal(order_discount.value)
        if amount < 0:
            raise InvalidRequestError(
                "Order discount amount cannot be negative",
                details={"field": "order_discount"},
            )
        return min(round_cents(amount), subtotal_cents)
    raise InvalidRequestError(
        f"Invalid order discount type: {order_discount.discount_type}. "
        f"Must be one of {VALID_ORDER_DISCOUNT_TYPES}",
        details={"field": "order_discount"},
    )


def price_order(
    lines: list[CartLine],
    snapshots: dict[int, VariantSnapshot],
    resolution,
    order_discount: OrderDiscount | None = None,
) -> OrderTotals:
    """
    Price every cart line and aggregate the order.

    The order discount is taken off the pre-tax subtotal and the tax is
    scaled by the same ratio.

    Raises:
        InvalidRequestError: empty cart, bad quantity, bad order discount
    """
    if not lines:
        raise InvalidRequestError("Cart is empty")

    priced = [
        price_line(
            snapshots[line.variant_id],
            line.quantity,
            resolution.percent_for(line.variant_id) if resolution is not None else ZERO,
            resolution.source_for(line.variant_id) if resolution is not None else None,
        )
        for line in lines
    ]

    subtotal = sum(p.line_excl_tax_cents for p in priced)
    tax = sum(p.line_tax_cents for p in priced)

    discount = order_discount_cents(subtotal, order_discount)
    ratio = Decimal(discount) / Decimal(subtotal) if subtotal else ZERO
    final_subtotal = subtotal - discount
    adjusted_tax = round_cents(Decimal(tax) * (1 - ratio))

    return OrderTotals(
        lines=priced,
        line_subtotal_excl_tax_cents=subtotal,
        line_tax_cents=tax,
        order_discount_type=order_discount.discount_type if discount else None,
        order_discount_cents=discount,
        subtotal_excl_tax_cents=final_subtotal,
        tax_cents=adjusted_tax,
        discount_total_cents=sum(p.discount_amount_cents for p in priced) + discount,
        total_cents=final_subtotal + adjusted_tax,
    )
