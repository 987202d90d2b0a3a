# Overview: Discount resolution for settlement; decides one discount source per cart line.

"""
Discount Resolver

RESOLUTION ORDER (most specific wins, sources never stack):
1. Discount attached directly to the line's variant, then to its product
   (already picked by the catalog reader for the order's channel and date).
2. The supplied discount code, if the line falls inside the code's scope.
3. Otherwise 0 %.

CODE SCOPE (first non-empty target wins):
variants -> products -> category (its products) -> every line.

A scoped code that covers none of the cart is an error, never a silent 0 %:
the cashier or customer has to see that before anyone is charged.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from sqlalchemy import func, or_, update

from ..extensions import db
from ..models import DiscountCode, product_categories
from storefront.time_utils import as_utc_naive
from .catalog_service import (
    CHANNEL_ONLINE,
    CartLine,
    VariantSnapshot,
    load_variant_snapshots,
    merge_cart_lines,
)
from .errors import DiscountInvalidError
from .money import to_percent
from .pricing_service import line_discount_cents


SOURCE_VARIANT = "VARIANT"
SOURCE_PRODUCT = "PRODUCT"
SOURCE_CODE = "CODE"

CODE_SCOPE_VARIANTS = "VARIANTS"
CODE_SCOPE_PRODUCTS = "PRODUCTS"
CODE_SCOPE_CATEGORY = "CATEGORY"
CODE_SCOPE_ALL = "ALL"

ZERO = Decimal("0")


@dataclass(frozen=True)
class CodeRule:
    """A validated discount code, detached from the session."""
    code_id: int
    code: str
    percent: Decimal
    title: str | None = None
    description: str | None = None
    variant_ids: frozenset = field(default_factory=frozenset)
    product_ids: frozenset = field(default_factory=frozenset)
    category_id: int | None = None
    category_product_ids: frozenset = field(default_factory=frozenset)

    @property
    def scope(self) -> str:
        if self.variant_ids:
            return CODE_SCOPE_VARIANTS
        if self.product_ids:
            return CODE_SCOPE_PRODUCTS
        if self.category_id is not None:
            return CODE_SCOPE_CATEGORY
        return CODE_SCOPE_ALL

    def covers(self, snapshot: VariantSnapshot) -> bool:
        scope = self.scope
        if scope == CODE_SCOPE_VARIANTS:
            return snapshot.variant_id in self.variant_ids
        if scope == CODE_SCOPE_PRODUCTS:
            return snapshot.product_id in self.product_ids
        if scope == CODE_SCOPE_CATEGORY:
            return snapshot.product_id in self.category_product_ids
        return True


@dataclass(frozen=True)
class DiscountResolution:
    percent_by_variant: dict
    source_by_variant: dict
    code_id: int | None = None
    code_value: str | None = None
    code_percent: Decimal | None = None

    def percent_for(self, variant_id: int) -> Decimal:
        return self.percent_by_variant.get(variant_id, ZERO)

    def source_for(self, variant_id: int) -> str | None:
        return self.source_by_variant.get(variant_id)


def normalize_code(raw) -> str | None:
    if raw is None:
        return None
    text = str(raw).strip().upper()
    return text or None


def _reject(message: str, code: str, reason: str, **extra) -> DiscountInvalidError:
    details = {"code": code, "reason": reason}
    details.update(extra)
    return DiscountInvalidError(message, details=details)


def load_discount_code(
    store_id: int,
    raw_code,
    channel: str,
    now: datetime,
    customer_id: int | None = None,
) -> CodeRule:
    """
    Look up and validate a code for this store, channel, date and customer.

    Raises:
        DiscountInvalidError: unknown, inactive, outside its window, wrong
            channel, usage exhausted, restricted to other customers, or a
            stored percentage outside 0..100
    """
    code = normalize_code(raw_code)
    if code is None:
        raise _reject("Discount code is empty", "", "UNKNOWN")

    row = (
        db.session.query(DiscountCode)
        .filter(DiscountCode.store_id == store_id, func.upper(DiscountCode.code) == code)
        .first()
    )
    if row is None:
        raise _reject("Invalid discount code", code, "UNKNOWN")
    if not row.is_active:
        raise _reject("This discount code is not active", code, "INACTIVE")
    starts_at, ends_at = as_utc_naive(row.starts_at), as_utc_naive(row.ends_at)
    if starts_at is not None and now < starts_at:
        raise _reject("This discount code is not yet active", code, "NOT_STARTED")
    if ends_at is not None and now > ends_at:
        raise _reject("This discount code has expired", code, "EXPIRED")
    if channel == CHANNEL_ONLINE and not row.available_online:
        raise _reject("This discount code is not available for online orders", code, "CHANNEL")
    if channel != CHANNEL_ONLINE and not row.available_in_store:
        raise _reject("This discount code is not available for in-store orders", code, "CHANNEL")
    if row.usage_limit is not None and row.used_count >= row.usage_limit:
        raise _reject(
            "This discount code has reached its usage limit",
            code,
            "USAGE_EXHAUSTED",
            usage_limit=row.usage_limit,
            used_count=row.used_count,
        )

    eligible_customers = {c.id for c in row.customers}
    if eligible_customers and customer_id not in eligible_customers:
        raise _reject("This discount code is not available for this customer", code, "CUSTOMER")

    try:
        percent = to_percent(row.percentage)
    except ValueError as exc:
        raise _reject("This discount code has an invalid percentage", code, "INVALID_PERCENT", error=str(exc))

    category_product_ids = frozenset()
    if row.category_id is not None:
        category_product_ids = frozenset(
            pid for (pid,) in db.session.query(product_categories.c.product_id)
            .filter(product_categories.c.category_id == row.category_id)
            .all()
        )

    return CodeRule(
        code_id=row.id,
        code=row.code,
        percent=percent,
        title=row.title,
        description=row.description,
        variant_ids=frozenset(v.id for v in row.variants),
        product_ids=frozenset(p.id for p in row.products),
        category_id=row.category_id,
        category_product_ids=category_product_ids,
    )


def apply_resolution(
    snapshots: dict[int, VariantSnapshot],
    rule: CodeRule | None = None,
) -> DiscountResolution:
    """
    Assign exactly one discount source per line. Pure: no database access.

    Raises:
        DiscountInvalidError: rule is scoped and none of the lines fall inside it
    """
    if rule is not None and rule.scope != CODE_SCOPE_ALL:
        if not any(rule.covers(snap) for snap in snapshots.values()):
            raise _reject(
                "This discount code does not apply to any item in the cart",
                rule.code,
                "SCOPE",
                scope=rule.scope,
            )

    percents: dict[int, Decimal] = {}
    sources: dict[int, str | None] = {}
    for variant_id, snap in snapshots.items():
        attached = snap.attached_discount
        if attached is not None:
            percents[variant_id] = attached.percent
            sources[variant_id] = SOURCE_VARIANT if attached.scope == "VARIANT" else SOURCE_PRODUCT
        elif rule is not None and rule.covers(snap):
            percents[variant_id] = rule.percent
            sources[variant_id] = SOURCE_CODE
        else:
            percents[variant_id] = ZERO
            sources[variant_id] = None

    return DiscountResolution(
        percent_by_variant=percents,
        source_by_variant=sources,
        code_id=rule.code_id if rule else None,
        code_value=rule.code if rule else None,
        code_percent=rule.percent if rule else None,
    )


def resolve_discounts(
    store_id: int,
    snapshots: dict[int, VariantSnapshot],
    raw_code,
    channel: str,
    now: datetime,
    customer_id: int | None = None,
) -> DiscountResolution:
    rule = None
    if normalize_code(raw_code) is not None:
        rule = load_discount_code(store_id, raw_code, channel, now, customer_id)
    return apply_resolution(snapshots, rule)


def redeem_discount_code(code_id: int) -> None:
    """
    Count one redemption. Must run inside the settlement transaction.

    The limit is re-checked by the UPDATE itself, so two orders racing for
    the last redemption cannot both commit.
    """
    stmt = (
        update(DiscountCode)
        .where(
            DiscountCode.id == code_id,
            or_(DiscountCode.usage_limit.is_(None), DiscountCode.used_count < DiscountCode.usage_limit),
        )
        .values(used_count=DiscountCode.used_count + 1)
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)
    if not result.rowcount:
        raise DiscountInvalidError(
            "This discount code has reached its usage limit",
            details={"discount_code_id": code_id, "reason": "USAGE_EXHAUSTED"},
        )


def preview_discount_code(
    store_id: int,
    lines: list[CartLine],
    raw_code,
    channel: str,
    now: datetime,
    customer_id: int | None = None,
) -> dict:
    """
    Dry-run a code against a cart: same rules as settlement, nothing written.
    """
    lines = merge_cart_lines(lines)
    snapshots = load_variant_snapshots(store_id, lines, channel, now)
    rule = load_discount_code(store_id, raw_code, channel, now, customer_id)
    resolution = apply_resolution(snapshots, rule)

    applied = []
    discount_amount = 0
    for line in lines:
        if resolution.source_for(line.variant_id) != SOURCE_CODE:
            continue
        snap = snapshots[line.variant_id]
        applied.append(line.variant_id)
        discount_amount += line_discount_cents(snap.unit_price_cents, line.quantity, rule.percent)

    return {
        "valid": True,
        "discount_code": {
            "id": rule.code_id,
            "code": rule.code,
            "percentage": str(rule.percent),
            "title": rule.title,
            "description": rule.description,
            "scope": rule.scope,
        },
        "applicable_variant_ids": applied,
        "discount_amount_cents": discount_amount,
    }
