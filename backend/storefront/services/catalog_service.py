# Overview: Catalog snapshot reader; loads fresh variant state for a cart.

"""
Catalog Snapshot Reader

WHY: Settlement must price and validate against the catalog as it is now,
not as the client saw it when the cart was built. Everything a settlement
attempt needs about a variant is read once here into an immutable
VariantSnapshot; nothing is cached across attempts.

Pure read: no flushes, no writes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from sqlalchemy import or_

from ..extensions import db
from ..models import Product, ProductVariant, Discount, product_categories
from ..models.promotions import discount_products, discount_variants
from .errors import NotFoundError, DiscountInvalidError, InvalidRequestError
from .money import to_percent


# =============================================================================
# CHANNELS (CONSTANTS)
# =============================================================================

CHANNEL_ONLINE = "ONLINE"
CHANNEL_IN_STORE = "IN_STORE"
CHANNEL_PHONE = "PHONE"

VALID_CHANNELS = [CHANNEL_ONLINE, CHANNEL_IN_STORE, CHANNEL_PHONE]

SCOPE_VARIANT = "VARIANT"
SCOPE_PRODUCT = "PRODUCT"


def channel_flag(model, channel: str):
    """
    Column (or value) gating availability for a channel.

    Phone orders are keyed in by staff, so they follow in-store availability.
    """
    if channel == CHANNEL_ONLINE:
        return model.available_online
    return model.available_in_store


@dataclass(frozen=True)
class CartLine:
    product_id: int
    variant_id: int
    quantity: int


def merge_cart_lines(lines) -> list[CartLine]:
    """
    Sum quantities of repeated variants, keeping first-seen order.

    Raises:
        InvalidRequestError: bad quantity, or one variant named under two products
    """
    merged: dict[int, CartLine] = {}
    for line in lines:
        if not isinstance(line.quantity, int) or isinstance(line.quantity, bool) or line.quantity <= 0:
            raise InvalidRequestError(
                "Quantity must be a positive integer",
                details={"variant_id": line.variant_id, "quantity": line.quantity},
            )
        current = merged.get(line.variant_id)
        if current is None:
            merged[line.variant_id] = line
            continue
        if current.product_id != line.product_id:
            raise InvalidRequestError(
                f"Variant {line.variant_id} is listed under two different products",
                details={"variant_id": line.variant_id},
            )
        merged[line.variant_id] = CartLine(line.product_id, line.variant_id, current.quantity + line.quantity)
    return list(merged.values())


@dataclass(frozen=True)
class AttachedDiscount:
    discount_id: int
    percent: Decimal
    scope: str  # VARIANT or PRODUCT


@dataclass(frozen=True)
class VariantSnapshot:
    variant_id: int
    product_id: int
    product_name: str
    variant_name: str
    sku: str | None
    barcode: str | None
    description: str | None
    image: str | None
    options: dict
    unit_price_cents: int
    tax_rate: Decimal
    inventory: int
    category_ids: frozenset = field(default_factory=frozenset)
    attached_discount: AttachedDiscount | None = None

    @property
    def display_name(self) -> str:
        return f"{self.product_name} - {self.variant_name}"


def _first_image(*candidates) -> str | None:
    for images in candidates:
        if images:
            return images[0]
    return None


def _active_discount_filters(store_id: int, channel: str, now: datetime) -> list:
    return [
        Discount.store_id == store_id,
        Discount.enabled.is_(True),
        Discount.is_deleted.is_(False),
        Discount.starts_at <= now,
        or_(Discount.ends_at.is_(None), Discount.ends_at >= now),
        channel_flag(Discount, channel).is_(True),
    ]


def _pick_best(current: AttachedDiscount | None, candidate: AttachedDiscount) -> AttachedDiscount:
    # Highest percent wins; ties go to the oldest discount for determinism
    if current is None:
        return candidate
    if candidate.percent > current.percent:
        return candidate
    if candidate.percent == current.percent and candidate.discount_id < current.discount_id:
        return candidate
    return current


def _checked_percent(discount_id: int, raw) -> Decimal:
    try:
        return to_percent(raw)
    except ValueError as exc:
        raise DiscountInvalidError(
            f"Discount {discount_id} has an invalid percentage",
            details={"discount_id": discount_id, "reason": str(exc)},
        )


def load_attached_discounts(
    store_id: int,
    variant_to_product: dict[int, int],
    channel: str,
    now: datetime,
) -> dict[int, AttachedDiscount]:
    """
    Best active directly-attached discount per variant.

    A discount linked to the variant itself beats any discount linked to its
    product, whatever the percentages.
    """
    if not variant_to_product:
        return {}

    filters = _active_discount_filters(store_id, channel, now)

    variant_rows = (
        db.session.query(discount_variants.c.variant_id, Discount.id, Discount.percentage)
        .join(Discount, Discount.id == discount_variants.c.discount_id)
        .filter(discount_variants.c.variant_id.in_(list(variant_to_product)))
        .filter(*filters)
        .all()
    )
    product_rows = (
        db.session.query(discount_products.c.product_id, Discount.id, Discount.percentage)
        .join(Discount, Discount.id == discount_products.c.discount_id)
        .filter(discount_products.c.product_id.in_(set(variant_to_product.values())))
        .filter(*filters)
        .all()
    )

    by_variant: dict[int, AttachedDiscount] = {}
    for variant_id, discount_id, percentage in variant_rows:
        candidate = AttachedDiscount(discount_id, _checked_percent(discount_id, percentage), SCOPE_VARIANT)
        by_variant[variant_id] = _pick_best(by_variant.get(variant_id), candidate)

    by_product: dict[int, AttachedDiscount] = {}
    for product_id, discount_id, percentage in product_rows:
        candidate = AttachedDiscount(discount_id, _checked_percent(discount_id, percentage), SCOPE_PRODUCT)
        by_product[product_id] = _pick_best(by_product.get(product_id), candidate)

    resolved = {}
    for variant_id, product_id in variant_to_product.items():
        found = by_variant.get(variant_id) or by_product.get(product_id)
        if found is not None:
            resolved[variant_id] = found
    return resolved


def load_category_ids(product_ids) -> dict[int, frozenset]:
    rows = (
        db.session.query(product_categories.c.product_id, product_categories.c.category_id)
        .filter(product_categories.c.product_id.in_(list(product_ids)))
        .all()
    )
    grouped: dict[int, set] = {}
    for product_id, category_id in rows:
        grouped.setdefault(product_id, set()).add(category_id)
    return {pid: frozenset(cids) for pid, cids in grouped.items()}


def load_variant_snapshots(
    store_id: int,
    lines: list[CartLine],
    channel: str,
    now: datetime,
) -> dict[int, VariantSnapshot]:
    """
    Read a fresh VariantSnapshot for every cart line, keyed by variant_id.

    Raises:
        NotFoundError: variant or product missing, deleted, inactive, owned
            by another store, or variant not belonging to the named product
    """
    variant_ids = [line.variant_id for line in lines]
    rows = (
        db.session.query(ProductVariant, Product)
        .join(Product, Product.id == ProductVariant.product_id)
        .filter(ProductVariant.id.in_(variant_ids))
        .all()
    )
    found = {variant.id: (variant, product) for variant, product in rows}

    for line in lines:
        pair = found.get(line.variant_id)
        details = {"product_id": line.product_id, "variant_id": line.variant_id}
        if pair is None:
            raise NotFoundError(f"Variant {line.variant_id} not found", details=details)
        variant, product = pair
        # Foreign-store rows read as missing; never confirm another tenant's ids
        if product.store_id != store_id:
            raise NotFoundError(f"Product {line.product_id} not found", details=details)
        if product.id != line.product_id:
            raise NotFoundError(
                f"Variant {line.variant_id} not found for product {line.product_id}",
                details=details,
            )
        if product.is_deleted or not product.is_active or not variant.is_active:
            raise NotFoundError(
                f"{product.name} - {variant.name} is no longer available",
                details=details,
            )

    variant_to_product = {vid: pair[1].id for vid, pair in found.items()}
    attached = load_attached_discounts(store_id, variant_to_product, channel, now)
    categories = load_category_ids(set(variant_to_product.values()))

    snapshots = {}
    for line in lines:
        variant, product = found[line.variant_id]
        snapshots[variant.id] = VariantSnapshot(
            variant_id=variant.id,
            product_id=product.id,
            product_name=product.name,
            variant_name=variant.name,
            sku=variant.sku or product.sku,
            barcode=variant.barcode or product.barcode,
            description=product.description,
            image=_first_image(variant.images, product.images),
            options=dict(variant.options or {}),
            unit_price_cents=variant.price_cents,
            tax_rate=Decimal(str(variant.tax_rate or 0)),
            inventory=variant.inventory,
            category_ids=categories.get(product.id, frozenset()),
            attached_discount=attached.get(variant.id),
        )
    return snapshots
