# Overview: Stock decrement for settlement; conditional updates plus movement rows.

"""
Inventory Invariants (settlement side)

- inventory >= 0 for every variant, always. The database CHECK is the last
  line; the conditional UPDATE (WHERE inventory >= :qty) is the real guard.
- No read-then-write: the pre-check in settlement is advisory only. The
  decrement re-checks stock in the same statement that changes it.
- Variant rows are locked in ascending id order so two orders sharing
  variants cannot deadlock each other.
- Every decrement appends an InventoryMovement in the same transaction.
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import update

from ..extensions import db
from ..models import ProductVariant, InventoryMovement
from .catalog_service import CartLine, VariantSnapshot
from .concurrency import lock_rows_in_order
from .errors import ConcurrencyConflictError


MOVEMENT_SALE = "SALE"


@dataclass(frozen=True)
class StockDecrement:
    variant_id: int
    product_id: int
    quantity: int
    inventory_after: int


def decrement_variant_inventory(snapshot: VariantSnapshot, quantity: int) -> StockDecrement:
    """
    Take `quantity` units of one variant, or fail without touching it.

    Raises:
        ConcurrencyConflictError: stock dropped below quantity since it was read
    """
    stmt = (
        update(ProductVariant)
        .where(ProductVariant.id == snapshot.variant_id, ProductVariant.inventory >= quantity)
        .values(
            inventory=ProductVariant.inventory - quantity,
            version_id=ProductVariant.version_id + 1,
        )
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)
    if not result.rowcount:
        available = (
            db.session.query(ProductVariant.inventory)
            .filter(ProductVariant.id == snapshot.variant_id)
            .scalar()
        )
        raise ConcurrencyConflictError(
            f"Stock for {snapshot.display_name} changed during checkout",
            details={
                "product_id": snapshot.product_id,
                "variant_id": snapshot.variant_id,
                "product_name": snapshot.display_name,
                "requested": quantity,
                "available": available,
            },
        )

    inventory_after = (
        db.session.query(ProductVariant.inventory)
        .filter(ProductVariant.id == snapshot.variant_id)
        .scalar()
    )
    return StockDecrement(
        variant_id=snapshot.variant_id,
        product_id=snapshot.product_id,
        quantity=quantity,
        inventory_after=inventory_after,
    )


def decrement_cart_inventory(
    lines: list[CartLine],
    snapshots: dict[int, VariantSnapshot],
) -> list[StockDecrement]:
    """
    Lock and decrement every variant in the cart. Caller owns the transaction.
    """
    ordered = sorted(lines, key=lambda line: line.variant_id)
    variant_ids = [line.variant_id for line in ordered]

    lock_rows_in_order(
        db.session.query(ProductVariant.id).filter(ProductVariant.id.in_(variant_ids)),
        ProductVariant.id,
    )

    decrements = [
        decrement_variant_inventory(snapshots[line.variant_id], line.quantity)
        for line in ordered
    ]

    # Identity-map copies were read before the UPDATEs
    for obj in list(db.session.identity_map.values()):
        if isinstance(obj, ProductVariant) and obj.id in variant_ids:
            db.session.expire(obj)

    return decrements


def record_sale_movements(store_id: int, order_id: int, order_number: str, decrements: list[StockDecrement]) -> list[InventoryMovement]:
    movements = []
    for dec in decrements:
        movement = InventoryMovement(
            store_id=store_id,
            product_id=dec.product_id,
            variant_id=dec.variant_id,
            order_id=order_id,
            movement_type=MOVEMENT_SALE,
            quantity_delta=-dec.quantity,
            inventory_after=dec.inventory_after,
            note=f"Sold on {order_number}",
        )
        db.session.add(movement)
        movements.append(movement)
    return movements
