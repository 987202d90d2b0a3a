from __future__ import annotations

from ..extensions import db
from storefront.time_utils import to_utc_z


product_categories = db.Table(
    "product_categories",
    db.Column("product_id", db.Integer, db.ForeignKey("products.id"), primary_key=True),
    db.Column("category_id", db.Integer, db.ForeignKey("categories.id"), primary_key=True),
)


class Category(db.Model):
    """
    Product category.

    Only direct membership matters to settlement: a category-scoped discount
    code covers the products linked here, not those of child categories.
    """
    __tablename__ = "categories"
    __table_args__ = (
        db.UniqueConstraint("store_id", "name", name="uq_categories_store_name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    parent_id = db.Column(db.Integer, db.ForeignKey("categories.id"), nullable=True, index=True)
    name = db.Column(db.String(255), nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    products = db.relationship("Product", secondary=product_categories, back_populates="categories", lazy="select")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "parent_id": self.parent_id,
            "name": self.name,
            "created_at": to_utc_z(self.created_at),
        }


class Product(db.Model):
    """
    Product master data.

    MULTI-TENANT: Products are scoped to stores via store_id.

    Price, tax rate and stock live on ProductVariant; a product with a
    single configuration still has exactly one variant.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.Index("ix_products_store_name", "store_id", "name"),
        db.Index("ix_products_store_active", "store_id", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)

    name = db.Column(db.String(255), nullable=False)
    sku = db.Column(db.String(64), nullable=True)
    barcode = db.Column(db.String(64), nullable=True)
    description = db.Column(db.Text, nullable=True)
    images = db.Column(db.JSON, nullable=True)  # list of image URLs, first is primary

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    is_deleted = db.Column(db.Boolean, nullable=False, default=False)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    store = db.relationship("Store", backref=db.backref("products", lazy=True))
    variants = db.relationship("ProductVariant", back_populates="product", lazy=True, order_by="ProductVariant.id")
    categories = db.relationship("Category", secondary=product_categories, back_populates="products", lazy="select")
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Product id={self.id} name={self.name!r} store_id={self.store_id}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "name": self.name,
            "sku": self.sku,
            "barcode": self.barcode,
            "description": self.description,
            "images": self.images or [],
            "is_active": self.is_active,
            "is_deleted": self.is_deleted,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class ProductVariant(db.Model):
    """
    Purchasable configuration of a product (size, color, ...).

    PRICING: price_cents is tax-inclusive as entered by the merchant.
    tax_rate is a percentage (19.00 = 19 %).

    STOCK: inventory is the on-hand count. Settlement decrements it with a
    conditional UPDATE (inventory >= quantity) inside the order transaction;
    the CHECK constraint is the last line against going negative.
    """
    __tablename__ = "product_variants"
    __table_args__ = (
        db.CheckConstraint("inventory >= 0", name="ck_product_variants_inventory_nonneg"),
        db.CheckConstraint("price_cents >= 0", name="ck_product_variants_price_nonneg"),
        db.CheckConstraint("tax_rate >= 0", name="ck_product_variants_tax_rate_nonneg"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    name = db.Column(db.String(255), nullable=False)
    sku = db.Column(db.String(64), nullable=True)
    barcode = db.Column(db.String(64), nullable=True)

    price_cents = db.Column(db.Integer, nullable=False)
    tax_rate = db.Column(db.Numeric(5, 2), nullable=False, default=0)
    inventory = db.Column(db.Integer, nullable=False, default=0)

    # Free-form option bag, e.g. {"color": "red", "size": "M"}; key order is kept
    options = db.Column(db.JSON, nullable=True)
    images = db.Column(db.JSON, nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    product = db.relationship("Product", back_populates="variants")
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<ProductVariant id={self.id} product_id={self.product_id} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "name": self.name,
            "sku": self.sku,
            "barcode": self.barcode,
            "price_cents": self.price_cents,
            "tax_rate": str(self.tax_rate) if self.tax_rate is not None else None,
            "inventory": self.inventory,
            "options": self.options or {},
            "images": self.images or [],
            "is_active": self.is_active,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class InventoryMovement(db.Model):
    """
    Append-only record of stock changes made by settlement.

    quantity_delta is negative for sales. inventory_after is the on-hand
    count the conditional decrement left behind, which makes conservation
    auditable per variant without replaying orders.
    """
    __tablename__ = "inventory_movements"
    __table_args__ = (
        db.Index("ix_invmov_store_variant_occurred", "store_id", "variant_id", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    variant_id = db.Column(db.Integer, db.ForeignKey("product_variants.id"), nullable=False, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)

    movement_type = db.Column(db.String(32), nullable=False, default="SALE", index=True)
    quantity_delta = db.Column(db.Integer, nullable=False)
    inventory_after = db.Column(db.Integer, nullable=False)
    note = db.Column(db.String(255), nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "order_id": self.order_id,
            "movement_type": self.movement_type,
            "quantity_delta": self.quantity_delta,
            "inventory_after": self.inventory_after,
            "note": self.note,
            "occurred_at": to_utc_z(self.occurred_at),
        }
