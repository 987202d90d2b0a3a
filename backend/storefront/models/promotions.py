from __future__ import annotations

from sqlalchemy.orm import validates

from ..extensions import db
from storefront.time_utils import to_utc_z


discount_products = db.Table(
    "discount_products",
    db.Column("discount_id", db.Integer, db.ForeignKey("discounts.id"), primary_key=True),
    db.Column("product_id", db.Integer, db.ForeignKey("products.id"), primary_key=True),
)

discount_variants = db.Table(
    "discount_variants",
    db.Column("discount_id", db.Integer, db.ForeignKey("discounts.id"), primary_key=True),
    db.Column("variant_id", db.Integer, db.ForeignKey("product_variants.id"), primary_key=True),
)

discount_code_products = db.Table(
    "discount_code_products",
    db.Column("discount_code_id", db.Integer, db.ForeignKey("discount_codes.id"), primary_key=True),
    db.Column("product_id", db.Integer, db.ForeignKey("products.id"), primary_key=True),
)

discount_code_variants = db.Table(
    "discount_code_variants",
    db.Column("discount_code_id", db.Integer, db.ForeignKey("discount_codes.id"), primary_key=True),
    db.Column("variant_id", db.Integer, db.ForeignKey("product_variants.id"), primary_key=True),
)

discount_code_customers = db.Table(
    "discount_code_customers",
    db.Column("discount_code_id", db.Integer, db.ForeignKey("discount_codes.id"), primary_key=True),
    db.Column("customer_id", db.Integer, db.ForeignKey("customers.id"), primary_key=True),
)


class Discount(db.Model):
    """
    Automatic discount attached directly to products or variants.

    No code is needed: any cart line whose variant (or its product) is
    linked here gets the percentage while the discount is enabled, inside
    its window and available for the order's channel.
    """
    __tablename__ = "discounts"
    __table_args__ = (
        db.CheckConstraint("percentage >= 0 AND percentage <= 100", name="ck_discounts_percentage_range"),
        db.Index("ix_discounts_store_enabled", "store_id", "enabled"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)

    title = db.Column(db.String(255), nullable=True)
    percentage = db.Column(db.Numeric(5, 2), nullable=False)

    enabled = db.Column(db.Boolean, nullable=False, default=True)
    is_deleted = db.Column(db.Boolean, nullable=False, default=False)

    starts_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    ends_at = db.Column(db.DateTime(timezone=True), nullable=True)  # NULL = open-ended

    available_online = db.Column(db.Boolean, nullable=False, default=True)
    available_in_store = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    products = db.relationship("Product", secondary=discount_products, lazy="select")
    variants = db.relationship("ProductVariant", secondary=discount_variants, lazy="select")

    def to_dict(self):
        return {
            "id": self.id,
            "store_id": self.store_id,
            "title": self.title,
            "percentage": str(self.percentage),
            "enabled": self.enabled,
            "is_deleted": self.is_deleted,
            "starts_at": to_utc_z(self.starts_at),
            "ends_at": to_utc_z(self.ends_at),
            "available_online": self.available_online,
            "available_in_store": self.available_in_store,
            "product_ids": [p.id for p in self.products],
            "variant_ids": [v.id for v in self.variants],
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class DiscountCode(db.Model):
    """
    Customer-facing redeemable code.

    TARGETING (most specific non-empty one wins):
    - variants: only the listed variants
    - products: every variant of the listed products
    - category_id: every product directly in the category
    - none of the above: every line in the cart

    code is stored upper-case; lookups normalize the input the same way.
    used_count is only ever bumped with a conditional UPDATE so concurrent
    redemptions cannot overrun usage_limit.
    """
    __tablename__ = "discount_codes"
    __table_args__ = (
        db.UniqueConstraint("store_id", "code", name="uq_discount_codes_store_code"),
        db.CheckConstraint("percentage >= 0 AND percentage <= 100", name="ck_discount_codes_percentage_range"),
        db.CheckConstraint("used_count >= 0", name="ck_discount_codes_used_count_nonneg"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)

    code = db.Column(db.String(64), nullable=False)
    title = db.Column(db.String(255), nullable=True)
    description = db.Column(db.Text, nullable=True)
    percentage = db.Column(db.Numeric(5, 2), nullable=False)

    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)
    starts_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    ends_at = db.Column(db.DateTime(timezone=True), nullable=True)

    available_online = db.Column(db.Boolean, nullable=False, default=True)
    available_in_store = db.Column(db.Boolean, nullable=False, default=True)

    usage_limit = db.Column(db.Integer, nullable=True)  # NULL = unlimited
    used_count = db.Column(db.Integer, nullable=False, default=0)

    category_id = db.Column(db.Integer, db.ForeignKey("categories.id"), nullable=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    category = db.relationship("Category")
    products = db.relationship("Product", secondary=discount_code_products, lazy="select")
    variants = db.relationship("ProductVariant", secondary=discount_code_variants, lazy="select")
    customers = db.relationship("Customer", secondary=discount_code_customers, lazy="select")

    @validates("code")
    def _normalize_code(self, key, value):
        return value.strip().upper() if isinstance(value, str) else value

    def to_dict(self):
        return {
            "id": self.id,
            "store_id": self.store_id,
            "code": self.code,
            "title": self.title,
            "description": self.description,
            "percentage": str(self.percentage),
            "is_active": self.is_active,
            "starts_at": to_utc_z(self.starts_at),
            "ends_at": to_utc_z(self.ends_at),
            "available_online": self.available_online,
            "available_in_store": self.available_in_store,
            "usage_limit": self.usage_limit,
            "used_count": self.used_count,
            "category_id": self.category_id,
            "product_ids": [p.id for p in self.products],
            "variant_ids": [v.id for v in self.variants],
            "customer_ids": [c.id for c in self.customers],
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
