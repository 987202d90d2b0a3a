from __future__ import annotations

from ..extensions import db
from storefront.time_utils import to_utc_z


class Customer(db.Model):
    """
    Customer master data.

    MULTI-TENANT: Customers are scoped to stores via store_id.

    Denormalized aggregates (total_spent_cents, total_orders, last_order_at)
    are bumped by settlement in the same transaction as the order.
    """
    __tablename__ = "customers"
    __table_args__ = (
        db.UniqueConstraint("store_id", "email", name="uq_customers_store_email"),
        db.Index("ix_customers_store_active", "store_id", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)

    name = db.Column(db.String(255), nullable=False)
    email = db.Column(db.String(255), nullable=True)
    phone = db.Column(db.String(32), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    total_spent_cents = db.Column(db.Integer, nullable=False, default=0)
    total_orders = db.Column(db.Integer, nullable=False, default=0)
    last_order_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    store = db.relationship("Store", backref=db.backref("customers", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "is_active": self.is_active,
            "total_spent_cents": self.total_spent_cents,
            "total_orders": self.total_orders,
            "last_order_at": to_utc_z(self.last_order_at) if self.last_order_at else None,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
