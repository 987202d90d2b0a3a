from __future__ import annotations

from ..extensions import db
from storefront.time_utils import to_utc_z


class Notification(db.Model):
    """
    Merchant-facing notification events.

    Written in the same transaction as the order they describe (outbox).
    Delivery and rendering happen elsewhere; this table is the hand-off.
    """
    __tablename__ = "notifications"
    __table_args__ = (
        db.Index("ix_notifications_store_read_created", "store_id", "is_read", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)

    type = db.Column(db.String(32), nullable=False, index=True)  # ORDER_CREATED
    title = db.Column(db.String(255), nullable=False)
    message = db.Column(db.Text, nullable=False)

    is_read = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self):
        return {
            "id": self.id,
            "store_id": self.store_id,
            "order_id": self.order_id,
            "type": self.type,
            "title": self.title,
            "message": self.message,
            "is_read": self.is_read,
            "created_at": to_utc_z(self.created_at),
        }
