from __future__ import annotations

from ..extensions import db
from storefront.time_utils import to_utc_z


class Store(db.Model):
    """
    Store (shop) - the tenant boundary.

    MULTI-TENANT: Every catalog row, discount, customer and order carries a
    store_id. Settlement only ever reads and writes rows of the store the
    caller was authenticated against.
    """
    __tablename__ = "stores"
    __table_args__ = (
        db.UniqueConstraint("code", name="uq_stores_code"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    code = db.Column(db.String(32), nullable=True, index=True)

    # Pass-through: copied onto every order, never converted
    currency = db.Column(db.String(3), nullable=False, default="USD")
    timezone = db.Column(db.String(64), nullable=False, default="UTC")

    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Store id={self.id} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "code": self.code,
            "currency": self.currency,
            "timezone": self.timezone,
            "is_active": self.is_active,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
