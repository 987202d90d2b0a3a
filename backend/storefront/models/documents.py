from __future__ import annotations

from ..extensions import db
from storefront.time_utils import to_utc_z


class DocumentSequence(db.Model):
    """
    Atomic per-store document sequences.

    WHY: Order numbers must be unique without relying on random suffixes.
    The counter row is bumped inside the settlement transaction, so a rolled
    back settlement never burns a number.
    """
    __tablename__ = "document_sequences"
    __table_args__ = (
        db.UniqueConstraint("store_id", "document_type", name="uq_doc_sequences_store_type"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    document_type = db.Column(db.String(32), nullable=False, index=True)
    next_number = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    store = db.relationship("Store", backref=db.backref("document_sequences", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "document_type": self.document_type,
            "next_number": self.next_number,
            "updated_at": to_utc_z(self.updated_at),
        }
