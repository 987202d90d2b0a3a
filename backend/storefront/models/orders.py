from __future__ import annotations

from sqlalchemy import event, inspect
from sqlalchemy.orm import Session

from ..extensions import db
from storefront.time_utils import to_utc_z


class OrderLineImmutableError(RuntimeError):
    """Raised when something tries to change an order line after it was written."""


class Order(db.Model):
    """
    Settled order document.

    WHY: The order is the durable record of what was charged. Totals are
    computed server-side at settlement and stored in cents:
    total_cents == subtotal_excl_tax_cents + tax_cents, always.

    Created exactly once inside the settlement transaction. Only status and
    payment_status are expected to change afterwards (fulfilment, check
    clearance), and not by settlement.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.UniqueConstraint("order_number", name="uq_orders_order_number"),
        db.UniqueConstraint("store_id", "idempotency_key", name="uq_orders_store_idempotency_key"),
        db.CheckConstraint("total_cents = subtotal_excl_tax_cents + tax_cents", name="ck_orders_total_identity"),
        db.Index("ix_orders_store_status_created", "store_id", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)

    # Human-readable number (e.g., "ORD-001-00042")
    order_number = db.Column(db.String(64), nullable=False)

    status = db.Column(db.String(16), nullable=False, default="PENDING", index=True)
    payment_status = db.Column(db.String(16), nullable=False, default="PENDING", index=True)  # PENDING, COMPLETED
    source = db.Column(db.String(16), nullable=False, index=True)  # ONLINE, IN_STORE, PHONE
    currency = db.Column(db.String(3), nullable=False)

    # Totals (all amounts in cents)
    subtotal_excl_tax_cents = db.Column(db.Integer, nullable=False)
    tax_cents = db.Column(db.Integer, nullable=False)
    discount_total_cents = db.Column(db.Integer, nullable=False, default=0)
    order_discount_cents = db.Column(db.Integer, nullable=False, default=0)
    order_discount_type = db.Column(db.String(16), nullable=True)  # PERCENTAGE, FIXED_AMOUNT
    total_cents = db.Column(db.Integer, nullable=False)

    # Code redeemed, kept both as FK and literal for history
    discount_code_id = db.Column(db.Integer, db.ForeignKey("discount_codes.id"), nullable=True, index=True)
    discount_code_value = db.Column(db.String(64), nullable=True)

    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True, index=True)
    processed_by_user_id = db.Column(db.Integer, nullable=True)

    idempotency_key = db.Column(db.String(128), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    store = db.relationship("Store", backref=db.backref("orders", lazy=True))
    customer = db.relationship("Customer", backref=db.backref("orders", lazy=True))
    lines = db.relationship("OrderLine", back_populates="order", lazy=True, order_by="OrderLine.position")
    payments = db.relationship("OrderPayment", back_populates="order", lazy=True, order_by="OrderPayment.id")
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self, include_lines: bool = True) -> dict:
        data = {
            "id": self.id,
            "store_id": self.store_id,
            "order_number": self.order_number,
            "status": self.status,
            "payment_status": self.payment_status,
            "source": self.source,
            "currency": self.currency,
            "subtotal_excl_tax_cents": self.subtotal_excl_tax_cents,
            "tax_cents": self.tax_cents,
            "discount_total_cents": self.discount_total_cents,
            "order_discount_cents": self.order_discount_cents,
            "order_discount_type": self.order_discount_type,
            "total_cents": self.total_cents,
            "discount_code_id": self.discount_code_id,
            "discount_code_value": self.discount_code_value,
            "customer_id": self.customer_id,
            "processed_by_user_id": self.processed_by_user_id,
            "idempotency_key": self.idempotency_key,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
            "version_id": self.version_id,
        }
        if include_lines:
            data["lines"] = [line.to_dict() for line in self.lines]
            data["payments"] = [payment.to_dict() for payment in self.payments]
        return data


class OrderLine(db.Model):
    """
    Immutable snapshot of one sold line.

    Everything needed to reprint the receipt is copied here at settlement
    (names, codes, image, options, tax rate, prices, discount) so later
    catalog edits never rewrite history. product_id/variant_id are kept for
    reporting only.

    IMMUTABLE: guarded by before_update/before_delete listeners below.
    """
    __tablename__ = "order_lines"
    __table_args__ = (
        db.UniqueConstraint("order_id", "position", name="uq_order_lines_order_position"),
        db.CheckConstraint("quantity > 0", name="ck_order_lines_quantity_positive"),
        db.CheckConstraint("discount_percent >= 0 AND discount_percent <= 100", name="ck_order_lines_discount_range"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    position = db.Column(db.Integer, nullable=False)

    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    variant_id = db.Column(db.Integer, db.ForeignKey("product_variants.id"), nullable=False, index=True)

    # Catalog snapshot
    product_name = db.Column(db.String(512), nullable=False)
    product_sku = db.Column(db.String(64), nullable=True)
    product_barcode = db.Column(db.String(64), nullable=True)
    product_description = db.Column(db.Text, nullable=True)
    product_image = db.Column(db.String(1024), nullable=True)
    product_options = db.Column(db.JSON, nullable=True)
    tax_rate = db.Column(db.Numeric(5, 2), nullable=False)

    quantity = db.Column(db.Integer, nullable=False)

    # Pricing (cents, tax-inclusive unless noted)
    original_price_cents = db.Column(db.Integer, nullable=False)
    discount_percent = db.Column(db.Numeric(5, 2), nullable=False, default=0)
    discount_source = db.Column(db.String(16), nullable=True)  # VARIANT, PRODUCT, CODE
    discount_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    line_total_cents = db.Column(db.Integer, nullable=False)
    line_excl_tax_cents = db.Column(db.Integer, nullable=False)
    line_tax_cents = db.Column(db.Integer, nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    order = db.relationship("Order", back_populates="lines")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "position": self.position,
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "product_name": self.product_name,
            "product_sku": self.product_sku,
            "product_barcode": self.product_barcode,
            "product_description": self.product_description,
            "product_image": self.product_image,
            "product_options": self.product_options or {},
            "tax_rate": str(self.tax_rate),
            "quantity": self.quantity,
            "original_price_cents": self.original_price_cents,
            "discount_percent": str(self.discount_percent),
            "discount_source": self.discount_source,
            "discount_amount_cents": self.discount_amount_cents,
            "unit_price_cents": self.unit_price_cents,
            "line_total_cents": self.line_total_cents,
            "line_excl_tax_cents": self.line_excl_tax_cents,
            "line_tax_cents": self.line_tax_cents,
            "created_at": to_utc_z(self.created_at),
        }


@event.listens_for(OrderLine, "before_update")
def _reject_order_line_update(mapper, connection, target):
    state = inspect(target)
    changed = [
        prop.key for prop in mapper.column_attrs
        if state.attrs[prop.key].history.has_changes()
    ]
    if changed:
        raise OrderLineImmutableError(
            f"Order line {target.id} is write-once; attempted to change {', '.join(changed)}"
        )


@event.listens_for(OrderLine, "before_delete")
def _reject_order_line_delete(mapper, connection, target):
    raise OrderLineImmutableError(f"Order line {target.id} is write-once and cannot be deleted")


@event.listens_for(Session, "do_orm_execute")
def _reject_bulk_order_line_writes(orm_execute_state):
    # query(OrderLine).update()/delete() skip the flush listeners above.
    # Core statements on the table and raw SQL are not covered.
    if not (orm_execute_state.is_update or orm_execute_state.is_delete):
        return
    if any(mapper.class_ is OrderLine for mapper in orm_execute_state.all_mappers):
        raise OrderLineImmutableError("Order lines are write-once; bulk UPDATE/DELETE refused")


class OrderPayment(db.Model):
    """
    One payment instrument applied to an order.

    METHODS: CASH, CARD, CHECK, TRANSFER, OTHER

    CASH: cash_change_cents is derived server-side from cash_given_cents.
    CHECK: starts PENDING with check_status RECEIVED until clearance is
    confirmed out of band.
    """
    __tablename__ = "order_payments"
    __table_args__ = (
        db.CheckConstraint("amount_cents >= 0", name="ck_order_payments_amount_nonneg"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)

    method = db.Column(db.String(16), nullable=False, index=True)
    amount_cents = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(16), nullable=False, default="COMPLETED", index=True)  # COMPLETED, PENDING

    # Cash
    cash_given_cents = db.Column(db.Integer, nullable=True)
    cash_change_cents = db.Column(db.Integer, nullable=True)

    # Check
    check_number = db.Column(db.String(64), nullable=True)
    check_bank_name = db.Column(db.String(128), nullable=True)
    check_date = db.Column(db.Date, nullable=True)
    check_status = db.Column(db.String(16), nullable=True)  # RECEIVED

    # Card auth code, transfer reference, etc.
    reference_number = db.Column(db.String(128), nullable=True)
    notes = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    order = db.relationship("Order", back_populates="payments")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "method": self.method,
            "amount_cents": self.amount_cents,
            "status": self.status,
            "cash_given_cents": self.cash_given_cents,
            "cash_change_cents": self.cash_change_cents,
            "check_number": self.check_number,
            "check_bank_name": self.check_bank_name,
            "check_date": self.check_date.isoformat() if self.check_date else None,
            "check_status": self.check_status,
            "reference_number": self.reference_number,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
        }
