# Overview: Settlement transaction; turns a cart into a durable, paid order.

"""
Order Settlement

WHY: Checkout has to validate stock, resolve discounts, price with tax,
reconcile payments and then mutate inventory and persist the order as ONE
unit of work. The store must never end up partially charged or oversold.

STATE MACHINE (every transition is logged):
VALIDATING -> PRICING -> RECONCILING_PAYMENT -> COMMITTING -> COMMITTED
Any state can end in FAILED(kind); nothing written survives a failure.

CONCURRENCY:
- Stock is guarded by conditional decrements at commit time, not by the
  pre-check. A lost race surfaces as ConcurrencyConflictError, which is
  retried from VALIDATING with fresh reads (SETTLEMENT_CONFLICT_RETRIES
  times); if it happens again the caller sees InsufficientInventoryError.
- OperationalError/StaleDataError are retried with backoff by
  run_with_retry; if they persist the caller sees SettlementInternalError.

IDEMPOTENCY: (store_id, idempotency_key) is unique. A replayed key returns
the order that key already produced, whether found up front or detected by
the unique constraint at commit.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from ..models import Customer, Order, OrderLine, OrderPayment, Store
from storefront.time_utils import Clock, as_utc_naive, utcnow
from .catalog_service import (
    CHANNEL_IN_STORE,
    CHANNEL_ONLINE,
    CHANNEL_PHONE,
    VALID_CHANNELS,
    CartLine,
    load_variant_snapshots,
    merge_cart_lines,
)
from .communications_service import enqueue_order_notification
from .concurrency import run_with_retry
from .document_service import next_document_number
from .errors import (
    ConcurrencyConflictError,
    InsufficientInventoryError,
    InvalidRequestError,
    NotFoundError,
    SettlementError,
    SettlementInternalError,
)
from .inventory_service import decrement_cart_inventory, record_sale_movements
from .payment_service import reconcile_payments
from .pricing_service import OrderDiscount, price_order
from .promotions_service import redeem_discount_code, resolve_discounts


# =============================================================================
# SETTLEMENT STATES (CONSTANTS)
# =============================================================================

STATE_VALIDATING = "VALIDATING"
STATE_PRICING = "PRICING"
STATE_RECONCILING_PAYMENT = "RECONCILING_PAYMENT"
STATE_COMMITTING = "COMMITTING"
STATE_COMMITTED = "COMMITTED"
STATE_FAILED = "FAILED"


# =============================================================================
# ORDER STATUS (CONSTANTS)
# =============================================================================

ORDER_STATUS_PENDING = "PENDING"
ORDER_STATUS_DELIVERED = "DELIVERED"

DOCUMENT_TYPE_ORDER = "ORDER"

# Staff-keyed channels; only these may carry a manual order discount
STAFF_CHANNELS = [CHANNEL_IN_STORE, CHANNEL_PHONE]


@dataclass(frozen=True)
class SettlementRequest:
    lines: list
    payments: list = field(default_factory=list)
    channel: str = CHANNEL_ONLINE
    discount_code: str | None = None
    customer_id: int | None = None
    order_discount: OrderDiscount | None = None
    idempotency_key: str | None = None
    notes: str | None = None


@dataclass
class SettlementResult:
    order: Order
    replayed: bool = False
    attempts: int = 1


class _Attempt:
    """Tracks the state of one settlement attempt for logging."""

    def __init__(self, store_id: int, number: int):
        self.store_id = store_id
        self.number = number
        self.state = None

    def enter(self, state: str) -> None:
        current_app.logger.debug(
            "settlement store=%s attempt=%s %s -> %s",
            self.store_id, self.number, self.state, state,
        )
        self.state = state

    def fail(self, exc: Exception) -> None:
        kind = getattr(exc, "kind", type(exc).__name__)
        current_app.logger.debug(
            "settlement store=%s attempt=%s %s -> %s(%s)",
            self.store_id, self.number, self.state, STATE_FAILED, kind,
        )
        self.state = STATE_FAILED


def _validate_request(store_id: int, request: SettlementRequest) -> tuple[Store, list[CartLine]]:
    store = db.session.query(Store).filter_by(id=store_id).first()
    if store is None or not store.is_active:
        raise NotFoundError(f"Store {store_id} not found", details={"store_id": store_id})
    if request.channel not in VALID_CHANNELS:
        raise InvalidRequestError(
            f"Invalid channel: {request.channel}. Must be one of {VALID_CHANNELS}",
            details={"channel": request.channel},
        )
    if not request.lines:
        raise InvalidRequestError("Cart is empty")
    lines = merge_cart_lines(request.lines)
    if request.order_discount is not None and request.channel not in STAFF_CHANNELS:
        raise InvalidRequestError(
            "Order discounts are only allowed on in-store and phone orders",
            details={"channel": request.channel},
        )
    return store, lines


def _find_by_idempotency_key(store_id: int, key: str | None) -> Order | None:
    if not key:
        return None
    return db.session.query(Order).filter_by(store_id=store_id, idempotency_key=key).first()


def _load_customer(store_id: int, customer_id: int | None) -> Customer | None:
    if customer_id is None:
        return None
    customer = db.session.query(Customer).filter_by(id=customer_id, store_id=store_id).first()
    if customer is None or not customer.is_active:
        raise NotFoundError(f"Customer {customer_id} not found", details={"customer_id": customer_id})
    return customer


def _check_stock(lines: list[CartLine], snapshots: dict) -> None:
    for line in lines:
        snap = snapshots[line.variant_id]
        if snap.inventory < line.quantity:
            raise _insufficient(snap.display_name, line.product_id, line.variant_id, line.quantity, snap.inventory)


def _insufficient(name: str, product_id: int, variant_id: int, requested: int, available: int | None) -> InsufficientInventoryError:
    available = max(available or 0, 0)
    return InsufficientInventoryError(
        f"Insufficient stock for {name}: requested {requested}, available {available}",
        details={
            "product_id": product_id,
            "variant_id": variant_id,
            "product_name": name,
            "requested": requested,
            "available": available,
            "shortfall": requested - available,
        },
    )


def _bump_customer_totals(customer_id: int, total_cents: int, now) -> None:
    db.session.execute(
        update(Customer)
        .where(Customer.id == customer_id)
        .values(
            total_spent_cents=Customer.total_spent_cents + total_cents,
            total_orders=Customer.total_orders + 1,
            last_order_at=now,
        )
        .execution_options(synchronize_session=False)
    )


def _build_line(order_id: int, position: int, snapshot, priced) -> OrderLine:
    return OrderLine(
        order_id=order_id,
        position=position,
        product_id=snapshot.product_id,
        variant_id=snapshot.variant_id,
        product_name=snapshot.display_name,
        product_sku=snapshot.sku,
        product_barcode=snapshot.barcode,
        product_description=snapshot.description,
        product_image=snapshot.image,
        product_options={str(k): str(v) for k, v in snapshot.options.items()},
        tax_rate=snapshot.tax_rate,
        quantity=priced.quantity,
        original_price_cents=priced.original_price_cents,
        discount_percent=priced.discount_percent,
        discount_source=priced.discount_source,
        discount_amount_cents=priced.discount_amount_cents,
        unit_price_cents=priced.unit_price_cents,
        line_total_cents=priced.line_total_cents,
        line_excl_tax_cents=priced.line_excl_tax_cents,
        line_tax_cents=priced.line_tax_cents,
    )


def _build_payment(order_id: int, payment) -> OrderPayment:
    return OrderPayment(
        order_id=order_id,
        method=payment.method,
        amount_cents=payment.amount_cents,
        status=payment.status,
        cash_given_cents=payment.cash_given_cents,
        cash_change_cents=payment.cash_change_cents,
        check_number=payment.check_number,
        check_bank_name=payment.check_bank_name,
        check_date=payment.check_date,
        check_status=payment.check_status,
        reference_number=payment.reference_number,
        notes=payment.notes,
    )


def _run_attempt(
    attempt: _Attempt,
    store: Store,
    lines: list[CartLine],
    request: SettlementRequest,
    clock: Clock,
    operator_id: int | None,
) -> Order:
    store_id = store.id
    now = as_utc_naive(clock())

    attempt.enter(STATE_VALIDATING)
    customer = _load_customer(store_id, request.customer_id)
    snapshots = load_variant_snapshots(store_id, lines, request.channel, now)
    _check_stock(lines, snapshots)

    attempt.enter(STATE_PRICING)
    resolution = resolve_discounts(
        store_id, snapshots, request.discount_code, request.channel, now,
        customer.id if customer else None,
    )
    totals = price_order(lines, snapshots, resolution, request.order_discount)

    attempt.enter(STATE_RECONCILING_PAYMENT)
    reconciliation = reconcile_payments(
        request.payments,
        totals.total_cents,
        current_app.config.get("PAYMENT_TOLERANCE_CENTS", 1),
    )

    attempt.enter(STATE_COMMITTING)
    decrements = decrement_cart_inventory(lines, snapshots)

    order_number = next_document_number(
        store_id=store_id,
        document_type=DOCUMENT_TYPE_ORDER,
        prefix=current_app.config.get("ORDER_NUMBER_PREFIX", "ORD"),
    )
    order = Order(
        store_id=store_id,
        order_number=order_number,
        status=ORDER_STATUS_DELIVERED if request.channel == CHANNEL_IN_STORE else ORDER_STATUS_PENDING,
        payment_status=reconciliation.payment_status,
        source=request.channel,
        currency=store.currency or current_app.config.get("DEFAULT_CURRENCY", "USD"),
        subtotal_excl_tax_cents=totals.subtotal_excl_tax_cents,
        tax_cents=totals.tax_cents,
        discount_total_cents=totals.discount_total_cents,
        order_discount_cents=totals.order_discount_cents,
        order_discount_type=totals.order_discount_type,
        total_cents=totals.total_cents,
        discount_code_id=resolution.code_id,
        discount_code_value=resolution.code_value,
        customer_id=customer.id if customer else None,
        processed_by_user_id=operator_id,
        idempotency_key=request.idempotency_key,
        notes=request.notes,
        created_at=now,
    )
    db.session.add(order)
    db.session.flush()

    for position, (line, priced) in enumerate(zip(lines, totals.lines), start=1):
        db.session.add(_build_line(order.id, position, snapshots[line.variant_id], priced))
    for payment in reconciliation.payments:
        db.session.add(_build_payment(order.id, payment))

    record_sale_movements(store_id, order.id, order_number, decrements)

    if resolution.code_id is not None:
        redeem_discount_code(resolution.code_id)

    enqueue_order_notification(order)

    if customer is not None:
        _bump_customer_totals(customer.id, totals.total_cents, now)

    db.session.commit()
    attempt.enter(STATE_COMMITTED)
    return order


def settle_order(
    store_id: int,
    request: SettlementRequest,
    *,
    clock: Clock = utcnow,
    operator_id: int | None = None,
) -> SettlementResult:
    """
    Settle a cart into an order.

    Args:
        store_id: tenant the caller is authenticated against
        request: cart lines, payment instruments, channel and options
        clock: source of "now" for discount validity windows
        operator_id: staff member keying the order (POS / phone)

    Returns:
        SettlementResult; replayed is True when the idempotency key had
        already produced an order

    Raises:
        SettlementError subclass; the database is left as it was
    """
    try:
        store, lines = _validate_request(store_id, request)
        existing = _find_by_idempotency_key(store_id, request.idempotency_key)
    except SettlementError as exc:
        db.session.rollback()
        current_app.logger.warning("settlement rejected store=%s kind=%s: %s", store_id, exc.kind, exc.message)
        raise
    if existing is not None:
        current_app.logger.info(
            "settlement replay store=%s key=%s order=%s",
            store_id, request.idempotency_key, existing.order_number,
        )
        return SettlementResult(order=existing, replayed=True, attempts=0)

    attempts = 1 + max(int(current_app.config.get("SETTLEMENT_CONFLICT_RETRIES", 1)), 0)
    last_conflict = None

    for number in range(1, attempts + 1):
        attempt = _Attempt(store_id, number)
        try:
            order = run_with_retry(
                lambda: _run_attempt(attempt, store, lines, request, clock, operator_id),
                label=f"settlement store={store_id}",
            )
        except ConcurrencyConflictError as exc:
            db.session.rollback()
            attempt.fail(exc)
            current_app.logger.warning(
                "settlement conflict store=%s attempt=%s/%s: %s",
                store_id, number, attempts, exc.message,
            )
            last_conflict = exc
            continue
        except SettlementError as exc:
            db.session.rollback()
            attempt.fail(exc)
            current_app.logger.warning("settlement failed store=%s kind=%s: %s", store_id, exc.kind, exc.message)
            raise
        except IntegrityError as exc:
            db.session.rollback()
            attempt.fail(exc)
            replay = _find_by_idempotency_key(store_id, request.idempotency_key)
            if replay is not None:
                current_app.logger.info(
                    "settlement replay store=%s key=%s order=%s (concurrent)",
                    store_id, request.idempotency_key, replay.order_number,
                )
                return SettlementResult(order=replay, replayed=True, attempts=number)
            current_app.logger.exception("settlement integrity failure store=%s", store_id)
            raise SettlementInternalError("Order could not be saved", details={"store_id": store_id}) from exc
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            attempt.fail(exc)
            current_app.logger.exception("settlement storage failure store=%s", store_id)
            raise SettlementInternalError("Order could not be saved", details={"store_id": store_id}) from exc
        except Exception as exc:
            db.session.rollback()
            attempt.fail(exc)
            raise

        current_app.logger.info(
            "settlement committed store=%s order=%s total_cents=%s attempt=%s",
            store_id, order.order_number, order.total_cents, number,
        )
        return SettlementResult(order=order, replayed=False, attempts=number)

    details = dict(last_conflict.details) if last_conflict else {}
    raise _insufficient(
        details.get("product_name", "item"),
        details.get("product_id"),
        details.get("variant_id"),
        details.get("requested", 0),
        details.get("available"),
    )


def get_order(store_id: int, order_id: int) -> Order:
    order = db.session.query(Order).filter_by(id=order_id, store_id=store_id).first()
    if order is None:
        raise NotFoundError(f"Order {order_id} not found", details={"order_id": order_id})
    return order


def get_order_by_number(order_number: str) -> Order | None:
    return db.session.query(Order).filter_by(order_number=order_number).first()


def list_orders(store_id: int, limit: int = 50) -> list[Order]:
    return (
        db.session.query(Order)
        .filter_by(store_id=store_id)
        .order_by(Order.id.desc())
        .limit(limit)
        .all()
    )
