# Overview: Pytest coverage for the settlement transaction.

"""
Order Settlement Tests

Reference scenarios, conservation of stock, rollback on every failure kind,
the conflict retry, idempotency keys and write-once order lines.
"""

import dataclasses
from decimal import Decimal

import pytest
from sqlalchemy import update
from sqlalchemy.exc import OperationalError

from storefront.extensions import db
from storefront.models import (
    Customer,
    DiscountCode,
    DocumentSequence,
    InventoryMovement,
    Notification,
    Order,
    OrderLine,
    OrderLineImmutableError,
    OrderPayment,
)
from storefront.services import settlement_service
from storefront.services.catalog_service import CHANNEL_IN_STORE, CHANNEL_ONLINE, CHANNEL_PHONE, CartLine
from storefront.services.errors import (
    ConcurrencyConflictError,
    DiscountInvalidError,
    InsufficientInventoryError,
    InvalidRequestError,
    NotFoundError,
    PaymentMismatchError,
    SettlementInternalError,
)
from storefront.services.payment_service import PaymentInstrument
from storefront.services.pricing_service import ORDER_DISCOUNT_PERCENTAGE, OrderDiscount
from storefront.services.settlement_service import SettlementRequest, settle_order


def line(variant, quantity=1):
    return CartLine(variant.product_id, variant.id, quantity)


def cash(amount=None, given=None):
    return PaymentInstrument("CASH", amount, cash_given_cents=given)


def nothing_written():
    return all(
        db.session.query(model).count() == 0
        for model in (Order, OrderLine, OrderPayment, Notification, InventoryMovement)
    )


class TestReferenceScenarios:

    def test_single_line_cash_sale(self, db_session, store_a, make_variant, clock):
        variant = make_variant(store_a)
        result = settle_order(
            store_a.id,
            SettlementRequest(lines=[line(variant, 2)], payments=[cash(20000)], channel=CHANNEL_IN_STORE),
            clock=clock,
            operator_id=7,
        )
        order = result.order

        assert result.replayed is False
        assert order.subtotal_excl_tax_cents == 16807
        assert order.tax_cents == 3193
        assert order.total_cents == 20000
        assert order.currency == "EUR"
        assert order.status == "DELIVERED"
        assert order.payment_status == "COMPLETED"
        assert order.processed_by_user_id == 7
        assert order.order_number == f"ORD-{store_a.id:03d}-00001"
        assert variant.inventory == 8

    def test_unscoped_code_takes_ten_percent(self, db_session, store_a, make_variant, make_code, clock):
        variant = make_variant(store_a)
        code = make_code(store_a, "SAVE10", usage_limit=10)

        order = settle_order(
            store_a.id,
            SettlementRequest(lines=[line(variant, 2)], payments=[cash()], discount_code="save10"),
            clock=clock,
        ).order

        assert order.total_cents == 18000
        assert order.discount_total_cents == 2000
        assert order.discount_code_id == code.id
        assert order.discount_code_value == "SAVE10"
        assert order.lines[0].discount_source == "CODE"
        assert code.used_count == 1

    def test_insufficient_stock_leaves_store_untouched(self, db_session, store_a, make_variant, clock):
        variant = make_variant(store_a, inventory=3)

        with pytest.raises(InsufficientInventoryError) as exc:
            settle_order(
                store_a.id,
                SettlementRequest(lines=[line(variant, 5)], payments=[cash()]),
                clock=clock,
            )

        assert exc.value.details["requested"] == 5
        assert exc.value.details["available"] == 3
        assert exc.value.details["shortfall"] == 2
        assert exc.value.details["product_name"] == "Shirt - Default"
        assert variant.inventory == 3
        assert nothing_written()

    def test_cash_and_check_split(self, db_session, store_a, make_variant, clock):
        variant = make_variant(store_a, price_cents=15000, tax_rate="10.00")
        order = settle_order(
            store_a.id,
            SettlementRequest(
                lines=[line(variant)],
                payments=[cash(10000), PaymentInstrument("CHECK", 5000, check_number="0042")],
                channel=CHANNEL_IN_STORE,
            ),
            clock=clock,
        ).order

        assert order.payment_status == "PENDING"
        methods = {p.method: p for p in order.payments}
        assert methods["CASH"].status == "COMPLETED"
        assert methods["CHECK"].status == "PENDING"
        assert methods["CHECK"].check_status == "RECEIVED"

    def test_short_split_payment_is_rejected(self, db_session, store_a, make_variant, clock):
        variant = make_variant(store_a, price_cents=15000, tax_rate="10.00")

        with pytest.raises(PaymentMismatchError) as exc:
            settle_order(
                store_a.id,
                SettlementRequest(
                    lines=[line(variant)],
                    payments=[cash(10000), PaymentInstrument("CHECK", 4000)],
                ),
                clock=clock,
            )

        assert exc.value.details["difference_cents"] == 1000
        assert variant.inventory == 10
        assert nothing_written()

    def test_code_scoped_to_other_variant_is_rejected(self, db_session, store_a, make_variant, make_code, clock):
        a = make_variant(store_a, name="A")
        b = make_variant(store_a, name="B")
        code = make_code(store_a, "ONLYA", variants=[a])

        with pytest.raises(DiscountInvalidError):
            settle_order(
                store_a.id,
                SettlementRequest(lines=[line(b)], payments=[cash()], discount_code="ONLYA"),
                clock=clock,
            )

        assert b.inventory == 10
        assert code.used_count == 0
        assert nothing_written()


class TestPersistence:

    def test_lines_snapshot_catalog_state(self, db_session, store_a, make_variant, clock):
        variant = make_variant(store_a, options={"color": "red", "size": "L"}, description="Cotton")
        order = settle_order(
            store_a.id,
            SettlementRequest(lines=[line(variant, 2)], payments=[cash()]),
            clock=clock,
        ).order

        (order_line,) = order.lines
        assert order_line.position == 1
        assert order_line.product_name == "Shirt - Default"
        assert order_line.product_sku == variant.sku
        assert order_line.product_description == "Cotton"
        assert order_line.product_options == {"color": "red", "size": "L"}
        assert order_line.tax_rate == Decimal("19.00")
        assert order_line.original_price_cents == 10000
        assert order_line.unit_price_cents == 10000
        assert order_line.line_total_cents == 20000

        variant.price_cents = 5000
        db_session.commit()
        db_session.refresh(order_line)
        assert order_line.original_price_cents == 10000

    def test_duplicate_lines_are_merged(self, db_session, store_a, make_variant, clock):
        variant = make_variant(store_a)
        order = settle_order(
            store_a.id,
            SettlementRequest(lines=[line(variant, 1), line(variant, 2)], payments=[cash()]),
            clock=clock,
        ).order

        assert len(order.lines) == 1
        assert order.lines[0].quantity == 3
        assert variant.inventory == 7

    def test_stock_is_conserved_and_movements_recorded(self, db_session, store_a, make_variant, clock):
        variant = make_variant(store_a, inventory=10)
        for quantity in (3, 4):
            settle_order(
                store_a.id,
                SettlementRequest(lines=[line(variant, quantity)], payments=[cash()]),
                clock=clock,
            )

        sold = sum(sold_line.quantity for sold_line in db_session.query(OrderLine).filter_by(variant_id=variant.id))
        assert variant.inventory + sold == 10

        movements = db_session.query(InventoryMovement).order_by(InventoryMovement.id).all()
        assert [m.quantity_delta for m in movements] == [-3, -4]
        assert [m.inventory_after for m in movements] == [7, 3]

    def test_order_numbers_are_sequential_per_store(self, db_session, store_a, store_b, make_variant, clock):
        a = make_variant(store_a)
        b = make_variant(store_b)
        first = settle_order(store_a.id, SettlementRequest(lines=[line(a)], payments=[cash()]), clock=clock).order
        second = settle_order(store_a.id, SettlementRequest(lines=[line(a)], payments=[cash()]), clock=clock).order
        other = settle_order(store_b.id, SettlementRequest(lines=[line(b)], payments=[cash()]), clock=clock).order

        assert first.order_number.endswith("-00001")
        assert second.order_number.endswith("-00002")
        assert other.order_number == f"ORD-{store_b.id:03d}-00001"

    def test_notification_and_customer_totals(self, db_session, store_a, make_variant, customer_a, clock):
        variant = make_variant(store_a)
        order = settle_order(
            store_a.id,
            SettlementRequest(lines=[line(variant)], payments=[cash()], channel=CHANNEL_IN_STORE,
                              customer_id=customer_a.id),
            clock=clock,
        ).order

        notification = db_session.query(Notification).filter_by(order_id=order.id).one()
        assert notification.type == "ORDER_CREATED"
        assert notification.title == "New In-Store Order"
        assert order.order_number in notification.message

        db_session.refresh(customer_a)
        assert customer_a.total_orders == 1
        assert customer_a.total_spent_cents == 10000

    def test_full_discount_needs_no_payment(self, db_session, store_a, make_variant, make_code, clock):
        variant = make_variant(store_a)
        make_code(store_a, "FREE", "100.00")
        order = settle_order(
            store_a.id,
            SettlementRequest(lines=[line(variant)], payments=[], discount_code="FREE"),
            clock=clock,
        ).order

        assert order.total_cents == 0
        assert order.tax_cents == 0
        assert order.payments == []
        assert order.payment_status == "COMPLETED"

    def test_manual_order_discount_on_phone_order(self, db_session, store_a, make_variant, clock):
        variant = make_variant(store_a)
        order = settle_order(
            store_a.id,
            SettlementRequest(
                lines=[line(variant, 2)],
                payments=[PaymentInstrument("CARD")],
                channel=CHANNEL_PHONE,
                order_discount=OrderDiscount(ORDER_DISCOUNT_PERCENTAGE, Decimal("10")),
            ),
            clock=clock,
        ).order

        assert order.order_discount_cents == 1681
        assert order.order_discount_type == ORDER_DISCOUNT_PERCENTAGE
        assert order.total_cents == 18000
        assert order.status == "PENDING"


class TestRejections:

    def test_empty_cart(self, db_session, store_a, clock):
        with pytest.raises(InvalidRequestError):
            settle_order(store_a.id, SettlementRequest(lines=[], payments=[]), clock=clock)

    def test_unknown_channel(self, db_session, store_a, make_variant, clock):
        variant = make_variant(store_a)
        with pytest.raises(InvalidRequestError):
            settle_order(store_a.id, SettlementRequest(lines=[line(variant)], channel="KIOSK"), clock=clock)

    def test_order_discount_not_allowed_online(self, db_session, store_a, make_variant, clock):
        variant = make_variant(store_a)
        with pytest.raises(InvalidRequestError):
            settle_order(
                store_a.id,
                SettlementRequest(
                    lines=[line(variant)], payments=[cash()], channel=CHANNEL_ONLINE,
                    order_discount=OrderDiscount(ORDER_DISCOUNT_PERCENTAGE, Decimal("5")),
                ),
                clock=clock,
            )

    def test_customer_of_other_store(self, db_session, store_a, store_b, make_variant, clock):
        stranger = Customer(store_id=store_b.id, name="Bob")
        db_session.add(stranger)
        db_session.commit()
        variant = make_variant(store_a)

        with pytest.raises(NotFoundError):
            settle_order(
                store_a.id,
                SettlementRequest(lines=[line(variant)], payments=[cash()], customer_id=stranger.id),
                clock=clock,
            )
        assert nothing_written()

    def test_failure_does_not_burn_order_number(self, db_session, store_a, make_variant, clock):
        variant = make_variant(store_a)
        with pytest.raises(PaymentMismatchError):
            settle_order(store_a.id, SettlementRequest(lines=[line(variant)], payments=[cash(1)]), clock=clock)

        order = settle_order(store_a.id, SettlementRequest(lines=[line(variant)], payments=[cash()]), clock=clock).order
        assert order.order_number.endswith("-00001")

    def test_code_exhausted_at_commit_rolls_back(self, db_session, store_a, make_variant, make_code, clock, monkeypatch):
        variant = make_variant(store_a)
        code = make_code(store_a, "LAST", usage_limit=1)
        real_resolve = settlement_service.resolve_discounts

        def resolve_then_lose_race(*args, **kwargs):
            resolution = real_resolve(*args, **kwargs)
            db.session.execute(update(DiscountCode).where(DiscountCode.id == code.id).values(used_count=1))
            return resolution

        monkeypatch.setattr(settlement_service, "resolve_discounts", resolve_then_lose_race)

        with pytest.raises(DiscountInvalidError) as exc:
            settle_order(
                store_a.id,
                SettlementRequest(lines=[line(variant)], payments=[cash()], discount_code="LAST"),
                clock=clock,
            )

        assert exc.value.details["reason"] == "USAGE_EXHAUSTED"
        db_session.expire_all()
        assert code.used_count == 0
        assert variant.inventory == 10
        assert db_session.query(DocumentSequence).count() == 0
        assert nothing_written()


class TestConcurrency:

    def test_conflict_is_retried_once(self, db_session, store_a, make_variant, clock, monkeypatch):
        variant = make_variant(store_a)
        real_decrement = settlement_service.decrement_cart_inventory
        calls = []

        def flaky(lines, snapshots):
            calls.append(1)
            if len(calls) == 1:
                raise ConcurrencyConflictError("stock moved", details={"variant_id": variant.id})
            return real_decrement(lines, snapshots)

        monkeypatch.setattr(settlement_service, "decrement_cart_inventory", flaky)

        result = settle_order(store_a.id, SettlementRequest(lines=[line(variant, 2)], payments=[cash()]), clock=clock)

        assert result.attempts == 2
        assert len(calls) == 2
        assert variant.inventory == 8

    def test_stale_read_loses_to_conditional_decrement(self, db_session, store_a, make_variant, clock, monkeypatch):
        """Pre-check sees stale stock; the conditional UPDATE still refuses to oversell."""
        variant = make_variant(store_a, inventory=2)
        real_load = settlement_service.load_variant_snapshots

        def stale_snapshots(*args, **kwargs):
            snaps = real_load(*args, **kwargs)
            return {vid: dataclasses.replace(s, inventory=99) for vid, s in snaps.items()}

        monkeypatch.setattr(settlement_service, "load_variant_snapshots", stale_snapshots)

        with pytest.raises(InsufficientInventoryError) as exc:
            settle_order(store_a.id, SettlementRequest(lines=[line(variant, 5)], payments=[cash()]), clock=clock)

        assert exc.value.details["variant_id"] == variant.id
        assert exc.value.details["available"] == 2
        assert variant.inventory == 2
        assert nothing_written()

    def test_storage_failure_surfaces_as_internal(self, db_session, store_a, make_variant, clock, monkeypatch):
        variant = make_variant(store_a)

        def locked(**kwargs):
            raise OperationalError("UPDATE document_sequences", {}, Exception("database is locked"))

        monkeypatch.setattr(settlement_service, "next_document_number", locked)
        monkeypatch.setattr("storefront.services.concurrency.time.sleep", lambda seconds: None)

        with pytest.raises(SettlementInternalError):
            settle_order(store_a.id, SettlementRequest(lines=[line(variant)], payments=[cash()]), clock=clock)

        assert variant.inventory == 10
        assert nothing_written()


class TestIdempotency:

    def test_replayed_key_returns_original_order(self, db_session, store_a, make_variant, clock):
        variant = make_variant(store_a)
        request = SettlementRequest(lines=[line(variant)], payments=[cash()], idempotency_key="cart-123")

        first = settle_order(store_a.id, request, clock=clock)
        second = settle_order(store_a.id, request, clock=clock)

        assert second.replayed is True
        assert second.order.id == first.order.id
        assert variant.inventory == 9
        assert db_session.query(Order).count() == 1

    def test_key_collision_at_commit_replays(self, db_session, store_a, make_variant, clock, monkeypatch):
        """A concurrent twin passes the up-front lookup; the unique key catches it at commit."""
        variant = make_variant(store_a)
        request = SettlementRequest(lines=[line(variant)], payments=[cash()], idempotency_key="cart-race")
        first = settle_order(store_a.id, request, clock=clock)

        real_find = settlement_service._find_by_idempotency_key
        lookups = []

        def miss_first_lookup(store_id, key):
            lookups.append(key)
            if len(lookups) == 1:
                return None
            return real_find(store_id, key)

        monkeypatch.setattr(settlement_service, "_find_by_idempotency_key", miss_first_lookup)

        second = settle_order(store_a.id, request, clock=clock)

        assert len(lookups) == 2
        assert second.replayed is True
        assert second.order.id == first.order.id
        db_session.expire_all()
        assert db_session.query(Order).count() == 1
        assert db_session.query(InventoryMovement).count() == 1
        assert variant.inventory == 9

    def test_same_key_in_other_store_is_independent(self, db_session, store_a, store_b, make_variant, clock):
        a = make_variant(store_a)
        b = make_variant(store_b)
        first = settle_order(store_a.id, SettlementRequest(lines=[line(a)], payments=[cash()], idempotency_key="k"), clock=clock)
        other = settle_order(store_b.id, SettlementRequest(lines=[line(b)], payments=[cash()], idempotency_key="k"), clock=clock)

        assert other.replayed is False
        assert other.order.id != first.order.id


class TestOrderLineImmutability:

    def test_update_and_delete_are_refused(self, db_session, store_a, make_variant, clock):
        variant = make_variant(store_a)
        order = settle_order(store_a.id, SettlementRequest(lines=[line(variant)], payments=[cash()]), clock=clock).order
        order_line = order.lines[0]

        order_line.quantity = 99
        with pytest.raises(OrderLineImmutableError):
            db_session.flush()
        db_session.rollback()

        db_session.delete(order_line)
        with pytest.raises(OrderLineImmutableError):
            db_session.flush()
        db_session.rollback()

        assert db_session.query(OrderLine).filter_by(order_id=order.id).one().quantity == 1

    def test_bulk_update_and_delete_are_refused(self, db_session, store_a, make_variant, clock):
        variant = make_variant(store_a)
        order = settle_order(store_a.id, SettlementRequest(lines=[line(variant)], payments=[cash()]), clock=clock).order

        with pytest.raises(OrderLineImmutableError):
            db_session.query(OrderLine).filter_by(order_id=order.id).update({"quantity": 5})
        db_session.rollback()

        with pytest.raises(OrderLineImmutableError):
            db_session.query(OrderLine).filter_by(order_id=order.id).delete()
        db_session.rollback()

        assert db_session.query(OrderLine).filter_by(order_id=order.id).one().quantity == 1
