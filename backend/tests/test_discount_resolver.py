# Overview: Pytest coverage for catalog snapshots and discount resolution.

"""
Discount Resolution Tests

Covers attached-discount selection in the catalog reader, code validation,
code scope and the "one source per line" rule.
"""

from datetime import timedelta

import pytest

from storefront.services.catalog_service import (
    CHANNEL_IN_STORE,
    CHANNEL_ONLINE,
    CHANNEL_PHONE,
    CartLine,
    load_variant_snapshots,
)
from storefront.services.errors import DiscountInvalidError, NotFoundError
from storefront.services.payment_service import PaymentInstrument
from storefront.services.promotions_service import (
    CODE_SCOPE_ALL,
    CODE_SCOPE_CATEGORY,
    CODE_SCOPE_PRODUCTS,
    CODE_SCOPE_VARIANTS,
    SOURCE_CODE,
    SOURCE_PRODUCT,
    SOURCE_VARIANT,
    load_discount_code,
    preview_discount_code,
    resolve_discounts,
)
from storefront.services.settlement_service import SettlementRequest, settle_order

from conftest import NOW


def cart_line(variant, quantity=1):
    return CartLine(variant.product_id, variant.id, quantity)


class TestCatalogSnapshots:

    def test_snapshot_reads_current_catalog(self, db_session, store_a, make_variant):
        variant = make_variant(store_a, inventory=4, options={"color": "red", "size": "L"})
        snaps = load_variant_snapshots(store_a.id, [cart_line(variant)], CHANNEL_ONLINE, NOW)

        snap = snaps[variant.id]
        assert snap.unit_price_cents == 10000
        assert str(snap.tax_rate) == "19.00"
        assert snap.inventory == 4
        assert snap.display_name == "Shirt - Default"
        assert list(snap.options.items()) == [("color", "red"), ("size", "L")]
        assert snap.attached_discount is None

    def test_foreign_store_variant_is_not_found(self, db_session, store_a, store_b, make_variant):
        variant = make_variant(store_b)
        with pytest.raises(NotFoundError):
            load_variant_snapshots(store_a.id, [cart_line(variant)], CHANNEL_ONLINE, NOW)

    def test_variant_under_wrong_product_is_not_found(self, db_session, store_a, make_variant):
        shirt = make_variant(store_a, name="Shirt")
        mug = make_variant(store_a, name="Mug")
        with pytest.raises(NotFoundError):
            load_variant_snapshots(
                store_a.id, [CartLine(mug.product_id, shirt.id, 1)], CHANNEL_ONLINE, NOW,
            )

    def test_inactive_or_deleted_is_not_found(self, db_session, store_a, make_variant):
        gone = make_variant(store_a, name="Gone", is_deleted=True)
        hidden = make_variant(store_a, name="Hidden", is_active=False)
        for variant in (gone, hidden):
            with pytest.raises(NotFoundError):
                load_variant_snapshots(store_a.id, [cart_line(variant)], CHANNEL_ONLINE, NOW)

    def test_variant_discount_beats_larger_product_discount(self, db_session, store_a, make_variant, make_discount):
        variant = make_variant(store_a)
        make_discount(store_a, "30.00", products=[variant.product])
        on_variant = make_discount(store_a, "5.00", variants=[variant])

        snap = load_variant_snapshots(store_a.id, [cart_line(variant)], CHANNEL_ONLINE, NOW)[variant.id]
        assert snap.attached_discount.discount_id == on_variant.id
        assert snap.attached_discount.scope == "VARIANT"

    def test_highest_percent_wins_and_ties_go_to_oldest(self, db_session, store_a, make_variant, make_discount):
        variant = make_variant(store_a)
        first = make_discount(store_a, "25.00", products=[variant.product])
        make_discount(store_a, "25.00", products=[variant.product])
        make_discount(store_a, "10.00", products=[variant.product])

        snap = load_variant_snapshots(store_a.id, [cart_line(variant)], CHANNEL_ONLINE, NOW)[variant.id]
        assert snap.attached_discount.discount_id == first.id
        assert str(snap.attached_discount.percent) == "25.00"

    def test_inactive_window_and_channel_filter_discounts(self, db_session, store_a, make_variant, make_discount):
        variant = make_variant(store_a)
        make_discount(store_a, "40.00", variants=[variant], ends_at=NOW - timedelta(hours=1))
        make_discount(store_a, "40.00", variants=[variant], starts_at=NOW + timedelta(hours=1))
        make_discount(store_a, "40.00", variants=[variant], enabled=False)
        make_discount(store_a, "40.00", variants=[variant], is_deleted=True)
        make_discount(store_a, "40.00", variants=[variant], available_in_store=False)

        in_store = load_variant_snapshots(store_a.id, [cart_line(variant)], CHANNEL_IN_STORE, NOW)
        assert in_store[variant.id].attached_discount is None

        online = load_variant_snapshots(store_a.id, [cart_line(variant)], CHANNEL_ONLINE, NOW)
        assert online[variant.id].attached_discount is not None


class TestCodeValidation:

    def test_lookup_is_trimmed_and_case_insensitive(self, db_session, store_a, make_code):
        code = make_code(store_a, "spring10")
        rule = load_discount_code(store_a.id, "  Spring10 ", CHANNEL_ONLINE, NOW)
        assert rule.code_id == code.id
        assert rule.code == "SPRING10"
        assert rule.scope == CODE_SCOPE_ALL

    @pytest.mark.parametrize("fields, reason", [
        ({"is_active": False}, "INACTIVE"),
        ({"starts_at": NOW + timedelta(days=1)}, "NOT_STARTED"),
        ({"ends_at": NOW - timedelta(seconds=1)}, "EXPIRED"),
        ({"available_online": False}, "CHANNEL"),
        ({"usage_limit": 2, "used_count": 2}, "USAGE_EXHAUSTED"),
    ])
    def test_rejections(self, db_session, store_a, make_code, fields, reason):
        make_code(store_a, "SAVE10", **fields)
        with pytest.raises(DiscountInvalidError) as exc:
            load_discount_code(store_a.id, "SAVE10", CHANNEL_ONLINE, NOW)
        assert exc.value.details["reason"] == reason

    def test_unknown_code(self, db_session, store_a):
        with pytest.raises(DiscountInvalidError) as exc:
            load_discount_code(store_a.id, "NOPE", CHANNEL_ONLINE, NOW)
        assert exc.value.message == "Invalid discount code"

    def test_code_from_other_store_is_unknown(self, db_session, store_a, store_b, make_code):
        make_code(store_b, "SAVE10")
        with pytest.raises(DiscountInvalidError) as exc:
            load_discount_code(store_a.id, "SAVE10", CHANNEL_ONLINE, NOW)
        assert exc.value.details["reason"] == "UNKNOWN"

    def test_phone_orders_follow_in_store_availability(self, db_session, store_a, make_code):
        make_code(store_a, "SHOPONLY", available_in_store=False)
        with pytest.raises(DiscountInvalidError):
            load_discount_code(store_a.id, "SHOPONLY", CHANNEL_PHONE, NOW)
        assert load_discount_code(store_a.id, "SHOPONLY", CHANNEL_ONLINE, NOW).code == "SHOPONLY"

    def test_customer_restricted_code(self, db_session, store_a, make_code, customer_a):
        make_code(store_a, "VIP", customers=[customer_a])
        with pytest.raises(DiscountInvalidError) as exc:
            load_discount_code(store_a.id, "VIP", CHANNEL_ONLINE, NOW, customer_id=None)
        assert exc.value.details["reason"] == "CUSTOMER"

        rule = load_discount_code(store_a.id, "VIP", CHANNEL_ONLINE, NOW, customer_id=customer_a.id)
        assert rule.code == "VIP"


class TestCodeScope:

    def test_variant_scope_only_covers_listed_variant(self, db_session, store_a, make_variant, make_code):
        a = make_variant(store_a, name="A")
        b = make_variant(store_a, name="B")
        make_code(store_a, variants=[a])
        lines = [cart_line(a), cart_line(b)]
        snaps = load_variant_snapshots(store_a.id, lines, CHANNEL_ONLINE, NOW)

        res = resolve_discounts(store_a.id, snaps, "SAVE10", CHANNEL_ONLINE, NOW)
        assert res.source_for(a.id) == SOURCE_CODE
        assert str(res.percent_for(a.id)) == "10.00"
        assert res.source_for(b.id) is None
        assert res.percent_for(b.id) == 0

    def test_variants_win_over_products_on_the_same_code(self, db_session, store_a, make_variant, make_code):
        a = make_variant(store_a, name="A")
        b = make_variant(store_a, name="B")
        code = make_code(store_a, variants=[a], products=[b.product])
        rule = load_discount_code(store_a.id, code.code, CHANNEL_ONLINE, NOW)
        assert rule.scope == CODE_SCOPE_VARIANTS

        snaps = load_variant_snapshots(store_a.id, [cart_line(b)], CHANNEL_ONLINE, NOW)
        with pytest.raises(DiscountInvalidError) as exc:
            resolve_discounts(store_a.id, snaps, "SAVE10", CHANNEL_ONLINE, NOW)
        assert exc.value.details["reason"] == "SCOPE"

    def test_product_scope_covers_every_variant(self, db_session, store_a, make_variant, make_code):
        small = make_variant(store_a, name="Shirt", variant_name="S")
        large = make_variant(store_a, product=small.product, variant_name="L")
        make_code(store_a, products=[small.product])
        rule = load_discount_code(store_a.id, "SAVE10", CHANNEL_ONLINE, NOW)
        assert rule.scope == CODE_SCOPE_PRODUCTS

        snaps = load_variant_snapshots(store_a.id, [cart_line(small), cart_line(large)], CHANNEL_ONLINE, NOW)
        res = resolve_discounts(store_a.id, snaps, "SAVE10", CHANNEL_ONLINE, NOW)
        assert res.source_for(small.id) == SOURCE_CODE
        assert res.source_for(large.id) == SOURCE_CODE

    def test_category_scope(self, db_session, store_a, make_variant, make_category, make_code):
        apparel = make_category(store_a)
        shirt = make_variant(store_a, name="Shirt", categories=[apparel])
        mug = make_variant(store_a, name="Mug")
        make_code(store_a, category=apparel)
        rule = load_discount_code(store_a.id, "SAVE10", CHANNEL_ONLINE, NOW)
        assert rule.scope == CODE_SCOPE_CATEGORY

        snaps = load_variant_snapshots(store_a.id, [cart_line(shirt), cart_line(mug)], CHANNEL_ONLINE, NOW)
        res = resolve_discounts(store_a.id, snaps, "SAVE10", CHANNEL_ONLINE, NOW)
        assert res.source_for(shirt.id) == SOURCE_CODE
        assert res.source_for(mug.id) is None

    def test_attached_discount_is_never_stacked_with_code(self, db_session, store_a, make_variant, make_discount, make_code):
        on_sale = make_variant(store_a, name="Sale")
        regular = make_variant(store_a, name="Regular")
        make_discount(store_a, "20.00", products=[on_sale.product])
        make_code(store_a)

        lines = [cart_line(on_sale), cart_line(regular)]
        snaps = load_variant_snapshots(store_a.id, lines, CHANNEL_ONLINE, NOW)
        res = resolve_discounts(store_a.id, snaps, "SAVE10", CHANNEL_ONLINE, NOW)

        assert res.source_for(on_sale.id) == SOURCE_PRODUCT
        assert str(res.percent_for(on_sale.id)) == "20.00"
        assert res.source_for(regular.id) == SOURCE_CODE
        assert res.code_value == "SAVE10"

    def test_code_fully_shadowed_by_attached_discount_is_still_recorded(
        self, db_session, store_a, make_variant, make_discount, make_code,
    ):
        variant = make_variant(store_a)
        make_discount(store_a, "20.00", variants=[variant])
        code = make_code(store_a, variants=[variant])

        snaps = load_variant_snapshots(store_a.id, [cart_line(variant)], CHANNEL_ONLINE, NOW)
        res = resolve_discounts(store_a.id, snaps, "SAVE10", CHANNEL_ONLINE, NOW)
        assert res.source_for(variant.id) == SOURCE_VARIANT
        assert res.code_id == code.id

    def test_no_code_means_no_code_fields(self, db_session, store_a, make_variant):
        variant = make_variant(store_a)
        snaps = load_variant_snapshots(store_a.id, [cart_line(variant)], CHANNEL_ONLINE, NOW)
        res = resolve_discounts(store_a.id, snaps, "   ", CHANNEL_ONLINE, NOW)
        assert res.code_id is None
        assert res.percent_for(variant.id) == 0


class TestPreview:

    def test_preview_reports_amount_without_writing(self, db_session, store_a, make_variant, make_code):
        variant = make_variant(store_a)
        code = make_code(store_a, usage_limit=5)

        preview = preview_discount_code(store_a.id, [cart_line(variant, 2)], "save10", CHANNEL_ONLINE, NOW)
        assert preview["valid"] is True
        assert preview["applicable_variant_ids"] == [variant.id]
        assert preview["discount_amount_cents"] == 2000
        assert preview["discount_code"]["scope"] == CODE_SCOPE_ALL

        db_session.refresh(code)
        assert code.used_count == 0

    def test_repeated_variant_is_quoted_as_one_line(self, db_session, store_a, make_variant, make_code, clock):
        variant = make_variant(store_a, price_cents=5)
        make_code(store_a, "HALF", "50.00")
        cart = [cart_line(variant), cart_line(variant), cart_line(variant)]

        preview = preview_discount_code(store_a.id, cart, "HALF", CHANNEL_ONLINE, NOW)

        assert preview["applicable_variant_ids"] == [variant.id]
        assert preview["discount_amount_cents"] == 8

        order = settle_order(
            store_a.id,
            SettlementRequest(lines=cart, payments=[PaymentInstrument("CARD")], discount_code="HALF"),
            clock=clock,
        ).order
        assert order.discount_total_cents == preview["discount_amount_cents"]
