"""
Pytest fixtures for storefront backend tests.

Provides test database setup, two tenant stores, catalog/promotion factories,
a pinned clock and the test client.
"""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from storefront import create_app
from storefront.extensions import db
from storefront.models import (
    Store,
    Category,
    Product,
    ProductVariant,
    Customer,
    Discount,
    DiscountCode,
)
from storefront.time_utils import fixed_clock


NOW = datetime(2026, 3, 1, 12, 0, 0)


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'LOG_LEVEL': 'DEBUG',
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def clock():
    return fixed_clock(NOW)


@pytest.fixture(scope='function')
def store_a(db_session):
    """Create Store A (first tenant)."""
    store = Store(name="Store A", code="A1", currency="EUR")
    db_session.add(store)
    db_session.commit()
    return store


@pytest.fixture(scope='function')
def store_b(db_session):
    """Create Store B (second tenant)."""
    store = Store(name="Store B", code="B1", currency="USD")
    db_session.add(store)
    db_session.commit()
    return store


@pytest.fixture(scope='function')
def make_variant(db_session):
    """
    Factory: one product with one variant (or an extra variant on `product`).

    Defaults match the reference checkout: 100.00 incl. 19 % tax.
    """
    def _make(store, *, price_cents=10000, tax_rate="19.00", inventory=10,
              name="Shirt", variant_name="Default", product=None, options=None,
              categories=(), **product_fields):
        if product is None:
            product = Product(store_id=store.id, name=name, sku=f"SKU-{name.upper()}", **product_fields)
            for category in categories:
                product.categories.append(category)
            db_session.add(product)
            db_session.flush()
        variant = ProductVariant(
            product_id=product.id,
            name=variant_name,
            sku=f"{product.sku}-{variant_name.upper()}",
            price_cents=price_cents,
            tax_rate=Decimal(tax_rate),
            inventory=inventory,
            options=options if options is not None else {"size": "M"},
        )
        db_session.add(variant)
        db_session.commit()
        return variant

    return _make


@pytest.fixture(scope='function')
def make_category(db_session):
    def _make(store, name="Apparel"):
        category = Category(store_id=store.id, name=name)
        db_session.add(category)
        db_session.commit()
        return category

    return _make


@pytest.fixture(scope='function')
def make_code(db_session):
    """Factory: discount code valid around NOW for every channel."""
    def _make(store, code="SAVE10", percentage="10.00", *, variants=(), products=(),
              customers=(), category=None, **fields):
        fields.setdefault("starts_at", NOW - timedelta(days=1))
        discount_code = DiscountCode(
            store_id=store.id,
            code=code,
            percentage=Decimal(percentage),
            category_id=category.id if category is not None else None,
            **fields,
        )
        discount_code.variants.extend(variants)
        discount_code.products.extend(products)
        discount_code.customers.extend(customers)
        db_session.add(discount_code)
        db_session.commit()
        return discount_code

    return _make


@pytest.fixture(scope='function')
def make_discount(db_session):
    """Factory: automatic discount attached to variants and/or products."""
    def _make(store, percentage="20.00", *, variants=(), products=(), **fields):
        fields.setdefault("starts_at", NOW - timedelta(days=1))
        discount = Discount(store_id=store.id, percentage=Decimal(percentage), **fields)
        discount.variants.extend(variants)
        discount.products.extend(products)
        db_session.add(discount)
        db_session.commit()
        return discount

    return _make


@pytest.fixture(scope='function')
def customer_a(db_session, store_a):
    customer = Customer(store_id=store_a.id, name="Ada", email="ada@example.com")
    db_session.add(customer)
    db_session.commit()
    return customer


@pytest.fixture(scope='function')
def headers_a(store_a):
    """Tenant context headers for Store A, keyed by operator 7."""
    return {'X-Store-Id': str(store_a.id), 'X-Operator-Id': '7'}
