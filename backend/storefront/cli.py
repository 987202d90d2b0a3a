# Overview: Flask CLI command groups for bootstrap and inspection.

# backend/storefront/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to storefront (PowerShell: $env:FLASK_APP="storefront").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
# - python -m flask system seed-demo
#   Idempotent: creates a demo store with a small catalog, a customer and a code.
#
# Order inspection:
# - python -m flask orders list --store-id 1 [--limit 20]
#   List recent orders of a store.
# - python -m flask orders show ORD-001-00001
#   Show one order with its lines and payments.
#
# Discount code inspection:
# - python -m flask codes list --store-id 1
#   List discount codes with usage.

import click
from datetime import timedelta
from decimal import Decimal
from flask.cli import with_appcontext

from .extensions import db
from .models import Store, Category, Product, ProductVariant, Customer, DiscountCode, Discount
from .services.money import format_cents
from .services.settlement_service import get_order_by_number, list_orders
from .time_utils import utcnow, to_utc_z


DEMO_STORE_CODE = "DEMO"


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete. Run 'python -m flask system seed-demo' to add demo data.")


@system_group.command('seed-demo')
@with_appcontext
def seed_demo():
    """Create a demo store with catalog, customer and discount code (idempotent)."""
    store = db.session.query(Store).filter_by(code=DEMO_STORE_CODE).first()
    if store:
        click.echo(f"SKIP Demo store already exists (id={store.id})")
        return

    now = utcnow()

    store = Store(name="Demo Store", code=DEMO_STORE_CODE, currency="USD")
    db.session.add(store)
    db.session.flush()

    apparel = Category(store_id=store.id, name="Apparel")
    db.session.add(apparel)

    shirt = Product(store_id=store.id, name="T-Shirt", sku="TSHIRT", description="Cotton t-shirt")
    shirt.categories.append(apparel)
    mug = Product(store_id=store.id, name="Mug", sku="MUG")
    db.session.add_all([shirt, mug])
    db.session.flush()

    db.session.add_all([
        ProductVariant(product_id=shirt.id, name="Small", sku="TSHIRT-S", price_cents=10000,
                       tax_rate=Decimal("19.00"), inventory=25, options={"size": "S"}),
        ProductVariant(product_id=shirt.id, name="Large", sku="TSHIRT-L", price_cents=10000,
                       tax_rate=Decimal("19.00"), inventory=25, options={"size": "L"}),
        ProductVariant(product_id=mug.id, name="White", sku="MUG-W", price_cents=1500,
                       tax_rate=Decimal("7.00"), inventory=100, options={"color": "white"}),
    ])

    mug_sale = Discount(store_id=store.id, title="Mug week", percentage=Decimal("15.00"),
                        starts_at=now - timedelta(days=1), ends_at=now + timedelta(days=7))
    mug_sale.products.append(mug)
    db.session.add(mug_sale)

    db.session.add(DiscountCode(store_id=store.id, code="WELCOME10", title="Welcome",
                                percentage=Decimal("10.00"), starts_at=now - timedelta(days=1),
                                usage_limit=100))
    db.session.add(Customer(store_id=store.id, name="Demo Customer", email="customer@example.com"))

    db.session.commit()
    click.echo(f"PASS Demo store created (id={store.id}, code WELCOME10)")


@click.group('orders')
def orders_group():
    """Order inspection commands."""


@orders_group.command('list')
@click.option('--store-id', type=int, required=True, help='Store ID')
@click.option('--limit', type=int, default=20, show_default=True, help='Max orders to show')
@with_appcontext
def list_orders_cli(store_id, limit):
    """List recent orders of a store."""
    orders = list_orders(store_id, limit=limit)

    if not orders:
        click.echo("No orders found.")
        return

    click.echo("\n" + "="*100)
    click.echo(f"{'ID':<6} {'Number':<20} {'Source':<10} {'Status':<10} {'Payment':<10} {'Total':>12} {'Created'}")
    click.echo("="*100)

    for order in orders:
        total = f"{format_cents(order.total_cents)} {order.currency}"
        click.echo(
            f"{order.id:<6} {order.order_number:<20} {order.source:<10} {order.status:<10} "
            f"{order.payment_status:<10} {total:>12} {to_utc_z(order.created_at)}"
        )

    click.echo("="*100 + "\n")


@orders_group.command('show')
@click.argument('order_number')
@with_appcontext
def show_order_cli(order_number):
    """Show one order with its lines and payments."""
    order = get_order_by_number(order_number)
    if not order:
        click.echo(f"FAIL Order '{order_number}' not found")
        return

    click.echo(f"\nOrder {order.order_number} (store {order.store_id}, {order.source})")
    click.echo(f"Status: {order.status}   Payment: {order.payment_status}")
    if order.discount_code_value:
        click.echo(f"Code: {order.discount_code_value}")
    click.echo("-"*80)
    for line in order.lines:
        click.echo(
            f"{line.position:>3}. {line.product_name:<40} x{line.quantity:<4} "
            f"{format_cents(line.line_total_cents):>10}  ({line.discount_percent}% off)"
        )
    click.echo("-"*80)
    click.echo(f"Subtotal excl. tax: {format_cents(order.subtotal_excl_tax_cents):>12}")
    click.echo(f"Tax:                {format_cents(order.tax_cents):>12}")
    click.echo(f"Discounts:          {format_cents(order.discount_total_cents):>12}")
    click.echo(f"Total:              {format_cents(order.total_cents):>12} {order.currency}")
    for payment in order.payments:
        extra = ""
        if payment.cash_change_cents:
            extra = f" change {format_cents(payment.cash_change_cents)}"
        if payment.check_status:
            extra = f" check {payment.check_number or '-'} {payment.check_status}"
        click.echo(f"  {payment.method:<9} {format_cents(payment.amount_cents):>10} {payment.status}{extra}")
    click.echo("")


@click.group('codes')
def codes_group():
    """Discount code inspection commands."""


@codes_group.command('list')
@click.option('--store-id', type=int, required=True, help='Store ID')
@with_appcontext
def list_codes_cli(store_id):
    """List discount codes with usage."""
    codes = db.session.query(DiscountCode).filter_by(store_id=store_id).order_by(DiscountCode.code).all()

    if not codes:
        click.echo("No discount codes found.")
        return

    click.echo("\n" + "="*80)
    click.echo(f"{'ID':<5} {'Code':<20} {'Percent':>8} {'Active':<8} {'Used':>6} {'Limit':>6} {'Ends'}")
    click.echo("="*80)

    for code in codes:
        active_str = "Yes" if code.is_active else "No"
        limit = code.usage_limit if code.usage_limit is not None else "-"
        ends = to_utc_z(code.ends_at) if code.ends_at else "-"
        click.echo(f"{code.id:<5} {code.code:<20} {str(code.percentage):>8} {active_str:<8} {code.used_count:>6} {limit:>6} {ends}")

    click.echo("="*80 + "\n")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(orders_group)
    app.cli.add_command(codes_group)
