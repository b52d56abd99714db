# Overview: Flask CLI command groups for bootstrap, inspection, and stock recovery.

# backend/backoffice/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init [--site "Main Bar"]
#   Idempotent bootstrap: creates a default site and admin/manager/cashier users.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Sites:
# - python -m flask sites list
# - python -m flask sites create --name "Terrace" --address "2 Quay St"
#
# Users:
# - python -m flask users list
# - python -m flask users create --username ana --password "Password123" --role cashier --site-id 1
#   Create a user (prompts if options are omitted).
#
# Products:
# - python -m flask products create --site-id 1 --name "Lager 33cl" --category alcoholic --purchase 150 --selling 400 --stock 24
# - python -m flask products update 3 --selling 450 --alert-threshold 6 [--inactive]
#   Edit prices, threshold or active flag (stock is never edited here).
# - python -m flask products low-stock [--site-id 1]
#
# Stock recovery:
# - python -m flask sales unreconciled [--site-id 1]
#   List sales recorded without their stock decrement, and headers without items.
# - python -m flask sales reconcile 42
#   Apply the stock decrement of sale 42 (safe to repeat).
# - python -m flask sales restore-stock 17
#   Retry the stock restore of cancelled sale item 17.

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import Site, User
from .models.auth import ROLES, ROLE_ADMIN, ROLE_MANAGER, ROLE_CASHIER
from .models.inventory import PRODUCT_CATEGORIES
from .services import cancellation_service, inventory_service, reconcile_service, sales_service
from .services.auth_service import create_user, PasswordValidationError
from .services.cancellation_service import CancellationError
from .services.reconcile_service import StockReconcileError
from .validation import ValidationError


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@click.option('--site', 'site_name', default='Main Site', help='Default site name')
@with_appcontext
def init_system(site_name):
    """
    Create the default site and one user per role.

    All passwords default to "Password123". Change them in production.
    """
    click.echo("START Initializing back office...")

    site = db.session.query(Site).order_by(Site.id.asc()).first()
    if not site:
        site = Site(name=site_name)
        db.session.add(site)
        db.session.commit()
        click.echo(f"PASS Created default site: {site.name} (ID: {site.id})")
    else:
        click.echo(f"PASS Using existing site: {site.name} (ID: {site.id})")

    default_password = "Password123"
    default_users = [
        ("admin", ROLE_ADMIN, None),
        ("manager", ROLE_MANAGER, site.id),
        ("cashier", ROLE_CASHIER, site.id),
    ]

    for username, role, site_id in default_users:
        if db.session.query(User).filter_by(username=username).first():
            click.echo(f"WARN  User '{username}' already exists, skipping...")
            continue
        try:
            create_user(username, default_password, role, site_id=site_id)
            click.echo(f"PASS Created user: {username} with role '{role}'")
        except (PasswordValidationError, ValueError) as e:
            click.echo(f"FAIL Failed to create user '{username}': {e}")

    click.echo("\nDONE Back office initialized.")
    click.echo(f"Site: {site.name} (ID: {site.id})")
    click.echo("Default credentials (CHANGE IN PRODUCTION!): admin / manager / cashier with Password123")


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

    click.echo("PASS Database reset complete. Run 'python -m flask system init' to initialize.")


# =============================================================================
# SITE COMMANDS
# =============================================================================

@click.group('sites')
def sites_group():
    """Site management commands."""


@sites_group.command('list')
@with_appcontext
def list_sites():
    sites = db.session.query(Site).order_by(Site.id.asc()).all()
    if not sites:
        click.echo("No sites found.")
        return

    click.echo(f"{'ID':<5} {'Name':<30} {'Active':<8} {'Users'}")
    for site in sites:
        user_count = db.session.query(User).filter_by(site_id=site.id).count()
        click.echo(f"{site.id:<5} {site.name:<30} {'Yes' if site.is_active else 'No':<8} {user_count}")


@sites_group.command('create')
@click.option('--name', required=True, help='Site name (unique)')
@click.option('--address', help='Street address')
@with_appcontext
def create_site(name, address):
    if db.session.query(Site).filter_by(name=name).first():
        click.echo(f"FAIL Site '{name}' already exists")
        return

    site = Site(name=name, address=address)
    db.session.add(site)
    db.session.commit()
    click.echo(f"PASS Created site: {site.name} (ID: {site.id})")


# =============================================================================
# USER COMMANDS
# =============================================================================

@click.group('users')
def users_group():
    """User inspection and bootstrap commands."""


@users_group.command('list')
@with_appcontext
def list_users():
    users = db.session.query(User).order_by(User.id.asc()).all()
    click.echo(f"{'ID':<5} {'Username':<20} {'Role':<10} {'Site':<6} {'Active'}")
    for user in users:
        click.echo(
            f"{user.id:<5} {user.username:<20} {user.role:<10} "
            f"{user.site_id if user.site_id is not None else '-':<6} {'Yes' if user.is_active else 'No'}"
        )


@users_group.command('create')
@click.option('--username', prompt=True, help='Username')
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True, help='Password')
@click.option('--role', type=click.Choice(list(ROLES)), prompt=True, help='Role')
@click.option('--site-id', type=int, help='Assigned site (required for manager and cashier)')
@click.option('--full-name', help='Display name')
@with_appcontext
def create_user_cli(username, password, role, site_id, full_name):
    """
    Create a new user.

    Password must be at least 8 characters with a letter and a digit.
    """
    try:
        user = create_user(username, password, role, site_id=site_id, full_name=full_name)
    except PasswordValidationError as e:
        click.echo(f"FAIL Password validation failed: {e}")
        return
    except ValueError as e:
        click.echo(f"FAIL {e}")
        return

    click.echo(f"PASS Created user: {user.username} (ID: {user.id}) with role '{user.role}'")


# =============================================================================
# PRODUCT COMMANDS
# =============================================================================

@click.group('products')
def products_group():
    """Catalog commands."""


@products_group.command('create')
@click.option('--site-id', type=int, required=True)
@click.option('--name', required=True)
@click.option('--category', type=click.Choice(list(PRODUCT_CATEGORIES)), required=True)
@click.option('--purchase', 'purchase_price_cents', type=int, required=True, help='Purchase price in cents')
@click.option('--selling', 'selling_price_cents', type=int, required=True, help='Selling price in cents')
@click.option('--stock', type=int, default=0)
@click.option('--alert-threshold', type=int, default=None)
@with_appcontext
def create_product_cli(site_id, name, category, purchase_price_cents, selling_price_cents, stock, alert_threshold):
    if db.session.get(Site, site_id) is None:
        click.echo(f"FAIL Site ID {site_id} not found")
        return
    try:
        product = inventory_service.create_product(
            site_id=site_id,
            name=name,
            category=category,
            purchase_price_cents=purchase_price_cents,
            selling_price_cents=selling_price_cents,
            stock=stock,
            alert_threshold=alert_threshold,
        )
    except ValidationError as e:
        click.echo(f"FAIL {e}")
        return
    click.echo(f"PASS Created product: {product.name} (ID: {product.id}, stock {product.stock})")


@products_group.command('update')
@click.argument('product_id', type=int)
@click.option('--name', default=None)
@click.option('--category', type=click.Choice(list(PRODUCT_CATEGORIES)), default=None)
@click.option('--purchase', 'purchase_price_cents', type=int, default=None, help='Purchase price in cents')
@click.option('--selling', 'selling_price_cents', type=int, default=None, help='Selling price in cents')
@click.option('--alert-threshold', type=int, default=None)
@click.option('--active/--inactive', 'is_active', default=None, help='Reactivate or deactivate the product')
@with_appcontext
def update_product_cli(product_id, name, category, purchase_price_cents, selling_price_cents, alert_threshold, is_active):
    """Edit a product's catalog fields. Stock is changed by sales and restocks only."""
    patch = {
        key: value
        for key, value in (
            ("name", name),
            ("category", category),
            ("purchase_price_cents", purchase_price_cents),
            ("selling_price_cents", selling_price_cents),
            ("alert_threshold", alert_threshold),
            ("is_active", is_active),
        )
        if value is not None
    }
    if not patch:
        click.echo("Nothing to update.")
        return
    try:
        product = inventory_service.update_product(product_id, patch)
    except (ValidationError, inventory_service.InventoryError) as e:
        click.echo(f"FAIL {e}")
        return
    state = "active" if product.is_active else "inactive"
    click.echo(
        f"PASS Updated product: {product.name} (ID: {product.id}, selling {product.selling_price_cents}, "
        f"threshold {product.alert_threshold}, {state})"
    )


@products_group.command('low-stock')
@click.option('--site-id', type=int, help='Limit to one site')
@with_appcontext
def low_stock_cli(site_id):
    products = inventory_service.list_low_stock([site_id] if site_id else None)
    if not products:
        click.echo("No products at or below their alert threshold.")
        return
    for p in products:
        click.echo(f"WARN  Low stock for {p.name} ({p.stock} left) [site {p.site_id}, threshold {p.alert_threshold}]")


# =============================================================================
# STOCK RECOVERY COMMANDS
# =============================================================================

@click.group('sales')
def sales_group():
    """Stock desynchronization inspection and recovery."""


@sales_group.command('unreconciled')
@click.option('--site-id', type=int, help='Limit to one site')
@with_appcontext
def list_unreconciled(site_id):
    site_ids = [site_id] if site_id else None

    unreconciled = reconcile_service.list_unreconciled_sales(site_ids)
    inconsistent = sales_service.list_inconsistent_sales(site_ids)

    if not unreconciled and not inconsistent:
        click.echo("PASS Every recorded sale has its stock applied.")
        return

    for sale in unreconciled:
        click.echo(
            f"WARN  Sale #{sale.id} (site {sale.site_id}, {sale.created_at}) "
            f"state={sale.checkout_state}: stock not applied"
        )
    for sale in inconsistent:
        click.echo(
            f"WARN  Sale #{sale.id} (site {sale.site_id}, {sale.created_at}): header recorded without items"
        )


@sales_group.command('reconcile')
@click.argument('sale_id', type=int)
@with_appcontext
def reconcile_sale(sale_id):
    """Apply the stock decrement of a recorded sale."""
    try:
        sales_service.get_sale(sale_id)
        sale = reconcile_service.reconcile_sale_stock(sale_id)
    except sales_service.SaleLedgerError as e:
        click.echo(f"FAIL {e}")
        return
    except StockReconcileError as e:
        click.echo(f"FAIL {e} {e.details}")
        return

    click.echo(f"PASS Sale #{sale.id} reconciled at {sale.stock_reconciled_at}")


@sales_group.command('restore-stock')
@click.argument('sale_item_id', type=int)
@with_appcontext
def restore_stock(sale_item_id):
    """Retry the stock restore of a cancelled sale item."""
    try:
        result = cancellation_service.retry_stock_restore(sale_item_id)
    except sales_service.SaleLedgerError as e:
        click.echo(f"FAIL {e}")
        return
    except CancellationError as e:
        click.echo(f"FAIL {e} {e.details}")
        return

    if result.stock_restored:
        click.echo(f"PASS Sale item #{result.sale_item_id}: {result.quantity} unit(s) back in stock")
    else:
        click.echo(f"WARN  Sale item #{result.sale_item_id}: stock was never taken out, nothing to restore")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(sites_group)
    app.cli.add_command(users_group)
    app.cli.add_command(products_group)
    app.cli.add_command(sales_group)
