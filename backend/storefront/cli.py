# Overview: Flask CLI command groups for schema reset, inventory inspection and maintenance.

# backend/storefront/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System repair:
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Inventory inspection:
# - python -m flask inventory low-stock [--limit 50]
#   List inventory rows at or below their low-stock threshold.
# - python -m flask inventory restock --product-id 1 [--variant-id 2] --quantity 10 [--note "PO 991"]
#   Receive stock (creates the inventory row on first restock).
#
# Maintenance (schedule every 5 minutes):
# - python -m flask maintenance release-reservations
#   Release cart reservations whose hold has expired. Safe to re-run.

import click
from flask.cli import with_appcontext

from .extensions import db
from .errors import StorefrontError
from .services import inventory_service
from .services import maintenance_service
from .services.concurrency import run_with_retry, retry_attempts, serializable_transaction


@click.group('system')
def system_group():
    """System repair commands."""


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

    click.echo("PASS Database reset complete.")


@click.group('inventory')
def inventory_group():
    """Inventory inspection commands."""


@inventory_group.command('low-stock')
@click.option('--limit', type=int, default=50, show_default=True)
@with_appcontext
def low_stock(limit):
    """List inventory rows at or below their threshold."""
    rows = inventory_service.list_low_stock(limit=limit)
    if not rows:
        click.echo("No low-stock items.")
        return
    for row in rows:
        variant = f" variant={row.variant_id}" if row.variant_id else ""
        click.echo(
            f"product={row.product_id}{variant} stock={row.stock_quantity} "
            f"reserved={row.reserved_quantity} threshold={row.threshold}"
        )


@inventory_group.command('restock')
@click.option('--product-id', type=int, required=True)
@click.option('--variant-id', type=int, default=None)
@click.option('--quantity', type=int, required=True)
@click.option('--note', default=None)
@with_appcontext
def restock(product_id, variant_id, quantity, note):
    """Receive stock for a product or variant."""
    def _op():
        with serializable_transaction() as tx:
            row = inventory_service.restock(
                tx, product_id=product_id, variant_id=variant_id, quantity=quantity, note=note,
            )
        return row

    try:
        row = run_with_retry(_op, attempts=retry_attempts())
    except StorefrontError as e:
        raise click.ClickException(e.message)
    click.echo(f"PASS product={row.product_id} stock={row.stock_quantity} reserved={row.reserved_quantity}")


@click.group('maintenance')
def maintenance_group():
    """Maintenance commands."""


@maintenance_group.command('release-reservations')
@with_appcontext
def release_reservations_cli():
    """
    Release expired cart reservations.

    Intended cadence: every 5 minutes (cron / scheduler). Idempotent.
    """
    released = run_with_retry(
        maintenance_service.release_expired_reservations,
        attempts=retry_attempts(),
    )
    click.echo(f"Released {released} expired cart reservations.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(inventory_group)
    app.cli.add_command(maintenance_group)
