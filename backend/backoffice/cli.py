# Overview: Flask CLI command groups for bootstrap, inspection, and maintenance.

# backend/backoffice/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init-db
#   Create all tables that do not exist yet (idempotent).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Batches:
# - python -m flask batches apply-fresh-promotions
#   Discount fresh batches close to expiry, clear promotions of expired ones.
#   Meant for a daily scheduler (cron).
# - python -m flask batches fefo 12 [--quantity 15]
#   Show a product's active batches in FEFO order, or the allocation plan.
#
# Locations:
# - python -m flask locations list [--all]
#   List locations with occupancy.
# - python -m flask locations create --name "A-01" --max-capacity 200

import click
from flask.cli import with_appcontext

from .extensions import db
from .errors import CoreError, ValidationError
from .services import batch_catalog, location_registry, stock_ledger
from .services.fefo_allocator import plan_allocation


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create missing tables."""
    db.create_all()
    click.echo("PASS Database tables created.")


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


@click.group('batches')
def batches_group():
    """Batch lifecycle and FEFO inspection commands."""


@batches_group.command('apply-fresh-promotions')
@with_appcontext
def apply_fresh_promotions_cli():
    """Apply the configured fresh-product promotion."""
    summary = batch_catalog.apply_fresh_promotions()
    click.echo(
        f"PASS {summary['discount_percentage']}% promotion: "
        f"applied={summary['applied']} removed={summary['removed']} skipped={summary['skipped']}"
    )
    for code in summary["applied_batches"]:
        click.echo(f"  + {code}")
    for code in summary["removed_batches"]:
        click.echo(f"  - {code}")


@batches_group.command('fefo')
@click.argument('product_id', type=int)
@click.option('--quantity', type=int, default=None, help='Plan an allocation for this many units')
@with_appcontext
def fefo_cli(product_id, quantity):
    """Show active batches in FEFO order, or an allocation plan."""
    if quantity is None:
        for batch in batch_catalog.list_active_batches_for_product(product_id):
            available = stock_ledger.quantity_available(batch.id)
            expiry = batch.expiry_date.date().isoformat() if batch.expiry_date else "-"
            click.echo(f"{batch.id:>6}  {batch.batch_code:<20} expires {expiry:<10}  available {available}")
        return

    try:
        plan = plan_allocation(product_id, quantity)
    except (CoreError, ValidationError) as exc:
        raise click.ClickException(str(exc))
    for alloc in plan:
        click.echo(
            f"batch {alloc.batch_id} @ location {alloc.location_id}: "
            f"{alloc.quantity} x {alloc.unit_price_cents}"
        )


@click.group('locations')
def locations_group():
    """Storage location commands."""


@locations_group.command('list')
@click.option('--all', 'include_inactive', is_flag=True, help='Include inactive locations')
@with_appcontext
def list_locations_cli(include_inactive):
    locations = location_registry.list_locations(include_inactive=include_inactive)
    if not locations:
        click.echo("No locations.")
        return
    for loc in locations:
        summary = location_registry.capacity_summary(loc.id)
        state = "active" if loc.is_active else "inactive"
        click.echo(
            f"{loc.code}  {loc.name:<20} {summary['occupied']:>6}/{loc.max_capacity:<6} {state}"
        )


@locations_group.command('create')
@click.option('--name', required=True)
@click.option('--max-capacity', type=int, default=100, show_default=True)
@with_appcontext
def create_location_cli(name, max_capacity):
    try:
        location = location_registry.create_location(name, max_capacity)
    except (CoreError, ValidationError) as exc:
        raise click.ClickException(str(exc))
    click.echo(f"PASS Created {location.code} {location.name} (capacity {location.max_capacity})")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(batches_group)
    app.cli.add_command(locations_group)
