# Overview: Flask CLI command groups for bootstrap, inspection, and integrity maintenance.

# backend/tradeledger/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init-db
#   Create all tables (dev; production uses flask db upgrade).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Ledger inspection/repair:
# - python -m flask ledger verify
#   Check stock reconstruction and posting balance; exits 1 on findings.
# - python -m flask ledger rebuild-caches
#   Regenerate cached customer receivables and committed quantities.
# - python -m flask ledger balance --party-type VENDOR --party-id 1 [--as-of 2026-01-31]
#   Print a party's ledger balance.
# - python -m flask ledger outstanding --party-type CUSTOMER
#   List parties with a positive balance.
# - python -m flask ledger document --reference-type SALE --reference-id 1
#   Print the ledger rows posted for one document.

import sys

import click
from flask import current_app
from flask.cli import with_appcontext

from .errors import NotFound
from .extensions import db
from .money import format_cents
from .references import REFERENCE_MODELS, DocumentRef, resolve_reference
from .services import balance_service, integrity_service, ledger_service
from .time_utils import parse_iso_datetime


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    db.create_all()
    click.echo("PASS Tables created.")


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


@click.group('ledger')
def ledger_group():
    """Ledger and stock integrity commands."""


@ledger_group.command('verify')
@with_appcontext
def verify():
    """Verify stock reconstruction and ledger balance invariants."""
    stock_findings = integrity_service.verify_stock()
    ledger_findings = integrity_service.verify_ledger()
    current_app.logger.info(
        "Integrity check: %s stock finding(s), %s ledger finding(s)",
        len(stock_findings), len(ledger_findings),
    )

    for row in stock_findings:
        click.echo(
            f"FAIL stock product={row['product_id']} sku={row['sku']} "
            f"on_hand={row['on_hand_quantity']} expected={row['expected_quantity']}"
        )
    for row in ledger_findings:
        if row.get("missing_document"):
            click.echo(f"FAIL ledger reference={row['reference_type']}:{row['reference_id']} document missing")
            continue
        target = (
            f"posting={row['posting_id']}" if "posting_id" in row
            else f"reference={row['reference_type']}:{row['reference_id']}"
        )
        click.echo(
            f"FAIL ledger {target} debit={format_cents(row['debit_cents'])} "
            f"credit={format_cents(row['credit_cents'])}"
        )

    if stock_findings or ledger_findings:
        sys.exit(1)
    click.echo("PASS Stock and ledger are consistent.")


@ledger_group.command('rebuild-caches')
@with_appcontext
def rebuild_caches():
    """Regenerate cached receivables and committed quantities."""
    corrections = integrity_service.rebuild_cached_balances()
    current_app.logger.info(
        "Cache rebuild: %s customer(s), %s product(s) corrected",
        len(corrections["customers"]), len(corrections["products"]),
    )
    for row in corrections["customers"]:
        click.echo(
            f"FIX customer={row['customer_id']} "
            f"{format_cents(row['cached_cents'])} -> {format_cents(row['ledger_cents'])}"
        )
    for row in corrections["products"]:
        click.echo(
            f"FIX product={row['product_id']} committed "
            f"{row['cached_committed']} -> {row['open_order_committed']}"
        )
    click.echo("PASS Caches rebuilt.")


@ledger_group.command('balance')
@click.option('--party-type', type=click.Choice(['VENDOR', 'CUSTOMER']), required=True)
@click.option('--party-id', type=int, required=True)
@click.option('--as-of', default=None, help='ISO-8601 timestamp (inclusive)')
@with_appcontext
def balance(party_type, party_id, as_of):
    """Print a party's ledger balance."""
    amount = balance_service.get_balance(party_type, party_id, as_of=parse_iso_datetime(as_of))
    click.echo(f"{party_type} {party_id}: {format_cents(amount)}")


@ledger_group.command('outstanding')
@click.option('--party-type', type=click.Choice(['VENDOR', 'CUSTOMER']), required=True)
@with_appcontext
def outstanding(party_type):
    """List parties with a positive balance."""
    rows = balance_service.list_outstanding(party_type)
    if not rows:
        click.echo("No outstanding balances.")
        return
    for row in rows:
        utilization = row["credit_utilization_pct"]
        suffix = f" ({utilization}% of limit)" if utilization is not None else ""
        click.echo(f"{row['party_id']:>5}  {row['name']:<30} {format_cents(row['balance_cents']):>12}{suffix}")


@ledger_group.command('document')
@click.option('--reference-type', type=click.Choice(sorted(REFERENCE_MODELS)), required=True)
@click.option('--reference-id', type=int, required=True)
@with_appcontext
def document(reference_type, reference_id):
    """Print the ledger rows posted for one document."""
    ref = DocumentRef(reference_type, reference_id)
    try:
        doc = resolve_reference(ref)
    except NotFound:
        click.echo(f"FAIL {reference_type} {reference_id} not found")
        return

    entries = ledger_service.entries_for_reference(ref)
    click.echo(f"{reference_type} {doc.document_number}: {len(entries)} ledger row(s)")
    for entry in entries:
        party = f" {entry.party_type}:{entry.party_id}" if entry.party_type else ""
        click.echo(
            f"  {entry.account_type:<16} DR {format_cents(entry.debit_cents):>10} "
            f"CR {format_cents(entry.credit_cents):>10}{party}"
        )


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(ledger_group)
