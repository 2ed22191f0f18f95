# Overview: Flask CLI command groups for bootstrap and ledger inspection.

# backend/bizledger/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to "bizledger:create_app".
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init-db
#   Create all tables (idempotent).
#
# Company management (MULTI-TENANT):
# - python -m flask companies list
#   List all companies.
# - python -m flask companies create --name "Farmacia Central" --code "FC" --business-type pharmacy
#   Create a new company (tenant).
#
# Stock inspection:
# - python -m flask stock verify --company-id 1 [--product-id 7]
#   Replay the movement log and compare with stored balances.
#
# Cash sessions:
# - python -m flask sessions current --company-id 1
#   Show the open session with live expected cash.
# - python -m flask sessions history --company-id 1 [--start 2026-01-01T00:00] [--end ...]
#   List closed sessions.

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import Company, Product
from .services.cash_session_service import get_session_summary, get_session_history
from .services.errors import LedgerError
from .services.stock_service import verify_product_balance
from .services.tenant_service import TenantContext
from .time_utils import parse_iso_datetime, to_utc_z

CLI_PERFORMER = "cli"


def _cents(value) -> str:
    if value is None:
        return "-"
    return f"{value / 100:.2f}"


@click.group('system')
def system_group():
    """System bootstrap commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all database tables."""
    db.create_all()
    click.echo("PASS Database tables created")


# =============================================================================
# COMPANY MANAGEMENT COMMANDS
# =============================================================================

@click.group('companies')
def companies_group():
    """Company (tenant) management commands."""


@companies_group.command('list')
@with_appcontext
def list_companies():
    """List all companies."""
    companies = db.session.query(Company).order_by(Company.id).all()

    if not companies:
        click.echo("No companies found.")
        return

    click.echo("\n" + "="*80)
    click.echo(f"{'ID':<5} {'Name':<30} {'Code':<15} {'Type':<14} {'Active':<8} {'Products'}")
    click.echo("="*80)

    for company in companies:
        product_count = db.session.query(Product).filter_by(company_id=company.id).count()
        active_str = "Yes" if company.is_active else "No"

        click.echo(
            f"{company.id:<5} {company.name:<30} {company.code or '-':<15} "
            f"{company.business_type:<14} {active_str:<8} {product_count}"
        )

    click.echo("="*80 + "\n")


@companies_group.command('create')
@click.option('--name', required=True, help='Company name')
@click.option('--code', required=True, help='Short code (unique)')
@click.option('--business-type', default='retail', help='retail, pharmacy, hospitality, bottle_store')
@with_appcontext
def create_company_cli(name, code, business_type):
    """Create a new company (tenant)."""
    existing = db.session.query(Company).filter_by(code=code).first()
    if existing:
        click.echo(f"FAIL Company with code '{code}' already exists")
        return

    company = Company(name=name, code=code, business_type=business_type, is_active=True)
    db.session.add(company)
    db.session.commit()

    click.echo(f"PASS Created company: {company.name} (ID: {company.id}, Code: {company.code})")


# =============================================================================
# STOCK COMMANDS
# =============================================================================

@click.group('stock')
def stock_group():
    """Stock ledger inspection commands."""


@stock_group.command('verify')
@click.option('--company-id', type=int, required=True, help='Company ID')
@click.option('--product-id', type=int, help='Verify a single product')
@with_appcontext
def verify_stock(company_id, product_id):
    """
    Replay movement logs and compare with stored product balances.

    Exits with status 1 if any product is inconsistent.
    """
    ctx = TenantContext(company_id=company_id, performed_by=CLI_PERFORMER)

    if product_id is not None:
        product_ids = [product_id]
    else:
        product_ids = [
            pid for (pid,) in db.session.query(Product.id).filter_by(company_id=company_id).order_by(Product.id)
        ]

    if not product_ids:
        click.echo("No products found.")
        return

    failures = 0
    for pid in product_ids:
        try:
            report = verify_product_balance(ctx, pid)
        except LedgerError as exc:
            click.echo(f"FAIL Product {pid}: {exc.message}")
            failures += 1
            continue

        if report["consistent"]:
            click.echo(
                f"PASS Product {pid}: balance {report['actual']} "
                f"({report['movement_count']} movements)"
            )
        else:
            failures += 1
            click.echo(
                f"FAIL Product {pid}: stored {report['actual']}, replayed {report['expected']}, "
                f"first break at movement {report['first_break_movement_id'] or '-'}"
            )

    if failures:
        raise click.exceptions.Exit(1)


# =============================================================================
# CASH SESSION COMMANDS
# =============================================================================

@click.group('sessions')
def sessions_group():
    """Cash session inspection commands."""


@sessions_group.command('current')
@click.option('--company-id', type=int, required=True, help='Company ID')
@with_appcontext
def current_session(company_id):
    """Show the open cash session with live reconciliation figures."""
    ctx = TenantContext(company_id=company_id, performed_by=CLI_PERFORMER)
    try:
        summary = get_session_summary(ctx)
    except LedgerError as exc:
        click.echo(f"INFO {exc.message}")
        return

    session = summary["session"]
    click.echo(f"Session {session['id']} opened by {session['opened_by']} at {session['opened_at']}")
    click.echo(f"  Opening:      {_cents(session['opening_balance_cents'])}")
    click.echo(f"  Cash sales:   {_cents(summary['cash_sales_cents'])}")
    click.echo(f"  Mpesa sales:  {_cents(summary['mpesa_sales_cents'])}")
    click.echo(f"  Emola sales:  {_cents(summary['emola_sales_cents'])}")
    click.echo(f"  Mobile sales: {_cents(summary['mobile_sales_cents'])}")
    click.echo(f"  Card sales:   {_cents(summary['card_sales_cents'])}")
    click.echo(f"  Credit sales: {_cents(summary['credit_sales_cents'])}")
    click.echo(f"  Deposits:     {_cents(session['deposits_cents'])}")
    click.echo(f"  Withdrawals:  {_cents(session['withdrawals_cents'])}")
    click.echo(f"  Expected:     {_cents(summary['expected_balance_cents'])}")


@sessions_group.command('history')
@click.option('--company-id', type=int, required=True, help='Company ID')
@click.option('--start', help='Closed at or after (ISO-8601, UTC)')
@click.option('--end', help='Closed at or before (ISO-8601, UTC)')
@click.option('--limit', type=int, default=20, help='Max sessions to show')
@with_appcontext
def session_history(company_id, start, end, limit):
    """List closed cash sessions, most recent first."""
    ctx = TenantContext(company_id=company_id, performed_by=CLI_PERFORMER)
    try:
        sessions = get_session_history(
            ctx,
            parse_iso_datetime(start),
            parse_iso_datetime(end),
            limit=limit,
        )
    except ValueError as exc:
        raise click.BadParameter(str(exc)) from exc

    if not sessions:
        click.echo("No closed sessions found.")
        return

    for session in sessions:
        click.echo(
            f"{session.id:<5} closed {to_utc_z(session.closed_at)} by {session.closed_by:<15} "
            f"expected {_cents(session.expected_balance_cents):>10} "
            f"counted {_cents(session.closing_balance_cents):>10} "
            f"diff {_cents(session.difference_cents):>8}"
        )


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(companies_group)
    app.cli.add_command(stock_group)
    app.cli.add_command(sessions_group)
