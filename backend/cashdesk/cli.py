# Overview: Flask CLI command groups for bootstrap, inspection, and maintenance.

# backend/cashdesk/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init-db
#   Create all tables that do not exist yet.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Tenant / facility setup:
# - python -m flask tenants create --code SALON1 --name "Salon One"
# - python -m flask tenants list
# - python -m flask tenants set-setting 1 variance.acceptable_max_cents 5000
# - python -m flask facilities create --tenant-id 1 --name "Downtown"
# - python -m flask facilities list --tenant-id 1
# - python -m flask employees create --tenant-id 1 --first-name Ana --last-name Kovac
#
# Cash sessions:
# - python -m flask sessions list --tenant-id 1 [--status OPEN] [--limit 20]
# - python -m flask sessions reconcile 12
#   Print the reconciliation report for a session (read-only).
#
# Fiscalization:
# - python -m flask fiscal retry-failed [--tenant-id 1]
#   Re-run fiscalization for every sale in error/retry.

import json

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import CashSession, Employee, Facility, Tenant
from .services import fiscal_service, reconciliation_service, settings_service
from .validation import CashDeskError


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create missing tables (use migrations for production databases)."""
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


# =============================================================================
# TENANTS / FACILITIES / EMPLOYEES
# =============================================================================

@click.group('tenants')
def tenants_group():
    """Tenant management commands."""


@tenants_group.command('create')
@click.option('--code', required=True, help='Short code (unique)')
@click.option('--name', required=True, help='Tenant name')
@with_appcontext
def create_tenant_cli(code, name):
    """Create a new tenant."""
    existing = db.session.query(Tenant).filter_by(code=code).first()
    if existing:
        click.echo(f"FAIL Tenant with code '{code}' already exists")
        return

    tenant = Tenant(code=code, name=name, is_active=True)
    db.session.add(tenant)
    db.session.commit()
    click.echo(f"PASS Created tenant: {tenant.name} (ID: {tenant.id}, Code: {tenant.code})")


@tenants_group.command('list')
@with_appcontext
def list_tenants_cli():
    """List all tenants."""
    tenants = db.session.query(Tenant).order_by(Tenant.id).all()
    if not tenants:
        click.echo("No tenants found.")
        return

    click.echo("\n" + "="*70)
    click.echo(f"{'ID':<5} {'Code':<15} {'Name':<30} {'Active':<8} {'Facilities'}")
    click.echo("="*70)
    for tenant in tenants:
        facility_count = db.session.query(Facility).filter_by(tenant_id=tenant.id).count()
        active_str = "Yes" if tenant.is_active else "No"
        click.echo(f"{tenant.id:<5} {tenant.code:<15} {tenant.name:<30} {active_str:<8} {facility_count}")
    click.echo("="*70 + "\n")


@tenants_group.command('set-setting')
@click.argument('tenant_id', type=int)
@click.argument('key')
@click.argument('value')
@with_appcontext
def set_setting_cli(tenant_id, key, value):
    """Set a tenant setting (variance thresholds in cents)."""
    try:
        setting = settings_service.set_tenant_setting(tenant_id, key, value)
    except CashDeskError as exc:
        click.echo(f"FAIL {exc}")
        return
    click.echo(f"PASS {setting.key} = {setting.value} for tenant {tenant_id}")


@click.group('facilities')
def facilities_group():
    """Facility management commands."""


@facilities_group.command('create')
@click.option('--tenant-id', type=int, required=True, help='Owning tenant ID')
@click.option('--name', required=True, help='Facility name')
@with_appcontext
def create_facility_cli(tenant_id, name):
    """Create a facility for a tenant."""
    tenant = db.session.get(Tenant, tenant_id)
    if not tenant:
        click.echo(f"FAIL Tenant {tenant_id} not found")
        return
    existing = db.session.query(Facility).filter_by(tenant_id=tenant_id, name=name).first()
    if existing:
        click.echo(f"FAIL Facility '{name}' already exists for tenant {tenant_id}")
        return

    facility = Facility(tenant_id=tenant_id, name=name, is_active=True)
    db.session.add(facility)
    db.session.commit()
    click.echo(f"PASS Created facility: {facility.name} (ID: {facility.id})")


@facilities_group.command('list')
@click.option('--tenant-id', type=int, help='Filter by tenant ID')
@with_appcontext
def list_facilities_cli(tenant_id):
    """List facilities with their open session, if any."""
    query = db.session.query(Facility)
    if tenant_id:
        query = query.filter_by(tenant_id=tenant_id)
    facilities = query.order_by(Facility.id).all()
    if not facilities:
        click.echo("No facilities found.")
        return

    click.echo("\n" + "="*70)
    click.echo(f"{'ID':<5} {'Tenant':<8} {'Name':<30} {'Active':<8} {'Open session'}")
    click.echo("="*70)
    for facility in facilities:
        open_session = db.session.query(CashSession).filter_by(
            facility_id=facility.id, status="OPEN"
        ).first()
        active_str = "Yes" if facility.is_active else "No"
        session_str = str(open_session.id) if open_session else "-"
        click.echo(f"{facility.id:<5} {facility.tenant_id:<8} {facility.name:<30} {active_str:<8} {session_str}")
    click.echo("="*70 + "\n")


@click.group('employees')
def employees_group():
    """Employee (operator/cashier) commands."""


@employees_group.command('create')
@click.option('--tenant-id', type=int, required=True, help='Owning tenant ID')
@click.option('--first-name', required=True)
@click.option('--last-name', required=True)
@with_appcontext
def create_employee_cli(tenant_id, first_name, last_name):
    """Create an employee who can operate cash sessions."""
    if not db.session.get(Tenant, tenant_id):
        click.echo(f"FAIL Tenant {tenant_id} not found")
        return
    employee = Employee(tenant_id=tenant_id, first_name=first_name, last_name=last_name, is_active=True)
    db.session.add(employee)
    db.session.commit()
    click.echo(f"PASS Created employee: {employee.full_name} (ID: {employee.id})")


# =============================================================================
# CASH SESSIONS
# =============================================================================

@click.group('sessions')
def sessions_group():
    """Cash session inspection commands."""


@sessions_group.command('list')
@click.option('--tenant-id', type=int, help='Filter by tenant ID')
@click.option('--facility-id', type=int, help='Filter by facility ID')
@click.option('--status', type=click.Choice(['OPEN', 'CLOSED']), help='Filter by status')
@click.option('--limit', type=int, default=20, help='Max sessions to show')
@with_appcontext
def list_sessions_cli(tenant_id, facility_id, status, limit):
    """
    List cash sessions, newest first.

    Example:
        flask sessions list --tenant-id 1
        flask sessions list --status OPEN
    """
    query = db.session.query(CashSession)
    if tenant_id:
        query = query.filter_by(tenant_id=tenant_id)
    if facility_id:
        query = query.filter_by(facility_id=facility_id)
    if status:
        query = query.filter_by(status=status)

    sessions = query.order_by(CashSession.opened_at.desc()).limit(limit).all()
    if not sessions:
        click.echo("No sessions found.")
        return

    click.echo("\n" + "="*100)
    click.echo(f"{'ID':<5} {'Facility':<20} {'Status':<8} {'Opened':<20} {'Float':<12} {'Variance'}")
    click.echo("="*100)
    for session in sessions:
        facility_name = session.facility.name if session.facility else "Unknown"
        variance_str = "-"
        if session.variance_cents is not None:
            variance_str = f"{session.variance_cents / 100:+.2f}"
        opened = session.opened_at.strftime("%Y-%m-%d %H:%M") if session.opened_at else "-"
        click.echo(
            f"{session.id:<5} {facility_name[:20]:<20} {session.status:<8} {opened:<20} "
            f"{session.opening_float_cents / 100:<12.2f} {variance_str}"
        )
    click.echo("="*100 + "\n")


@sessions_group.command('reconcile')
@click.argument('session_id', type=int)
@with_appcontext
def reconcile_session_cli(session_id):
    """Print the reconciliation report for a session as JSON."""
    try:
        report = reconciliation_service.reconcile(session_id)
    except CashDeskError as exc:
        click.echo(f"FAIL {exc}")
        return
    click.echo(json.dumps(report.to_dict(), indent=2))


# =============================================================================
# FISCALIZATION
# =============================================================================

@click.group('fiscal')
def fiscal_group():
    """Fiscalization maintenance commands."""


@fiscal_group.command('retry-failed')
@click.option('--tenant-id', type=int, help='Limit to one tenant')
@with_appcontext
def retry_failed_cli(tenant_id):
    """Re-run fiscalization for sales left in error/retry."""
    outcomes = fiscal_service.retry_failed_sales(tenant_id=tenant_id)
    if not outcomes:
        click.echo("No sales waiting for fiscalization retry.")
        return
    for sale_id, outcome in outcomes.items():
        prefix = "PASS" if outcome == fiscal_service.FISCAL_SUCCESS else "FAIL"
        click.echo(f"{prefix} Sale {sale_id}: {outcome}")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(tenants_group)
    app.cli.add_command(facilities_group)
    app.cli.add_command(employees_group)
    app.cli.add_command(sessions_group)
    app.cli.add_command(fiscal_group)
