# Overview: Flask CLI command groups for bootstrap, fiscal operations, and cash inspection.

# backend/fiscalpos/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
# - python -m flask system seed-payment-methods
#   Create the default tenders (Efectivo, Tarjeta Débito, Tarjeta Crédito, Transferencia).
#
# Fiscal operations:
# - python -m flask fiscal worker
#   Run the validation worker in the foreground until Ctrl+C.
# - python -m flask fiscal tick
#   Run a single worker tick (number, submit, poll) and print its counters.
# - python -m flask fiscal resolutions [--kind invoice]
#   List numbering resolutions with remaining numbers.
# - python -m flask fiscal add-resolution --kind invoice --number 18760000001 --prefix SETP --from 990000000 --to 995000000 --valid-from 2019-01-19 --valid-to 2030-01-19
#   Register a resolution and activate it for its kind.
# - python -m flask fiscal push-resolution 1
#   Send a local resolution to the gateway's resolution configuration.
# - python -m flask fiscal configure-company --nit 900123456 --dv 7 --file company.json
#   Register the issuing company on the gateway (prints the returned token).
# - python -m flask fiscal configure-software --id <software-id> --pin 12345
#   Register the invoicing software on the gateway.
# - python -m flask fiscal configure-certificate --file certificate.p12 --password secret
#   Upload the signing certificate to the gateway.
# - python -m flask fiscal environment production
#   Switch the gateway between the test and production environments.
# - python -m flask fiscal numbering-ranges --software-id <software-id>
#   Show the numbering ranges DIAN authorized for the software.
# - python -m flask fiscal migrate-production --software-id <software-id>
#   Switch to production and register DIAN's authorized invoice range.
# - python -m flask fiscal alerts [--all]
#   List operator alerts.
# - python -m flask fiscal resend invoice 12
#   Requeue an errored or rejected document (keeps its number).
# - python -m flask fiscal resend-email 12
#   Ask the gateway to e-mail an accepted invoice to the customer again.
#
# Cash inspection:
# - python -m flask cash shifts --status open --limit 20
#   List recent register shifts with optional filters.

import base64
import json
import time
from contextlib import contextmanager

import click
from flask import current_app
from flask.cli import with_appcontext

from .extensions import db
from .models.fiscal import DOCUMENT_KINDS
from .services import alert_service, invoice_service, payment_method_service, resolution_service
from .services.gateway_client import FiscalGateway, GatewayError, ConfigurationError
from .services.invoice_state import InvoiceStateError
from .services.invoice_service import InvoiceNotFound
from .services.resolution_service import ResolutionError
from .services.validation_worker import ValidationWorker
from .repositories import cash as cash_repo
from .time_utils import to_utc_z


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA, including issued invoice numbers!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete. Run 'python -m flask system seed-payment-methods' next.")


@system_group.command('seed-payment-methods')
@with_appcontext
def seed_payment_methods():
    """Create the default payment methods that are missing (idempotent)."""
    created = payment_method_service.seed_default_payment_methods()
    click.echo(f"PASS Created {created} payment methods")
    for method in payment_method_service.list_payment_methods():
        drawer = "drawer" if method.affects_cash_drawer else "-"
        click.echo(f"   {method.id:<4} {method.name:<20} {method.method_type:<8} {drawer}")


# =============================================================================
# FISCAL
# =============================================================================

@click.group('fiscal')
def fiscal_group():
    """Electronic invoicing: worker, resolutions, gateway setup, alerts."""


@contextmanager
def _gateway_session():
    """Gateway from app config; setup and call failures become ClickExceptions."""
    gateway = None
    try:
        gateway = FiscalGateway.from_config(current_app.config)
        yield gateway
    except (ConfigurationError, GatewayError, ResolutionError) as e:
        raise click.ClickException(str(e))
    finally:
        if gateway is not None:
            gateway.close()


@fiscal_group.command('worker')
@with_appcontext
def run_worker():
    """Run the validation worker in the foreground."""
    worker = ValidationWorker(current_app._get_current_object())
    click.echo(f"START Validation worker (interval {worker.interval}s, pool {worker.pool_size}). Ctrl+C to stop.")
    worker.start()
    try:
        while worker.running:
            time.sleep(1)
    except KeyboardInterrupt:
        click.echo("\nSTOP Waiting for in-flight gateway calls...")
    finally:
        worker.stop()
    click.echo("DONE Worker stopped")


@fiscal_group.command('tick')
@with_appcontext
def run_tick():
    """Run one worker tick and print its counters."""
    worker = ValidationWorker(current_app._get_current_object())
    try:
        stats = worker.run_once()
    finally:
        worker.stop()
    for key, value in stats.items():
        click.echo(f"   {key:<10} {value}")


@fiscal_group.command('resolutions')
@click.option('--kind', type=click.Choice(list(DOCUMENT_KINDS)), help='Filter by document kind')
@with_appcontext
def list_resolutions_cli(kind):
    """List numbering resolutions."""
    resolutions = resolution_service.list_resolutions(kind=kind)
    if not resolutions:
        click.echo("No resolutions found.")
        return

    click.echo("\n" + "="*110)
    click.echo(f"{'ID':<5} {'Kind':<12} {'Resolution':<14} {'Prefix':<8} {'Range':<24} {'Next':<12} {'Left':<10} {'Valid to':<12} {'Active'}")
    click.echo("="*110)
    for r in resolutions:
        status = resolution_service.resolution_status(r.id)
        next_number = status["next_number"] if status["next_number"] is not None else "-"
        click.echo(
            f"{r.id:<5} {r.kind:<12} {r.resolution_number:<14} {r.prefix:<8} "
            f"{f'{r.range_from}-{r.range_to}':<24} {next_number:<12} {status['remaining']:<10} "
            f"{r.valid_to.isoformat():<12} {'yes' if r.is_active else 'no'}"
        )
    click.echo("")


@fiscal_group.command('add-resolution')
@click.option('--kind', type=click.Choice(list(DOCUMENT_KINDS)), default='invoice', show_default=True)
@click.option('--number', 'resolution_number', required=True, help='DIAN resolution number')
@click.option('--prefix', required=True)
@click.option('--from', 'range_from', type=int, required=True)
@click.option('--to', 'range_to', type=int, required=True)
@click.option('--valid-from', type=click.DateTime(formats=["%Y-%m-%d"]), required=True)
@click.option('--valid-to', type=click.DateTime(formats=["%Y-%m-%d"]), required=True)
@click.option('--technical-key', default=None)
@click.option('--alert-threshold', type=int, default=100, show_default=True)
@with_appcontext
def add_resolution_cli(kind, resolution_number, prefix, range_from, range_to, valid_from, valid_to, technical_key, alert_threshold):
    """Register a resolution and activate it for its kind."""
    try:
        resolution = resolution_service.create_resolution(
            kind=kind,
            resolution_number=resolution_number,
            prefix=prefix,
            range_from=range_from,
            range_to=range_to,
            valid_from=valid_from.date(),
            valid_to=valid_to.date(),
            technical_key=technical_key,
            alert_threshold=alert_threshold,
        )
    except ResolutionError as e:
        raise click.ClickException(str(e))
    click.echo(f"PASS Resolution {resolution.resolution_number} ({resolution.prefix}) active for {kind} (ID: {resolution.id})")


@fiscal_group.command('push-resolution')
@click.argument('resolution_id', type=int)
@with_appcontext
def push_resolution_cli(resolution_id):
    """Send a local resolution to the gateway configuration."""
    from .models import Resolution

    resolution = db.session.get(Resolution, resolution_id)
    if not resolution:
        raise click.ClickException("Resolution not found")

    with _gateway_session() as gateway:
        response = gateway.configure_resolution(resolution_service.gateway_payload(resolution))
    click.echo(f"PASS Gateway answered: {response.get('message', 'ok')}")


@fiscal_group.command('configure-company')
@click.option('--nit', required=True)
@click.option('--dv', required=True)
@click.option('--file', 'company_file', type=click.File('r'), required=True, help='JSON body with the company data')
@with_appcontext
def configure_company_cli(nit, dv, company_file):
    """Register the issuing company on the gateway."""
    try:
        company = json.load(company_file)
    except ValueError as e:
        raise click.ClickException(f"Invalid JSON: {e}")

    with _gateway_session() as gateway:
        response = gateway.configure_company(nit, dv, company)

    click.echo(f"PASS {response.get('message', 'Company configured')}")
    token = response.get("token")
    if token:
        click.echo(f"   API token: {token}")
        click.echo("   Set FISCAL_API_TOKEN to this value.")


@fiscal_group.command('configure-software')
@click.option('--id', 'software_id', required=True, help='Software id issued by DIAN')
@click.option('--pin', required=True, help='Software PIN')
@with_appcontext
def configure_software_cli(software_id, pin):
    """Register the invoicing software on the gateway."""
    with _gateway_session() as gateway:
        response = gateway.configure_software({"id": software_id, "pin": pin})
    click.echo(f"PASS {response.get('message', 'Software configured')}")


@fiscal_group.command('configure-certificate')
@click.option('--file', 'certificate_file', type=click.File('rb'), required=True, help='PKCS#12 (.p12) certificate')
@click.option('--password', required=True, prompt=True, hide_input=True)
@with_appcontext
def configure_certificate_cli(certificate_file, password):
    """Upload the document signing certificate to the gateway."""
    certificate = base64.b64encode(certificate_file.read()).decode("ascii")
    with _gateway_session() as gateway:
        response = gateway.configure_certificate(certificate, password)
    click.echo(f"PASS {response.get('message', 'Certificate configured')}")


@fiscal_group.command('environment')
@click.argument('environment', type=click.Choice(['test', 'production']))
@with_appcontext
def environment_cli(environment):
    """Switch the gateway between test and production."""
    with _gateway_session() as gateway:
        response = gateway.change_environment(environment)
    click.echo(f"PASS {response.get('message', f'Environment set to {environment}')}")
    click.echo(f"   Set FISCAL_ENVIRONMENT={environment} to match.")


@fiscal_group.command('numbering-ranges')
@click.option('--software-id', required=True, help='Software id issued by DIAN')
@with_appcontext
def numbering_ranges_cli(software_id):
    """Show the numbering ranges DIAN authorized for the software."""
    with _gateway_session() as gateway:
        ranges = gateway.numbering_ranges(software_id)
    if not ranges:
        click.echo("No numbering ranges authorized.")
        return
    for r in ranges:
        click.echo(
            f"   {r['resolution_number']:<16} {r['prefix']:<8} {r['range_from']}-{r['range_to']:<14} "
            f"{r['valid_from'] or '-'}..{r['valid_to'] or '-'}  key {r['technical_key'] or '-'}"
        )


@fiscal_group.command('migrate-production')
@click.option('--software-id', required=True, help='Software id issued by DIAN')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def migrate_production_cli(software_id, yes):
    """Switch to production and register DIAN's authorized invoice range."""
    if not yes:
        click.confirm("WARN Documents issued after this are legally binding. Continue?", abort=True)
    with _gateway_session() as gateway:
        resolution = resolution_service.migrate_to_production(gateway, software_id)
    click.echo(
        f"PASS Production resolution {resolution.resolution_number} ({resolution.prefix} "
        f"{resolution.range_from}-{resolution.range_to}) active (ID: {resolution.id})"
    )
    click.echo("   Set FISCAL_ENVIRONMENT=production and FISCAL_USE_TEST_SET_ID=false, then restart.")


@fiscal_group.command('alerts')
@click.option('--all', 'include_acknowledged', is_flag=True, help='Include acknowledged alerts')
@click.option('--limit', type=int, default=50, help='Max alerts to show')
@with_appcontext
def list_alerts_cli(include_acknowledged, limit):
    """List operator alerts."""
    alerts = alert_service.list_alerts(include_acknowledged=include_acknowledged, limit=limit)
    if not alerts:
        click.echo("No alerts.")
        return
    for alert in alerts:
        target = f"{alert.document_type}#{alert.document_id}" if alert.document_type else "-"
        ack = " (ack)" if alert.acknowledged_at else ""
        click.echo(f"{alert.id:<5} {to_utc_z(alert.created_at):<22} {alert.alert_type:<22} {target:<18} {alert.message}{ack}")


@fiscal_group.command('resend')
@click.argument('kind', type=click.Choice(list(DOCUMENT_KINDS)))
@click.argument('document_id', type=int)
@with_appcontext
def resend_cli(kind, document_id):
    """Requeue an errored or rejected document."""
    try:
        document = invoice_service.resend(kind, document_id)
    except (InvoiceNotFound, InvoiceStateError) as e:
        raise click.ClickException(str(e))
    click.echo(f"PASS {kind} {document.full_number or document.id} queued (retry {document.retry_count})")


@fiscal_group.command('resend-email')
@click.argument('invoice_id', type=int)
@with_appcontext
def resend_email_cli(invoice_id):
    """Ask the gateway to e-mail an accepted invoice again."""
    with _gateway_session() as gateway:
        try:
            response = invoice_service.resend_invoice_email(
                invoice_id, gateway, current_app.config.get("FISCAL_COMPANY_NIT", "")
            )
        except (InvoiceNotFound, InvoiceStateError) as e:
            raise click.ClickException(str(e))
    click.echo(f"PASS {response.get('message', 'E-mail sent')}")


# =============================================================================
# CASH
# =============================================================================

@click.group('cash')
def cash_group():
    """Cash register shift inspection."""


@cash_group.command('shifts')
@click.option('--status', type=click.Choice(['open', 'closed']), help='Filter by status')
@click.option('--employee-id', type=int, help='Filter by employee')
@click.option('--limit', type=int, default=20, help='Max shifts to show')
@with_appcontext
def list_shifts_cli(status, employee_id, limit):
    """
    List register shifts.

    Example:
        flask cash shifts
        flask cash shifts --status open
    """
    shifts = cash_repo.list_shifts(status=status, employee_id=employee_id, limit=limit)
    if not shifts:
        click.echo("No shifts found.")
        return

    click.echo("\n" + "="*100)
    click.echo(f"{'ID':<5} {'Employee':<10} {'Register':<12} {'Status':<8} {'Opened':<22} {'Opening':<12} {'Expected':<12} {'Diff'}")
    click.echo("="*100)
    for shift in shifts:
        expected = shift.expected_cash_cents if shift.expected_cash_cents is not None else "-"
        diff = shift.difference_cents if shift.difference_cents is not None else "-"
        click.echo(
            f"{shift.id:<5} {shift.employee_id:<10} {(shift.register_name or '-'):<12} {shift.status:<8} "
            f"{to_utc_z(shift.opened_at):<22} {shift.opening_cash_cents:<12} {expected:<12} {diff}"
        )
    click.echo("")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(fiscal_group)
    app.cli.add_command(cash_group)
