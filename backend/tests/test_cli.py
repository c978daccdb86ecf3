"""
Flask CLI command tests (Click runner).
"""

import pytest

from fiscalpos.models import Resolution
from fiscalpos.services.gateway_client import GatewayRejected

from conftest import FakeGateway, SetupGateway, production_range, record_cash_sale


@pytest.fixture
def setup_gateway(monkeypatch):
    """Route the CLI's gateway construction to a SetupGateway."""
    gateway = SetupGateway(ranges=[production_range()])
    monkeypatch.setattr("fiscalpos.cli.FiscalGateway.from_config", lambda config: gateway)
    return gateway


def test_seed_payment_methods_is_idempotent(app, db_session):
    runner = app.test_cli_runner()

    first = runner.invoke(args=["system", "seed-payment-methods"])
    assert first.exit_code == 0
    assert "Efectivo" in first.output

    second = runner.invoke(args=["system", "seed-payment-methods"])
    assert "PASS Created 0 payment methods" in second.output


def test_add_and_list_resolutions(app, db_session):
    runner = app.test_cli_runner()

    result = runner.invoke(args=[
        "fiscal", "add-resolution",
        "--kind", "invoice", "--number", "18760000001", "--prefix", "SETP",
        "--from", "990000000", "--to", "995000000",
        "--valid-from", "2019-01-19", "--valid-to", "2099-01-19",
    ])
    assert result.exit_code == 0, result.output
    assert "PASS Resolution 18760000001 (SETP)" in result.output
    assert db_session.query(Resolution).count() == 1

    listed = runner.invoke(args=["fiscal", "resolutions"])
    assert "SETP" in listed.output
    assert "990000000" in listed.output


def test_add_resolution_with_bad_range_fails(app, db_session):
    result = app.test_cli_runner().invoke(args=[
        "fiscal", "add-resolution", "--number", "1", "--prefix", "X",
        "--from", "10", "--to", "5", "--valid-from", "2019-01-19", "--valid-to", "2099-01-19",
    ])
    assert result.exit_code != 0


def test_tick_prints_counters(app, db_session):
    result = app.test_cli_runner().invoke(args=["fiscal", "tick"])
    assert result.exit_code == 0, result.output
    assert "submitted" in result.output
    assert "polled" in result.output


def test_resend_unknown_document(app, db_session):
    result = app.test_cli_runner().invoke(args=["fiscal", "resend", "invoice", "999"])
    assert result.exit_code != 0
    assert "not found" in result.output


def test_alerts_empty(app, db_session):
    result = app.test_cli_runner().invoke(args=["fiscal", "alerts"])
    assert result.exit_code == 0
    assert "No alerts." in result.output


def test_list_open_shifts(app, db_session, shift):
    result = app.test_cli_runner().invoke(args=["cash", "shifts", "--status", "open"])
    assert result.exit_code == 0
    assert "Caja 1" in result.output

    closed = app.test_cli_runner().invoke(args=["cash", "shifts", "--status", "closed"])
    assert "No shifts found." in closed.output


def test_migrate_production(app, db_session, setup_gateway):
    result = app.test_cli_runner().invoke(args=["fiscal", "migrate-production", "--software-id", "soft-1", "--yes"])

    assert result.exit_code == 0, result.output
    assert "PASS Production resolution 18764000001234 (FE 1-5000)" in result.output
    assert "FISCAL_USE_TEST_SET_ID=false" in result.output
    assert db_session.query(Resolution).filter_by(prefix="FE", is_active=True).count() == 1
    assert setup_gateway.calls[-1] == ("close",)


def test_migrate_production_needs_confirmation(app, db_session, setup_gateway):
    result = app.test_cli_runner().invoke(args=["fiscal", "migrate-production", "--software-id", "soft-1"], input="n\n")

    assert result.exit_code != 0
    assert setup_gateway.calls == []


def test_migrate_production_without_ranges_fails(app, db_session, setup_gateway):
    setup_gateway.ranges = []
    result = app.test_cli_runner().invoke(args=["fiscal", "migrate-production", "--software-id", "soft-1", "--yes"])

    assert result.exit_code != 0
    assert "no numbering ranges" in result.output
    assert setup_gateway.calls[-1] == ("close",)


def test_gateway_errors_become_click_errors(app, db_session, setup_gateway, monkeypatch):
    def refuse(software_id):
        raise GatewayRejected("DIAN numbering range query failed: 401")
    monkeypatch.setattr(setup_gateway, "numbering_ranges", refuse)

    result = app.test_cli_runner().invoke(args=["fiscal", "numbering-ranges", "--software-id", "soft-1"])

    assert result.exit_code != 0
    assert "query failed: 401" in result.output


def test_numbering_ranges_listed(app, db_session, setup_gateway):
    result = app.test_cli_runner().invoke(args=["fiscal", "numbering-ranges", "--software-id", "soft-1"])

    assert result.exit_code == 0, result.output
    assert "18764000001234" in result.output
    assert "2028-09-01" in result.output


def test_resend_email_for_accepted_invoice(app, db_session, shift, methods, resolutions, make_worker, setup_gateway):
    sale = record_cash_sale(shift, methods)
    make_worker(FakeGateway()).run_once()
    invoice = sale.electronic_invoice

    result = app.test_cli_runner().invoke(args=["fiscal", "resend-email", str(invoice.id)])

    assert result.exit_code == 0, result.output
    assert "PASS Correo enviado" in result.output
    assert ("email", "900123456", "SETP", invoice.number) in setup_gateway.calls


def test_resend_email_refuses_pending_invoice(app, db_session, shift, methods, setup_gateway):
    sale = record_cash_sale(shift, methods)

    result = app.test_cli_runner().invoke(args=["fiscal", "resend-email", str(sale.electronic_invoice.id)])

    assert result.exit_code != 0
    assert "only accepted invoices" in result.output
    assert not [call for call in setup_gateway.calls if call[0] == "email"]
