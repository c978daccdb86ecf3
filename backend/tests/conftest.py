"""
Pytest fixtures for fiscalpos backend tests.

Provides test database setup, seeded payment methods, open shifts, active
resolutions, a scripted fake gateway and the test client.
"""

import threading
from datetime import timedelta

import pytest
from fiscalpos import create_app
from fiscalpos.config import TestConfig
from fiscalpos.extensions import db
from fiscalpos.services import cash_ledger_service, payment_method_service, resolution_service, sales_service
from fiscalpos.services.gateway_client import (
    GatewayResult,
    OUTCOME_ACCEPTED,
    OUTCOME_REJECTED,
    OUTCOME_QUEUED,
    OUTCOME_PENDING,
)
from fiscalpos.services.validation_worker import ValidationWorker
from fiscalpos.time_utils import local_today


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TestConfig)

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def file_app(tmp_path):
    """Application on a SQLite file, so each thread gets its own connection."""
    class FileConfig(TestConfig):
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'concurrency.db'}"

    app = create_app(FileConfig)
    with app.app_context():
        db.create_all()

    yield app

    with app.app_context():
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


def run_threads(target, count):
    """Start count threads on target together and wait for all of them."""
    barrier = threading.Barrier(count)

    def runner():
        barrier.wait()
        target()

    threads = [threading.Thread(target=runner) for _ in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()


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
def methods(db_session):
    """Default payment methods keyed by name."""
    payment_method_service.seed_default_payment_methods()
    return {m.name: m for m in payment_method_service.list_payment_methods()}


@pytest.fixture(scope='function')
def shift(db_session):
    """Open shift for employee 1 with 50,000.00 opening cash."""
    return cash_ledger_service.open_shift(1, 5000000, register_name="Caja 1")


def make_resolution(kind="invoice", prefix="SETP", range_from=990000000, range_to=995000000,
                    alert_threshold=100, valid_from=None, valid_to=None, number=None):
    today = local_today(TestConfig.FISCAL_TIMEZONE)
    return resolution_service.create_resolution(
        kind=kind,
        resolution_number=number or f"1876{prefix}",
        prefix=prefix,
        range_from=range_from,
        range_to=range_to,
        valid_from=valid_from or today - timedelta(days=30),
        valid_to=valid_to or today + timedelta(days=365),
        alert_threshold=alert_threshold,
    )


@pytest.fixture(scope='function')
def resolutions(db_session):
    """Active resolutions for invoices, credit notes and debit notes."""
    return {
        "invoice": make_resolution("invoice", "SETP"),
        "credit_note": make_resolution("credit_note", "NC", range_from=1, range_to=1000),
        "debit_note": make_resolution("debit_note", "ND", range_from=1, range_to=1000),
    }


def iva_line(price_cents=10000000, quantity=1, rate_bps=1900, description="Cafetera"):
    return {
        "description": description,
        "quantity": quantity,
        "unit_price_cents": price_cents,
        "tax_type": "IVA",
        "tax_rate_bps": rate_bps,
    }


def record_cash_sale(shift, methods, price_cents=10000000, rate_bps=1900, **kwargs):
    """Record a single-line sale paid fully in cash."""
    line = iva_line(price_cents, rate_bps=rate_bps)
    tax = (price_cents * rate_bps + 5000) // 10000
    return sales_service.record_sale(
        shift.id,
        shift.employee_id,
        [line],
        [{"payment_method_id": methods["Efectivo"].id, "amount_cents": price_cents + tax}],
        **kwargs,
    )


# =============================================================================
# FAKE GATEWAY
# =============================================================================

def accepted(cufe="cufe-123", message="Procesado Correctamente."):
    return GatewayResult(outcome=OUTCOME_ACCEPTED, message=message, cufe=cufe, raw_response='{"ok": true}')


def rejected(message="99 - Validación contiene errores en campos mandatorios."):
    return GatewayResult(outcome=OUTCOME_REJECTED, message=message, raw_response='{"ok": false}')


def queued(zip_key="zip-0001"):
    return GatewayResult(outcome=OUTCOME_QUEUED, message="Queued for DIAN validation",
                         zip_key=zip_key, raw_response='{"zip": true}')


def pending():
    return GatewayResult(outcome=OUTCOME_PENDING, raw_response='{"pending": true}')


class FakeGateway:
    """
    Scripted stand-in for FiscalGateway.

    Each script entry is either a GatewayResult (returned) or an exception
    (raised). When a script runs out, submissions are accepted and polls
    stay pending.
    """

    def __init__(self, submit=None, status=None):
        self.submit_script = list(submit or [])
        self.status_script = list(status or [])
        self.submitted = []
        self.polled = []
        self._lock = threading.Lock()

    def _next(self, script, default):
        with self._lock:
            item = script.pop(0) if script else default
        if isinstance(item, Exception):
            raise item
        return item

    def submit(self, kind, payload):
        with self._lock:
            self.submitted.append((kind, payload))
        return self._next(self.submit_script, accepted())

    def query_status(self, zip_key):
        with self._lock:
            self.polled.append(zip_key)
        return self._next(self.status_script, pending())


class SetupGateway:
    """Records company setup calls; numbering_ranges returns the scripted ranges."""

    def __init__(self, ranges=None):
        self.ranges = list(ranges or [])
        self.calls = []

    def change_environment(self, environment):
        self.calls.append(("environment", environment))
        return {"message": f"Ambiente {environment}"}

    def numbering_ranges(self, software_id):
        self.calls.append(("numbering_ranges", software_id))
        return self.ranges

    def configure_resolution(self, resolution):
        self.calls.append(("resolution", resolution))
        return {"message": "Resolución creada"}

    def resend_email(self, company_nit, prefix, number):
        self.calls.append(("email", company_nit, prefix, number))
        return {"message": "Correo enviado"}

    def close(self):
        self.calls.append(("close",))


def production_range(**overrides):
    authorized = {
        "resolution_number": "18764000001234",
        "prefix": "FE",
        "range_from": 1,
        "range_to": 5000,
        "technical_key": "fc8eac422eba16e22ffd8c6f94b3f40a6e38162c",
        "resolution_date": "2026-09-01",
        "valid_from": "2026-09-01",
        "valid_to": "2028-09-01",
    }
    authorized.update(overrides)
    return authorized


@pytest.fixture(scope='function')
def make_worker(app):
    """Build validation workers around a fake gateway; stopped on teardown."""
    workers = []

    def _make(gateway, **kwargs):
        kwargs.setdefault("max_retries", 3)
        kwargs.setdefault("poll_min_interval", 0)
        kwargs.setdefault("pool_size", 2)
        worker = ValidationWorker(app, gateway, **kwargs)
        workers.append(worker)
        return worker

    yield _make

    for worker in workers:
        worker.stop()
