"""
Validation worker tests with a scripted gateway: numbering, submission
outcomes, retry budget, asynchronous polling, alerts and status signals.
"""

from datetime import timedelta

import pytest

from fiscalpos.extensions import db
from fiscalpos.models import ElectronicInvoice, CreditNote, FiscalAlert
from fiscalpos.services import invoice_service, note_service
from fiscalpos.services.gateway_client import (
    GatewayAuthError,
    GatewayRejected,
    GatewayTransient,
    UnexpectedGatewayResponse,
)
from fiscalpos.signals import invoice_status_changed, fiscal_alert_raised
from fiscalpos.time_utils import utcnow

from conftest import FakeGateway, accepted, queued, pending, rejected, record_cash_sale


def _invoice(sale):
    return db.session.get(ElectronicInvoice, sale.electronic_invoice.id)


def _timeout():
    return GatewayTransient("Gateway timeout: read timed out")


def test_sale_invoice_accepted_synchronously(app, db_session, shift, methods, resolutions, make_worker):
    sale = record_cash_sale(shift, methods)
    gateway = FakeGateway(submit=[accepted(cufe="cufe-001")])
    changes = []

    def receiver(sender, document, previous, status, badge):
        changes.append((document.id, previous, status, badge))

    with invoice_status_changed.connected_to(receiver, sender=app):
        stats = make_worker(gateway).run_once()

    invoice = _invoice(sale)
    assert stats["submitted"] == 1 and stats["accepted"] == 1
    assert invoice.status == "accepted"
    assert invoice.is_valid is True
    assert invoice.full_number == "SETP990000000"
    assert invoice.cufe == "cufe-001"
    assert invoice.request_payload
    assert changes == [
        (invoice.id, "pending", "validating", "Enviada"),
        (invoice.id, "validating", "accepted", "Aceptada"),
    ]

    kind, payload = gateway.submitted[0]
    assert kind == "invoice"
    assert payload["number"] == 990000000
    assert payload["prefix"] == "SETP"
    assert payload["legal_monetary_totals"]["payable_amount"] == "119000.00"


def test_http_400_rejects_keeps_number_and_is_not_resubmitted(db_session, shift, methods, resolutions, make_worker):
    sale = record_cash_sale(shift, methods)
    gateway = FakeGateway(submit=[
        GatewayRejected("The given data was invalid.\ncustomer.dv: required", status_code=400,
                        raw_response='{"message": "The given data was invalid."}'),
    ])
    worker = make_worker(gateway)

    stats = worker.run_once()
    invoice = _invoice(sale)
    assert stats["rejected"] == 1
    assert invoice.status == "rejected"
    assert invoice.is_valid is False
    assert invoice.number == 990000000


def test_fresh_in_flight_submission_is_left_alone(db_session, shift, methods, resolutions, make_worker):
    sale = record_cash_sale(shift, methods)
    invoice = _invoice(sale)
    invoice.status = "validating"
    invoice.sent_at = utcnow()
    invoice.prefix, invoice.number, invoice.resolution_id = "SETP", 990000000, resolutions["invoice"].id
    db_session.commit()

    gateway = FakeGateway()
    stats = make_worker(gateway, recover_after=120).run_once()

    invoice = _invoice(sale)
    assert stats["recovered"] == 0
    assert stats["submitted"] == 0
    assert gateway.submitted == []
    assert invoice.status == "validating"
    assert invoice.transient_failures == 0


def test_unexpected_poll_response_keeps_raw_body(db_session, shift, methods, resolutions, make_worker):
    sale = record_cash_sale(shift, methods)
    gateway = FakeGateway(submit=[queued()], status=[
        UnexpectedGatewayResponse("Gateway returned a non-JSON body", status_code=200, raw_response="<html>busy</html>"),
    ])
    make_worker(gateway).run_once()

    invoice = _invoice(sale)
    assert invoice.status == "sent"
    assert "<html>busy</html>" in invoice.last_error
    assert invoice.poll_count == 1


def test_validation_without_verdict_alerts_once(db_session, shift, methods, resolutions, make_worker):
    sale = record_cash_sale(shift, methods)
    worker = make_worker(FakeGateway(submit=[queued()]), max_polls=3)

    for _ in range(5):
        worker.run_once()

    invoice = _invoice(sale)
    assert invoice.status == "sent"
    assert invoice.poll_count == 5
    alerts = db_session.query(FiscalAlert).filter_by(alert_type="validation_stalled").all()
    assert len(alerts) == 1
    assert alerts[0].document_id == invoice.id
    assert "customer.dv" in invoice.validation_message

    worker.run_once()
    assert len(gateway.submitted) == 1
    assert _invoice(sale).status == "rejected"


def test_three_timeouts_exhaust_retries_and_raise_alert(app, db_session, shift, methods, resolutions, make_worker):
    sale = record_cash_sale(shift, methods)
    gateway = FakeGateway(submit=[_timeout(), _timeout(), _timeout()])
    worker = make_worker(gateway, max_retries=3)
    raised = []

    def on_alert(sender, alert):
        raised.append(alert.alert_type)

    with fiscal_alert_raised.connected_to(on_alert, sender=app):
        for _ in range(3):
            worker.run_once()

    invoice = _invoice(sale)
    assert invoice.status == "error"
    assert invoice.error_kind == "transient"
    assert invoice.transient_failures == 3
    assert invoice.number == 990000000
    assert raised == ["retries_exhausted"]

    alert = db_session.query(FiscalAlert).filter_by(document_type="invoice", document_id=invoice.id).one()
    assert alert.alert_type == "retries_exhausted"

    # Budget spent: no automatic retry
    worker.run_once()
    assert len(gateway.submitted) == 3
    assert _invoice(sale).status == "error"

    # Manual resend goes through with the same number
    invoice_service.resend("invoice", invoice.id)
    worker.run_once()
    invoice = _invoice(sale)
    assert invoice.status == "accepted"
    assert invoice.number == 990000000
    assert invoice.retry_count == 4
    assert len(gateway.submitted) == 4


def test_transient_failure_is_retried_on_next_tick(db_session, shift, methods, resolutions, make_worker):
    sale = record_cash_sale(shift, methods)
    gateway = FakeGateway(submit=[_timeout(), accepted()])
    worker = make_worker(gateway)

    worker.run_once()
    assert _invoice(sale).status == "error"

    stats = worker.run_once()
    assert stats["requeued"] == 1
    assert _invoice(sale).status == "accepted"
    assert db_session.query(FiscalAlert).count() == 0


def test_async_submission_polled_until_accepted(db_session, shift, methods, resolutions, make_worker):
    sale = record_cash_sale(shift, methods)
    gateway = FakeGateway(
        submit=[queued("zip-77")],
        status=[pending(), accepted(cufe="cufe-zip")],
    )
    worker = make_worker(gateway, poll_min_interval=0)

    # Same tick: submitted, queued, then polled once (still pending)
    stats = worker.run_once()
    invoice = _invoice(sale)
    assert stats["sent"] == 1
    assert stats["polled"] == 1
    assert invoice.status == "sent"
    assert invoice.zip_key == "zip-77"
    assert invoice.is_valid is None

    stats = worker.run_once()
    invoice = _invoice(sale)
    assert stats["accepted"] == 1
    assert invoice.status == "accepted"
    assert invoice.cufe == "cufe-zip"
    assert gateway.polled == ["zip-77", "zip-77"]


def test_recently_checked_document_is_not_polled(db_session, shift, methods, resolutions, make_worker):
    record_cash_sale(shift, methods)
    gateway = FakeGateway(submit=[queued("zip-5")])
    worker = make_worker(gateway, poll_min_interval=3600)

    worker.run_once()
    worker.run_once()

    assert gateway.polled == []


def test_async_submission_rejected_on_poll(db_session, shift, methods, resolutions, make_worker):
    sale = record_cash_sale(shift, methods)
    gateway = FakeGateway(submit=[queued()], status=[rejected("99 - Documento con errores")])
    worker = make_worker(gateway)

    worker.run_once()
    worker.run_once()

    invoice = _invoice(sale)
    assert invoice.status == "rejected"
    assert invoice.validation_message == "99 - Documento con errores"


def test_poll_failure_keeps_document_sent(db_session, shift, methods, resolutions, make_worker):
    sale = record_cash_sale(shift, methods)
    gateway = FakeGateway(submit=[queued()], status=[_timeout()])
    worker = make_worker(gateway)

    worker.run_once()
    worker.run_once()

    invoice = _invoice(sale)
    assert invoice.status == "sent"
    assert "timeout" in invoice.last_error
    assert invoice.validation_checked_at is not None


def test_credentials_failure_alerts_without_retry(db_session, shift, methods, resolutions, make_worker):
    sale = record_cash_sale(shift, methods)
    gateway = FakeGateway(submit=[GatewayAuthError("Gateway refused credentials (HTTP 401)", status_code=401)])
    worker = make_worker(gateway)

    worker.run_once()
    worker.run_once()

    invoice = _invoice(sale)
    assert invoice.status == "error"
    assert invoice.error_kind == "credentials"
    assert len(gateway.submitted) == 1
    assert db_session.query(FiscalAlert).filter_by(alert_type="credentials").count() == 1


def test_unexpected_response_is_recorded_verbatim(db_session, shift, methods, resolutions, make_worker):
    sale = record_cash_sale(shift, methods)
    gateway = FakeGateway(submit=[
        UnexpectedGatewayResponse("Gateway returned a non-JSON body", status_code=200, raw_response="<html>oops</html>"),
    ])
    make_worker(gateway).run_once()

    invoice = _invoice(sale)
    assert invoice.status == "error"
    assert invoice.error_kind == "unexpected"
    assert "<html>oops</html>" in invoice.last_error


def test_missing_resolution_is_a_numbering_error(db_session, shift, methods, make_worker):
    sale = record_cash_sale(shift, methods)
    gateway = FakeGateway()

    stats = make_worker(gateway).run_once()

    invoice = _invoice(sale)
    assert stats["errors"] == 1
    assert invoice.status == "error"
    assert invoice.error_kind == "numbering"
    assert invoice.number is None
    assert gateway.submitted == []
    assert db_session.query(FiscalAlert).filter_by(alert_type="numbering").count() == 1


def test_interrupted_submission_is_recovered_and_resubmitted(db_session, shift, methods, resolutions, make_worker):
    sale = record_cash_sale(shift, methods)
    invoice = _invoice(sale)
    invoice.status = "validating"
    invoice.sent_at = utcnow() - timedelta(hours=1)
    invoice.prefix, invoice.number, invoice.resolution_id = "SETP", 990000000, resolutions["invoice"].id
    db_session.commit()

    gateway = FakeGateway(submit=[accepted()])
    stats = make_worker(gateway).run_once()

    invoice = _invoice(sale)
    assert stats["recovered"] == 1
    assert stats["requeued"] == 1
    assert invoice.status == "accepted"
    assert invoice.number == 990000000


def test_numbers_unique_across_many_sales(db_session, shift, methods, resolutions, make_worker):
    sales = [record_cash_sale(shift, methods, price_cents=1000000 + i) for i in range(6)]
    make_worker(FakeGateway(), pool_size=3).run_once()

    numbers = sorted(_invoice(sale).number for sale in sales)
    assert numbers == list(range(990000000, 990000006))
    assert all(_invoice(sale).status == "accepted" for sale in sales)


def test_credit_note_goes_through_pipeline(db_session, shift, methods, resolutions, make_worker):
    sale = record_cash_sale(shift, methods)
    gateway = FakeGateway()
    worker = make_worker(gateway)
    worker.run_once()
    invoice = _invoice(sale)

    note = note_service.issue_credit_note(invoice.id, 5950000, "Devolución parcial", discrepancy_code=1)
    worker.run_once()

    note = db.session.get(CreditNote, note.id)
    assert note.status == "accepted"
    assert note.full_number == "NC1"
    kind, payload = gateway.submitted[-1]
    assert kind == "credit_note"
    assert payload["billing_reference"]["number"] == "SETP990000000"
    assert payload["legal_monetary_totals"]["payable_amount"] == "59500.00"


@pytest.mark.parametrize("status", ["pending", "validating"])
def test_resend_refuses_queued_or_in_flight(db_session, shift, methods, status):
    from fiscalpos.services.invoice_state import InvoiceStateError

    sale = record_cash_sale(shift, methods)
    invoice = _invoice(sale)
    invoice.status = status
    db_session.commit()

    with pytest.raises(InvoiceStateError):
        invoice_service.resend("invoice", invoice.id)
