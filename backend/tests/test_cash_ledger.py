"""
Cash drawer ledger tests: shift lifecycle, movements and reconciliation.
"""

import threading

import pytest

from fiscalpos.extensions import db
from fiscalpos.models import CashMovement, CashRegisterShift
from fiscalpos.services import cash_ledger_service, sales_service
from fiscalpos.services.cash_ledger_service import AlreadyOpen, NotOpen, ShiftError

from conftest import run_threads


def _exempt_sale(shift, method, amount_cents, reference=None):
    """Single tax-exempt line paid in full with one method."""
    payment = {"payment_method_id": method.id, "amount_cents": amount_cents}
    if reference:
        payment["reference"] = reference
    return sales_service.record_sale(
        shift.id,
        shift.employee_id,
        [{"description": "Libro", "quantity": 1, "unit_price_cents": amount_cents, "tax_type": "EXENTO"}],
        [payment],
    )


def test_reconciliation_scenario(db_session, shift, methods):
    """Opening 50,000 + cash sale 30,000 + card sale 20,000 - withdrawal 10,000."""
    _exempt_sale(shift, methods["Efectivo"], 3000000)
    _exempt_sale(shift, methods["Tarjeta Débito"], 2000000, reference="AUTH-1")
    cash_ledger_service.record_movement(shift.id, "withdrawal", 1000000, "Pago proveedor")

    totals = cash_ledger_service.shift_totals(shift.id)
    assert totals["expected_cash_cents"] == 7000000
    assert totals["sales_summary_cents"] == 5000000
    assert totals["cash_payments_cents"] == 3000000
    assert totals["withdrawals_cents"] == 1000000

    summary = cash_ledger_service.close_shift(shift.id, 7000000)
    assert summary["difference_cents"] == 0
    assert summary["mismatch"] is None
    assert summary["shift"]["status"] == "closed"


def test_opening_deposit_written_but_not_counted_twice(db_session, shift):
    movements = cash_ledger_service.list_movements(shift.id)
    assert len(movements) == 1
    assert movements[0].movement_type == "deposit"
    assert movements[0].reference == "OPENING"

    totals = cash_ledger_service.shift_totals(shift.id)
    assert totals["deposits_cents"] == 0
    assert totals["expected_cash_cents"] == 5000000


def test_zero_opening_writes_no_movement(db_session):
    shift = cash_ledger_service.open_shift(7, 0)
    assert cash_ledger_service.list_movements(shift.id) == []
    assert cash_ledger_service.expected_cash(shift.id) == 0


def test_second_open_shift_for_employee_rejected(db_session, shift):
    with pytest.raises(AlreadyOpen):
        cash_ledger_service.open_shift(shift.employee_id, 100)

    # Another employee is unaffected
    other = cash_ledger_service.open_shift(2, 100)
    assert other.status == "open"


def test_open_shift_race_is_caught_by_the_database(db_session, shift, monkeypatch):
    # The other opener committed between our lookup and our insert
    monkeypatch.setattr(cash_ledger_service.cash_repo, "get_open_shift_for_employee", lambda employee_id: None)

    with pytest.raises(AlreadyOpen):
        cash_ledger_service.open_shift(shift.employee_id, 100)

    open_shifts = db.session.query(CashRegisterShift).filter_by(employee_id=shift.employee_id, status="open").all()
    assert [s.id for s in open_shifts] == [shift.id]
    assert db.session.query(CashMovement).filter_by(amount_cents=100).count() == 0


def test_concurrent_opens_leave_one_open_shift(file_app):
    outcomes = []
    lock = threading.Lock()

    def open_one():
        with file_app.app_context():
            try:
                cash_ledger_service.open_shift(5, 1000)
                outcome = "opened"
            except AlreadyOpen:
                outcome = "refused"
        with lock:
            outcomes.append(outcome)

    run_threads(open_one, 4)

    assert sorted(outcomes) == ["opened", "refused", "refused", "refused"]
    with file_app.app_context():
        assert db.session.query(CashRegisterShift).filter_by(employee_id=5, status="open").count() == 1


def test_employee_can_reopen_after_close(db_session, shift):
    cash_ledger_service.close_shift(shift.id, 5000000)
    reopened = cash_ledger_service.open_shift(shift.employee_id, 100)
    assert reopened.id != shift.id


def test_negative_opening_rejected(db_session):
    with pytest.raises(ShiftError):
        cash_ledger_service.open_shift(3, -1)


def test_movements_need_positive_amount_and_known_type(db_session, shift):
    with pytest.raises(ShiftError):
        cash_ledger_service.record_movement(shift.id, "deposit", 0)
    with pytest.raises(ShiftError):
        cash_ledger_service.record_movement(shift.id, "sale", 100)
    with pytest.raises(ShiftError):
        cash_ledger_service.record_movement(shift.id, "deposit", 100, reference="OPENING")


def test_deposits_raise_expected_cash(db_session, shift):
    cash_ledger_service.record_movement(shift.id, "deposit", 250000, "Cambio")
    assert cash_ledger_service.expected_cash(shift.id) == 5250000


def test_closed_shift_rejects_movements_and_sales(db_session, shift, methods):
    cash_ledger_service.close_shift(shift.id, 5000000)

    with pytest.raises(NotOpen):
        cash_ledger_service.record_movement(shift.id, "deposit", 100)
    with pytest.raises(NotOpen):
        _exempt_sale(shift, methods["Efectivo"], 1000)
    with pytest.raises(NotOpen):
        cash_ledger_service.close_shift(shift.id, 5000000)

    assert db_session.query(CashMovement).filter_by(register_shift_id=shift.id).count() == 1


def test_card_only_sale_on_closed_shift_is_rejected(db_session, shift, methods):
    cash_ledger_service.close_shift(shift.id, 5000000)
    with pytest.raises(NotOpen):
        _exempt_sale(shift, methods["Tarjeta Crédito"], 1000, reference="AUTH-9")


def test_mismatch_recorded_not_raised(db_session, shift, methods):
    _exempt_sale(shift, methods["Efectivo"], 1000000)

    summary = cash_ledger_service.close_shift(shift.id, 5900000, notes="Faltante")

    assert summary["expected_cash_cents"] == 6000000
    assert summary["difference_cents"] == -100000
    assert summary["mismatch"]["difference_cents"] == -100000
    stored = db.session.get(CashRegisterShift, shift.id)
    assert stored.difference_cents == -100000
    assert stored.notes == "Faltante"


def test_closed_shift_reports_frozen_figures(db_session, shift, methods):
    _exempt_sale(shift, methods["Efectivo"], 1000000)
    cash_ledger_service.close_shift(shift.id, 6000000)

    # Reopen is impossible; a late sale attempt changes nothing
    with pytest.raises(NotOpen):
        _exempt_sale(shift, methods["Efectivo"], 500)

    summary = cash_ledger_service.shift_summary(shift.id)
    assert summary["expected_cash_cents"] == 6000000
    assert summary["counted_cash_cents"] == 6000000
    assert summary["difference_cents"] == 0
    assert [m["movement_type"] for m in summary["movements"]] == ["deposit", "sale"]


def test_refunded_sale_drops_out_of_expected_cash(db_session, shift, methods):
    sale = _exempt_sale(shift, methods["Efectivo"], 1000000)
    sales_service.refund_sale(sale.id, employee_id=shift.employee_id, reason="Cliente desistió")

    totals = cash_ledger_service.shift_totals(shift.id)
    assert totals["expected_cash_cents"] == 5000000
    assert totals["refunds_cents"] == 1000000
    assert totals["sale_entries_cents"] == 1000000


def test_missing_shift(db_session):
    with pytest.raises(NotOpen):
        cash_ledger_service.shift_totals(999)
    with pytest.raises(NotOpen):
        cash_ledger_service.get_shift(999)
