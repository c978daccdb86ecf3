"""
Closing report tests: period bounds, sales/tax/tender aggregation, fiscal
numbering ranges and the grand total.
"""

from datetime import date, datetime

import pytest

from fiscalpos.services import cash_ledger_service, closing_report_service, note_service, sales_service
from fiscalpos.services.closing_report_service import ReportError, period_bounds

from conftest import FakeGateway, record_cash_sale


BOGOTA = "America/Bogota"


class TestPeriodBounds:
    def test_day(self):
        assert period_bounds("day", date(2026, 10, 18), tz_name=BOGOTA) == (
            datetime(2026, 10, 18, 5, 0), datetime(2026, 10, 19, 5, 0),
        )

    def test_week_starts_monday(self):
        # 2026-10-18 is a Sunday
        start, end = period_bounds("week", date(2026, 10, 18), tz_name=BOGOTA)
        assert start == datetime(2026, 10, 12, 5, 0)
        assert end == datetime(2026, 10, 19, 5, 0)

    def test_month_rolls_over_year(self):
        start, end = period_bounds("month", date(2026, 12, 31), tz_name=BOGOTA)
        assert start == datetime(2026, 12, 1, 5, 0)
        assert end == datetime(2027, 1, 1, 5, 0)

    def test_year(self):
        start, end = period_bounds("year", date(2026, 6, 1), tz_name=BOGOTA)
        assert (start, end) == (datetime(2026, 1, 1, 5, 0), datetime(2027, 1, 1, 5, 0))

    def test_custom_end_date_is_inclusive(self):
        start, end = period_bounds("custom", start=date(2026, 10, 1), end=date(2026, 10, 1), tz_name=BOGOTA)
        assert (start, end) == (datetime(2026, 10, 1, 5, 0), datetime(2026, 10, 2, 5, 0))

    def test_custom_datetimes_are_utc(self):
        start, end = period_bounds(
            "custom", start=datetime(2026, 10, 1, 12, 0), end=datetime(2026, 10, 1, 18, 0), tz_name=BOGOTA,
        )
        assert (start, end) == (datetime(2026, 10, 1, 12, 0), datetime(2026, 10, 1, 18, 0))

    @pytest.mark.parametrize("kwargs", [
        {"period": "fortnight"},
        {"period": "custom"},
        {"period": "custom", "start": date(2026, 10, 2), "end": date(2026, 10, 1)},
    ])
    def test_invalid(self, kwargs):
        period = kwargs.pop("period")
        with pytest.raises(ReportError):
            period_bounds(period, tz_name=BOGOTA, **kwargs)


def _accept_all(make_worker):
    make_worker(FakeGateway()).run_once()


def test_day_report_aggregates_and_reconciles(db_session, shift, methods, resolutions, make_worker):
    first = record_cash_sale(shift, methods)                       # 100,000 + 19% IVA
    sales_service.record_sale(
        shift.id, shift.employee_id,
        [{"description": "Pan", "quantity": 2, "unit_price_cents": 250000, "tax_type": "INC", "tax_rate_bps": 800}],
        [{"payment_method_id": methods["Tarjeta Débito"].id, "amount_cents": 540000, "reference": "AUTH-2"}],
    )
    _accept_all(make_worker)

    invoice = first.electronic_invoice
    note_service.issue_credit_note(invoice.id, 1000000, "Devolución parcial", discrepancy_code=1)
    note_service.issue_debit_note(invoice.id, 500000, "Intereses", discrepancy_code=1)
    _accept_all(make_worker)

    report = closing_report_service.closing_report("day")

    assert report["sales"]["count"] == 2
    assert report["sales"]["total_cents"] == 11900000 + 540000
    assert report["sales"]["tax_cents"] == 1900000 + 40000
    assert report["invoices"]["ranges"] == [
        {"prefix": "SETP", "first": 990000000, "last": 990000001, "count": 2},
    ]
    assert report["credit_notes"]["ranges"] == [{"prefix": "NC", "first": 1, "last": 1, "count": 1}]
    assert report["credit_notes"]["total_cents"] == 1000000
    assert report["debit_notes"]["total_cents"] == 500000
    assert report["grand_total_cents"] == 11900000 + 540000 + 500000 - 1000000

    taxes = {(row["tax_type"], row["rate_bps"]): row for row in report["tax_breakdown"]}
    assert taxes[("IVA", 1900)]["tax_cents"] == 1900000
    assert taxes[("INC", 800)]["taxable_cents"] == 500000

    methods_by_name = {row["name"]: row for row in report["payment_methods"]}
    assert methods_by_name["Efectivo"]["total_cents"] == 11900000
    assert methods_by_name["Tarjeta Débito"]["total_cents"] == 540000
    assert report["sales_summary_cents"] == 12440000

    assert all(report["checks"].values())
    assert report["cash"] is None
    assert report["period"]["type"] == "day"
    assert report["period"]["timezone"] == BOGOTA
    assert report["period"]["start"].endswith("Z")


def test_unsent_documents_are_not_in_ranges(db_session, shift, methods, resolutions):
    record_cash_sale(shift, methods)

    report = closing_report_service.closing_report("day")

    assert report["sales"]["count"] == 1
    assert report["invoices"] == {"ranges": [], "count": 0}


def test_refunded_sales_stay_in_sales_and_are_listed(db_session, shift, methods):
    kept = record_cash_sale(shift, methods)
    refunded = record_cash_sale(shift, methods)
    sales_service.refund_sale(refunded.id, employee_id=shift.employee_id)

    report = closing_report_service.closing_report("day")

    assert report["sales"]["count"] == 2
    assert report["sales"]["total_cents"] == kept.total_cents + refunded.total_cents
    assert report["grand_total_cents"] == kept.total_cents + refunded.total_cents
    assert report["refunds"] == {
        "count": 1,
        "sales_total_cents": refunded.total_cents,
        "refunded_cents": refunded.total_cents,
    }
    assert all(report["checks"].values())


def test_refund_with_matching_credit_note_nets_to_zero(db_session, shift, methods, resolutions, make_worker):
    sale = record_cash_sale(shift, methods)
    _accept_all(make_worker)
    sales_service.refund_sale(sale.id, employee_id=shift.employee_id)
    note_service.issue_credit_note(sale.electronic_invoice.id, sale.total_cents, "Devolución total", discrepancy_code=2)
    _accept_all(make_worker)

    report = closing_report_service.closing_report("day")

    assert report["sales"]["total_cents"] == 11900000
    assert report["credit_notes"]["total_cents"] == 11900000
    assert report["grand_total_cents"] == 0
    assert report["refunds"]["refunded_cents"] == 11900000


def test_partial_refund_keeps_the_unrefunded_part(db_session, shift, methods, resolutions, make_worker):
    sale = record_cash_sale(shift, methods)
    _accept_all(make_worker)
    sales_service.refund_sale(sale.id, 1900000, employee_id=shift.employee_id)
    note_service.issue_credit_note(sale.electronic_invoice.id, 1900000, "Devolución parcial", discrepancy_code=1)
    _accept_all(make_worker)

    report = closing_report_service.closing_report("day")

    assert report["grand_total_cents"] == 11900000 - 1900000
    assert all(report["checks"].values())


def test_other_days_are_excluded(db_session, shift, methods):
    record_cash_sale(shift, methods)

    report = closing_report_service.closing_report("day", date(2001, 1, 1))

    assert report["sales"]["count"] == 0
    assert report["grand_total_cents"] == 0


def test_shift_report_includes_cash_summary(db_session, shift, methods):
    record_cash_sale(shift, methods)
    other_shift = cash_ledger_service.open_shift(2, 0)
    record_cash_sale(other_shift, methods)

    report = closing_report_service.closing_report(None, register_shift_id=shift.id)

    assert report["period"]["type"] == "shift"
    assert report["period"]["start"] is None
    assert report["sales"]["count"] == 1
    assert report["cash"]["expected_cash_cents"] == 5000000 + 11900000
    assert report["cash"]["shift"]["id"] == shift.id

    both = closing_report_service.closing_report("day")
    assert both["sales"]["count"] == 2


def test_period_required_without_shift(db_session):
    with pytest.raises(ReportError):
        closing_report_service.closing_report(None)


def test_unknown_shift(db_session):
    with pytest.raises(ReportError):
        closing_report_service.closing_report(register_shift_id=999)
