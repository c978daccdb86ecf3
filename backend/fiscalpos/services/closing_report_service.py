# Overview: Service-layer operations for closing reports; reconciles sales, taxes, tenders, fiscal numbering and cash.

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from flask import current_app

from ..models.fiscal import KIND_INVOICE, KIND_CREDIT_NOTE, KIND_DEBIT_NOTE, ISSUED_STATUSES
from ..models.sales import ISSUED_SALE_STATUSES
from ..repositories import cash as cash_repo
from ..repositories import invoices as invoices_repo
from ..repositories import sales as sales_repo
from fiscalpos.time_utils import local_today, to_utc_z
from . import cash_ledger_service


class ReportError(Exception):
    """Raised when report generation fails."""
    pass


PERIODS = ("day", "week", "month", "year", "custom")


def _local_midnight_utc(day: date, tz: ZoneInfo) -> datetime:
    return datetime.combine(day, time.min, tzinfo=tz).astimezone(timezone.utc).replace(tzinfo=None)


def _to_utc_naive(value, tz: ZoneInfo, *, end: bool = False) -> datetime:
    """Dates are local calendar days (an end date is inclusive); datetimes are UTC."""
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value
    if isinstance(value, date):
        return _local_midnight_utc(value + timedelta(days=1) if end else value, tz)
    raise ReportError(f"Invalid boundary: {value!r}")


def period_bounds(
    period: str,
    reference_date: date | None = None,
    *,
    start=None,
    end=None,
    tz_name: str = "America/Bogota",
) -> tuple[datetime, datetime]:
    """
    Half-open [start, end) UTC bounds of a reporting period.

    day/week/month/year are local calendar periods containing reference_date
    (weeks start on Monday). custom takes explicit start/end.
    """
    tz = ZoneInfo(tz_name)
    if period not in PERIODS:
        raise ReportError(f"period must be one of {', '.join(PERIODS)}")

    if period == "custom":
        if start is None or end is None:
            raise ReportError("custom period requires start and end")
        start_dt = _to_utc_naive(start, tz)
        end_dt = _to_utc_naive(end, tz, end=True)
        if end_dt <= start_dt:
            raise ReportError("end must be after start")
        return start_dt, end_dt

    ref = reference_date or local_today(tz_name)
    if period == "day":
        first, last = ref, ref + timedelta(days=1)
    elif period == "week":
        first = ref - timedelta(days=ref.weekday())
        last = first + timedelta(days=7)
    elif period == "month":
        first = ref.replace(day=1)
        last = first.replace(year=first.year + 1, month=1) if first.month == 12 else first.replace(month=first.month + 1)
    else:
        first = ref.replace(month=1, day=1)
        last = first.replace(year=first.year + 1)
    return _local_midnight_utc(first, tz), _local_midnight_utc(last, tz)


def _documents_section(kind: str, scope: dict) -> dict:
    ranges = invoices_repo.issued_ranges(kind, statuses=ISSUED_STATUSES, **scope)
    section = {
        "ranges": ranges,
        "count": sum(r["count"] for r in ranges),
    }
    if kind != KIND_INVOICE:
        section["total_cents"] = invoices_repo.note_totals(kind, statuses=ISSUED_STATUSES, **scope)["total_cents"]
    return section


def closing_report(
    period: str | None = "day",
    reference_date: date | None = None,
    *,
    start=None,
    end=None,
    register_shift_id: int | None = None,
) -> dict:
    """
    Closing report for a period and/or a register shift.

    With register_shift_id and no period the whole shift is covered. Sales
    figures cover every issued sale, refunded ones included (by creation
    time). Fiscal ranges come from accepted or sent documents (by submission
    time). Every figure is in integer minor units.

    grand_total = sales total + debit notes - credit notes
    """
    tz_name = current_app.config.get("FISCAL_TIMEZONE", "America/Bogota")

    shift = None
    if register_shift_id is not None:
        shift = cash_repo.get_shift(register_shift_id)
        if not shift:
            raise ReportError(f"Shift {register_shift_id} not found")

    if period is None:
        if shift is None:
            raise ReportError("period is required unless a register shift is given")
        start_dt = end_dt = None
    else:
        start_dt, end_dt = period_bounds(period, reference_date, start=start, end=end, tz_name=tz_name)

    scope = {"start": start_dt, "end": end_dt, "register_shift_id": register_shift_id}

    # Refunds stay in the sales figures; their credit notes carry the reduction
    sales = sales_repo.sales_totals(statuses=ISSUED_SALE_STATUSES, **scope)
    refunds = sales_repo.refund_totals(**scope)
    taxes = sales_repo.tax_breakdown(statuses=ISSUED_SALE_STATUSES, **scope)
    payment_methods = sales_repo.payment_breakdown(statuses=ISSUED_SALE_STATUSES, **scope)

    invoices = _documents_section(KIND_INVOICE, scope)
    credit_notes = _documents_section(KIND_CREDIT_NOTE, scope)
    debit_notes = _documents_section(KIND_DEBIT_NOTE, scope)

    grand_total = sales["total_cents"] + debit_notes["total_cents"] - credit_notes["total_cents"]

    tendered = sum(row["total_cents"] for row in payment_methods)
    taxed = sum(row["tax_cents"] for row in taxes)
    checks = {
        "payments_match_sales": tendered == sales["total_cents"],
        "tax_breakdown_matches_sales": taxed == sales["tax_cents"],
        "payment_shares_match_sales": (
            sum(row["subtotal_cents"] for row in payment_methods) == sales["subtotal_cents"]
            and sum(row["tax_cents"] for row in payment_methods) == sales["tax_cents"]
            and sum(row["discount_cents"] for row in payment_methods) == sales["discount_cents"]
        ),
    }

    report = {
        "period": {
            "type": period or "shift",
            "reference_date": reference_date.isoformat() if reference_date else None,
            "start": to_utc_z(start_dt),
            "end": to_utc_z(end_dt),
            "timezone": tz_name,
        },
        "register_shift_id": register_shift_id,
        "sales": sales,
        "refunds": refunds,
        "tax_breakdown": taxes,
        "payment_methods": payment_methods,
        "sales_summary_cents": sum(row["total_cents"] for row in payment_methods if row["include_in_sales_summary"]),
        "invoices": invoices,
        "credit_notes": credit_notes,
        "debit_notes": debit_notes,
        "grand_total_cents": grand_total,
        "checks": checks,
        "cash": None,
    }

    if shift is not None:
        report["cash"] = cash_ledger_service.shift_summary(shift.id)

    return report
