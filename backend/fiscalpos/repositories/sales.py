# Overview: Reads and writes for sales and their payment/tax aggregates.

from __future__ import annotations

from datetime import datetime

from sqlalchemy import case, func, update

from ..extensions import db
from ..models import Sale, SaleLine, SalePayment, PaymentMethod
from ..models.sales import SALE_STATUS_COMPLETED, SALE_STATUS_REFUNDED, SALE_STATUS_PARTIAL_REFUND, REFUNDED_SALE_STATUSES
from ..services.concurrency import guarded_update

COMPLETED_ONLY = (SALE_STATUS_COMPLETED,)


def get_sale(sale_id: int) -> Sale | None:
    return db.session.get(Sale, sale_id)


def get_sale_by_number(sale_number: str) -> Sale | None:
    return db.session.query(Sale).filter_by(sale_number=sale_number).first()


def add_sale(sale: Sale) -> Sale:
    """Stage a sale with its lines and payments (caller commits)."""
    db.session.add(sale)
    db.session.flush()
    return sale


def apply_refund(sale_id: int, amount_cents: int) -> bool:
    """
    Add amount_cents to the sale's refunded total only if it still fits.

    The refundable check and the write are one UPDATE, so two refunds racing
    on the same sale can never push refunded_cents past total_cents.
    """
    refunded = Sale.refunded_cents + amount_cents
    stmt = (
        update(Sale)
        .where(
            Sale.id == sale_id,
            Sale.status.in_((SALE_STATUS_COMPLETED, SALE_STATUS_PARTIAL_REFUND)),
            refunded <= Sale.total_cents,
        )
        .values(
            refunded_cents=refunded,
            status=case((refunded == Sale.total_cents, SALE_STATUS_REFUNDED), else_=SALE_STATUS_PARTIAL_REFUND),
        )
        .execution_options(synchronize_session=False)
    )
    return guarded_update(stmt)


def list_sales(
    *,
    register_shift_id: int | None = None,
    status: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Sale]:
    query = db.session.query(Sale)
    if register_shift_id is not None:
        query = query.filter(Sale.register_shift_id == register_shift_id)
    if status:
        query = query.filter(Sale.status == status)
    return query.order_by(Sale.created_at.desc(), Sale.id.desc()).offset(offset).limit(limit).all()


def _scope(query, *, register_shift_id=None, start: datetime | None = None, end: datetime | None = None):
    if register_shift_id is not None:
        query = query.filter(Sale.register_shift_id == register_shift_id)
    if start is not None:
        query = query.filter(Sale.created_at >= start)
    if end is not None:
        query = query.filter(Sale.created_at < end)
    return query


def payment_breakdown(
    *,
    register_shift_id: int | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    statuses: tuple = COMPLETED_ONLY,
) -> list[dict]:
    """
    Per payment method totals over sales in `statuses` (one grouped query).

    Each row carries the method's reconciliation flags so callers can derive
    both the drawer figure and the sales-summary figure from the same rows.
    """
    query = (
        db.session.query(
            PaymentMethod.id,
            PaymentMethod.name,
            PaymentMethod.method_type,
            PaymentMethod.affects_cash_drawer,
            PaymentMethod.include_in_sales_summary,
            func.count(SalePayment.id),
            func.coalesce(func.sum(SalePayment.amount_cents), 0),
            func.coalesce(func.sum(SalePayment.subtotal_share_cents), 0),
            func.coalesce(func.sum(SalePayment.tax_share_cents), 0),
            func.coalesce(func.sum(SalePayment.discount_share_cents), 0),
        )
        .join(Sale, SalePayment.sale_id == Sale.id)
        .join(PaymentMethod, SalePayment.payment_method_id == PaymentMethod.id)
        .filter(Sale.status.in_(statuses))
    )
    query = _scope(query, register_shift_id=register_shift_id, start=start, end=end)
    rows = query.group_by(
        PaymentMethod.id,
        PaymentMethod.name,
        PaymentMethod.method_type,
        PaymentMethod.affects_cash_drawer,
        PaymentMethod.include_in_sales_summary,
    ).order_by(PaymentMethod.display_order, PaymentMethod.id).all()

    return [
        {
            "payment_method_id": row[0],
            "name": row[1],
            "method_type": row[2],
            "affects_cash_drawer": bool(row[3]),
            "include_in_sales_summary": bool(row[4]),
            "transactions": int(row[5]),
            "total_cents": int(row[6]),
            "subtotal_cents": int(row[7]),
            "tax_cents": int(row[8]),
            "discount_cents": int(row[9]),
        }
        for row in rows
    ]


def tax_breakdown(
    *,
    register_shift_id: int | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    statuses: tuple = COMPLETED_ONLY,
) -> list[dict]:
    """Taxable base and tax per (tax type, rate) over sales in `statuses`."""
    query = (
        db.session.query(
            SaleLine.tax_type,
            SaleLine.tax_rate_bps,
            func.coalesce(func.sum(SaleLine.line_total_cents), 0),
            func.coalesce(func.sum(SaleLine.tax_cents), 0),
            func.count(SaleLine.id),
        )
        .join(Sale, SaleLine.sale_id == Sale.id)
        .filter(Sale.status.in_(statuses))
    )
    query = _scope(query, register_shift_id=register_shift_id, start=start, end=end)
    rows = query.group_by(SaleLine.tax_type, SaleLine.tax_rate_bps).order_by(
        SaleLine.tax_type, SaleLine.tax_rate_bps
    ).all()
    return [
        {
            "tax_type": row[0],
            "rate_bps": int(row[1]),
            "taxable_cents": int(row[2]),
            "tax_cents": int(row[3]),
            "lines": int(row[4]),
        }
        for row in rows
    ]


def sales_totals(
    *,
    register_shift_id: int | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    statuses: tuple = COMPLETED_ONLY,
) -> dict:
    query = db.session.query(
        func.count(Sale.id),
        func.coalesce(func.sum(Sale.subtotal_cents), 0),
        func.coalesce(func.sum(Sale.tax_cents), 0),
        func.coalesce(func.sum(Sale.discount_cents), 0),
        func.coalesce(func.sum(Sale.total_cents), 0),
    ).filter(Sale.status.in_(statuses))
    count, subtotal, tax, discount, total = _scope(
        query, register_shift_id=register_shift_id, start=start, end=end
    ).one()
    return {
        "count": int(count),
        "subtotal_cents": int(subtotal),
        "tax_cents": int(tax),
        "discount_cents": int(discount),
        "total_cents": int(total),
    }


def refund_totals(
    *,
    register_shift_id: int | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
) -> dict:
    query = db.session.query(
        func.count(Sale.id),
        func.coalesce(func.sum(Sale.total_cents), 0),
        func.coalesce(func.sum(Sale.refunded_cents), 0),
    ).filter(Sale.status.in_(REFUNDED_SALE_STATUSES))
    count, sales_total, refunded = _scope(
        query, register_shift_id=register_shift_id, start=start, end=end
    ).one()
    return {
        "count": int(count),
        "sales_total_cents": int(sales_total),
        "refunded_cents": int(refunded),
    }
