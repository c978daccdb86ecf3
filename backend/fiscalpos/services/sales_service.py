# Overview: Service-layer operations for completed sales handed over by the POS; intake and refunds.

"""
Sales Intake Service

WHY: A completed sale is the entry point of both flows this system owns: it
queues an electronic invoice and it moves cash in the drawer. Both must be
recorded in the same transaction as the sale itself.

DESIGN PRINCIPLES:
- Sale amounts are frozen at creation (integer minor units)
- Payments must add up to the total exactly
- Each payment carries its exact share of subtotal/tax/discount (largest remainder)
- The shift open-check rides on the sale's ledger write; a closed shift aborts the sale
- The invoice is created pending; only the validation worker talks to the gateway
"""

from __future__ import annotations

import uuid

from ..extensions import db
from ..models import Sale, SaleLine, SalePayment, PaymentMethod
from ..models.sales import SALE_STATUS_COMPLETED, SALE_STATUS_PARTIAL_REFUND
from ..repositories import cash as cash_repo
from ..repositories import invoices as invoices_repo
from ..repositories import sales as sales_repo
from fiscalpos.time_utils import utcnow
from .cash_ledger_service import ShiftError, NotOpen, record_sale_entry, record_refund_entry
from .money import split_proportionally, line_tax


class SaleError(Exception):
    """Raised for sale operation errors."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


TAX_TYPES = ("IVA", "INC", "EXENTO")


def _generate_sale_number() -> str:
    return f"V-{uuid.uuid4().hex[:12].upper()}"


def _build_lines(lines: list[dict]) -> list[SaleLine]:
    if not lines:
        raise SaleError("A sale needs at least one line")

    built = []
    for index, data in enumerate(lines):
        description = (data.get("description") or "").strip()
        quantity = data.get("quantity")
        unit_price = data.get("unit_price_cents")
        tax_type = (data.get("tax_type") or "IVA").upper()
        rate_bps = data.get("tax_rate_bps", 0)

        if not description:
            raise SaleError("Line description is required", details={"line": index})
        if not isinstance(quantity, int) or quantity <= 0:
            raise SaleError("Line quantity must be a positive integer", details={"line": index})
        if not isinstance(unit_price, int) or unit_price < 0:
            raise SaleError("Line unit_price_cents must be a non-negative integer", details={"line": index})
        if tax_type not in TAX_TYPES:
            raise SaleError(f"Invalid tax_type: {tax_type}", details={"line": index})
        if not isinstance(rate_bps, int) or rate_bps < 0:
            raise SaleError("tax_rate_bps must be a non-negative integer", details={"line": index})
        if tax_type == "EXENTO":
            rate_bps = 0

        line_total = quantity * unit_price
        built.append(SaleLine(
            code=data.get("code"),
            description=description,
            quantity=quantity,
            unit_price_cents=unit_price,
            line_total_cents=line_total,
            tax_type=tax_type,
            tax_rate_bps=rate_bps,
            tax_cents=line_tax(line_total, rate_bps),
        ))
    return built


def _resolve_payments(payments: list[dict], total_cents: int) -> list[tuple[PaymentMethod, int, str | None]]:
    resolved = []
    for index, data in enumerate(payments or []):
        method_id = data.get("payment_method_id")
        amount = data.get("amount_cents")
        reference = data.get("reference")

        method = db.session.get(PaymentMethod, method_id) if method_id is not None else None
        if not method:
            raise SaleError("Payment method not found", details={"payment": index})
        if not method.is_active:
            raise SaleError(f"Payment method '{method.name}' is inactive", details={"payment": index})
        if not isinstance(amount, int) or amount <= 0:
            raise SaleError("Payment amount_cents must be a positive integer", details={"payment": index})
        if method.requires_reference and not reference:
            raise SaleError(f"Payment method '{method.name}' requires a reference", details={"payment": index})
        resolved.append((method, amount, reference))

    paid = sum(amount for _, amount, _ in resolved)
    if paid != total_cents:
        raise SaleError(
            "Payments must equal the sale total",
            details={"total_cents": total_cents, "paid_cents": paid},
        )
    return resolved


def record_sale(
    register_shift_id: int,
    employee_id: int,
    lines: list[dict],
    payments: list[dict],
    *,
    discount_cents: int = 0,
    needs_electronic_invoice: bool = True,
    customer: dict | None = None,
    notes: str | None = None,
    sale_number: str | None = None,
    send_email: bool = False,
) -> Sale:
    """
    Record a completed sale, its cash ledger entry and its pending invoice.

    Args:
        register_shift_id: Open shift the sale belongs to
        employee_id: Cashier
        lines: [{description, quantity, unit_price_cents (pre-tax), tax_type, tax_rate_bps, code}]
        payments: [{payment_method_id, amount_cents, reference}]
        discount_cents: Sale-level discount applied to the tax-inclusive amount
        customer: {identification_type, identification, dv, name, email}

    Raises:
        SaleError: invalid lines/payments
        NotOpen: shift closed or missing
    """
    shift = cash_repo.get_shift(register_shift_id)
    if not shift:
        raise NotOpen(f"Shift {register_shift_id} not found")

    sale_lines = _build_lines(lines)
    subtotal = sum(line.line_total_cents for line in sale_lines)
    tax = sum(line.tax_cents for line in sale_lines)

    if not isinstance(discount_cents, int) or discount_cents < 0:
        raise SaleError("discount_cents must be a non-negative integer")
    if discount_cents > subtotal + tax:
        raise SaleError("Discount exceeds the sale amount")
    total = subtotal + tax - discount_cents

    resolved = _resolve_payments(payments, total)

    if sale_number and sales_repo.get_sale_by_number(sale_number):
        raise SaleError(f"Sale '{sale_number}' already recorded")

    customer = customer or {}
    sale = Sale(
        sale_number=sale_number or _generate_sale_number(),
        status=SALE_STATUS_COMPLETED,
        subtotal_cents=subtotal,
        tax_cents=tax,
        discount_cents=discount_cents,
        total_cents=total,
        refunded_cents=0,
        register_shift_id=register_shift_id,
        employee_id=employee_id,
        needs_electronic_invoice=bool(needs_electronic_invoice),
        customer_identification_type=customer.get("identification_type"),
        customer_identification=customer.get("identification"),
        customer_dv=customer.get("dv"),
        customer_name=customer.get("name"),
        customer_email=customer.get("email"),
        notes=notes,
        created_at=utcnow(),
    )
    sale.lines = sale_lines

    amounts = [amount for _, amount, _ in resolved]
    subtotal_shares = split_proportionally(subtotal, amounts)
    tax_shares = split_proportionally(tax, amounts)
    discount_shares = split_proportionally(discount_cents, amounts)
    for index, (method, amount, reference) in enumerate(resolved):
        sale.payments.append(SalePayment(
            payment_method=method,
            amount_cents=amount,
            subtotal_share_cents=subtotal_shares[index],
            tax_share_cents=tax_shares[index],
            discount_share_cents=discount_shares[index],
            reference=reference,
        ))

    cash_amount = sum(amount for method, amount, _ in resolved if method.affects_cash_drawer)

    try:
        sales_repo.add_sale(sale)
        record_sale_entry(register_shift_id, sale, cash_amount, created_by=employee_id)
        if needs_electronic_invoice:
            invoices_repo.add_invoice_for_sale(sale, send_email=send_email)
        db.session.commit()
    except ShiftError:
        db.session.rollback()
        raise

    return sale


def get_sale(sale_id: int) -> Sale:
    sale = sales_repo.get_sale(sale_id)
    if not sale:
        raise SaleError("Sale not found")
    return sale


def refund_sale(
    sale_id: int,
    amount_cents: int | None = None,
    reason: str | None = None,
    *,
    employee_id: int,
    register_shift_id: int | None = None,
) -> Sale:
    """
    Refund all or part of a sale.

    The sale moves to refunded (fully refunded) or partial_refund and drops
    out of expected cash. A refund audit movement is written on the given
    shift (default: the sale's own shift), which must be open.

    Fiscal correction of an accepted invoice is a separate credit note.
    """
    sale = sales_repo.get_sale(sale_id)
    if not sale:
        raise SaleError("Sale not found")
    if sale.status not in (SALE_STATUS_COMPLETED, SALE_STATUS_PARTIAL_REFUND):
        raise SaleError(f"Sale {sale.sale_number} cannot be refunded (status {sale.status})")

    refundable = sale.total_cents - (sale.refunded_cents or 0)
    if amount_cents is None:
        amount_cents = refundable
    if not isinstance(amount_cents, int) or amount_cents <= 0:
        raise SaleError("Refund amount_cents must be a positive integer")
    if amount_cents > refundable:
        raise SaleError(
            "Refund exceeds the refundable amount",
            details={"refundable_cents": refundable, "requested_cents": amount_cents},
        )

    if not sales_repo.apply_refund(sale.id, amount_cents):
        db.session.rollback()
        db.session.refresh(sale)
        raise SaleError(
            "Refund exceeds the refundable amount",
            details={
                "refundable_cents": sale.total_cents - (sale.refunded_cents or 0),
                "requested_cents": amount_cents,
            },
        )
    db.session.refresh(sale)

    shift_id = register_shift_id or sale.register_shift_id
    try:
        record_refund_entry(shift_id, sale, amount_cents, created_by=employee_id, reason=reason)
        db.session.commit()
    except ShiftError:
        db.session.rollback()
        raise
    return sale
