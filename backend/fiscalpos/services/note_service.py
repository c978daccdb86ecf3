# Overview: Service-layer operations for credit and debit notes against accepted invoices.

"""
Credit / Debit Note Service

WHY: An accepted invoice is immutable before DIAN; corrections are new fiscal
documents referencing it. Notes go through the same numbering and validation
pipeline as invoices.

INVARIANTS:
- Notes reference an accepted invoice
- Sum of non-rejected credit notes <= the invoice's sale total
"""

from __future__ import annotations

from ..extensions import db
from ..models import ElectronicInvoice, CreditNote, DebitNote
from ..models.fiscal import STATUS_ACCEPTED, STATUS_PENDING
from ..repositories import invoices as invoices_repo
from fiscalpos.time_utils import utcnow
from .concurrency import KeyedLocks, lock_for_update


class NoteError(Exception):
    """Raised for credit/debit note errors."""
    pass


# DIAN discrepancy codes
CREDIT_DISCREPANCY_CODES = {
    1: "Devolución parcial de los bienes",
    2: "Anulación de factura electrónica",
    3: "Rebaja o descuento parcial o total",
    4: "Ajuste de precio",
    5: "Otros",
}
DEBIT_DISCREPANCY_CODES = {
    1: "Intereses",
    2: "Gastos por cobrar",
    3: "Cambio del valor",
    4: "Otros",
}

_credit_locks = KeyedLocks()


def _accepted_invoice(invoice_id: int) -> ElectronicInvoice:
    invoice = lock_for_update(
        db.session.query(ElectronicInvoice).filter_by(id=invoice_id)
    ).first()
    if not invoice:
        raise NoteError("Invoice not found")
    if invoice.status != STATUS_ACCEPTED:
        raise NoteError(f"Invoice {invoice.full_number or invoice.id} is not accepted (status {invoice.status})")
    return invoice


def _validate(amount_cents: int, reason: str, discrepancy_code: int, codes: dict) -> str:
    if not isinstance(amount_cents, int) or amount_cents <= 0:
        raise NoteError("amount_cents must be a positive integer")
    reason = (reason or "").strip()
    if not reason:
        raise NoteError("reason is required")
    if discrepancy_code not in codes:
        raise NoteError(f"Invalid discrepancy_code: {discrepancy_code}")
    return reason


def issue_credit_note(
    invoice_id: int,
    amount_cents: int,
    reason: str,
    discrepancy_code: int = 2,
    *,
    created_by: int | None = None,
) -> CreditNote:
    """
    Create a pending credit note.

    Raises:
        NoteError: invoice not accepted, invalid input, or the credit total
            would exceed the invoice's sale total
    """
    reason = _validate(amount_cents, reason, discrepancy_code, CREDIT_DISCREPANCY_CODES)

    with _credit_locks.get(invoice_id):
        invoice = _accepted_invoice(invoice_id)
        credited = invoices_repo.credited_total(invoice.id)
        limit = invoice.sale.total_cents
        if credited + amount_cents > limit:
            db.session.rollback()
            raise NoteError(
                f"Credit notes would exceed the invoice total "
                f"({credited + amount_cents} > {limit})"
            )

        note = CreditNote(
            electronic_invoice_id=invoice.id,
            amount_cents=amount_cents,
            reason=reason,
            discrepancy_code=discrepancy_code,
            status=STATUS_PENDING,
            created_by=created_by,
            created_at=utcnow(),
        )
        db.session.add(note)
        db.session.commit()
    return note


def issue_debit_note(
    invoice_id: int,
    amount_cents: int,
    reason: str,
    discrepancy_code: int = 4,
    *,
    created_by: int | None = None,
) -> DebitNote:
    reason = _validate(amount_cents, reason, discrepancy_code, DEBIT_DISCREPANCY_CODES)
    invoice = _accepted_invoice(invoice_id)

    note = DebitNote(
        electronic_invoice_id=invoice.id,
        amount_cents=amount_cents,
        reason=reason,
        discrepancy_code=discrepancy_code,
        status=STATUS_PENDING,
        created_by=created_by,
        created_at=utcnow(),
    )
    db.session.add(note)
    db.session.commit()
    return note


def notes_for_invoice(invoice_id: int) -> dict:
    return {
        "credit_notes": invoices_repo.list_notes("credit_note", electronic_invoice_id=invoice_id),
        "debit_notes": invoices_repo.list_notes("debit_note", electronic_invoice_id=invoice_id),
        "credited_cents": invoices_repo.credited_total(invoice_id),
    }
