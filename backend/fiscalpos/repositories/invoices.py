# Overview: Reads and writes for electronic invoices, credit notes and debit notes.

from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, or_

from ..extensions import db
from ..models import ElectronicInvoice, CreditNote, DebitNote, Sale
from ..models.fiscal import (
    KIND_INVOICE,
    KIND_CREDIT_NOTE,
    KIND_DEBIT_NOTE,
    DOCUMENT_KINDS,
    STATUS_PENDING,
    STATUS_VALIDATING,
    STATUS_SENT,
    STATUS_REJECTED,
)


class DocumentDeleteError(Exception):
    """Raised when deleting a fiscal document that reached the gateway."""
    pass


FISCAL_MODELS = {
    KIND_INVOICE: ElectronicInvoice,
    KIND_CREDIT_NOTE: CreditNote,
    KIND_DEBIT_NOTE: DebitNote,
}


def model_for(kind: str):
    try:
        return FISCAL_MODELS[kind]
    except KeyError:
        raise ValueError(f"Unknown document kind: {kind}") from None


def get_document(kind: str, document_id: int):
    return db.session.get(model_for(kind), document_id)


def get_invoice_for_sale(sale_id: int) -> ElectronicInvoice | None:
    return db.session.query(ElectronicInvoice).filter_by(sale_id=sale_id).first()


def add_invoice_for_sale(sale, *, send_email: bool = False) -> ElectronicInvoice:
    """Stage a pending invoice for a sale (caller commits)."""
    invoice = ElectronicInvoice(sale=sale, status=STATUS_PENDING, send_email=send_email)
    db.session.add(invoice)
    return invoice


def documents_in_status(status: str, *, kinds=DOCUMENT_KINDS, limit: int | None = None) -> list:
    """Documents of the given kinds in one status, oldest first, invoices before notes."""
    documents = []
    for kind in kinds:
        model = model_for(kind)
        query = db.session.query(model).filter(model.status == status).order_by(model.id)
        if limit is not None:
            query = query.limit(limit)
        documents.extend(query.all())
    return documents


def stale_in_flight(sent_before: datetime, *, kinds=DOCUMENT_KINDS) -> list:
    """Validating documents whose submission started before sent_before."""
    documents = []
    for kind in kinds:
        model = model_for(kind)
        documents.extend(
            db.session.query(model)
            .filter(
                model.status == STATUS_VALIDATING,
                or_(model.sent_at.is_(None), model.sent_at <= sent_before),
            )
            .order_by(model.id)
            .all()
        )
    return documents


def documents_to_poll(checked_before: datetime, *, kinds=DOCUMENT_KINDS) -> list:
    """Sent documents with a zip key not checked since checked_before."""
    documents = []
    for kind in kinds:
        model = model_for(kind)
        documents.extend(
            db.session.query(model)
            .filter(
                model.status == STATUS_SENT,
                model.zip_key.isnot(None),
                or_(
                    model.validation_checked_at.is_(None),
                    model.validation_checked_at <= checked_before,
                ),
            )
            .order_by(model.id)
            .all()
        )
    return documents


def list_invoices(
    *,
    status: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[ElectronicInvoice]:
    query = db.session.query(ElectronicInvoice)
    if status:
        query = query.filter(ElectronicInvoice.status == status)
    return query.order_by(ElectronicInvoice.id.desc()).offset(offset).limit(limit).all()


def list_notes(kind: str, *, electronic_invoice_id: int | None = None) -> list:
    model = model_for(kind)
    query = db.session.query(model)
    if electronic_invoice_id is not None:
        query = query.filter(model.electronic_invoice_id == electronic_invoice_id)
    return query.order_by(model.id).all()


def credited_total(electronic_invoice_id: int) -> int:
    """Sum of every credit note against an invoice that DIAN has not rejected."""
    total = (
        db.session.query(func.coalesce(func.sum(CreditNote.amount_cents), 0))
        .filter(
            CreditNote.electronic_invoice_id == electronic_invoice_id,
            CreditNote.status != STATUS_REJECTED,
        )
        .scalar()
    )
    return int(total or 0)


def _scope_documents(query, model, *, start=None, end=None, register_shift_id=None):
    if start is not None:
        query = query.filter(model.sent_at >= start)
    if end is not None:
        query = query.filter(model.sent_at < end)
    if register_shift_id is not None:
        if model is ElectronicInvoice:
            query = query.join(Sale, ElectronicInvoice.sale_id == Sale.id)
        else:
            query = query.join(ElectronicInvoice, model.electronic_invoice_id == ElectronicInvoice.id).join(
                Sale, ElectronicInvoice.sale_id == Sale.id
            )
        query = query.filter(Sale.register_shift_id == register_shift_id)
    return query


def issued_ranges(
    kind: str,
    *,
    statuses,
    start: datetime | None = None,
    end: datetime | None = None,
    register_shift_id: int | None = None,
) -> list[dict]:
    """First/last/count of numbers per prefix, by submission time."""
    model = model_for(kind)
    query = db.session.query(
        model.prefix,
        func.min(model.number),
        func.max(model.number),
        func.count(model.id),
    ).filter(model.status.in_(statuses), model.number.isnot(None))
    query = _scope_documents(query, model, start=start, end=end, register_shift_id=register_shift_id)
    rows = query.group_by(model.prefix).order_by(model.prefix).all()
    return [
        {"prefix": row[0], "first": int(row[1]), "last": int(row[2]), "count": int(row[3])}
        for row in rows
    ]


def note_totals(
    kind: str,
    *,
    statuses,
    start: datetime | None = None,
    end: datetime | None = None,
    register_shift_id: int | None = None,
) -> dict:
    model = model_for(kind)
    query = db.session.query(
        func.count(model.id),
        func.coalesce(func.sum(model.amount_cents), 0),
    ).filter(model.status.in_(statuses))
    query = _scope_documents(query, model, start=start, end=end, register_shift_id=register_shift_id)
    count, total = query.one()
    return {"count": int(count), "total_cents": int(total)}


def delete_document(document) -> None:
    """
    Delete a fiscal document that never reached the gateway.

    Forbidden once the gateway has been contacted or a number was consumed:
    the row is the only record of what DIAN may have received.
    """
    if document.gateway_contacted:
        raise DocumentDeleteError(
            f"{document.document_kind} {document.id} reached the gateway and cannot be deleted"
        )
    db.session.delete(document)
    db.session.commit()
