# Overview: Service-layer operations for fiscal documents outside the worker; lookup, resend and deletion.

from __future__ import annotations

import logging

from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from ..models.fiscal import DOCUMENT_KINDS, KIND_INVOICE, STATUS_ACCEPTED
from ..repositories import invoices as invoices_repo
from . import invoice_state
from .concurrency import run_with_retry
from .invoice_state import InvoiceStateError
from .validation_worker import notify_status_change


logger = logging.getLogger(__name__)


class InvoiceNotFound(Exception):
    """Raised when a fiscal document does not exist."""
    pass


def get_document(kind: str, document_id: int):
    if kind not in DOCUMENT_KINDS:
        raise InvoiceNotFound(f"Unknown document kind: {kind}")
    document = invoices_repo.get_document(kind, document_id)
    if document is None:
        raise InvoiceNotFound(f"{kind} {document_id} not found")
    return document


def resend(kind: str, document_id: int):
    """
    Put an errored or rejected document back in the queue.

    The document keeps its number. Raises InvoiceStateError for accepted
    documents, documents in flight and documents already queued. A clash
    with a concurrent worker update is retried against the reloaded row.
    """
    def _attempt():
        document = get_document(kind, document_id)
        previous = invoice_state.resend(document)
        db.session.commit()
        return document, previous

    try:
        document, previous = run_with_retry(_attempt)
    except InvoiceStateError:
        db.session.rollback()
        raise
    except StaleDataError as exc:
        raise InvoiceStateError(
            f"{kind} {document_id} was updated concurrently; reload and try again"
        ) from exc

    logger.info("%s %s resent by operator (retry %s)", kind, document.full_number or document_id, document.retry_count)
    notify_status_change(document, previous)
    return document


def delete_unsent(kind: str, document_id: int) -> None:
    """Delete a document that never reached the gateway (no number, still pending)."""
    document = get_document(kind, document_id)
    invoices_repo.delete_document(document)


def resend_invoice_email(invoice_id: int, gateway, company_nit: str) -> dict:
    """Ask the gateway to e-mail an accepted invoice to its customer again."""
    invoice = get_document(KIND_INVOICE, invoice_id)
    if invoice.status != STATUS_ACCEPTED or invoice.number is None:
        raise InvoiceStateError(
            f"invoice {invoice.full_number or invoice_id} is {invoice.status}; only accepted invoices can be e-mailed"
        )
    response = gateway.resend_email(company_nit, invoice.prefix, invoice.number)
    logger.info("Invoice %s e-mailed again", invoice.full_number)
    return response
