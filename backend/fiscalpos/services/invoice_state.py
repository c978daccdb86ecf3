# Overview: Status transition rules for fiscal documents (invoices, credit notes, debit notes).

"""
Fiscal Document State Machine

WHY: A fiscal document's status is a legal fact. Every status write goes
through here so an accepted document can never be resubmitted and is_valid
never disagrees with status.

LIFECYCLE:
    pending -> validating -> sent | accepted | rejected | error
    sent -> accepted | rejected
    error -> pending               (automatic retry or manual resend)
    rejected -> pending            (manual resend only)
    pending -> error               (numbering/configuration failure before submission)
    accepted                       (terminal)

Functions here mutate the document but never commit.
"""

from __future__ import annotations

from datetime import datetime

from ..models.fiscal import (
    STATUS_PENDING,
    STATUS_VALIDATING,
    STATUS_SENT,
    STATUS_ACCEPTED,
    STATUS_REJECTED,
    STATUS_ERROR,
    STATUS_BADGES,
    ERROR_TRANSIENT,
    RETRYABLE_ERROR_KINDS,
)


class InvoiceStateError(Exception):
    """Raised for illegal fiscal document transitions."""
    pass


ALLOWED_TRANSITIONS = {
    STATUS_PENDING: {STATUS_VALIDATING, STATUS_ERROR},
    STATUS_VALIDATING: {STATUS_SENT, STATUS_ACCEPTED, STATUS_REJECTED, STATUS_ERROR},
    STATUS_SENT: {STATUS_ACCEPTED, STATUS_REJECTED},
    STATUS_ERROR: {STATUS_PENDING},
    STATUS_REJECTED: {STATUS_PENDING},
    STATUS_ACCEPTED: set(),
}

# Transitions that only an explicit operator resend may take
RESEND_ONLY = {(STATUS_REJECTED, STATUS_PENDING)}

IN_FLIGHT_STATUSES = (STATUS_VALIDATING, STATUS_SENT)


def badge_for(status: str) -> str:
    return STATUS_BADGES.get(status, status)


def can_transition(current: str, target: str, *, resend: bool = False) -> bool:
    if target not in ALLOWED_TRANSITIONS.get(current, set()):
        return False
    if (current, target) in RESEND_ONLY and not resend:
        return False
    return True


def transition(document, target: str, *, resend: bool = False) -> str:
    """Move document to target status. Returns the previous status."""
    current = document.status
    if not can_transition(current, target, resend=resend):
        raise InvoiceStateError(
            f"{document.document_kind} {document.id}: illegal transition {current} -> {target}"
        )
    document.status = target
    if target == STATUS_ACCEPTED:
        document.is_valid = True
    elif target == STATUS_REJECTED:
        document.is_valid = False
    else:
        document.is_valid = None
    return current


# =============================================================================
# SUBMISSION OUTCOMES
# =============================================================================

def mark_validating(document, now: datetime) -> str:
    previous = transition(document, STATUS_VALIDATING)
    document.sent_at = now
    return previous


def mark_sent(document, zip_key: str, now: datetime, message: str | None = None) -> str:
    previous = transition(document, STATUS_SENT)
    document.zip_key = zip_key
    document.poll_count = 0
    document.validation_message = message
    document.validation_checked_at = now
    document.error_kind = None
    return previous


def mark_accepted(document, message: str, now: datetime) -> str:
    previous = transition(document, STATUS_ACCEPTED)
    document.validation_message = message
    document.accepted_at = now
    document.validation_checked_at = now
    document.error_kind = None
    return previous


def mark_rejected(document, message: str, now: datetime) -> str:
    previous = transition(document, STATUS_REJECTED)
    document.validation_message = message
    document.validation_checked_at = now
    document.error_kind = None
    return previous


def mark_failed(document, error_kind: str, message: str, *, max_retries: int) -> tuple[str, bool]:
    """
    Move document to error and charge the automatic-retry budget.

    Returns (previous status, alert_due). Transient and unexpected failures
    are retried until transient_failures reaches max_retries; every other
    kind needs an operator straight away.
    """
    previous = transition(document, STATUS_ERROR)
    document.error_kind = error_kind
    document.last_error = message
    document.validation_message = message

    if error_kind in RETRYABLE_ERROR_KINDS:
        document.retry_count = (document.retry_count or 0) + 1
        document.transient_failures = (document.transient_failures or 0) + 1
        return previous, document.transient_failures >= max_retries
    return previous, True


def is_auto_retryable(document, max_retries: int) -> bool:
    return (
        document.status == STATUS_ERROR
        and document.error_kind in RETRYABLE_ERROR_KINDS
        and (document.transient_failures or 0) < max_retries
    )


def requeue(document) -> str:
    """Automatic retry: error -> pending, budget untouched."""
    if document.status != STATUS_ERROR:
        raise InvoiceStateError(f"Only errored documents are requeued (status {document.status})")
    return transition(document, STATUS_PENDING)


def resend(document) -> str:
    """
    Operator resend: error/rejected -> pending.

    Increments retry_count and restores the automatic-retry budget. Fails for
    accepted documents and for documents with a submission in flight.
    """
    if document.status == STATUS_ACCEPTED:
        raise InvoiceStateError(
            f"{document.document_kind} {document.full_number or document.id} already accepted by DIAN"
        )
    if document.status in IN_FLIGHT_STATUSES:
        raise InvoiceStateError(
            f"{document.document_kind} {document.full_number or document.id} has a submission in flight"
        )
    if document.status == STATUS_PENDING:
        raise InvoiceStateError(
            f"{document.document_kind} {document.full_number or document.id} is already queued"
        )

    previous = transition(document, STATUS_PENDING, resend=True)
    document.retry_count = (document.retry_count or 0) + 1
    document.transient_failures = 0
    document.error_kind = None
    document.zip_key = None
    return previous


def recover_interrupted(document, message: str) -> str:
    """A validating document whose call outlived any timeout: its fate is unknown."""
    if document.status != STATUS_VALIDATING:
        raise InvoiceStateError(f"Document is not in flight (status {document.status})")
    previous = transition(document, STATUS_ERROR)
    document.error_kind = ERROR_TRANSIENT
    document.last_error = message
    document.validation_message = message
    return previous
