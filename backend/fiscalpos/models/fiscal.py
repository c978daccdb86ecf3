from __future__ import annotations

from ..extensions import db
from fiscalpos.time_utils import to_utc_z


# =============================================================================
# DOCUMENT KINDS / STATUSES
# =============================================================================

KIND_INVOICE = "invoice"
KIND_CREDIT_NOTE = "credit_note"
KIND_DEBIT_NOTE = "debit_note"

DOCUMENT_KINDS = (KIND_INVOICE, KIND_CREDIT_NOTE, KIND_DEBIT_NOTE)

STATUS_PENDING = "pending"
STATUS_VALIDATING = "validating"  # submission in flight
STATUS_SENT = "sent"  # gateway acknowledged, DIAN validation asynchronous
STATUS_ACCEPTED = "accepted"
STATUS_REJECTED = "rejected"
STATUS_ERROR = "error"

DOCUMENT_STATUSES = (
    STATUS_PENDING,
    STATUS_VALIDATING,
    STATUS_SENT,
    STATUS_ACCEPTED,
    STATUS_REJECTED,
    STATUS_ERROR,
)

# Statuses that count as "issued" for numbering ranges and note totals
ISSUED_STATUSES = (STATUS_ACCEPTED, STATUS_SENT)

STATUS_BADGES = {
    STATUS_PENDING: "Pendiente",
    STATUS_VALIDATING: "Enviada",
    STATUS_SENT: "Enviada",
    STATUS_ACCEPTED: "Aceptada",
    STATUS_REJECTED: "Rechazada",
    STATUS_ERROR: "Error",
}

# error_kind values
ERROR_TRANSIENT = "transient"
ERROR_UNEXPECTED = "unexpected"
ERROR_CREDENTIALS = "credentials"
ERROR_CONFIGURATION = "configuration"
ERROR_NUMBERING = "numbering"

RETRYABLE_ERROR_KINDS = (ERROR_TRANSIENT, ERROR_UNEXPECTED)


class Resolution(db.Model):
    """
    DIAN numbering resolution.

    Authorizes a prefix and the closed range [range_from, range_to] within
    [valid_from, valid_to]. last_allocated starts at range_from - 1 and only
    ever moves forward.
    """
    __tablename__ = "resolutions"
    __table_args__ = (
        db.UniqueConstraint("kind", "prefix", "resolution_number", name="uq_resolutions_kind_prefix_number"),
        db.CheckConstraint("last_allocated <= range_to", name="ck_resolutions_within_range"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    kind = db.Column(db.String(16), nullable=False, default=KIND_INVOICE, index=True)
    resolution_number = db.Column(db.String(32), nullable=False)
    prefix = db.Column(db.String(8), nullable=False)

    range_from = db.Column(db.Integer, nullable=False)
    range_to = db.Column(db.Integer, nullable=False)
    last_allocated = db.Column(db.Integer, nullable=False)

    valid_from = db.Column(db.Date, nullable=False)
    valid_to = db.Column(db.Date, nullable=False)

    technical_key = db.Column(db.String(128), nullable=True)
    alert_threshold = db.Column(db.Integer, nullable=False, default=100)
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    @property
    def remaining(self) -> int:
        return max(self.range_to - self.last_allocated, 0)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind,
            "resolution_number": self.resolution_number,
            "prefix": self.prefix,
            "range_from": self.range_from,
            "range_to": self.range_to,
            "last_allocated": self.last_allocated,
            "remaining": self.remaining,
            "valid_from": self.valid_from.isoformat(),
            "valid_to": self.valid_to.isoformat(),
            "alert_threshold": self.alert_threshold,
            "is_active": self.is_active,
        }


class FiscalDocumentMixin:
    """
    Submission/validation state shared by invoices and notes.

    status is written only through services.invoice_state.
    """
    prefix = db.Column(db.String(8), nullable=True)
    number = db.Column(db.Integer, nullable=True)  # assigned once, never reassigned

    status = db.Column(db.String(16), nullable=False, default=STATUS_PENDING, index=True)
    is_valid = db.Column(db.Boolean, nullable=True)  # None until accepted/rejected
    validation_message = db.Column(db.Text, nullable=True)

    # Gateway identifiers
    cufe = db.Column(db.String(128), nullable=True)
    uuid = db.Column(db.String(128), nullable=True)
    qr_code = db.Column(db.Text, nullable=True)
    zip_key = db.Column(db.String(128), nullable=True)

    request_payload = db.Column(db.Text, nullable=True)
    gateway_response = db.Column(db.Text, nullable=True)

    sent_at = db.Column(db.DateTime(timezone=True), nullable=True)
    accepted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    validation_checked_at = db.Column(db.DateTime(timezone=True), nullable=True)
    poll_count = db.Column(db.Integer, nullable=False, default=0)  # status polls since last submission

    retry_count = db.Column(db.Integer, nullable=False, default=0)
    transient_failures = db.Column(db.Integer, nullable=False, default=0)
    error_kind = db.Column(db.String(16), nullable=True)
    last_error = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    document_kind = KIND_INVOICE

    @property
    def full_number(self) -> str | None:
        if self.number is None:
            return None
        return f"{self.prefix or ''}{self.number}"

    @property
    def gateway_contacted(self) -> bool:
        return self.sent_at is not None or self.status != STATUS_PENDING or self.number is not None

    def _fiscal_fields(self) -> dict:
        return {
            "prefix": self.prefix,
            "number": self.number,
            "full_number": self.full_number,
            "status": self.status,
            "badge": STATUS_BADGES.get(self.status),
            "is_valid": self.is_valid,
            "validation_message": self.validation_message,
            "cufe": self.cufe,
            "uuid": self.uuid,
            "qr_code": self.qr_code,
            "zip_key": self.zip_key,
            "sent_at": to_utc_z(self.sent_at) if self.sent_at else None,
            "accepted_at": to_utc_z(self.accepted_at) if self.accepted_at else None,
            "validation_checked_at": to_utc_z(self.validation_checked_at) if self.validation_checked_at else None,
            "poll_count": self.poll_count,
            "retry_count": self.retry_count,
            "transient_failures": self.transient_failures,
            "error_kind": self.error_kind,
            "last_error": self.last_error,
            "created_at": to_utc_z(self.created_at),
        }


class ElectronicInvoice(FiscalDocumentMixin, db.Model):
    """
    DIAN electronic invoice for a sale (at most one per sale).

    Never deleted once the gateway has been contacted: a consumed number stays
    attached to this row whatever the outcome.
    """
    __tablename__ = "electronic_invoices"
    __table_args__ = (
        db.UniqueConstraint("prefix", "number", name="uq_electronic_invoices_prefix_number"),
        db.Index("ix_electronic_invoices_status_sent", "status", "sent_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, unique=True)
    resolution_id = db.Column(db.Integer, db.ForeignKey("resolutions.id"), nullable=True, index=True)
    send_email = db.Column(db.Boolean, nullable=False, default=False)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    sale = db.relationship("Sale", backref=db.backref("electronic_invoice", uselist=False, lazy=True))
    resolution = db.relationship("Resolution")
    __mapper_args__ = {"version_id_col": version_id}

    document_kind = KIND_INVOICE

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "document_kind": self.document_kind,
            "sale_id": self.sale_id,
            "resolution_id": self.resolution_id,
        }
        data.update(self._fiscal_fields())
        return data


class CreditNote(FiscalDocumentMixin, db.Model):
    """Credit note reducing a previously accepted invoice."""
    __tablename__ = "credit_notes"
    __table_args__ = (
        db.UniqueConstraint("prefix", "number", name="uq_credit_notes_prefix_number"),
        db.CheckConstraint("amount_cents > 0", name="ck_credit_notes_amount_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    electronic_invoice_id = db.Column(db.Integer, db.ForeignKey("electronic_invoices.id"), nullable=False, index=True)
    resolution_id = db.Column(db.Integer, db.ForeignKey("resolutions.id"), nullable=True, index=True)
    amount_cents = db.Column(db.Integer, nullable=False)
    reason = db.Column(db.String(255), nullable=False)
    discrepancy_code = db.Column(db.Integer, nullable=False, default=2)  # 2 = anulación parcial
    created_by = db.Column(db.Integer, nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    electronic_invoice = db.relationship("ElectronicInvoice", backref=db.backref("credit_notes", lazy=True))
    resolution = db.relationship("Resolution")
    __mapper_args__ = {"version_id_col": version_id}

    document_kind = KIND_CREDIT_NOTE

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "document_kind": self.document_kind,
            "electronic_invoice_id": self.electronic_invoice_id,
            "resolution_id": self.resolution_id,
            "amount_cents": self.amount_cents,
            "reason": self.reason,
            "discrepancy_code": self.discrepancy_code,
        }
        data.update(self._fiscal_fields())
        return data


class DebitNote(FiscalDocumentMixin, db.Model):
    """Debit note increasing a previously accepted invoice."""
    __tablename__ = "debit_notes"
    __table_args__ = (
        db.UniqueConstraint("prefix", "number", name="uq_debit_notes_prefix_number"),
        db.CheckConstraint("amount_cents > 0", name="ck_debit_notes_amount_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    electronic_invoice_id = db.Column(db.Integer, db.ForeignKey("electronic_invoices.id"), nullable=False, index=True)
    resolution_id = db.Column(db.Integer, db.ForeignKey("resolutions.id"), nullable=True, index=True)
    amount_cents = db.Column(db.Integer, nullable=False)
    reason = db.Column(db.String(255), nullable=False)
    discrepancy_code = db.Column(db.Integer, nullable=False, default=4)  # 4 = otros
    created_by = db.Column(db.Integer, nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    electronic_invoice = db.relationship("ElectronicInvoice", backref=db.backref("debit_notes", lazy=True))
    resolution = db.relationship("Resolution")
    __mapper_args__ = {"version_id_col": version_id}

    document_kind = KIND_DEBIT_NOTE

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "document_kind": self.document_kind,
            "electronic_invoice_id": self.electronic_invoice_id,
            "resolution_id": self.resolution_id,
            "amount_cents": self.amount_cents,
            "reason": self.reason,
            "discrepancy_code": self.discrepancy_code,
        }
        data.update(self._fiscal_fields())
        return data


class FiscalAlert(db.Model):
    """
    Operator-visible alert (persisted so it survives restarts).

    ALERT TYPES:
    - retries_exhausted: automatic retries spent, manual resend required
    - credentials: gateway refused the API token
    - configuration: endpoint or settings missing
    - numbering: resolution exhausted/expired or none active
    - resolution_near_limit: remaining numbers at or below threshold
    - validation_stalled: sent document polled FISCAL_MAX_POLLS times without a verdict
    """
    __tablename__ = "fiscal_alerts"
    __table_args__ = (
        db.Index("ix_fiscal_alerts_document", "document_type", "document_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    document_type = db.Column(db.String(16), nullable=True)  # invoice, credit_note, debit_note, resolution
    document_id = db.Column(db.Integer, nullable=True)
    alert_type = db.Column(db.String(32), nullable=False, index=True)
    message = db.Column(db.Text, nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    acknowledged_at = db.Column(db.DateTime(timezone=True), nullable=True)
    acknowledged_by = db.Column(db.Integer, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "document_type": self.document_type,
            "document_id": self.document_id,
            "alert_type": self.alert_type,
            "message": self.message,
            "created_at": to_utc_z(self.created_at),
            "acknowledged_at": to_utc_z(self.acknowledged_at) if self.acknowledged_at else None,
            "acknowledged_by": self.acknowledged_by,
        }
