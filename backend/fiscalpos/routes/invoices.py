# Overview: Flask API routes for electronic invoices, credit/debit notes and fiscal alerts.

"""
Electronic Invoice API Routes

WHY: Operators follow the validation queue from the POS: status badges,
resend after an error or rejection, corrections through notes, and alerts
that need a human.

DESIGN:
- Gateway traffic happens only in the validation worker; these routes never
  call the gateway
- Resend keeps the document's number
- Only documents that never reached the gateway can be deleted
"""

from flask import Blueprint, request, jsonify, current_app

from ..models.fiscal import KIND_INVOICE, KIND_CREDIT_NOTE, KIND_DEBIT_NOTE, DOCUMENT_STATUSES
from ..repositories import invoices as invoices_repo
from ..repositories.invoices import DocumentDeleteError
from ..services import alert_service, invoice_service, note_service
from ..services.alert_service import AlertError
from ..services.invoice_service import InvoiceNotFound
from ..services.invoice_state import InvoiceStateError
from ..services.note_service import NoteError


invoices_bp = Blueprint("invoices", __name__, url_prefix="/api/invoices")

NOTE_KINDS = {"credit-notes": KIND_CREDIT_NOTE, "debit-notes": KIND_DEBIT_NOTE}


# =============================================================================
# INVOICES
# =============================================================================

@invoices_bp.get("/")
@invoices_bp.get("")
def list_invoices_route():
    status = request.args.get("status")
    if status and status not in DOCUMENT_STATUSES:
        return jsonify({"error": f"Invalid status: {status}"}), 400
    limit = min(request.args.get("limit", 50, type=int), 200)
    offset = request.args.get("offset", 0, type=int)

    invoices = invoices_repo.list_invoices(status=status, limit=limit, offset=offset)
    return jsonify({"invoices": [invoice.to_dict() for invoice in invoices]}), 200


@invoices_bp.get("/<int:invoice_id>")
def get_invoice_route(invoice_id: int):
    try:
        invoice = invoice_service.get_document(KIND_INVOICE, invoice_id)
    except InvoiceNotFound as e:
        return jsonify({"error": str(e)}), 404

    data = invoice.to_dict()
    data.update(note_service.notes_for_invoice(invoice.id))
    data["credit_notes"] = [note.to_dict() for note in data["credit_notes"]]
    data["debit_notes"] = [note.to_dict() for note in data["debit_notes"]]
    return jsonify({"invoice": data}), 200


@invoices_bp.post("/<int:invoice_id>/resend")
def resend_invoice_route(invoice_id: int):
    return _resend(KIND_INVOICE, invoice_id)


@invoices_bp.delete("/<int:invoice_id>")
def delete_invoice_route(invoice_id: int):
    """Delete an invoice that never reached the gateway."""
    try:
        invoice_service.delete_unsent(KIND_INVOICE, invoice_id)
        return jsonify({"deleted": True}), 200
    except InvoiceNotFound as e:
        return jsonify({"error": str(e)}), 404
    except DocumentDeleteError as e:
        return jsonify({"error": str(e)}), 409
    except Exception:
        current_app.logger.exception("Failed to delete invoice")
        return jsonify({"error": "Internal server error"}), 500


def _resend(kind: str, document_id: int):
    try:
        document = invoice_service.resend(kind, document_id)
        return jsonify({"document": document.to_dict()}), 200
    except InvoiceNotFound as e:
        return jsonify({"error": str(e)}), 404
    except InvoiceStateError as e:
        return jsonify({"error": str(e)}), 409
    except Exception:
        current_app.logger.exception("Failed to resend %s", kind)
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# CREDIT / DEBIT NOTES
# =============================================================================

@invoices_bp.post("/<int:invoice_id>/<note_path>")
def create_note_route(invoice_id: int, note_path: str):
    """
    Issue a credit or debit note against an accepted invoice.

    Request body:
    {
        "amount_cents": 50000,
        "reason": "Devolución parcial",
        "discrepancy_code": 1,      (optional)
        "created_by": 7             (optional)
    }
    """
    kind = NOTE_KINDS.get(note_path)
    if kind is None:
        return jsonify({"error": "Not found"}), 404

    try:
        data = request.get_json() or {}
        amount_cents = data.get("amount_cents")
        reason = data.get("reason")
        if amount_cents is None or not reason:
            return jsonify({"error": "amount_cents and reason required"}), 400

        kwargs = {"created_by": data.get("created_by")}
        if data.get("discrepancy_code") is not None:
            kwargs["discrepancy_code"] = data["discrepancy_code"]

        if kind == KIND_CREDIT_NOTE:
            note = note_service.issue_credit_note(invoice_id, amount_cents, reason, **kwargs)
        else:
            note = note_service.issue_debit_note(invoice_id, amount_cents, reason, **kwargs)
        return jsonify({"note": note.to_dict()}), 201

    except NoteError as e:
        if str(e) == "Invoice not found":
            return jsonify({"error": str(e)}), 404
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to issue %s", kind)
        return jsonify({"error": "Internal server error"}), 500


@invoices_bp.get("/<note_path>/<int:note_id>")
def get_note_route(note_path: str, note_id: int):
    kind = NOTE_KINDS.get(note_path)
    if kind is None:
        return jsonify({"error": "Not found"}), 404
    try:
        note = invoice_service.get_document(kind, note_id)
    except InvoiceNotFound as e:
        return jsonify({"error": str(e)}), 404
    return jsonify({"note": note.to_dict()}), 200


@invoices_bp.post("/<note_path>/<int:note_id>/resend")
def resend_note_route(note_path: str, note_id: int):
    kind = NOTE_KINDS.get(note_path)
    if kind is None:
        return jsonify({"error": "Not found"}), 404
    return _resend(kind, note_id)


# =============================================================================
# ALERTS
# =============================================================================

@invoices_bp.get("/alerts")
def list_alerts_route():
    include_acknowledged = request.args.get("all", "false").lower() == "true"
    alerts = alert_service.list_alerts(include_acknowledged=include_acknowledged)
    return jsonify({"alerts": [alert.to_dict() for alert in alerts]}), 200


@invoices_bp.post("/alerts/<int:alert_id>/acknowledge")
def acknowledge_alert_route(alert_id: int):
    try:
        data = request.get_json(silent=True) or {}
        alert = alert_service.acknowledge_alert(alert_id, data.get("acknowledged_by"))
        return jsonify({"alert": alert.to_dict()}), 200
    except AlertError as e:
        return jsonify({"error": str(e)}), 404
    except Exception:
        current_app.logger.exception("Failed to acknowledge alert")
        return jsonify({"error": "Internal server error"}), 500
