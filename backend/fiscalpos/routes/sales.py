# Overview: Flask API routes for sales intake; parses input and returns JSON responses.

"""
Sales API Routes

WHY: The POS hands completed sales over here. Recording a sale moves cash in
the shift ledger and queues its electronic invoice in one transaction.
"""

from flask import Blueprint, request, jsonify, current_app

from ..services import sales_service
from ..services.sales_service import SaleError
from ..services.cash_ledger_service import ShiftError, NotOpen


sales_bp = Blueprint("sales", __name__, url_prefix="/api/sales")


def _sale_payload(sale) -> dict:
    data = sale.to_dict()
    data["lines"] = [line.to_dict() for line in sale.lines]
    data["payments"] = [payment.to_dict() for payment in sale.payments]
    invoice = sale.electronic_invoice
    data["electronic_invoice"] = invoice.to_dict() if invoice else None
    return data


@sales_bp.post("/")
@sales_bp.post("")
def create_sale_route():
    """
    Record a completed sale.

    Request body:
    {
        "register_shift_id": 1,
        "employee_id": 7,
        "lines": [{"description": "Café", "quantity": 2, "unit_price_cents": 420000,
                   "tax_type": "IVA", "tax_rate_bps": 1900}],
        "payments": [{"payment_method_id": 1, "amount_cents": 999600}],
        "discount_cents": 0,                  (optional)
        "needs_electronic_invoice": true,     (optional)
        "customer": {...},                    (optional, final consumer when omitted)
        "sale_number": "POS-0001"             (optional)
    }
    """
    try:
        data = request.get_json() or {}

        register_shift_id = data.get("register_shift_id")
        employee_id = data.get("employee_id")
        if not register_shift_id or not employee_id:
            return jsonify({"error": "register_shift_id and employee_id required"}), 400

        sale = sales_service.record_sale(
            register_shift_id,
            employee_id,
            data.get("lines") or [],
            data.get("payments") or [],
            discount_cents=data.get("discount_cents", 0),
            needs_electronic_invoice=data.get("needs_electronic_invoice", True),
            customer=data.get("customer"),
            notes=data.get("notes"),
            sale_number=data.get("sale_number"),
            send_email=bool(data.get("send_email", False)),
        )
        return jsonify({"sale": _sale_payload(sale)}), 201

    except SaleError as e:
        return jsonify({"error": str(e), "details": e.details}), 400
    except NotOpen as e:
        return jsonify({"error": str(e)}), 409
    except ShiftError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to record sale")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.get("/<int:sale_id>")
def get_sale_route(sale_id: int):
    try:
        sale = sales_service.get_sale(sale_id)
    except SaleError:
        return jsonify({"error": "Sale not found"}), 404
    return jsonify({"sale": _sale_payload(sale)}), 200


@sales_bp.post("/<int:sale_id>/refund")
def refund_sale_route(sale_id: int):
    """
    Refund all or part of a sale.

    Request body:
    {
        "employee_id": 7,
        "amount_cents": 10000,       (optional, full refundable amount when omitted)
        "reason": "Producto defectuoso",
        "register_shift_id": 2       (optional, the sale's shift when omitted)
    }
    """
    try:
        data = request.get_json() or {}
        employee_id = data.get("employee_id")
        if not employee_id:
            return jsonify({"error": "employee_id required"}), 400

        sale = sales_service.refund_sale(
            sale_id,
            data.get("amount_cents"),
            data.get("reason"),
            employee_id=employee_id,
            register_shift_id=data.get("register_shift_id"),
        )
        return jsonify({"sale": _sale_payload(sale)}), 200

    except SaleError as e:
        if str(e) == "Sale not found":
            return jsonify({"error": str(e)}), 404
        return jsonify({"error": str(e), "details": e.details}), 400
    except NotOpen as e:
        return jsonify({"error": str(e)}), 409
    except ShiftError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to refund sale")
        return jsonify({"error": "Internal server error"}), 500
