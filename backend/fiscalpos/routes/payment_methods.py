# Overview: Flask API routes for the payment method registry.

from flask import Blueprint, request, jsonify, current_app

from ..services import payment_method_service
from ..services.payment_method_service import PaymentMethodError


payment_methods_bp = Blueprint("payment_methods", __name__, url_prefix="/api/payment-methods")


@payment_methods_bp.get("/")
@payment_methods_bp.get("")
def list_payment_methods_route():
    include_inactive = request.args.get("include_inactive", "false").lower() == "true"
    methods = payment_method_service.list_payment_methods(include_inactive=include_inactive)
    return jsonify({"payment_methods": [m.to_dict() for m in methods]}), 200


@payment_methods_bp.post("/")
@payment_methods_bp.post("")
def create_payment_method_route():
    """
    Request body:
    {
        "name": "Nequi",
        "method_type": "digital",
        "affects_cash_drawer": false,
        "include_in_sales_summary": true,
        "dian_payment_method_id": 47,
        "requires_reference": true
    }
    """
    try:
        data = request.get_json() or {}
        if not data.get("name"):
            return jsonify({"error": "name required"}), 400

        method = payment_method_service.create_payment_method(
            data["name"],
            method_type=data.get("method_type", "other"),
            affects_cash_drawer=data.get("affects_cash_drawer", True),
            include_in_sales_summary=data.get("include_in_sales_summary", True),
            dian_payment_method_id=data.get("dian_payment_method_id"),
            requires_reference=data.get("requires_reference", False),
            display_order=data.get("display_order", 0),
        )
        return jsonify({"payment_method": method.to_dict()}), 201

    except PaymentMethodError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to create payment method")
        return jsonify({"error": "Internal server error"}), 500


@payment_methods_bp.post("/<int:method_id>/deactivate")
def deactivate_payment_method_route(method_id: int):
    try:
        method = payment_method_service.deactivate_payment_method(method_id)
        return jsonify({"payment_method": method.to_dict()}), 200
    except PaymentMethodError as e:
        status = 404 if str(e) == "Payment method not found" else 409
        return jsonify({"error": str(e)}), status
