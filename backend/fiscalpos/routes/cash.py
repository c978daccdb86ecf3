# Overview: Flask API routes for cash register shifts; open, movements, totals and close.

"""
Cash Register API Routes

DESIGN:
- Shift lifecycle: open -> close (immutable once closed)
- Deposits and withdrawals are append-only movements on an open shift
- Close freezes expected cash, counted cash and the difference
"""

from flask import Blueprint, request, jsonify, current_app

from ..repositories import cash as cash_repo
from ..services import cash_ledger_service
from ..services.cash_ledger_service import ShiftError, AlreadyOpen, NotOpen


cash_bp = Blueprint("cash", __name__, url_prefix="/api/cash")


@cash_bp.post("/shifts")
def open_shift_route():
    """
    Open a shift.

    Request body:
    {
        "employee_id": 7,
        "opening_cash_cents": 5000000,
        "register_name": "Caja 1",    (optional)
        "notes": "..."                (optional)
    }
    """
    try:
        data = request.get_json() or {}
        employee_id = data.get("employee_id")
        opening_cash_cents = data.get("opening_cash_cents")
        if employee_id is None or opening_cash_cents is None:
            return jsonify({"error": "employee_id and opening_cash_cents required"}), 400
        if not isinstance(opening_cash_cents, int):
            return jsonify({"error": "opening_cash_cents must be an integer"}), 400

        shift = cash_ledger_service.open_shift(
            employee_id,
            opening_cash_cents,
            register_name=data.get("register_name"),
            notes=data.get("notes"),
        )
        return jsonify({"shift": shift.to_dict()}), 201

    except AlreadyOpen as e:
        return jsonify({"error": str(e)}), 409
    except ShiftError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to open shift")
        return jsonify({"error": "Internal server error"}), 500


@cash_bp.get("/shifts")
def list_shifts_route():
    status = request.args.get("status")
    employee_id = request.args.get("employee_id", type=int)
    limit = min(request.args.get("limit", 50, type=int), 200)
    shifts = cash_repo.list_shifts(status=status, employee_id=employee_id, limit=limit)
    return jsonify({"shifts": [shift.to_dict() for shift in shifts]}), 200


@cash_bp.get("/shifts/open/<int:employee_id>")
def get_open_shift_route(employee_id: int):
    shift = cash_ledger_service.get_open_shift(employee_id)
    if not shift:
        return jsonify({"error": f"Employee {employee_id} has no open shift"}), 404
    return jsonify({"shift": shift.to_dict()}), 200


@cash_bp.get("/shifts/<int:shift_id>")
def get_shift_route(shift_id: int):
    try:
        summary = cash_ledger_service.shift_summary(shift_id)
    except NotOpen as e:
        return jsonify({"error": str(e)}), 404
    return jsonify(summary), 200


@cash_bp.get("/shifts/<int:shift_id>/totals")
def shift_totals_route(shift_id: int):
    """Live expected cash and sales summary."""
    try:
        totals = cash_ledger_service.shift_totals(shift_id)
    except NotOpen as e:
        return jsonify({"error": str(e)}), 404
    return jsonify(totals), 200


@cash_bp.post("/shifts/<int:shift_id>/movements")
def record_movement_route(shift_id: int):
    """
    Record a deposit or withdrawal.

    Request body:
    {
        "movement_type": "withdrawal",
        "amount_cents": 2000000,
        "reason": "Cash drop",
        "created_by": 7,           (optional)
        "reference": "DROP-12"     (optional)
    }
    """
    try:
        data = request.get_json() or {}
        movement_type = data.get("movement_type")
        amount_cents = data.get("amount_cents")
        if not movement_type or amount_cents is None:
            return jsonify({"error": "movement_type and amount_cents required"}), 400
        if not isinstance(amount_cents, int):
            return jsonify({"error": "amount_cents must be an integer"}), 400

        movement = cash_ledger_service.record_movement(
            shift_id,
            movement_type,
            amount_cents,
            data.get("reason"),
            created_by=data.get("created_by"),
            reference=data.get("reference"),
        )
        return jsonify({"movement": movement.to_dict()}), 201

    except NotOpen as e:
        return jsonify({"error": str(e)}), 409
    except ShiftError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to record cash movement")
        return jsonify({"error": "Internal server error"}), 500


@cash_bp.get("/shifts/<int:shift_id>/movements")
def list_movements_route(shift_id: int):
    movements = cash_ledger_service.list_movements(shift_id)
    return jsonify({"movements": [m.to_dict() for m in movements]}), 200


@cash_bp.post("/shifts/<int:shift_id>/close")
def close_shift_route(shift_id: int):
    """
    Close a shift with the operator's cash count.

    Request body:
    {
        "counted_cash_cents": 7000000,
        "notes": "...",        (optional)
        "closed_by": 3         (optional)
    }
    """
    try:
        data = request.get_json() or {}
        counted = data.get("counted_cash_cents")
        if counted is None:
            return jsonify({"error": "counted_cash_cents required"}), 400
        if not isinstance(counted, int):
            return jsonify({"error": "counted_cash_cents must be an integer"}), 400

        summary = cash_ledger_service.close_shift(
            shift_id,
            counted,
            data.get("notes"),
            closed_by=data.get("closed_by"),
        )
        return jsonify(summary), 200

    except NotOpen as e:
        return jsonify({"error": str(e)}), 409
    except ShiftError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to close shift")
        return jsonify({"error": "Internal server error"}), 500
