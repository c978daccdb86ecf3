# Overview: Flask API routes for closing reports; parses input and returns JSON responses.

from flask import Blueprint, jsonify, request

from fiscalpos.services import closing_report_service
from fiscalpos.time_utils import parse_iso_date, parse_iso_datetime


reports_bp = Blueprint("reports", __name__, url_prefix="/api/reports")


def _boundary(value: str | None):
    """Plain dates are local calendar days; anything with a time is an instant."""
    if not value:
        return None
    if "T" in value:
        return parse_iso_datetime(value)
    return parse_iso_date(value)


@reports_bp.get("/closing")
def closing_report():
    register_shift_id = request.args.get("register_shift_id", type=int)
    period = request.args.get("period")
    if period is None and register_shift_id is None:
        period = "day"

    try:
        report = closing_report_service.closing_report(
            period,
            parse_iso_date(request.args.get("date")),
            start=_boundary(request.args.get("start")),
            end=_boundary(request.args.get("end")),
            register_shift_id=register_shift_id,
        )
        return jsonify(report), 200
    except closing_report_service.ReportError as exc:
        return jsonify({"error": str(exc)}), 400
    except ValueError as exc:
        return jsonify({"error": f"Invalid date: {exc}"}), 400
