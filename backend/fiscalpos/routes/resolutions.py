# Overview: Flask API routes for DIAN numbering resolutions; setup and remaining-number status.

from flask import Blueprint, request, jsonify, current_app

from ..services import resolution_service
from ..services.resolution_service import ResolutionError
from fiscalpos.time_utils import parse_iso_date


resolutions_bp = Blueprint("resolutions", __name__, url_prefix="/api/resolutions")


@resolutions_bp.get("/")
@resolutions_bp.get("")
def list_resolutions_route():
    kind = request.args.get("kind")
    include_inactive = request.args.get("include_inactive", "true").lower() == "true"
    resolutions = resolution_service.list_resolutions(kind=kind, include_inactive=include_inactive)
    return jsonify({"resolutions": [r.to_dict() for r in resolutions]}), 200


@resolutions_bp.post("/")
@resolutions_bp.post("")
def create_resolution_route():
    """
    Register a resolution and make it the active one for its kind.

    Request body:
    {
        "kind": "invoice",
        "resolution_number": "18760000001",
        "prefix": "SETP",
        "range_from": 990000000,
        "range_to": 995000000,
        "valid_from": "2019-01-19",
        "valid_to": "2030-01-19",
        "technical_key": "fc8eac42...",   (optional)
        "alert_threshold": 100            (optional)
    }
    """
    try:
        data = request.get_json() or {}
        required = ("kind", "resolution_number", "prefix", "range_from", "range_to", "valid_from", "valid_to")
        missing = [field for field in required if data.get(field) in (None, "")]
        if missing:
            return jsonify({"error": f"Missing fields: {', '.join(missing)}"}), 400

        resolution = resolution_service.create_resolution(
            kind=data["kind"],
            resolution_number=str(data["resolution_number"]),
            prefix=data["prefix"],
            range_from=int(data["range_from"]),
            range_to=int(data["range_to"]),
            valid_from=parse_iso_date(data["valid_from"]),
            valid_to=parse_iso_date(data["valid_to"]),
            technical_key=data.get("technical_key"),
            alert_threshold=int(data.get("alert_threshold", 100)),
            activate=bool(data.get("activate", True)),
        )
        return jsonify({"resolution": resolution.to_dict()}), 201

    except (ResolutionError, ValueError) as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to create resolution")
        return jsonify({"error": "Internal server error"}), 500


@resolutions_bp.get("/<int:resolution_id>/status")
def resolution_status_route(resolution_id: int):
    try:
        return jsonify(resolution_service.resolution_status(resolution_id)), 200
    except ResolutionError as e:
        return jsonify({"error": str(e)}), 404


@resolutions_bp.post("/<int:resolution_id>/deactivate")
def deactivate_resolution_route(resolution_id: int):
    try:
        resolution = resolution_service.deactivate_resolution(resolution_id)
        return jsonify({"resolution": resolution.to_dict()}), 200
    except ResolutionError as e:
        return jsonify({"error": str(e)}), 404
