# Overview: Flask API routes for cash sessions; parses input and returns JSON responses.

"""
Cash Session API Routes

DESIGN:
- Session lifecycle: open -> (count, verify, handle variance)* -> close
- Counting is read-only; verification and variance handling are audit events
- Reconciliation is read-only and provisional while the session is open
"""

from flask import Blueprint, current_app, jsonify, request

from ..services import cash_session_service, reconciliation_service
from ..validation import CashDeskError, coerce_cents, coerce_id, optional_text
from cashdesk.time_utils import parse_iso_datetime
from .errors import error_response


cash_sessions_bp = Blueprint("cash_sessions", __name__, url_prefix="/api/cash-sessions")


def _body() -> dict:
    return request.get_json(silent=True) or {}


# =============================================================================
# LIFECYCLE
# =============================================================================

@cash_sessions_bp.post("/")
@cash_sessions_bp.post("")
def open_session_route():
    """
    Open a cash session.

    Request body:
    {
        "tenant_id": 1,
        "facility_id": 2,
        "opening_float_cents": 500000,
        "operator_id": 7,
        "note": "Morning shift"  (optional)
    }
    """
    try:
        data = _body()
        session = cash_session_service.open_session(
            tenant_id=coerce_id(data.get("tenant_id"), "tenant_id"),
            facility_id=coerce_id(data.get("facility_id"), "facility_id"),
            opening_float_cents=coerce_cents(data.get("opening_float_cents"), "opening_float_cents"),
            operator_id=coerce_id(data.get("operator_id"), "operator_id"),
            note=optional_text(data.get("note"), "note", max_length=2000),
        )
        return jsonify({"session": cash_session_service.session_to_dict(session)}), 201

    except CashDeskError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to open cash session")
        return jsonify({"error": "Internal server error"}), 500


@cash_sessions_bp.get("/")
@cash_sessions_bp.get("")
def list_sessions_route():
    """
    List sessions for a tenant.

    Query: tenant_id (required), facility_id, status (OPEN|CLOSED), start, end, limit
    """
    try:
        sessions = cash_session_service.list_sessions(
            tenant_id=coerce_id(request.args.get("tenant_id"), "tenant_id"),
            facility_id=request.args.get("facility_id", type=int),
            status=request.args.get("status"),
            opened_from=parse_iso_datetime(request.args.get("start")),
            opened_to=parse_iso_datetime(request.args.get("end")),
            limit=request.args.get("limit", type=int),
        )
        return jsonify({"sessions": [cash_session_service.session_to_dict(s) for s in sessions]}), 200

    except CashDeskError as e:
        return error_response(e)
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to list cash sessions")
        return jsonify({"error": "Internal server error"}), 500


@cash_sessions_bp.get("/current")
def current_session_route():
    """Currently open session for ?tenant_id=&facility_id= (null when none)."""
    try:
        session = cash_session_service.get_open_session(
            coerce_id(request.args.get("tenant_id"), "tenant_id"),
            coerce_id(request.args.get("facility_id"), "facility_id"),
        )
        payload = cash_session_service.session_to_dict(session) if session else None
        return jsonify({"session": payload}), 200

    except CashDeskError as e:
        return error_response(e)


@cash_sessions_bp.get("/<int:session_id>")
def get_session_route(session_id: int):
    try:
        session = cash_session_service.get_session(session_id)
        return jsonify({"session": cash_session_service.session_to_dict(session)}), 200
    except CashDeskError as e:
        return error_response(e)


@cash_sessions_bp.post("/<int:session_id>/count")
def count_cash_route(session_id: int):
    """
    Compare a counted amount with expected cash (no changes are saved).

    Request body: {"counted_cash_cents": 620000, "note": "..."}
    """
    try:
        data = _body()
        result = cash_session_service.count_cash(
            session_id,
            coerce_cents(data.get("counted_cash_cents"), "counted_cash_cents"),
            note=optional_text(data.get("note"), "note", max_length=2000),
        )
        return jsonify({"result": result.to_dict()}), 200

    except CashDeskError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to count cash")
        return jsonify({"error": "Internal server error"}), 500


@cash_sessions_bp.post("/<int:session_id>/verify")
def verify_cash_route(session_id: int):
    """
    Record a confirmed count.

    Request body: {"actual_cash_cents": 620000, "operator_id": 7, "note": "..."}
    """
    try:
        data = _body()
        result = cash_session_service.verify_cash_count(
            session_id,
            coerce_cents(data.get("actual_cash_cents"), "actual_cash_cents"),
            operator_id=coerce_id(data.get("operator_id"), "operator_id"),
            note=optional_text(data.get("note"), "note", max_length=2000),
        )
        return jsonify({"result": result.to_dict()}), 200

    except CashDeskError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to verify cash count")
        return jsonify({"error": "Internal server error"}), 500


@cash_sessions_bp.post("/<int:session_id>/variance")
def handle_variance_route(session_id: int):
    """
    Record how a variance is handled.

    Request body:
    {
        "actual_cash_cents": 560000,
        "action": "accept" | "investigate" | "adjust",
        "reason": "Miscounted change",
        "operator_id": 7
    }
    """
    try:
        data = _body()
        result = cash_session_service.handle_variance(
            session_id,
            coerce_cents(data.get("actual_cash_cents"), "actual_cash_cents"),
            action=optional_text(data.get("action"), "action", max_length=32),
            reason=optional_text(data.get("reason"), "reason", max_length=255),
            operator_id=coerce_id(data.get("operator_id"), "operator_id"),
            note=optional_text(data.get("note"), "note", max_length=2000),
        )
        return jsonify({"result": result.to_dict()}), 200

    except CashDeskError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to handle variance")
        return jsonify({"error": "Internal server error"}), 500


@cash_sessions_bp.post("/<int:session_id>/close")
def close_session_route(session_id: int):
    """
    Close a session. Expected cash and variance are frozen.

    Request body: {"closing_count_cents": 620000, "operator_id": 7, "note": "..."}
    """
    try:
        data = _body()
        session = cash_session_service.close_session(
            session_id,
            coerce_cents(data.get("closing_count_cents"), "closing_count_cents"),
            operator_id=coerce_id(data.get("operator_id"), "operator_id"),
            note=optional_text(data.get("note"), "note", max_length=2000),
        )
        return jsonify({"session": cash_session_service.session_to_dict(session)}), 200

    except CashDeskError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to close cash session")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# REPORTING
# =============================================================================

@cash_sessions_bp.get("/<int:session_id>/reconciliation")
def reconciliation_route(session_id: int):
    try:
        report = reconciliation_service.reconcile(session_id)
        return jsonify({"report": report.to_dict()}), 200
    except CashDeskError as e:
        return error_response(e)


@cash_sessions_bp.get("/<int:session_id>/events")
def session_events_route(session_id: int):
    try:
        events = cash_session_service.get_session_events(session_id)
        return jsonify({"events": [e.to_dict() for e in events]}), 200
    except CashDeskError as e:
        return error_response(e)
