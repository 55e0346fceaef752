# Overview: Flask API routes for cash reports (daily/weekly/monthly aggregates and analytics).

from datetime import date

from flask import Blueprint, current_app, jsonify, request

from ..services import reconciliation_service
from ..validation import CashDeskError, ValidationError, coerce_id
from cashdesk.time_utils import parse_iso_date, parse_iso_datetime, utcnow
from .errors import error_response


reports_bp = Blueprint("cash_reports", __name__, url_prefix="/api/cash-reports")


def _scope() -> tuple[int, int | None]:
    tenant_id = coerce_id(request.args.get("tenant_id"), "tenant_id")
    facility_id = request.args.get("facility_id", type=int)
    return tenant_id, facility_id


def _day_arg() -> date:
    try:
        return parse_iso_date(request.args.get("date")) or utcnow().date()
    except ValueError:
        raise ValidationError("date must be YYYY-MM-DD")


@reports_bp.get("/daily")
def daily_report_route():
    """Query: tenant_id, facility_id (optional), date=YYYY-MM-DD (default today, UTC)."""
    try:
        tenant_id, facility_id = _scope()
        report = reconciliation_service.daily_report(tenant_id, facility_id, _day_arg())
        return jsonify(report), 200
    except CashDeskError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to build daily cash report")
        return jsonify({"error": "Internal server error"}), 500


@reports_bp.get("/weekly")
def weekly_report_route():
    """Query: tenant_id, facility_id, date=any day in the week (Monday-based)."""
    try:
        tenant_id, facility_id = _scope()
        report = reconciliation_service.weekly_report(tenant_id, facility_id, _day_arg())
        return jsonify(report), 200
    except CashDeskError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to build weekly cash report")
        return jsonify({"error": "Internal server error"}), 500


@reports_bp.get("/monthly")
def monthly_report_route():
    """Query: tenant_id, facility_id, year, month (default current month)."""
    try:
        tenant_id, facility_id = _scope()
        today = utcnow().date()
        year = request.args.get("year", default=today.year, type=int)
        month = request.args.get("month", default=today.month, type=int)
        report = reconciliation_service.monthly_report(tenant_id, facility_id, year, month)
        return jsonify(report), 200
    except CashDeskError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to build monthly cash report")
        return jsonify({"error": "Internal server error"}), 500


@reports_bp.get("/analytics")
def analytics_route():
    """Query: tenant_id, facility_id, start, end (ISO-8601; end exclusive)."""
    try:
        tenant_id, facility_id = _scope()
        try:
            start = parse_iso_datetime(request.args.get("start"))
            end = parse_iso_datetime(request.args.get("end"))
        except ValueError:
            raise ValidationError("start/end must be ISO-8601 datetimes")
        if not start or not end:
            raise ValidationError("start and end are required")

        analytics = reconciliation_service.cash_analytics(tenant_id, facility_id, start, end)
        return jsonify(analytics), 200
    except CashDeskError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to build cash analytics")
        return jsonify({"error": "Internal server error"}), 500
