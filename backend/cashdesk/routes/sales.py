# Overview: Flask API routes for sales, refunds and fiscalization.

"""
Sales API Routes

DESIGN:
- A sale posts its payments to the open cash session in the same transaction
- Refunds post to the facility's currently open session
- Fiscalization errors return the gateway's message verbatim (502)
"""

from flask import Blueprint, current_app, jsonify, request

from ..services import fiscal_service, sale_service
from ..validation import CashDeskError, ValidationError, coerce_id, optional_text
from .errors import error_response


sales_bp = Blueprint("sales", __name__, url_prefix="/api/sales")


def _list_field(data: dict, name: str) -> list:
    value = data.get(name)
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValidationError(f"{name} must be a list")
    return value


@sales_bp.post("/")
@sales_bp.post("")
def create_sale_route():
    """
    Record a sale against an open cash session.

    Request body:
    {
        "session_id": 3,
        "cashier_id": 7,
        "items": [{"ref_id": "svc-1", "type": "service", "name": "Haircut",
                   "qty": 1, "unit_price_cents": 120000}],
        "payments": [{"method": "cash", "amount_cents": 150000, "change_cents": 30000}],
        "summary": {"tip_cents": 0},  (optional)
        "client_ref": "c-42",  (optional)
        "note": "..."  (optional)
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        summary = data.get("summary")
        if summary is not None and not isinstance(summary, dict):
            raise ValidationError("summary must be an object")

        sale = sale_service.record_sale(
            session_id=coerce_id(data.get("session_id"), "session_id"),
            items=_list_field(data, "items"),
            payments=_list_field(data, "payments"),
            cashier_id=coerce_id(data.get("cashier_id"), "cashier_id"),
            summary=summary,
            client_ref=data.get("client_ref"),
            appointment_ref=data.get("appointment_ref"),
            note=data.get("note"),
        )
        return jsonify({"sale": sale.to_dict()}), 201

    except CashDeskError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to record sale")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.get("/<int:sale_id>")
def get_sale_route(sale_id: int):
    try:
        return jsonify({"sale": sale_service.get_sale(sale_id).to_dict()}), 200
    except CashDeskError as e:
        return error_response(e)


@sales_bp.post("/<int:sale_id>/refund")
def refund_sale_route(sale_id: int):
    """
    Refund a sale (fully or partially).

    Request body: {"cashier_id": 7, "payments": [{"method": "cash", "amount_cents": 50000}], "reason": "..."}
    """
    try:
        data = request.get_json(silent=True) or {}
        refund = sale_service.refund_sale(
            sale_id,
            payments=_list_field(data, "payments"),
            cashier_id=coerce_id(data.get("cashier_id"), "cashier_id"),
            reason=optional_text(data.get("reason"), "reason", max_length=2000),
        )
        return jsonify({"refund": refund.to_dict()}), 201

    except CashDeskError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to refund sale")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.post("/<int:sale_id>/fiscalize")
def fiscalize_route(sale_id: int):
    """
    Fiscalize a sale (reset, settle, submit; one retry while "in progress").

    Request body: {"facility_id": 2}  (optional, defaults to the sale's facility)
    """
    try:
        data = request.get_json(silent=True) or {}
        facility_id = data.get("facility_id")
        sale = fiscal_service.fiscalize(
            sale_id,
            facility_id=coerce_id(facility_id, "facility_id") if facility_id is not None else None,
        )
        return jsonify({"sale": sale.to_dict()}), 200

    except CashDeskError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to fiscalize sale")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.post("/<int:sale_id>/fiscalize/reset")
def reset_fiscal_route(sale_id: int):
    """Move an errored sale back to fiscal status pending."""
    try:
        sale = fiscal_service.reset_fiscal_status(sale_id)
        return jsonify({"sale": sale.to_dict()}), 200
    except CashDeskError as e:
        return error_response(e)
