# Overview: Records sales and refunds against an open cash session.

"""
Sale Recording Service

WHY: Sales are the ledger that session totals and reconciliation are built
from. A sale and its posting to the session commit together, so the running
totals and the ledger only diverge if a posting crashes mid-way.

DESIGN PRINCIPLES:
- Amounts are integer cents; payments must cover the grand total exactly
- Cash change is returned to the customer, so only amount - change is posted
- Refunds are new Sale rows (refund_for_id) posted to the facility's
  currently open session, never to the original session
- A sale is born fiscal "pending" with a fresh correlation id
"""

from __future__ import annotations

import logging
import uuid
from typing import Iterable, Mapping

from ..extensions import db
from ..models import Employee, Sale, SaleItem, SalePayment
from ..validation import InvalidStateError, ValidationError, coerce_cents, optional_text
from cashdesk.time_utils import utcnow
from . import repository
from .cash_session_service import post_refund, post_sale
from .concurrency import run_with_retry
from .variance_service import TENDER_CASH, TENDER_KINDS


logger = logging.getLogger(__name__)


# =============================================================================
# SALE STATUS (CONSTANTS)
# =============================================================================

SALE_FINAL = "final"
SALE_PARTIAL_REFUND = "partial_refund"
SALE_REFUNDED = "refunded"

ITEM_SERVICE = "service"
ITEM_PRODUCT = "product"
ITEM_TYPES = (ITEM_SERVICE, ITEM_PRODUCT)

SALE_NUMBER_PREFIX = "S"
REFUND_NUMBER_PREFIX = "R"


# =============================================================================
# INPUT NORMALIZATION
# =============================================================================

def _normalize_items(items: Iterable[Mapping] | None) -> list[dict]:
    normalized = []
    for index, raw in enumerate(items or []):
        label = f"items[{index}]"
        if not isinstance(raw, Mapping):
            raise ValidationError(f"{label} must be an object")

        item_type = raw.get("type", ITEM_SERVICE)
        if item_type not in ITEM_TYPES:
            raise ValidationError(f"{label}.type must be one of {list(ITEM_TYPES)}")

        name = optional_text(raw.get("name"), f"{label}.name")
        if not name:
            raise ValidationError(f"{label}.name is required")

        qty = coerce_cents(raw.get("qty", 1), f"{label}.qty")
        if qty < 1:
            raise ValidationError(f"{label}.qty must be at least 1")

        unit_price = coerce_cents(raw.get("unit_price_cents"), f"{label}.unit_price_cents")
        discount = coerce_cents(raw.get("discount_cents", 0), f"{label}.discount_cents")
        tax_rate_bps = coerce_cents(raw.get("tax_rate_bps", 0), f"{label}.tax_rate_bps")

        gross = qty * unit_price
        if discount > gross:
            raise ValidationError(f"{label}.discount_cents cannot exceed the line amount")

        normalized.append({
            "ref_id": optional_text(raw.get("ref_id"), f"{label}.ref_id", max_length=64) or name[:64],
            "item_type": item_type,
            "name": name,
            "qty": qty,
            "unit_price_cents": unit_price,
            "discount_cents": discount,
            "tax_rate_bps": tax_rate_bps,
            "total_cents": gross - discount,
        })

    if not normalized:
        raise ValidationError("A sale needs at least one item")
    return normalized


def _normalize_payments(payments: Iterable[Mapping] | None) -> list[dict]:
    normalized = []
    for index, raw in enumerate(payments or []):
        label = f"payments[{index}]"
        if not isinstance(raw, Mapping):
            raise ValidationError(f"{label} must be an object")

        method = raw.get("method")
        if method not in TENDER_KINDS:
            raise ValidationError(f"Invalid tender kind: {method}. Must be one of {list(TENDER_KINDS)}")

        amount = coerce_cents(raw.get("amount_cents"), f"{label}.amount_cents")
        change = coerce_cents(raw.get("change_cents", 0), f"{label}.change_cents")
        if change and method != TENDER_CASH:
            raise ValidationError(f"{label}: change can only be given on cash payments")
        if change > amount:
            raise ValidationError(f"{label}.change_cents cannot exceed the amount tendered")

        normalized.append({
            "method": method,
            "amount_cents": amount,
            "change_cents": change,
            "external_ref": optional_text(raw.get("external_ref"), f"{label}.external_ref", max_length=128),
        })

    if not normalized:
        raise ValidationError("At least one payment is required")
    return normalized


def _summarize(items: list[dict], summary: Mapping | None) -> dict:
    """
    Sale summary. Prices are tax-inclusive; tax_total is the tax contained
    in the line totals.
    """
    tip = 0
    if summary is not None:
        tip = coerce_cents(summary.get("tip_cents", 0), "summary.tip_cents")

    subtotal = sum(item["qty"] * item["unit_price_cents"] for item in items)
    discount_total = sum(item["discount_cents"] for item in items)
    tax_total = sum(
        round(item["total_cents"] * item["tax_rate_bps"] / (10_000 + item["tax_rate_bps"]))
        for item in items
    )
    computed = {
        "subtotal_cents": subtotal,
        "discount_total_cents": discount_total,
        "tax_total_cents": tax_total,
        "tip_cents": tip,
        "grand_total_cents": subtotal - discount_total + tip,
    }

    if summary is not None and summary.get("grand_total_cents") is not None:
        declared = coerce_cents(summary.get("grand_total_cents"), "summary.grand_total_cents")
        if declared != computed["grand_total_cents"]:
            raise ValidationError(
                f"summary.grand_total_cents ({declared}) does not match the items ({computed['grand_total_cents']})"
            )
    return computed


def _postings(payments: list[dict]) -> list[dict]:
    return [{"method": p["method"], "amount": p["amount_cents"] - p["change_cents"]} for p in payments]


def _require_cashier(tenant_id: int, cashier_id) -> int:
    if cashier_id is None:
        raise ValidationError("cashier_id is required")
    cashier = db.session.get(Employee, cashier_id)
    if not cashier or cashier.tenant_id != tenant_id:
        raise ValidationError("Cashier not found for this tenant")
    return cashier.id


# =============================================================================
# SALES
# =============================================================================

def record_sale(
    session_id: int,
    items: Iterable[Mapping],
    payments: Iterable[Mapping],
    cashier_id: int,
    summary: Mapping | None = None,
    client_ref: str | None = None,
    appointment_ref: str | None = None,
    note: str | None = None,
) -> Sale:
    """
    Record a final sale and post its payments to the session.

    Raises:
        ValidationError: Bad items/payments, or payments not matching the total
        InvalidStateError: Session is closed
        NotFoundError: Unknown session
    """
    def _op():
        session = repository.get_session(session_id)
        if not session.is_open:
            raise InvalidStateError(f"Cash session {session_id} is closed; cannot record a sale")
        cashier = _require_cashier(session.tenant_id, cashier_id)

        lines = _normalize_items(items)
        tenders = _normalize_payments(payments)
        totals = _summarize(lines, summary)

        paid = sum(p["amount_cents"] - p["change_cents"] for p in tenders)
        if paid != totals["grand_total_cents"]:
            raise ValidationError(
                f"Payments ({paid}) do not match the sale total ({totals['grand_total_cents']})"
            )

        sale = Sale(
            tenant_id=session.tenant_id,
            facility_id=session.facility_id,
            cash_session_id=session.id,
            cashier_id=cashier,
            number=repository.next_sale_number(session.tenant_id, SALE_NUMBER_PREFIX),
            status=SALE_FINAL,
            client_ref=optional_text(client_ref, "client_ref", max_length=64),
            appointment_ref=optional_text(appointment_ref, "appointment_ref", max_length=64),
            note=optional_text(note, "note", max_length=2000),
            fiscal_status="pending",
            fiscal_correlation_id=uuid.uuid4().hex,
            created_at=utcnow(),
            **totals,
        )
        db.session.add(sale)
        db.session.flush()

        for line in lines:
            db.session.add(SaleItem(sale_id=sale.id, **line))
        for tender in tenders:
            db.session.add(SalePayment(sale_id=sale.id, **tender))
        db.session.flush()

        post_sale(session.id, _postings(tenders), commit=False)

        db.session.commit()
        return sale

    sale = run_with_retry(_op)
    logger.info("Sale %s (%s) recorded on cash session %s", sale.id, sale.number, session_id)
    return sale


def refundable_cents(sale: Sale) -> int:
    refunded = sum(refund.grand_total_cents for refund in sale.refunds)
    return sale.grand_total_cents - refunded


def refund_sale(
    sale_id: int,
    payments: Iterable[Mapping],
    cashier_id: int,
    reason: str | None = None,
) -> Sale:
    """
    Refund (part of) a sale.

    The refund is posted to the session currently open at the original sale's
    facility, which may differ from the session the sale was rung up on.

    Raises:
        ValidationError: Refund exceeds what is left to refund, or is a refund of a refund
        InvalidStateError: Sale already fully refunded, or no open session
    """
    def _op():
        original = repository.lock_sale(sale_id)
        if original.is_refund:
            raise ValidationError("A refund cannot be refunded")
        if original.status == SALE_REFUNDED:
            raise InvalidStateError(f"Sale {sale_id} is already fully refunded")

        session = repository.find_open_session(original.tenant_id, original.facility_id)
        if not session:
            raise InvalidStateError("No open cash session at this facility to refund from")
        cashier = _require_cashier(original.tenant_id, cashier_id)

        tenders = _normalize_payments(payments)
        if any(t["change_cents"] for t in tenders):
            raise ValidationError("Refund payments cannot carry change")
        amount = sum(t["amount_cents"] for t in tenders)
        if amount <= 0:
            raise ValidationError("Refund amount must be positive")

        remaining = refundable_cents(original)
        if amount > remaining:
            raise ValidationError(f"Refund ({amount}) exceeds the refundable amount ({remaining})")

        refund = Sale(
            tenant_id=original.tenant_id,
            facility_id=original.facility_id,
            cash_session_id=session.id,
            cashier_id=cashier,
            number=repository.next_sale_number(original.tenant_id, REFUND_NUMBER_PREFIX),
            status=SALE_FINAL,
            refund_for_id=original.id,
            client_ref=original.client_ref,
            note=optional_text(reason, "reason", max_length=2000),
            subtotal_cents=amount,
            grand_total_cents=amount,
            fiscal_status="pending",
            fiscal_correlation_id=uuid.uuid4().hex,
            created_at=utcnow(),
        )
        db.session.add(refund)
        db.session.flush()

        for tender in tenders:
            db.session.add(SalePayment(sale_id=refund.id, **tender))

        post_refund(session.id, _postings(tenders), commit=False)

        original.status = SALE_REFUNDED if amount == remaining else SALE_PARTIAL_REFUND
        db.session.commit()
        return refund

    refund = run_with_retry(_op)
    logger.info("Refund %s recorded for sale %s", refund.number, sale_id)
    return refund


def get_sale(sale_id: int) -> Sale:
    return repository.get_sale(sale_id)


def list_session_sales(session_id: int) -> list[Sale]:
    repository.get_session(session_id)
    return repository.list_sales(session_id)
