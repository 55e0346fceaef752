# Overview: Persistence contract for cash sessions and the sale ledger.

"""
Session/Sale Repository

WHY: The state machine, reconciliation engine and fiscal controller only
depend on this small contract (open/lock/close a session record, list the
sale ledger, lock a sale). Everything here runs inside the caller's
transaction; callers commit.

INVARIANTS enforced here (server-side, not just in the service layer):
- One OPEN session per tenant/facility (partial unique index on cash_sessions)
- Locked reads use SELECT ... FOR UPDATE plus the version column
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import CashSession, CashSessionEvent, Sale
from ..validation import ConflictError, NotFoundError
from cashdesk.time_utils import utcnow, to_utc_z
from .concurrency import lock_for_update


# =============================================================================
# SESSIONS
# =============================================================================

def get_session(session_id: int) -> CashSession:
    session = db.session.get(CashSession, session_id)
    if not session:
        raise NotFoundError(f"Cash session {session_id} not found")
    return session


def lock_session(session_id: int) -> CashSession:
    session = lock_for_update(db.session.query(CashSession).filter_by(id=session_id)).first()
    if not session:
        raise NotFoundError(f"Cash session {session_id} not found")
    return session


def find_open_session(tenant_id: int, facility_id: int) -> CashSession | None:
    return db.session.query(CashSession).filter_by(
        tenant_id=tenant_id,
        facility_id=facility_id,
        status="OPEN",
    ).first()


def open_session_record(
    *,
    tenant_id: int,
    facility_id: int,
    opening_float_cents: int,
    operator_id: int,
    note: str | None = None,
) -> CashSession:
    """
    Insert a new OPEN session.

    Raises:
        ConflictError: If the facility already has an OPEN session (including
            one inserted concurrently, caught by the partial unique index)
    """
    existing = find_open_session(tenant_id, facility_id)
    if existing:
        raise ConflictError(f"Facility already has an open cash session (session {existing.id})")

    session = CashSession(
        tenant_id=tenant_id,
        facility_id=facility_id,
        status="OPEN",
        opened_by_id=operator_id,
        opened_at=utcnow(),
        opening_float_cents=opening_float_cents,
        note=note,
    )
    db.session.add(session)
    try:
        db.session.flush()
    except IntegrityError as exc:
        db.session.rollback()
        raise ConflictError("Facility already has an open cash session") from exc
    return session


def close_session_record(
    session: CashSession,
    *,
    closing_count_cents: int,
    expected_cash_cents: int,
    variance_cents: int,
    operator_id: int,
    note: str | None = None,
    closed_at: datetime | None = None,
) -> dict:
    """
    Freeze a locked session as CLOSED and return a reconciliation-compatible summary.
    """
    session.status = "CLOSED"
    session.closed_at = closed_at or utcnow()
    session.closed_by_id = operator_id
    session.closing_count_cents = closing_count_cents
    session.closing_note = note
    session.expected_cash_cents = expected_cash_cents
    session.variance_cents = variance_cents
    db.session.flush()

    return {
        "id": session.id,
        "expected_cash_cents": expected_cash_cents,
        "closing_count_cents": closing_count_cents,
        "variance_cents": variance_cents,
        "closed_at": to_utc_z(session.closed_at),
        "totals_by_method": session.totals_by_method(),
        "summary": {
            "opening_float_cents": session.opening_float_cents,
            "total_sales_cents": session.total_sales_cents,
            "closing_count_cents": closing_count_cents,
            "variance_cents": variance_cents,
        },
    }


def list_sessions(
    *,
    tenant_id: int,
    facility_id: int | None = None,
    status: str | None = None,
    opened_from: datetime | None = None,
    opened_to: datetime | None = None,
    limit: int | None = None,
) -> list[CashSession]:
    """Sessions ordered by opened_at; ``opened_to`` is exclusive."""
    query = db.session.query(CashSession).filter(CashSession.tenant_id == tenant_id)
    if facility_id is not None:
        query = query.filter(CashSession.facility_id == facility_id)
    if status:
        query = query.filter(CashSession.status == status.upper())
    if opened_from is not None:
        query = query.filter(CashSession.opened_at >= opened_from)
    if opened_to is not None:
        query = query.filter(CashSession.opened_at < opened_to)
    query = query.order_by(CashSession.opened_at.asc(), CashSession.id.asc())
    if limit:
        query = query.limit(limit)
    return query.all()


def append_session_event(
    *,
    session_id: int,
    event_type: str,
    employee_id: int | None = None,
    amount_cents: int | None = None,
    expected_cash_cents: int | None = None,
    variance_cents: int | None = None,
    action: str | None = None,
    severity: str | None = None,
    reason: str | None = None,
    note: str | None = None,
    occurred_at: datetime | None = None,
) -> CashSessionEvent:
    """Append-only; never updates or deletes earlier events."""
    event = CashSessionEvent(
        cash_session_id=session_id,
        event_type=event_type,
        employee_id=employee_id,
        amount_cents=amount_cents,
        expected_cash_cents=expected_cash_cents,
        variance_cents=variance_cents,
        action=action,
        severity=severity,
        reason=reason,
        note=note,
        occurred_at=occurred_at or utcnow(),
    )
    db.session.add(event)
    db.session.flush()
    return event


def list_session_events(session_id: int) -> list[CashSessionEvent]:
    return db.session.query(CashSessionEvent).filter_by(
        cash_session_id=session_id
    ).order_by(CashSessionEvent.occurred_at.asc(), CashSessionEvent.id.asc()).all()


def latest_session_event(session_id: int, event_type: str) -> CashSessionEvent | None:
    return db.session.query(CashSessionEvent).filter_by(
        cash_session_id=session_id,
        event_type=event_type,
    ).order_by(CashSessionEvent.id.desc()).first()


# =============================================================================
# SALE LEDGER
# =============================================================================

def list_sales(session_id: int) -> list[Sale]:
    """Authoritative sale ledger (sales and refunds) for a session."""
    return db.session.query(Sale).filter_by(
        cash_session_id=session_id
    ).order_by(Sale.created_at.asc(), Sale.id.asc()).all()


def get_sale(sale_id: int) -> Sale:
    sale = db.session.get(Sale, sale_id)
    if not sale:
        raise NotFoundError(f"Sale {sale_id} not found")
    return sale


def lock_sale(sale_id: int) -> Sale:
    sale = lock_for_update(db.session.query(Sale).filter_by(id=sale_id)).first()
    if not sale:
        raise NotFoundError(f"Sale {sale_id} not found")
    return sale


def next_sale_number(tenant_id: int, prefix: str) -> str:
    count = db.session.query(db.func.count(Sale.id)).filter(
        Sale.tenant_id == tenant_id,
        Sale.number.like(f"{prefix}-%"),
    ).scalar() or 0
    return f"{prefix}-{count + 1:06d}"
