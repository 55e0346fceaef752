# Overview: Cash session state machine (open -> count/verify -> close).

"""
Cash Session Service

WHY: A cash session is the unit of cash accountability for one drawer at one
facility. Opening float, sales and refunds, the closing count, and the
resulting variance all hang off it.

DESIGN PRINCIPLES:
- One OPEN session per tenant/facility at a time
- Postings and close lock the session row; a closed session is immutable
- Counting is read-only (no writes); verification and variance handling only
  append audit events, they never change the session's state
- Expected cash (count, verify, close) comes from the running totals that
  post_sale/post_refund maintain; close compares them with the sale ledger
  and logs any drift without rewriting either side
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Iterable, Mapping

from ..extensions import db
from ..models import CashSession, CashSessionEvent, Employee, Facility
from ..validation import InvalidStateError, NotFoundError, ValidationError
from cashdesk.time_utils import to_utc_z, utcnow
from . import repository
from .concurrency import run_with_retry
from .reconciliation_service import ledger_drift
from .settings_service import get_variance_thresholds
from .variance_service import (
    SEVERITY_ACCEPTABLE,
    TENDER_CASH,
    TENDER_KINDS,
    classify_severity,
    compute_expected_cash,
    compute_variance,
    count_recommendations,
    is_significant,
    variance_percentage,
)


logger = logging.getLogger(__name__)


# =============================================================================
# VARIANCE ACTIONS (CONSTANTS)
# =============================================================================

VARIANCE_ACCEPT = "accept"
VARIANCE_INVESTIGATE = "investigate"
VARIANCE_ADJUST = "adjust"

VARIANCE_ACTIONS = (VARIANCE_ACCEPT, VARIANCE_INVESTIGATE, VARIANCE_ADJUST)


# =============================================================================
# RESULT TYPES
# =============================================================================

@dataclass(frozen=True)
class CashCountingResult:
    session_id: int
    expected_cash: int
    counted_cash: int
    variance: int
    variance_percentage: float
    status: str
    recommendations: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class CashVerificationResult:
    session_id: int
    verified: bool
    expected_cash: int
    actual_cash: int
    variance: int
    variance_percentage: float
    timestamp: str

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class CashVarianceResult:
    session_id: int
    action: str
    variance: int
    severity: str
    reason: str | None
    timestamp: str
    handled_by: int

    def to_dict(self) -> dict:
        return asdict(self)


# =============================================================================
# HELPERS
# =============================================================================

def _require_amount(value, field_name: str) -> int:
    if value is None:
        raise ValidationError(f"{field_name} is required")
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field_name} must be an integer number of cents")
    if value < 0:
        raise ValidationError(f"{field_name} cannot be negative")
    return value


def _require_employee(tenant_id: int, employee_id: int | None) -> Employee:
    if employee_id is None:
        raise ValidationError("operator is required")
    employee = db.session.get(Employee, employee_id)
    if not employee or employee.tenant_id != tenant_id:
        raise ValidationError("Operator not found for this tenant")
    if not employee.is_active:
        raise ValidationError("Operator is inactive")
    return employee


def _normalize_postings(payments: Iterable[Mapping]) -> dict[str, int]:
    """Validate and sum posting amounts per tender kind."""
    totals = {kind: 0 for kind in TENDER_KINDS}
    for payment in payments:
        method = payment.get("method")
        if method not in totals:
            raise ValidationError(f"Invalid tender kind: {method}. Must be one of {list(TENDER_KINDS)}")
        amount = payment.get("amount")
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise ValidationError("Posting amount must be an integer number of cents")
        if amount < 0:
            raise ValidationError("Posting amount cannot be negative")
        totals[method] += amount
    return totals


def current_expected_cash(session: CashSession) -> int:
    """
    Expected drawer balance right now.

    Closed sessions return the value frozen at close. Open sessions use the
    running totals: opening float + cash posted - cash refunded.
    """
    if not session.is_open and session.expected_cash_cents is not None:
        return session.expected_cash_cents
    cash_refunds = session.cash_refunds_cents or 0
    return compute_expected_cash(
        session.opening_float_cents,
        (session.total_cash_cents or 0) + cash_refunds,
        cash_refunds,
    )


def session_to_dict(session: CashSession) -> dict:
    """Session payload including the derived fields shown by dashboards."""
    data = session.to_dict()
    thresholds = get_variance_thresholds(session.tenant_id)

    end = session.closed_at or utcnow()
    duration_hours = None
    if session.opened_at:
        duration_hours = round((end - session.opened_at).total_seconds() / 3600, 2)

    expected = current_expected_cash(session)
    data.update({
        "expected_cash_cents": expected,
        "duration_hours": duration_hours,
        "total_transactions_cents": sum(session.totals_by_method().values()),
        "variance_percentage": variance_percentage(session.variance_cents, expected),
        "has_significant_variance": is_significant(session.variance_cents, thresholds),
    })
    return data


# =============================================================================
# LIFECYCLE
# =============================================================================

def open_session(
    tenant_id: int,
    facility_id: int,
    opening_float_cents: int,
    operator_id: int,
    note: str | None = None,
) -> CashSession:
    """
    Open a cash session at a facility.

    Raises:
        ValidationError: Negative float, unknown/inactive facility or operator
        ConflictError: Facility already has an OPEN session
    """
    def _op():
        _require_amount(opening_float_cents, "opening_float_cents")

        facility = db.session.get(Facility, facility_id)
        if not facility or facility.tenant_id != tenant_id:
            raise ValidationError("Facility not found for this tenant")
        if not facility.is_active:
            raise ValidationError("Cannot open a session at an inactive facility")

        _require_employee(tenant_id, operator_id)

        session = repository.open_session_record(
            tenant_id=tenant_id,
            facility_id=facility_id,
            opening_float_cents=opening_float_cents,
            operator_id=operator_id,
            note=note,
        )

        repository.append_session_event(
            session_id=session.id,
            event_type="SESSION_OPEN",
            employee_id=operator_id,
            amount_cents=opening_float_cents,
            expected_cash_cents=opening_float_cents,
            note=note,
            occurred_at=session.opened_at,
        )

        db.session.commit()
        return session

    session = run_with_retry(_op)
    logger.info(
        "Cash session %s opened at facility %s with float %s",
        session.id, facility_id, opening_float_cents,
    )
    return session


def _apply_postings(session: CashSession, totals: dict[str, int], sign: int) -> None:
    for method, amount in totals.items():
        if not amount:
            continue
        column = f"total_{method}_cents"
        setattr(session, column, (getattr(session, column) or 0) + sign * amount)


def post_sale(session_id: int, payments: Iterable[Mapping], *, commit: bool = True) -> CashSession:
    """
    Add a sale's net tender amounts to the session's running totals.

    ``payments`` are mappings with ``method`` and ``amount`` (cents, change
    already deducted). With commit=False the caller owns the transaction.

    Raises:
        InvalidStateError: Session is not OPEN (totals left untouched)
    """
    def _op():
        totals = _normalize_postings(payments)
        session = repository.lock_session(session_id)
        if not session.is_open:
            raise InvalidStateError(f"Cash session {session_id} is closed; cannot post a sale")

        _apply_postings(session, totals, +1)
        session.total_sales_cents = (session.total_sales_cents or 0) + sum(totals.values())
        db.session.flush()

        if commit:
            db.session.commit()
        return session

    if commit:
        return run_with_retry(_op)
    return _op()


def post_refund(session_id: int, payments: Iterable[Mapping], *, commit: bool = True) -> CashSession:
    """
    Subtract refunded tender amounts from the session's running totals.

    Raises:
        InvalidStateError: Session is not OPEN (totals left untouched)
    """
    def _op():
        totals = _normalize_postings(payments)
        session = repository.lock_session(session_id)
        if not session.is_open:
            raise InvalidStateError(f"Cash session {session_id} is closed; cannot post a refund")

        _apply_postings(session, totals, -1)
        session.total_refunds_cents = (session.total_refunds_cents or 0) + sum(totals.values())
        session.cash_refunds_cents = (session.cash_refunds_cents or 0) + totals[TENDER_CASH]
        db.session.flush()

        if commit:
            db.session.commit()
        return session

    if commit:
        return run_with_retry(_op)
    return _op()


def count_cash(session_id: int, counted_cash_cents: int, note: str | None = None) -> CashCountingResult:
    """
    Compare a counted amount with the current expected cash.

    Read-only: nothing is written, so it can be repeated while counting.
    """
    _require_amount(counted_cash_cents, "counted_cash_cents")
    session = repository.get_session(session_id)
    thresholds = get_variance_thresholds(session.tenant_id)

    expected = current_expected_cash(session)
    variance = compute_variance(counted_cash_cents, expected)
    severity = classify_severity(variance, thresholds)

    return CashCountingResult(
        session_id=session.id,
        expected_cash=expected,
        counted_cash=counted_cash_cents,
        variance=variance,
        variance_percentage=variance_percentage(variance, expected),
        status=severity,
        recommendations=count_recommendations(severity, variance),
    )


def verify_cash_count(
    session_id: int,
    actual_cash_cents: int,
    operator_id: int,
    note: str | None = None,
) -> CashVerificationResult:
    """
    Record that a person confirmed a counted amount.

    Audit only: appends a CASH_VERIFIED event, session state is unchanged.
    """
    def _op():
        _require_amount(actual_cash_cents, "actual_cash_cents")
        session = repository.get_session(session_id)
        if not session.is_open:
            raise InvalidStateError(f"Cash session {session_id} is closed; nothing to verify")
        _require_employee(session.tenant_id, operator_id)

        expected = current_expected_cash(session)
        variance = compute_variance(actual_cash_cents, expected)

        event = repository.append_session_event(
            session_id=session.id,
            event_type="CASH_VERIFIED",
            employee_id=operator_id,
            amount_cents=actual_cash_cents,
            expected_cash_cents=expected,
            variance_cents=variance,
            note=note,
        )
        db.session.commit()

        return CashVerificationResult(
            session_id=session.id,
            verified=True,
            expected_cash=expected,
            actual_cash=actual_cash_cents,
            variance=variance,
            variance_percentage=variance_percentage(variance, expected),
            timestamp=to_utc_z(event.occurred_at),
        )

    return run_with_retry(_op)


def handle_variance(
    session_id: int,
    actual_cash_cents: int,
    action: str | None,
    reason: str | None,
    operator_id: int,
    note: str | None = None,
) -> CashVarianceResult:
    """
    Record a disposition for a variance found while counting.

    Action and reason are mandatory once |variance| exceeds the tenant's
    acceptable threshold. Within the threshold the action defaults to accept.

    Raises:
        ValidationError: Unknown action, or missing action/reason when required
        InvalidStateError: Session already closed
    """
    def _op():
        _require_amount(actual_cash_cents, "actual_cash_cents")
        session = repository.get_session(session_id)
        if not session.is_open:
            raise InvalidStateError(f"Cash session {session_id} is closed; variance can no longer be handled")
        _require_employee(session.tenant_id, operator_id)

        thresholds = get_variance_thresholds(session.tenant_id)
        expected = current_expected_cash(session)
        variance = compute_variance(actual_cash_cents, expected)
        severity = classify_severity(variance, thresholds)

        clean_reason = reason.strip() if reason and reason.strip() else None
        chosen = action
        if severity != SEVERITY_ACCEPTABLE:
            if not chosen:
                raise ValidationError(f"action is required for a {severity} variance")
            if not clean_reason:
                raise ValidationError(f"reason is required for a {severity} variance")
        elif not chosen:
            chosen = VARIANCE_ACCEPT

        if chosen not in VARIANCE_ACTIONS:
            raise ValidationError(f"Invalid variance action: {chosen}. Must be one of {list(VARIANCE_ACTIONS)}")

        event = repository.append_session_event(
            session_id=session.id,
            event_type="VARIANCE_HANDLED",
            employee_id=operator_id,
            amount_cents=actual_cash_cents,
            expected_cash_cents=expected,
            variance_cents=variance,
            action=chosen,
            severity=severity,
            reason=clean_reason,
            note=note,
        )
        db.session.commit()

        return CashVarianceResult(
            session_id=session.id,
            action=chosen,
            variance=variance,
            severity=severity,
            reason=clean_reason,
            timestamp=to_utc_z(event.occurred_at),
            handled_by=operator_id,
        )

    result = run_with_retry(_op)
    if result.severity != SEVERITY_ACCEPTABLE:
        logger.warning(
            "Cash session %s variance %s (%s) handled with action %s",
            session_id, result.variance, result.severity, result.action,
        )
    return result


def close_session(
    session_id: int,
    closing_count_cents: int,
    operator_id: int,
    note: str | None = None,
) -> CashSession:
    """
    Close a session and freeze expected cash and variance.

    Expected cash is taken from the running totals at the moment of closing.
    If the sale ledger disagrees with those totals the difference is logged;
    neither side is rewritten and reconcile() reports the same drift.

    Raises:
        ValidationError: Missing/negative closing count, unknown operator
        InvalidStateError: Session already closed
        ConflictError: A concurrent writer changed the session first
    """
    def _op():
        _require_amount(closing_count_cents, "closing_count_cents")
        session = repository.lock_session(session_id)
        if not session.is_open:
            raise InvalidStateError(f"Cash session {session_id} is already closed")
        _require_employee(session.tenant_id, operator_id)

        expected = current_expected_cash(session)
        variance = compute_variance(closing_count_cents, expected)

        drift = ledger_drift(session)
        if drift:
            logger.warning(
                "Cash session %s running totals differ from the sale ledger at close: %s",
                session.id, drift,
            )

        repository.close_session_record(
            session,
            closing_count_cents=closing_count_cents,
            expected_cash_cents=expected,
            variance_cents=variance,
            operator_id=operator_id,
            note=note,
        )

        repository.append_session_event(
            session_id=session.id,
            event_type="SESSION_CLOSE",
            employee_id=operator_id,
            amount_cents=closing_count_cents,
            expected_cash_cents=expected,
            variance_cents=variance,
            severity=classify_severity(variance, get_variance_thresholds(session.tenant_id)),
            note=note,
            occurred_at=session.closed_at,
        )

        db.session.commit()
        return session

    session = run_with_retry(_op)
    logger.info(
        "Cash session %s closed: expected=%s counted=%s variance=%s",
        session.id, session.expected_cash_cents, session.closing_count_cents, session.variance_cents,
    )
    return session


# =============================================================================
# LOOKUPS
# =============================================================================

def get_session(session_id: int) -> CashSession:
    return repository.get_session(session_id)


def get_open_session(tenant_id: int, facility_id: int) -> CashSession | None:
    return repository.find_open_session(tenant_id, facility_id)


def list_sessions(
    tenant_id: int,
    facility_id: int | None = None,
    status: str | None = None,
    opened_from=None,
    opened_to=None,
    limit: int | None = None,
) -> list[CashSession]:
    return repository.list_sessions(
        tenant_id=tenant_id,
        facility_id=facility_id,
        status=status,
        opened_from=opened_from,
        opened_to=opened_to,
        limit=limit,
    )


def get_session_events(session_id: int) -> list[CashSessionEvent]:
    repository.get_session(session_id)
    return repository.list_session_events(session_id)
