# Overview: Read-only reconciliation of cash sessions and period aggregates (daily/weekly/monthly).

"""
Reconciliation Engine

WHY: A session's running totals are updated posting by posting and can drift
if a posting crashes halfway. Reconciliation re-sums the sale ledger, so the
report is the number a manager signs off on.

DESIGN PRINCIPLES:
- Read-only: no writes, no counters, no "generated at" stamps
- Same closed session in, same dict out
- Open sessions produce a provisional report (no actual cash, no variance)
- Period reports are the sum of per-session reports, nothing more
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from typing import Iterable

from ..models import CashSession
from ..validation import ValidationError
from cashdesk.time_utils import day_bounds, month_bounds, to_utc_z, week_bounds
from . import repository
from .settings_service import get_variance_thresholds
from .variance_service import (
    TENDER_CASH,
    TENDER_KINDS,
    aggregate_by_method,
    classify_severity,
    compute_expected_cash,
    compute_variance,
    percentage_of,
    variance_percentage,
)


# =============================================================================
# LEDGER TOTALS
# =============================================================================

@dataclass(frozen=True)
class LedgerTotals:
    sales_by_method: dict[str, int]
    refunds_by_method: dict[str, int]
    sales_count: int
    refunds_count: int

    @property
    def net_by_method(self) -> dict[str, int]:
        return {
            kind: self.sales_by_method[kind] - self.refunds_by_method[kind]
            for kind in TENDER_KINDS
        }

    @property
    def total_sales(self) -> int:
        return sum(self.sales_by_method.values())

    @property
    def total_refunds(self) -> int:
        return sum(self.refunds_by_method.values())

    @property
    def cash_sales(self) -> int:
        return self.sales_by_method[TENDER_CASH]

    @property
    def cash_refunds(self) -> int:
        return self.refunds_by_method[TENDER_CASH]


def ledger_totals(sales: Iterable) -> LedgerTotals:
    """
    Re-sum a session's sale ledger per tender kind.

    Each payment contributes its net amount (tendered minus change). Refund
    rows are summed separately so expected cash can subtract cash refunds.
    """
    sale_payments = []
    refund_payments = []
    sales_count = 0
    refunds_count = 0

    for sale in sales:
        rows = [{"method": p.method, "amount": p.net_cents} for p in sale.payments]
        if sale.is_refund:
            refund_payments.extend(rows)
            refunds_count += 1
        else:
            sale_payments.extend(rows)
            sales_count += 1

    return LedgerTotals(
        sales_by_method=aggregate_by_method(sale_payments),
        refunds_by_method=aggregate_by_method(refund_payments),
        sales_count=sales_count,
        refunds_count=refunds_count,
    )


def ledger_drift(session: CashSession, totals: LedgerTotals | None = None) -> dict[str, int]:
    """Per-method running total minus sale-ledger total; non-zero entries only."""
    if totals is None:
        totals = ledger_totals(repository.list_sales(session.id))
    ledger = totals.net_by_method
    return {
        method: amount - ledger[method]
        for method, amount in session.totals_by_method().items()
        if amount != ledger[method]
    }


# =============================================================================
# SESSION RECONCILIATION
# =============================================================================

@dataclass(frozen=True)
class ReconciliationReport:
    session_id: int
    tenant_id: int
    facility_id: int
    facility_name: str | None
    status: str
    opened_at: str | None
    closed_at: str | None
    opening_float: int
    expected_cash: int
    actual_cash: int | None
    variance: int | None
    variance_percentage: float
    severity: str | None
    provisional: bool
    totals_by_method: dict[str, int] = field(default_factory=dict)
    ledger_drift: dict[str, int] = field(default_factory=dict)
    summary: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)


def _closed_severity(session: CashSession, variance: int) -> str:
    # Severity recorded at close stays valid while the ledger agrees with it
    close_event = repository.latest_session_event(session.id, "SESSION_CLOSE")
    if close_event and close_event.severity and close_event.variance_cents == variance:
        return close_event.severity
    return classify_severity(variance, get_variance_thresholds(session.tenant_id))


def reconcile_session(session: CashSession) -> ReconciliationReport:
    totals = ledger_totals(repository.list_sales(session.id))
    expected = compute_expected_cash(session.opening_float_cents, totals.cash_sales, totals.cash_refunds)

    provisional = session.is_open
    actual = None if provisional else session.closing_count_cents
    variance = None
    severity = None
    if actual is not None:
        variance = compute_variance(actual, expected)
        severity = _closed_severity(session, variance)

    return ReconciliationReport(
        session_id=session.id,
        tenant_id=session.tenant_id,
        facility_id=session.facility_id,
        facility_name=session.facility.name if session.facility else None,
        status=session.status,
        opened_at=to_utc_z(session.opened_at),
        closed_at=to_utc_z(session.closed_at),
        opening_float=session.opening_float_cents,
        expected_cash=expected,
        actual_cash=actual,
        variance=variance,
        variance_percentage=variance_percentage(variance, expected),
        severity=severity,
        provisional=provisional,
        totals_by_method=totals.net_by_method,
        ledger_drift=ledger_drift(session, totals),
        summary={
            "total_sales": totals.total_sales,
            "total_refunds": totals.total_refunds,
            "net_sales": totals.total_sales - totals.total_refunds,
            "sales_count": totals.sales_count,
            "refunds_count": totals.refunds_count,
            "cash_flow": {
                "opening": session.opening_float_cents,
                "sales": totals.total_sales,
                "refunds": totals.total_refunds,
                "expected": expected,
                "actual": actual,
                "variance": variance,
            },
        },
    )


def reconcile(session_id: int) -> ReconciliationReport:
    """
    Build the reconciliation report for one session.

    Raises:
        NotFoundError: Unknown session
    """
    return reconcile_session(repository.get_session(session_id))


# =============================================================================
# PERIOD AGGREGATES
# =============================================================================

def period_report(
    tenant_id: int,
    facility_id: int | None,
    start: datetime,
    end: datetime,
    *,
    period: str = "custom",
) -> dict:
    """
    Aggregate every session opened in [start, end).

    Provisional (still open) sessions count toward expected cash but not
    toward actual cash or variance.
    """
    if start >= end:
        raise ValidationError("Period start must be before period end")

    sessions = repository.list_sessions(
        tenant_id=tenant_id,
        facility_id=facility_id,
        opened_from=start,
        opened_to=end,
    )
    reports = [reconcile_session(s) for s in sessions]

    totals_by_method = {kind: 0 for kind in TENDER_KINDS}
    total_opening_float = 0
    total_expected_cash = 0
    total_actual_cash = 0
    total_variance = 0
    provisional_count = 0

    for report in reports:
        total_opening_float += report.opening_float
        total_expected_cash += report.expected_cash
        for kind, amount in report.totals_by_method.items():
            totals_by_method[kind] += amount
        if report.provisional:
            provisional_count += 1
            continue
        total_actual_cash += report.actual_cash
        total_variance += report.variance

    return {
        "period": period,
        "tenant_id": tenant_id,
        "facility_id": facility_id,
        "start": to_utc_z(start),
        "end": to_utc_z(end),
        "summary": {
            "session_count": len(reports),
            "provisional_count": provisional_count,
            "total_opening_float": total_opening_float,
            "total_expected_cash": total_expected_cash,
            "total_actual_cash": total_actual_cash,
            "total_variance": total_variance,
            "variance_percentage": variance_percentage(total_variance, total_expected_cash),
        },
        "totals_by_method": totals_by_method,
        "sessions": [report.to_dict() for report in reports],
    }


def daily_report(tenant_id: int, facility_id: int | None, day: date) -> dict:
    start, end = day_bounds(day)
    return period_report(tenant_id, facility_id, start, end, period="daily")


def weekly_report(tenant_id: int, facility_id: int | None, day: date) -> dict:
    start, end = week_bounds(day)
    return period_report(tenant_id, facility_id, start, end, period="weekly")


def monthly_report(tenant_id: int, facility_id: int | None, year: int, month: int) -> dict:
    if not 1 <= month <= 12:
        raise ValidationError("month must be between 1 and 12")
    start, end = month_bounds(year, month)
    return period_report(tenant_id, facility_id, start, end, period="monthly")


# =============================================================================
# ANALYTICS
# =============================================================================

LOW_ACTIVITY_SESSIONS = 5


def cash_analytics(tenant_id: int, facility_id: int | None, start: datetime, end: datetime) -> dict:
    """
    Summary numbers for the cash dashboard over [start, end).

    Average variance is the mean absolute variance of closed sessions. The
    trend is "improving" while that mean stays under the acceptable threshold.
    """
    report = period_report(tenant_id, facility_id, start, end, period="analytics")
    sessions = report["sessions"]
    thresholds = get_variance_thresholds(tenant_id)

    totals_by_method = report["totals_by_method"]
    total_cash = sum(totals_by_method.values())
    total_sessions = len(sessions)

    if total_sessions == 0 or total_cash == 0:
        return {
            "total_sessions": total_sessions,
            "total_cash": total_cash,
            "average_variance": 0,
            "average_transaction_value": 0,
            "variance_trend": "stable",
            "payment_methods": [],
            "recommendations": ["No cash activity in this period."],
        }

    closed_variances = [abs(s["variance"]) for s in sessions if s["variance"] is not None]
    average_variance = (
        round(sum(closed_variances) / len(closed_variances), 2) if closed_variances else 0
    )

    payment_methods = [
        {
            "method": kind,
            "amount": amount,
            "percentage": percentage_of(amount, total_cash),
        }
        for kind, amount in totals_by_method.items()
        if amount > 0
    ]

    recommendations = []
    if average_variance > thresholds.warning_max:
        recommendations.append("Average variance is high; count the drawer more often.")
    else:
        recommendations.append("Average variance is within acceptable limits.")
    if total_sessions < LOW_ACTIVITY_SESSIONS:
        recommendations.append("Few sessions in this period; results may not be representative.")
    recommendations.append("Review cash flow regularly.")

    return {
        "total_sessions": total_sessions,
        "total_cash": total_cash,
        "average_variance": average_variance,
        "average_transaction_value": round(total_cash / total_sessions, 2),
        "variance_trend": "improving" if average_variance < thresholds.acceptable_max else "needs_attention",
        "payment_methods": payment_methods,
        "recommendations": recommendations,
    }
