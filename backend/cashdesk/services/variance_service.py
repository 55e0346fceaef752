# Overview: Pure money/variance calculations for cash sessions; no database access.

"""
Money / Variance Calculator

WHY: Expected cash, variance and severity are computed in several places
(counting, verification, close, reconciliation, reports). Keeping the
arithmetic in one side-effect-free module keeps those paths consistent.

DESIGN PRINCIPLES:
- Total functions: defined for every integer input, never raise business errors
- Amounts are integer cents; expected cash is never clamped at zero
- Severity is sign-independent (overage and shortage classify the same)
- Thresholds are passed in, never hard-coded (tenants run different volumes)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Mapping


# =============================================================================
# TENDER KINDS (CONSTANTS)
# =============================================================================

TENDER_CASH = "cash"
TENDER_CARD = "card"
TENDER_VOUCHER = "voucher"
TENDER_GIFT = "gift"
TENDER_BANK = "bank"
TENDER_OTHER = "other"

TENDER_KINDS = (
    TENDER_CASH,
    TENDER_CARD,
    TENDER_VOUCHER,
    TENDER_GIFT,
    TENDER_BANK,
    TENDER_OTHER,
)


# =============================================================================
# SEVERITY (CONSTANTS)
# =============================================================================

SEVERITY_ACCEPTABLE = "acceptable"
SEVERITY_WARNING = "warning"
SEVERITY_CRITICAL = "critical"
SEVERITY_SEVERE = "severe"


@dataclass(frozen=True)
class VarianceThresholds:
    """Upper bounds (inclusive, in cents) of |variance| for each severity tier."""
    acceptable_max: int = 10_000
    warning_max: int = 50_000
    critical_max: int = 200_000

    @classmethod
    def from_config(cls, config: Mapping) -> "VarianceThresholds":
        defaults = cls()
        return cls(
            acceptable_max=int(config.get("VARIANCE_ACCEPTABLE_MAX_CENTS", defaults.acceptable_max)),
            warning_max=int(config.get("VARIANCE_WARNING_MAX_CENTS", defaults.warning_max)),
            critical_max=int(config.get("VARIANCE_CRITICAL_MAX_CENTS", defaults.critical_max)),
        )

    def is_ordered(self) -> bool:
        return 0 <= self.acceptable_max <= self.warning_max <= self.critical_max

    def to_dict(self) -> dict:
        return {
            "acceptable_max_cents": self.acceptable_max,
            "warning_max_cents": self.warning_max,
            "critical_max_cents": self.critical_max,
        }


DEFAULT_THRESHOLDS = VarianceThresholds()


def compute_expected_cash(opening_float: int, cash_total: int, cash_refunds: int) -> int:
    """
    Theoretical drawer balance: opening float + cash taken - cash refunded.

    A negative result is returned as-is; callers surface it rather than hide it.
    """
    return opening_float + cash_total - cash_refunds


def compute_variance(counted_cash: int, expected_cash: int) -> int:
    """Positive = overage, negative = shortage."""
    return counted_cash - expected_cash


def classify_severity(variance: int, thresholds: VarianceThresholds = DEFAULT_THRESHOLDS) -> str:
    magnitude = abs(variance)
    if magnitude <= thresholds.acceptable_max:
        return SEVERITY_ACCEPTABLE
    if magnitude <= thresholds.warning_max:
        return SEVERITY_WARNING
    if magnitude <= thresholds.critical_max:
        return SEVERITY_CRITICAL
    return SEVERITY_SEVERE


def is_significant(variance: int | None, thresholds: VarianceThresholds = DEFAULT_THRESHOLDS) -> bool:
    if variance is None:
        return False
    return abs(variance) > thresholds.acceptable_max


def _field(payment, name: str):
    if isinstance(payment, Mapping):
        return payment.get(name)
    return getattr(payment, name, None)


def aggregate_by_method(payments: Iterable) -> dict[str, int]:
    """
    Sum payment amounts per tender kind.

    Accepts mappings ({"method": ..., "amount": ...}) or objects with
    ``method``/``amount`` attributes. Payments with a missing or unknown method
    contribute nothing; a missing amount counts as 0. The result always
    carries all six tender kinds.
    """
    totals = {kind: 0 for kind in TENDER_KINDS}
    for payment in payments:
        method = _field(payment, "method")
        if method not in totals:
            continue
        amount = _field(payment, "amount")
        totals[method] += int(amount or 0)
    return totals


def percentage_of(part: int | float, whole: int | float) -> int:
    """Whole-number share of ``part`` in ``whole``, clamped to 0..100."""
    if not whole:
        return 0
    pct = round(part / whole * 100)
    return max(0, min(100, int(pct)))


def variance_percentage(variance: int | None, expected_cash: int | None) -> float:
    if variance is None or not expected_cash:
        return 0.0
    return round(variance / expected_cash * 100, 2)


def count_recommendations(severity: str, variance: int) -> list[str]:
    """
    Operator guidance for a counting result.

    Shortages and overages get different advice; the severity decides how
    far the issue should be escalated before the drawer is closed.
    """
    if severity == SEVERITY_ACCEPTABLE:
        if variance == 0:
            return ["Drawer balances. Proceed with closing."]
        return ["Variance is within the acceptable range. Proceed with closing."]

    direction = "shortage" if variance < 0 else "overage"
    recommendations = [f"Recount the drawer to confirm the {direction}."]

    if variance < 0:
        recommendations.append("Check for unrecorded cash refunds or payouts.")
    else:
        recommendations.append("Check for cash sales recorded under another tender kind.")

    if severity == SEVERITY_WARNING:
        recommendations.append("Record a reason for the variance before closing.")
    elif severity == SEVERITY_CRITICAL:
        recommendations.append("Ask a manager to verify the count before closing.")
    else:
        recommendations.append("Escalate to the facility owner and do not close until investigated.")

    return recommendations
