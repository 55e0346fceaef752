"""
Tests for the money/variance calculator.

Pure functions: no app or database needed.
"""

import pytest

from cashdesk.services.variance_service import (
    DEFAULT_THRESHOLDS,
    SEVERITY_ACCEPTABLE,
    SEVERITY_CRITICAL,
    SEVERITY_SEVERE,
    SEVERITY_WARNING,
    TENDER_KINDS,
    VarianceThresholds,
    aggregate_by_method,
    classify_severity,
    compute_expected_cash,
    compute_variance,
    count_recommendations,
    is_significant,
    percentage_of,
    variance_percentage,
)


def test_expected_cash_is_float_plus_cash_minus_refunds():
    assert compute_expected_cash(500000, 120000, 20000) == 600000


def test_expected_cash_is_not_clamped_at_zero():
    assert compute_expected_cash(0, 1000, 5000) == -4000


def test_variance_sign():
    assert compute_variance(620000, 600000) == 20000
    assert compute_variance(560000, 620000) == -60000
    assert compute_variance(0, 0) == 0


@pytest.mark.parametrize("variance,expected", [
    (0, SEVERITY_ACCEPTABLE),
    (10000, SEVERITY_ACCEPTABLE),
    (10001, SEVERITY_WARNING),
    (50000, SEVERITY_WARNING),
    (50001, SEVERITY_CRITICAL),
    (200000, SEVERITY_CRITICAL),
    (200001, SEVERITY_SEVERE),
])
def test_severity_tiers(variance, expected):
    assert classify_severity(variance) == expected


@pytest.mark.parametrize("magnitude", [0, 1, 9999, 10000, 10001, 49999, 50001, 199999, 250000])
def test_severity_is_sign_independent(magnitude):
    assert classify_severity(magnitude) == classify_severity(-magnitude)


def test_custom_thresholds_are_used():
    small_shop = VarianceThresholds(acceptable_max=500, warning_max=2000, critical_max=5000)
    assert classify_severity(-1500, small_shop) == SEVERITY_WARNING
    assert classify_severity(-1500) == SEVERITY_ACCEPTABLE


def test_thresholds_from_config_falls_back_to_defaults():
    thresholds = VarianceThresholds.from_config({"VARIANCE_WARNING_MAX_CENTS": "70000"})
    assert thresholds.acceptable_max == DEFAULT_THRESHOLDS.acceptable_max
    assert thresholds.warning_max == 70000
    assert thresholds.critical_max == DEFAULT_THRESHOLDS.critical_max


def test_thresholds_ordering():
    assert DEFAULT_THRESHOLDS.is_ordered()
    assert not VarianceThresholds(acceptable_max=600, warning_max=500, critical_max=700).is_ordered()


def test_is_significant():
    assert not is_significant(None)
    assert not is_significant(-10000)
    assert is_significant(-10001)


def test_aggregate_always_has_all_tender_kinds():
    totals = aggregate_by_method([])
    assert set(totals) == set(TENDER_KINDS)
    assert all(amount == 0 for amount in totals.values())


def test_aggregate_conserves_amounts():
    payments = [
        {"method": "cash", "amount": 1200},
        {"method": "card", "amount": 3000},
        {"method": "cash", "amount": 800},
        {"method": "voucher", "amount": 500},
        {"method": "other", "amount": 0},
    ]
    totals = aggregate_by_method(payments)
    assert sum(totals.values()) == sum(p["amount"] for p in payments)
    assert totals["cash"] == 2000
    assert totals["card"] == 3000


def test_aggregate_ignores_unknown_or_missing_method():
    totals = aggregate_by_method([
        {"method": "crypto", "amount": 999},
        {"amount": 100},
        {"method": "card"},
        {"method": "card", "amount": 250},
    ])
    assert sum(totals.values()) == 250


def test_aggregate_accepts_objects():
    class Payment:
        def __init__(self, method, amount):
            self.method = method
            self.amount = amount

    totals = aggregate_by_method([Payment("gift", 700), Payment("bank", 300)])
    assert totals["gift"] == 700
    assert totals["bank"] == 300


@pytest.mark.parametrize("part,whole,expected", [
    (50, 200, 25),
    (1, 3, 33),
    (0, 0, 0),
    (10, 0, 0),
    (300, 100, 100),
    (-5, 100, 0),
])
def test_percentage_of_is_clamped_and_guarded(part, whole, expected):
    assert percentage_of(part, whole) == expected


def test_variance_percentage():
    assert variance_percentage(4000, 300000) == 1.33
    assert variance_percentage(-60000, 620000) == -9.68
    assert variance_percentage(100, 0) == 0.0
    assert variance_percentage(None, 1000) == 0.0


def test_recommendations_depend_on_severity_and_direction():
    assert count_recommendations(SEVERITY_ACCEPTABLE, 0) == ["Drawer balances. Proceed with closing."]

    shortage = count_recommendations(SEVERITY_CRITICAL, -60000)
    assert "shortage" in shortage[0]
    assert any("manager" in line for line in shortage)

    overage = count_recommendations(SEVERITY_SEVERE, 300000)
    assert "overage" in overage[0]
    assert any("Escalate" in line for line in overage)
