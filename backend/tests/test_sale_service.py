"""
Tests for sale recording and refunds.
"""

import pytest

from cashdesk.services import cash_session_service, repository, sale_service
from cashdesk.validation import ConflictError, InvalidStateError, ValidationError
from conftest import ring_up


ITEMS = [
    {"ref_id": "svc-cut", "type": "service", "name": "Haircut", "qty": 1, "unit_price_cents": 80000},
    {"ref_id": "prd-gel", "type": "product", "name": "Hair gel", "qty": 2, "unit_price_cents": 25000,
     "discount_cents": 5000, "tax_rate_bps": 2000},
]


def test_record_sale_builds_summary_and_posts_to_session(open_session, operator):
    sale = sale_service.record_sale(
        session_id=open_session.id,
        items=ITEMS,
        payments=[
            {"method": "card", "amount_cents": 50000, "external_ref": "AUTH-1"},
            {"method": "cash", "amount_cents": 100000, "change_cents": 25000},
        ],
        cashier_id=operator.id,
        summary={"tip_cents": 0},
        client_ref="client-42",
    )

    assert sale.number == "S-000001"
    assert sale.status == "final"
    assert sale.fiscal_status == "pending"
    assert sale.fiscal_correlation_id
    assert sale.subtotal_cents == 130000
    assert sale.discount_total_cents == 5000
    assert sale.grand_total_cents == 125000
    # 45000 tax-inclusive at 20% -> 7500 tax
    assert sale.tax_total_cents == 7500
    assert [item.name for item in sale.items] == ["Haircut", "Hair gel"]

    session = cash_session_service.get_session(open_session.id)
    assert session.totals_by_method()["cash"] == 75000
    assert session.totals_by_method()["card"] == 50000
    assert session.total_sales_cents == 125000


def test_sale_numbers_increment(open_session, operator):
    first = ring_up(open_session.id, operator.id, 1000)
    second = ring_up(open_session.id, operator.id, 2000)
    assert first.number == "S-000001"
    assert second.number == "S-000002"


def test_sale_number_taken_concurrently_is_retried(open_session, operator, monkeypatch):
    ring_up(open_session.id, operator.id, 1000)
    real_next = repository.next_sale_number
    calls = []

    def stale_then_real(tenant_id, prefix):
        calls.append(prefix)
        if len(calls) == 1:
            return f"{prefix}-000001"
        return real_next(tenant_id, prefix)

    monkeypatch.setattr(repository, "next_sale_number", stale_then_real)

    sale = ring_up(open_session.id, operator.id, 2000)
    assert sale.number == "S-000002"
    assert len(calls) == 2
    session = cash_session_service.get_session(open_session.id)
    assert session.totals_by_method()["cash"] == 3000


def test_sale_number_conflict_surfaces_as_conflict(open_session, operator, monkeypatch):
    ring_up(open_session.id, operator.id, 1000)
    monkeypatch.setattr(repository, "next_sale_number", lambda tenant_id, prefix: f"{prefix}-000001")

    with pytest.raises(ConflictError):
        ring_up(open_session.id, operator.id, 2000)

    session = cash_session_service.get_session(open_session.id)
    assert session.totals_by_method()["cash"] == 1000


def test_payments_must_match_total(open_session, operator):
    with pytest.raises(ValidationError):
        sale_service.record_sale(
            session_id=open_session.id,
            items=ITEMS,
            payments=[{"method": "cash", "amount_cents": 1000}],
            cashier_id=operator.id,
        )
    assert sale_service.list_session_sales(open_session.id) == []
    assert cash_session_service.get_session(open_session.id).total_sales_cents == 0


@pytest.mark.parametrize("payment", [
    {"method": "bitcoin", "amount_cents": 1000},
    {"method": "cash", "amount_cents": -1000},
    {"method": "cash", "amount_cents": 10.5},
    {"method": "card", "amount_cents": 2000, "change_cents": 1000},
    {"method": "cash", "amount_cents": 500, "change_cents": 1000},
])
def test_invalid_payments_rejected(open_session, operator, payment):
    with pytest.raises(ValidationError):
        sale_service.record_sale(
            session_id=open_session.id,
            items=[{"name": "Trim", "unit_price_cents": 1000}],
            payments=[payment],
            cashier_id=operator.id,
        )


def test_sale_requires_items(open_session, operator):
    with pytest.raises(ValidationError):
        sale_service.record_sale(open_session.id, [], [{"method": "cash", "amount_cents": 0}], operator.id)


def test_declared_total_must_match_items(open_session, operator):
    with pytest.raises(ValidationError):
        sale_service.record_sale(
            session_id=open_session.id,
            items=[{"name": "Trim", "unit_price_cents": 1000}],
            payments=[{"method": "cash", "amount_cents": 1000}],
            cashier_id=operator.id,
            summary={"grand_total_cents": 900},
        )


def test_sale_on_closed_session_rejected(open_session, operator):
    cash_session_service.close_session(open_session.id, 500000, operator.id)
    with pytest.raises(InvalidStateError):
        ring_up(open_session.id, operator.id, 1000)


def test_partial_then_full_refund(open_session, cash_sale, operator):
    refund = sale_service.refund_sale(
        cash_sale.id, [{"method": "cash", "amount_cents": 20000}], operator.id, reason="Unhappy",
    )
    assert refund.number == "R-000001"
    assert refund.refund_for_id == cash_sale.id
    assert refund.grand_total_cents == 20000
    assert refund.note == "Unhappy"
    assert sale_service.get_sale(cash_sale.id).status == "partial_refund"

    sale_service.refund_sale(cash_sale.id, [{"method": "cash", "amount_cents": 100000}], operator.id)
    assert sale_service.get_sale(cash_sale.id).status == "refunded"

    session = cash_session_service.get_session(open_session.id)
    assert session.totals_by_method()["cash"] == 0
    assert session.cash_refunds_cents == 120000
    assert cash_session_service.count_cash(open_session.id, 500000).variance == 0


def test_refund_cannot_exceed_refundable(open_session, cash_sale, operator):
    with pytest.raises(ValidationError):
        sale_service.refund_sale(cash_sale.id, [{"method": "cash", "amount_cents": 120001}], operator.id)
    assert sale_service.get_sale(cash_sale.id).status == "final"


def test_fully_refunded_sale_rejected(open_session, cash_sale, operator):
    sale_service.refund_sale(cash_sale.id, [{"method": "card", "amount_cents": 120000}], operator.id)
    with pytest.raises(InvalidStateError):
        sale_service.refund_sale(cash_sale.id, [{"method": "card", "amount_cents": 1}], operator.id)


def test_refund_of_refund_rejected(open_session, cash_sale, operator):
    refund = sale_service.refund_sale(cash_sale.id, [{"method": "cash", "amount_cents": 100}], operator.id)
    with pytest.raises(ValidationError):
        sale_service.refund_sale(refund.id, [{"method": "cash", "amount_cents": 100}], operator.id)


def test_refund_posts_to_currently_open_session(open_session, cash_sale, operator, tenant, facility):
    cash_session_service.close_session(open_session.id, 620000, operator.id)
    next_session = cash_session_service.open_session(tenant.id, facility.id, 100000, operator.id)

    refund = sale_service.refund_sale(cash_sale.id, [{"method": "cash", "amount_cents": 5000}], operator.id)
    assert refund.cash_session_id == next_session.id
    assert cash_session_service.count_cash(next_session.id, 95000).variance == 0
    # Closed session is untouched
    assert cash_session_service.get_session(open_session.id).expected_cash_cents == 620000


def test_refund_without_open_session_rejected(open_session, cash_sale, operator):
    cash_session_service.close_session(open_session.id, 620000, operator.id)
    with pytest.raises(InvalidStateError):
        sale_service.refund_sale(cash_sale.id, [{"method": "cash", "amount_cents": 5000}], operator.id)
