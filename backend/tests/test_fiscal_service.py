"""
Tests for the fiscal submission controller.

Covers:
- Pure flow transitions (advance)
- reset -> settle -> submit ordering with an injected sleeper
- Exactly one retry on "submission in progress"
- Terminal errors keep the gateway message verbatim
- A fiscalized sale is never submitted again
"""

import pytest

from cashdesk.services import fiscal_service
from cashdesk.services.fiscal_gateway import GatewayResult, HttpFiscalGateway
from cashdesk.services.fiscal_service import (
    FiscalFlow,
    GATEWAY_EXTENSION_KEY,
    advance,
    fiscalize,
    reset_fiscal_status,
    retry_failed_sales,
)
from cashdesk.validation import ExternalError, InvalidStateError, NotFoundError, TransientExternalError
from conftest import ScriptedGateway

IN_PROGRESS = GatewayResult.in_progress("Fiskalizacija je u toku")


# =============================================================================
# FLOW (PURE)
# =============================================================================

def test_flow_happy_path():
    flow = advance(FiscalFlow(), "start")
    assert flow.state == "resetting"
    flow = advance(flow, "reset_ok")
    assert flow.state == "settling"
    flow = advance(flow, "settled")
    assert flow.state == "submitting"
    flow = advance(flow, "submit_ok", fiscal_number="FN-1")
    assert flow.state == "done"
    assert flow.fiscal_number == "FN-1"
    assert flow.finished


def test_flow_reset_not_found_is_not_fatal():
    flow = advance(advance(FiscalFlow(), "start"), "reset_not_found")
    assert flow.state == "settling"


def test_flow_single_retry_budget():
    flow = FiscalFlow(state="submitting")
    flow = advance(flow, "submit_in_progress", message="busy")
    assert flow.state == "resetting"
    assert flow.retries == 1

    flow = advance(advance(advance(flow, "reset_ok"), "settled"), "submit_in_progress", message="busy")
    assert flow.state == "failed"
    assert flow.transient is True
    assert flow.message == "busy"


def test_flow_other_failures_are_terminal():
    flow = advance(FiscalFlow(state="submitting"), "submit_failed", message="PIB invalid")
    assert flow.state == "failed"
    assert flow.transient is False
    assert flow.retries == 0


def test_flow_rejects_illegal_event():
    with pytest.raises(InvalidStateError):
        advance(FiscalFlow(), "submit_ok")
    with pytest.raises(InvalidStateError):
        advance(FiscalFlow(state="done"), "start")


# =============================================================================
# CONTROLLER
# =============================================================================

def test_fiscalize_success(cash_sale, facility, sleeper):
    gateway = ScriptedGateway(submit_results=[GatewayResult.success("FN-2026-0001")])

    sale = fiscalize(cash_sale.id, facility.id, gateway=gateway, sleep=sleeper)

    assert sale.fiscal_status == "success"
    assert sale.fiscal_number == "FN-2026-0001"
    assert sale.fiscal_processed_at is not None
    assert sale.fiscal_error is None
    assert sale.fiscal_attempts == 1
    assert gateway.calls == [("reset", cash_sale.id), ("submit", cash_sale.id, facility.id)]
    assert sleeper.delays == [0.0]


def test_fiscalize_retries_once_when_in_progress(cash_sale, facility, sleeper):
    gateway = ScriptedGateway(submit_results=[IN_PROGRESS, GatewayResult.success("FN-7")])

    sale = fiscalize(cash_sale.id, facility.id, gateway=gateway, sleep=sleeper)

    assert sale.fiscal_status == "success"
    assert sale.fiscal_number == "FN-7"
    assert gateway.count("reset") == 2
    assert gateway.count("submit") == 2
    assert [call[0] for call in gateway.calls] == ["reset", "submit", "reset", "submit"]


def test_fiscalize_gives_up_after_one_retry(cash_sale, facility, sleeper):
    gateway = ScriptedGateway(submit_results=[IN_PROGRESS, IN_PROGRESS, GatewayResult.success("FN-never")])

    with pytest.raises(TransientExternalError) as exc_info:
        fiscalize(cash_sale.id, facility.id, gateway=gateway, sleep=sleeper)

    assert str(exc_info.value) == "Fiskalizacija je u toku"
    assert gateway.count("submit") == 2
    assert gateway.count("reset") == 2

    sale = fiscal_service.repository.get_sale(cash_sale.id)
    assert sale.fiscal_status == "error"
    assert sale.fiscal_error == "Fiskalizacija je u toku"
    assert sale.fiscal_number is None


def test_other_failure_is_terminal_with_raw_message(cash_sale, facility, sleeper):
    message = "Poreski identifikator nije validan. Kontaktirajte podrsku."
    gateway = ScriptedGateway(submit_results=[GatewayResult.failed(message)])

    with pytest.raises(ExternalError) as exc_info:
        fiscalize(cash_sale.id, facility.id, gateway=gateway, sleep=sleeper)

    assert not isinstance(exc_info.value, TransientExternalError)
    assert str(exc_info.value) == message
    assert gateway.count("submit") == 1

    sale = fiscal_service.repository.get_sale(cash_sale.id)
    assert sale.fiscal_status == "error"
    assert sale.fiscal_error == message


def test_reset_not_found_still_submits(cash_sale, facility, sleeper):
    gateway = ScriptedGateway(reset_results=[GatewayResult.not_found("Nothing to reset")])
    sale = fiscalize(cash_sale.id, facility.id, gateway=gateway, sleep=sleeper)
    assert sale.fiscal_status == "success"


def test_reset_failure_is_terminal(cash_sale, facility, sleeper):
    gateway = ScriptedGateway(reset_results=[GatewayResult.failed("Gateway down")])
    with pytest.raises(ExternalError):
        fiscalize(cash_sale.id, facility.id, gateway=gateway, sleep=sleeper)
    assert gateway.count("submit") == 0
    assert fiscal_service.repository.get_sale(cash_sale.id).fiscal_status == "error"


def test_successful_sale_is_not_submitted_again(cash_sale, facility, sleeper):
    fiscalize(cash_sale.id, facility.id, gateway=ScriptedGateway(), sleep=sleeper)

    second = ScriptedGateway(submit_results=[GatewayResult.success("FN-other")])
    sale = fiscalize(cash_sale.id, facility.id, gateway=second, sleep=sleeper)

    assert second.calls == []
    assert sale.fiscal_number == "FN-0001"


def test_unexpected_exception_leaves_error_not_pending(cash_sale, facility, sleeper):
    class ExplodingGateway(ScriptedGateway):
        def submit(self, sale_id, facility_id):
            raise TimeoutError("caller timed out")

    with pytest.raises(TimeoutError):
        fiscalize(cash_sale.id, facility.id, gateway=ExplodingGateway(), sleep=sleeper)

    sale = fiscal_service.repository.get_sale(cash_sale.id)
    assert sale.fiscal_status == "error"
    assert sale.fiscal_error == "caller timed out"


def test_settle_and_retry_delays_come_from_config(app, cash_sale, facility, sleeper):
    app.config.update({"FISCAL_SETTLE_SECONDS": 1.5, "FISCAL_RETRY_DELAY_SECONDS": 2.0})
    try:
        gateway = ScriptedGateway(submit_results=[IN_PROGRESS, GatewayResult.success("FN-9")])
        fiscalize(cash_sale.id, facility.id, gateway=gateway, sleep=sleeper)
    finally:
        app.config.update({"FISCAL_SETTLE_SECONDS": 0, "FISCAL_RETRY_DELAY_SECONDS": 0})

    assert sleeper.delays == [1.5, 2.0, 1.5]


def test_fiscalize_unknown_sale(db_session, sleeper):
    with pytest.raises(NotFoundError):
        fiscalize(12345, gateway=ScriptedGateway(), sleep=sleeper)


def test_fiscalize_defaults_to_sale_facility(cash_sale, facility, sleeper):
    gateway = ScriptedGateway()
    fiscalize(cash_sale.id, gateway=gateway, sleep=sleeper)
    assert gateway.calls[-1] == ("submit", cash_sale.id, facility.id)


# =============================================================================
# OPERATOR HELPERS
# =============================================================================

def test_reset_fiscal_status(cash_sale, facility, sleeper):
    with pytest.raises(ExternalError):
        fiscalize(cash_sale.id, facility.id, gateway=ScriptedGateway([GatewayResult.failed("x")]), sleep=sleeper)

    sale = reset_fiscal_status(cash_sale.id)
    assert sale.fiscal_status == "pending"
    assert sale.fiscal_error is None


def test_reset_fiscal_status_refuses_success(cash_sale, facility, sleeper):
    fiscalize(cash_sale.id, facility.id, gateway=ScriptedGateway(), sleep=sleeper)
    with pytest.raises(InvalidStateError):
        reset_fiscal_status(cash_sale.id)


def test_retry_failed_sales(cash_sale, facility, sleeper):
    with pytest.raises(ExternalError):
        fiscalize(cash_sale.id, facility.id, gateway=ScriptedGateway([GatewayResult.failed("x")]), sleep=sleeper)

    outcomes = retry_failed_sales(gateway=ScriptedGateway(), sleep=sleeper)
    assert outcomes == {cash_sale.id: "success"}


def test_default_gateway_is_built_once_per_app(app, db_session, monkeypatch):
    monkeypatch.setitem(app.config, "FISCAL_GATEWAY_URL", "https://fiscal.example.test/api")

    first = fiscal_service._default_gateway()
    second = fiscal_service._default_gateway()
    assert isinstance(first, HttpFiscalGateway)
    assert first is second
    assert app.extensions[GATEWAY_EXTENSION_KEY] is first

    first.close()
    replacement = fiscal_service._default_gateway()
    assert replacement is not first
    assert not replacement.closed
    replacement.close()
