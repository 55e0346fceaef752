# Overview: Fiscal submission controller (reset -> settle -> submit, one retry on "in progress").

"""
Fiscal Submission Controller

WHY: The fiscal endpoint holds an exclusive per-sale lock. A crashed earlier
attempt can leave that lock behind, and the next submit then fails with
"submission in progress". Resetting first clears the lock, so a single retry
after another reset is safe.

DESIGN PRINCIPLES:
- The flow is a pure transition function (advance); timers and I/O live in
  fiscalize() only, with the sleeper injected
- A successful sale is never submitted again
- fiscal_number is written once, on the first success
- Every exit path leaves fiscal_status at success or error, never pending
- Only the sale's fiscal_* columns are written here
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from typing import Callable, Optional

from flask import current_app

from ..extensions import db
from ..models import Sale
from ..validation import ExternalError, InvalidStateError, TransientExternalError
from cashdesk.time_utils import utcnow
from . import repository
from .fiscal_gateway import (
    OUTCOME_IN_PROGRESS,
    OUTCOME_NOT_FOUND,
    OUTCOME_OK,
    FiscalGateway,
    HttpFiscalGateway,
)


logger = logging.getLogger(__name__)


# =============================================================================
# FISCAL STATUS (CONSTANTS)
# =============================================================================

FISCAL_PENDING = "pending"
FISCAL_SUCCESS = "success"
FISCAL_ERROR = "error"
FISCAL_RETRY = "retry"

# One retry (two submit attempts) for "submission in progress"; fixed
MAX_RETRIES = 1

GATEWAY_EXTENSION_KEY = "cashdesk.fiscal_gateway"


# =============================================================================
# FLOW STATE MACHINE (PURE)
# =============================================================================

STATE_IDLE = "idle"
STATE_RESETTING = "resetting"
STATE_SETTLING = "settling"
STATE_SUBMITTING = "submitting"
STATE_DONE = "done"
STATE_FAILED = "failed"

TERMINAL_STATES = (STATE_DONE, STATE_FAILED)

EVENT_START = "start"
EVENT_RESET_OK = "reset_ok"
EVENT_RESET_NOT_FOUND = "reset_not_found"
EVENT_RESET_FAILED = "reset_failed"
EVENT_SETTLED = "settled"
EVENT_SUBMIT_OK = "submit_ok"
EVENT_SUBMIT_IN_PROGRESS = "submit_in_progress"
EVENT_SUBMIT_FAILED = "submit_failed"


@dataclass(frozen=True)
class FiscalFlow:
    state: str = STATE_IDLE
    retries: int = 0
    fiscal_number: Optional[str] = None
    message: Optional[str] = None
    transient: bool = False

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES


def advance(
    flow: FiscalFlow,
    event: str,
    *,
    fiscal_number: Optional[str] = None,
    message: Optional[str] = None,
) -> FiscalFlow:
    """
    Next flow state for an event.

    Raises:
        InvalidStateError: Event not legal in the current state
    """
    state = flow.state

    if state == STATE_IDLE and event == EVENT_START:
        return replace(flow, state=STATE_RESETTING)

    if state == STATE_RESETTING:
        if event in (EVENT_RESET_OK, EVENT_RESET_NOT_FOUND):
            return replace(flow, state=STATE_SETTLING)
        if event == EVENT_RESET_FAILED:
            return replace(flow, state=STATE_FAILED, message=message, transient=False)

    if state == STATE_SETTLING and event == EVENT_SETTLED:
        return replace(flow, state=STATE_SUBMITTING)

    if state == STATE_SUBMITTING:
        if event == EVENT_SUBMIT_OK:
            return replace(flow, state=STATE_DONE, fiscal_number=fiscal_number, message=None, transient=False)
        if event == EVENT_SUBMIT_IN_PROGRESS:
            if flow.retries < MAX_RETRIES:
                return replace(flow, state=STATE_RESETTING, retries=flow.retries + 1, message=message, transient=True)
            return replace(flow, state=STATE_FAILED, message=message, transient=True)
        if event == EVENT_SUBMIT_FAILED:
            return replace(flow, state=STATE_FAILED, message=message, transient=False)

    raise InvalidStateError(f"Fiscal flow cannot handle '{event}' while {state}")


# =============================================================================
# CONTROLLER
# =============================================================================

def _default_gateway() -> FiscalGateway:
    """The app-wide gateway; the HTTP client is built once and reused."""
    gateway = current_app.extensions.get(GATEWAY_EXTENSION_KEY)
    if gateway is None or getattr(gateway, "closed", False):
        gateway = HttpFiscalGateway.from_config(current_app.config)
        current_app.extensions[GATEWAY_EXTENSION_KEY] = gateway
    return gateway


def _mark_error(sale: Sale, message: str) -> None:
    sale.fiscal_status = FISCAL_ERROR
    sale.fiscal_error = message
    db.session.commit()


def fiscalize(
    sale_id: int,
    facility_id: Optional[int] = None,
    gateway: Optional[FiscalGateway] = None,
    sleep: Optional[Callable[[float], None]] = None,
) -> Sale:
    """
    Obtain a fiscal number for a sale.

    Already-successful sales are returned untouched. Otherwise: reset, wait
    FISCAL_SETTLE_SECONDS, submit. A "submission in progress" answer marks the
    sale ``retry``, waits FISCAL_RETRY_DELAY_SECONDS and runs the sequence
    once more. Any other failure is terminal.

    Raises:
        NotFoundError: Unknown sale
        TransientExternalError: Still "in progress" after the retry
        ExternalError: Any other gateway failure (message kept verbatim)
    """
    sale = repository.get_sale(sale_id)
    if sale.fiscal_status == FISCAL_SUCCESS:
        logger.info("Sale %s already fiscalized (%s); skipping", sale.id, sale.fiscal_number)
        return sale

    gateway = gateway or _default_gateway()
    sleep = sleep or time.sleep
    facility_id = facility_id or sale.facility_id
    settle_seconds = float(current_app.config.get("FISCAL_SETTLE_SECONDS", 1.5))
    retry_delay = float(current_app.config.get("FISCAL_RETRY_DELAY_SECONDS", 2.0))

    flow = advance(FiscalFlow(), EVENT_START)
    try:
        while not flow.finished:
            if flow.state == STATE_RESETTING:
                result = gateway.reset(sale.id)
                logger.info("Fiscal reset for sale %s (retry %s): %s", sale.id, flow.retries, result.outcome)
                if result.outcome == OUTCOME_OK:
                    flow = advance(flow, EVENT_RESET_OK)
                elif result.outcome == OUTCOME_NOT_FOUND:
                    flow = advance(flow, EVENT_RESET_NOT_FOUND)
                else:
                    flow = advance(flow, EVENT_RESET_FAILED, message=result.message or "Fiscal reset failed")

            elif flow.state == STATE_SETTLING:
                sleep(settle_seconds)
                flow = advance(flow, EVENT_SETTLED)

            elif flow.state == STATE_SUBMITTING:
                sale.fiscal_attempts = (sale.fiscal_attempts or 0) + 1
                result = gateway.submit(sale.id, facility_id)
                logger.info(
                    "Fiscal submit for sale %s (attempt %s): %s",
                    sale.id, sale.fiscal_attempts, result.outcome,
                )
                if result.outcome == OUTCOME_OK:
                    flow = advance(flow, EVENT_SUBMIT_OK, fiscal_number=result.fiscal_number)
                elif result.outcome == OUTCOME_IN_PROGRESS:
                    flow = advance(flow, EVENT_SUBMIT_IN_PROGRESS, message=result.message)
                    if flow.state == STATE_RESETTING:
                        sale.fiscal_status = FISCAL_RETRY
                        sale.fiscal_error = result.message
                        db.session.commit()
                        logger.warning(
                            "Fiscal submission for sale %s still in progress; retrying in %ss",
                            sale.id, retry_delay,
                        )
                        sleep(retry_delay)
                else:
                    flow = advance(flow, EVENT_SUBMIT_FAILED, message=result.message or "Fiscal submission failed")
    except Exception as exc:
        db.session.rollback()
        sale = repository.get_sale(sale_id)
        _mark_error(sale, str(exc) or exc.__class__.__name__)
        logger.exception("Fiscalization of sale %s aborted", sale_id)
        raise

    if flow.state == STATE_DONE:
        sale.fiscal_status = FISCAL_SUCCESS
        if not sale.fiscal_number:
            sale.fiscal_number = flow.fiscal_number
        sale.fiscal_error = None
        sale.fiscal_processed_at = utcnow()
        db.session.commit()
        logger.info("Sale %s fiscalized: %s", sale.id, sale.fiscal_number)
        return sale

    _mark_error(sale, flow.message)
    logger.error("Fiscalization of sale %s failed: %s", sale.id, flow.message)
    if flow.transient:
        raise TransientExternalError(flow.message)
    raise ExternalError(flow.message)


def reset_fiscal_status(sale_id: int) -> Sale:
    """
    Put an errored sale back to pending so it can be fiscalized again.

    Raises:
        InvalidStateError: Sale already fiscalized
    """
    sale = repository.lock_sale(sale_id)
    if sale.fiscal_status == FISCAL_SUCCESS:
        db.session.rollback()
        raise InvalidStateError(f"Sale {sale_id} is already fiscalized")
    if sale.fiscal_status != FISCAL_PENDING:
        sale.fiscal_status = FISCAL_PENDING
        sale.fiscal_error = None
    db.session.commit()
    return sale


def retry_failed_sales(
    tenant_id: Optional[int] = None,
    gateway: Optional[FiscalGateway] = None,
    sleep: Optional[Callable[[float], None]] = None,
) -> dict:
    """Re-run fiscalize for every sale in error/retry; returns per-sale outcomes."""
    query = db.session.query(Sale.id).filter(Sale.fiscal_status.in_((FISCAL_ERROR, FISCAL_RETRY)))
    if tenant_id is not None:
        query = query.filter(Sale.tenant_id == tenant_id)
    sale_ids = [row.id for row in query.order_by(Sale.id.asc()).all()]
    if sale_ids and gateway is None:
        gateway = _default_gateway()

    outcomes = {}
    for sale_id in sale_ids:
        try:
            sale = fiscalize(sale_id, gateway=gateway, sleep=sleep)
            outcomes[sale_id] = sale.fiscal_status
        except ExternalError as exc:
            outcomes[sale_id] = f"{FISCAL_ERROR}: {exc}"
    return outcomes
