# Overview: Maps service errors to JSON error responses.

from flask import jsonify

from ..validation import (
    CashDeskError,
    ConflictError,
    ExternalError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)


STATUS_BY_ERROR = (
    (ValidationError, 400),
    (NotFoundError, 404),
    (ConflictError, 409),
    (InvalidStateError, 409),
    (ExternalError, 502),
)


def error_response(exc: CashDeskError):
    """
    JSON body {"error": <message>, "code": <code>} with the matching status.

    Fiscal gateway messages are passed through verbatim; they often carry
    remediation instructions from the fiscal authority.
    """
    status = 400
    for error_type, code in STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            status = code
            break
    return jsonify({"error": str(exc), "code": exc.code}), status
