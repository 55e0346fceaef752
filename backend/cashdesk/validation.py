"""
Error taxonomy and request-input coercion.

Services raise the typed errors below and never fold them into a generic
failure; routes translate them to HTTP status codes.
"""

from __future__ import annotations

from typing import Any


class CashDeskError(Exception):
    """Base class for engine errors that carry an operator-facing message."""

    code = "ERROR"


class ValidationError(CashDeskError, ValueError):
    """400-level input problem. Nothing was mutated."""

    code = "VALIDATION_ERROR"


class NotFoundError(CashDeskError, LookupError):
    """Referenced session/sale/facility does not exist."""

    code = "NOT_FOUND"


class ConflictError(CashDeskError):
    """409-level invariant conflict (second open session, lost update race)."""

    code = "CONFLICT"


class InvalidStateError(CashDeskError):
    """Operation attempted against a session or sale in the wrong lifecycle state."""

    code = "INVALID_STATE"


class ExternalError(CashDeskError):
    """Terminal fiscal gateway failure. The message is the raw gateway text."""

    code = "EXTERNAL_ERROR"


class TransientExternalError(ExternalError):
    """Fiscal gateway reported a submission already in progress for the sale."""

    code = "SUBMISSION_IN_PROGRESS"


def coerce_cents(value: Any, field: str, *, required: bool = True, allow_negative: bool = False) -> int | None:
    """
    Strict integer parsing for money fields (amounts are integer cents).

    Rejects floats, booleans, scientific notation and decimal strings so a
    client cannot smuggle fractional cents in.
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            raise ValidationError(f"{field} is required")
        return None

    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer")

    if isinstance(value, int):
        parsed = value
    elif isinstance(value, str):
        stripped = value.strip()
        if "e" in stripped.lower():
            raise ValidationError(f"{field} must be a plain integer (scientific notation not allowed)")
        if "." in stripped:
            raise ValidationError(f"{field} must be an integer (no decimals)")
        try:
            parsed = int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer")
    elif isinstance(value, float):
        raise ValidationError(f"{field} must be an integer, not a decimal")
    else:
        raise ValidationError(f"{field} must be an integer")

    if not allow_negative and parsed < 0:
        raise ValidationError(f"{field} cannot be negative")
    return parsed


def coerce_id(value: Any, field: str) -> int:
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field} is required")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer id")


def optional_text(value: Any, field: str, *, max_length: int = 255) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    if len(text) > max_length:
        raise ValidationError(f"{field} must be at most {max_length} characters")
    return text
