# backend/cashdesk/config.py
from __future__ import annotations
import os


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/cashdesk.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///cashdesk.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Variance thresholds (cents). Tenants may override them via tenant settings.
    VARIANCE_ACCEPTABLE_MAX_CENTS = _env_int("VARIANCE_ACCEPTABLE_MAX_CENTS", 10_000)
    VARIANCE_WARNING_MAX_CENTS = _env_int("VARIANCE_WARNING_MAX_CENTS", 50_000)
    VARIANCE_CRITICAL_MAX_CENTS = _env_int("VARIANCE_CRITICAL_MAX_CENTS", 200_000)

    # Fiscal gateway
    FISCAL_GATEWAY_URL = os.environ.get("FISCAL_GATEWAY_URL", "http://127.0.0.1:8080/api")
    FISCAL_GATEWAY_TOKEN = os.environ.get("FISCAL_GATEWAY_TOKEN")
    FISCAL_REQUEST_TIMEOUT_SECONDS = _env_float("FISCAL_REQUEST_TIMEOUT_SECONDS", 15.0)
    FISCAL_SETTLE_SECONDS = _env_float("FISCAL_SETTLE_SECONDS", 1.5)
    FISCAL_RETRY_DELAY_SECONDS = _env_float("FISCAL_RETRY_DELAY_SECONDS", 2.0)
