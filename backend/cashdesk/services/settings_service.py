# Overview: Per-tenant settings (variance thresholds) with app-config fallback.

from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..models import Tenant, TenantSetting
from ..validation import NotFoundError, ValidationError
from .concurrency import lock_for_update, run_with_retry
from .variance_service import VarianceThresholds


KEY_ACCEPTABLE_MAX = "variance.acceptable_max_cents"
KEY_WARNING_MAX = "variance.warning_max_cents"
KEY_CRITICAL_MAX = "variance.critical_max_cents"

THRESHOLD_KEYS = (KEY_ACCEPTABLE_MAX, KEY_WARNING_MAX, KEY_CRITICAL_MAX)

KNOWN_KEYS = set(THRESHOLD_KEYS)


def get_tenant_settings(tenant_id: int) -> list[TenantSetting]:
    return db.session.query(TenantSetting).filter_by(tenant_id=tenant_id).order_by(TenantSetting.key.asc()).all()


def get_tenant_setting(tenant_id: int, key: str) -> TenantSetting | None:
    return db.session.query(TenantSetting).filter_by(tenant_id=tenant_id, key=key).first()


def get_variance_thresholds(tenant_id: int | None) -> VarianceThresholds:
    """
    Resolve variance thresholds for a tenant.

    Tenant overrides win key by key; anything not overridden comes from the
    VARIANCE_*_MAX_CENTS app config.
    """
    defaults = VarianceThresholds.from_config(current_app.config)
    if tenant_id is None:
        return defaults

    overrides = {
        row.key: row.value
        for row in db.session.query(TenantSetting).filter(
            TenantSetting.tenant_id == tenant_id,
            TenantSetting.key.in_(THRESHOLD_KEYS),
        ).all()
        if row.value is not None
    }
    if not overrides:
        return defaults

    return VarianceThresholds(
        acceptable_max=int(overrides.get(KEY_ACCEPTABLE_MAX, defaults.acceptable_max)),
        warning_max=int(overrides.get(KEY_WARNING_MAX, defaults.warning_max)),
        critical_max=int(overrides.get(KEY_CRITICAL_MAX, defaults.critical_max)),
    )


def set_tenant_setting(tenant_id: int, key: str, value: str | int | None) -> TenantSetting:
    """
    Create or update a tenant setting.

    Threshold keys must be non-negative integers and keep the tiers ordered
    (acceptable <= warning <= critical) once applied.
    """
    def _op():
        if key not in KNOWN_KEYS:
            raise ValidationError(f"Unknown setting key: {key}")

        tenant = db.session.query(Tenant).filter_by(id=tenant_id).first()
        if not tenant:
            raise NotFoundError("Tenant not found")

        normalized = None
        if value is not None:
            try:
                parsed = int(str(value).strip())
            except ValueError:
                raise ValidationError(f"{key} must be an integer number of cents")
            if parsed < 0:
                raise ValidationError(f"{key} cannot be negative")
            normalized = str(parsed)

        setting = lock_for_update(
            db.session.query(TenantSetting).filter_by(tenant_id=tenant_id, key=key)
        ).first()
        if setting:
            setting.value = normalized
        else:
            setting = TenantSetting(tenant_id=tenant_id, key=key, value=normalized)
            db.session.add(setting)
        db.session.flush()

        if not get_variance_thresholds(tenant_id).is_ordered():
            raise ValidationError("Variance thresholds must satisfy acceptable <= warning <= critical")

        db.session.commit()
        return setting

    return run_with_retry(_op)
