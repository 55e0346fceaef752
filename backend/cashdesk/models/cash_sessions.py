from __future__ import annotations

from ..extensions import db
from cashdesk.time_utils import to_utc_z


class CashSession(db.Model):
    """
    Cash drawer session (one shift at one facility).

    LIFECYCLE:
    - OPEN: Drawer in use, sales and refunds post against it
    - CLOSED: Cash counted, expected cash and variance frozen

    INVARIANTS:
    - At most one OPEN session per tenant/facility (partial unique index below)
    - totals_* columns are a running cache; the sale ledger is authoritative
    - Once closed, no further postings are accepted
    """
    __tablename__ = "cash_sessions"
    __table_args__ = (
        db.Index(
            "uq_cash_sessions_open_facility",
            "tenant_id",
            "facility_id",
            unique=True,
            sqlite_where=db.text("status = 'OPEN'"),
            postgresql_where=db.text("status = 'OPEN'"),
        ),
        db.Index("ix_cash_sessions_facility_opened", "facility_id", "opened_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    facility_id = db.Column(db.Integer, db.ForeignKey("facilities.id"), nullable=False, index=True)

    status = db.Column(db.String(16), nullable=False, default="OPEN", index=True)  # OPEN, CLOSED

    opened_by_id = db.Column(db.Integer, db.ForeignKey("employees.id"), nullable=False)
    opened_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    opening_float_cents = db.Column(db.Integer, nullable=False, default=0)
    note = db.Column(db.Text, nullable=True)

    closed_by_id = db.Column(db.Integer, db.ForeignKey("employees.id"), nullable=True)
    closed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    closing_count_cents = db.Column(db.Integer, nullable=True)
    closing_note = db.Column(db.Text, nullable=True)

    # Running totals by tender kind (refunds subtract)
    total_cash_cents = db.Column(db.Integer, nullable=False, default=0)
    total_card_cents = db.Column(db.Integer, nullable=False, default=0)
    total_voucher_cents = db.Column(db.Integer, nullable=False, default=0)
    total_gift_cents = db.Column(db.Integer, nullable=False, default=0)
    total_bank_cents = db.Column(db.Integer, nullable=False, default=0)
    total_other_cents = db.Column(db.Integer, nullable=False, default=0)

    total_sales_cents = db.Column(db.Integer, nullable=False, default=0)
    total_refunds_cents = db.Column(db.Integer, nullable=False, default=0)
    cash_refunds_cents = db.Column(db.Integer, nullable=False, default=0)

    # Frozen at close
    expected_cash_cents = db.Column(db.Integer, nullable=True)
    variance_cents = db.Column(db.Integer, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    tenant = db.relationship("Tenant")
    facility = db.relationship("Facility", backref=db.backref("cash_sessions", lazy=True))
    opened_by = db.relationship("Employee", foreign_keys=[opened_by_id])
    closed_by = db.relationship("Employee", foreign_keys=[closed_by_id])
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_open(self) -> bool:
        return self.status == "OPEN"

    def totals_by_method(self) -> dict[str, int]:
        return {
            "cash": self.total_cash_cents or 0,
            "card": self.total_card_cents or 0,
            "voucher": self.total_voucher_cents or 0,
            "gift": self.total_gift_cents or 0,
            "bank": self.total_bank_cents or 0,
            "other": self.total_other_cents or 0,
        }

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "facility": {
                "id": self.facility_id,
                "name": self.facility.name if self.facility else None,
            },
            "status": self.status,
            "opened_by": self.opened_by.to_ref() if self.opened_by else None,
            "opened_at": to_utc_z(self.opened_at),
            "opening_float_cents": self.opening_float_cents,
            "note": self.note,
            "closed_by": self.closed_by.to_ref() if self.closed_by else None,
            "closed_at": to_utc_z(self.closed_at) if self.closed_at else None,
            "closing_count_cents": self.closing_count_cents,
            "closing_note": self.closing_note,
            "totals_by_method": self.totals_by_method(),
            "total_sales_cents": self.total_sales_cents,
            "total_refunds_cents": self.total_refunds_cents,
            "expected_cash_cents": self.expected_cash_cents,
            "variance_cents": self.variance_cents,
            "version_id": self.version_id,
        }


class CashSessionEvent(db.Model):
    """
    Append-only audit trail for a cash session.

    EVENT TYPES:
    - SESSION_OPEN: Drawer opened with its float
    - CASH_VERIFIED: A person confirmed a counted amount
    - VARIANCE_HANDLED: Disposition recorded for a counted variance
    - SESSION_CLOSE: Final count, expected cash and variance frozen
    """
    __tablename__ = "cash_session_events"
    __table_args__ = (
        db.Index("ix_cash_session_events_session_occurred", "cash_session_id", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    cash_session_id = db.Column(db.Integer, db.ForeignKey("cash_sessions.id"), nullable=False, index=True)
    employee_id = db.Column(db.Integer, db.ForeignKey("employees.id"), nullable=True)

    event_type = db.Column(db.String(32), nullable=False, index=True)

    amount_cents = db.Column(db.Integer, nullable=True)
    expected_cash_cents = db.Column(db.Integer, nullable=True)
    variance_cents = db.Column(db.Integer, nullable=True)

    # VARIANCE_HANDLED only
    action = db.Column(db.String(32), nullable=True)
    severity = db.Column(db.String(16), nullable=True)
    reason = db.Column(db.String(255), nullable=True)

    note = db.Column(db.Text, nullable=True)
    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    cash_session = db.relationship("CashSession", backref=db.backref("events", lazy=True))
    employee = db.relationship("Employee")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "cash_session_id": self.cash_session_id,
            "employee_id": self.employee_id,
            "event_type": self.event_type,
            "amount_cents": self.amount_cents,
            "expected_cash_cents": self.expected_cash_cents,
            "variance_cents": self.variance_cents,
            "action": self.action,
            "severity": self.severity,
            "reason": self.reason,
            "note": self.note,
            "occurred_at": to_utc_z(self.occurred_at),
        }
