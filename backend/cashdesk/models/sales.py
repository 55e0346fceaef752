from __future__ import annotations

from ..extensions import db
from cashdesk.time_utils import to_utc_z


class Sale(db.Model):
    """
    Finalized sale (or refund) rung up against a cash session.

    WHY: The sale ledger is the authoritative source for session totals;
    reconciliation re-sums it instead of trusting the session's running cache.

    LIFECYCLE (status): final -> partial_refund -> refunded. Refunds are new
    Sale rows with refund_for_id pointing at the original.

    FISCAL (fiscal_status): pending -> success | error | retry. Only the fiscal
    service writes the fiscal_* columns; fiscal_number is written once.
    """
    __tablename__ = "sales"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "number", name="uq_sales_tenant_number"),
        db.Index("ix_sales_session_created", "cash_session_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenants.id"), nullable=False, index=True)
    facility_id = db.Column(db.Integer, db.ForeignKey("facilities.id"), nullable=False, index=True)
    cash_session_id = db.Column(db.Integer, db.ForeignKey("cash_sessions.id"), nullable=False, index=True)
    cashier_id = db.Column(db.Integer, db.ForeignKey("employees.id"), nullable=False)

    # Human-readable number (e.g., "S-000042", refunds "R-000007")
    number = db.Column(db.String(32), nullable=False)
    status = db.Column(db.String(16), nullable=False, default="final", index=True)
    refund_for_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=True, index=True)

    client_ref = db.Column(db.String(64), nullable=True)
    appointment_ref = db.Column(db.String(64), nullable=True)
    note = db.Column(db.Text, nullable=True)

    # Summary (all amounts in cents)
    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_total_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_total_cents = db.Column(db.Integer, nullable=False, default=0)
    tip_cents = db.Column(db.Integer, nullable=False, default=0)
    grand_total_cents = db.Column(db.Integer, nullable=False, default=0)

    # Fiscal sub-record
    fiscal_status = db.Column(db.String(16), nullable=False, default="pending", index=True)
    fiscal_correlation_id = db.Column(db.String(64), nullable=False)
    fiscal_number = db.Column(db.String(64), nullable=True)
    fiscal_error = db.Column(db.Text, nullable=True)
    fiscal_processed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    fiscal_attempts = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    facility = db.relationship("Facility")
    cash_session = db.relationship("CashSession", backref=db.backref("sales", lazy=True))
    cashier = db.relationship("Employee")
    refund_for = db.relationship("Sale", remote_side=[id], backref=db.backref("refunds", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_refund(self) -> bool:
        return self.refund_for_id is not None

    def summary_dict(self) -> dict:
        return {
            "subtotal_cents": self.subtotal_cents,
            "discount_total_cents": self.discount_total_cents,
            "tax_total_cents": self.tax_total_cents,
            "tip_cents": self.tip_cents,
            "grand_total_cents": self.grand_total_cents,
        }

    def fiscal_dict(self) -> dict:
        return {
            "status": self.fiscal_status,
            "correlation_id": self.fiscal_correlation_id,
            "fiscal_number": self.fiscal_number,
            "error": self.fiscal_error,
            "processed_at": to_utc_z(self.fiscal_processed_at) if self.fiscal_processed_at else None,
            "attempts": self.fiscal_attempts,
        }

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "facility_id": self.facility_id,
            "cash_session_id": self.cash_session_id,
            "cashier_id": self.cashier_id,
            "number": self.number,
            "date": to_utc_z(self.created_at),
            "status": self.status,
            "refund_for_id": self.refund_for_id,
            "client_ref": self.client_ref,
            "appointment_ref": self.appointment_ref,
            "note": self.note,
            "items": [item.to_dict() for item in self.items],
            "summary": self.summary_dict(),
            "payments": [payment.to_dict() for payment in self.payments],
            "fiscal": self.fiscal_dict(),
            "version_id": self.version_id,
        }


class SaleItem(db.Model):
    """Line item (service or product) on a sale."""
    __tablename__ = "sale_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)

    ref_id = db.Column(db.String(64), nullable=False)
    item_type = db.Column(db.String(16), nullable=False)  # service, product
    name = db.Column(db.String(255), nullable=False)
    qty = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_rate_bps = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False)

    sale = db.relationship("Sale", backref=db.backref("items", lazy=True, order_by="SaleItem.id"))

    def to_dict(self) -> dict:
        return {
            "ref_id": self.ref_id,
            "type": self.item_type,
            "name": self.name,
            "qty": self.qty,
            "unit_price_cents": self.unit_price_cents,
            "discount_cents": self.discount_cents,
            "tax_rate_bps": self.tax_rate_bps,
            "total_cents": self.total_cents,
        }


class SalePayment(db.Model):
    """
    Tender applied to a sale.

    amount_cents is what the customer handed over; change_cents is returned
    cash, so the drawer contribution is amount_cents - change_cents.
    """
    __tablename__ = "sale_payments"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)

    method = db.Column(db.String(16), nullable=False)  # cash, card, voucher, gift, bank, other
    amount_cents = db.Column(db.Integer, nullable=False)
    change_cents = db.Column(db.Integer, nullable=False, default=0)
    external_ref = db.Column(db.String(128), nullable=True)

    sale = db.relationship("Sale", backref=db.backref("payments", lazy=True, order_by="SalePayment.id"))

    @property
    def net_cents(self) -> int:
        return (self.amount_cents or 0) - (self.change_cents or 0)

    def to_dict(self) -> dict:
        return {
            "method": self.method,
            "amount_cents": self.amount_cents,
            "change_cents": self.change_cents,
            "external_ref": self.external_ref,
        }
