from __future__ import annotations

from ..extensions import db
from fiscalpos.time_utils import to_utc_z


SALE_STATUS_COMPLETED = "completed"
SALE_STATUS_REFUNDED = "refunded"
SALE_STATUS_PARTIAL_REFUND = "partial_refund"

REFUNDED_SALE_STATUSES = (SALE_STATUS_REFUNDED, SALE_STATUS_PARTIAL_REFUND)
# Every sale that was issued to a customer, refunded or not
ISSUED_SALE_STATUSES = (SALE_STATUS_COMPLETED,) + REFUNDED_SALE_STATUSES


class Sale(db.Model):
    """
    Completed sale as handed over by the POS.

    Amounts are frozen at creation; only `status` changes afterwards
    (completed -> refunded / partial_refund).
    """
    __tablename__ = "sales"
    __table_args__ = (
        db.Index("ix_sales_shift_status", "register_shift_id", "status"),
        db.Index("ix_sales_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sale_number = db.Column(db.String(64), nullable=False, unique=True)

    status = db.Column(db.String(16), nullable=False, default=SALE_STATUS_COMPLETED, index=True)

    # All amounts in minor units
    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)
    refunded_cents = db.Column(db.Integer, nullable=False, default=0)

    register_shift_id = db.Column(db.Integer, db.ForeignKey("cash_register_shifts.id"), nullable=False, index=True)
    employee_id = db.Column(db.Integer, nullable=False, index=True)

    needs_electronic_invoice = db.Column(db.Boolean, nullable=False, default=True)

    # Buyer identification (final consumer when absent)
    customer_identification_type = db.Column(db.String(8), nullable=True)  # NIT, CC, CE
    customer_identification = db.Column(db.String(32), nullable=True)
    customer_dv = db.Column(db.String(2), nullable=True)
    customer_name = db.Column(db.String(255), nullable=True)
    customer_email = db.Column(db.String(255), nullable=True)

    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    register_shift = db.relationship("CashRegisterShift", backref=db.backref("sales", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_number": self.sale_number,
            "status": self.status,
            "subtotal_cents": self.subtotal_cents,
            "tax_cents": self.tax_cents,
            "discount_cents": self.discount_cents,
            "total_cents": self.total_cents,
            "refunded_cents": self.refunded_cents,
            "register_shift_id": self.register_shift_id,
            "employee_id": self.employee_id,
            "needs_electronic_invoice": self.needs_electronic_invoice,
            "customer_identification_type": self.customer_identification_type,
            "customer_identification": self.customer_identification,
            "customer_name": self.customer_name,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
        }


class SaleLine(db.Model):
    """Individual line on a sale; carries its own tax classification."""
    __tablename__ = "sale_lines"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)

    code = db.Column(db.String(64), nullable=True)
    description = db.Column(db.String(255), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    line_total_cents = db.Column(db.Integer, nullable=False)  # before tax

    tax_type = db.Column(db.String(16), nullable=False, default="IVA")  # IVA, INC, EXENTO
    tax_rate_bps = db.Column(db.Integer, nullable=False, default=0)  # 1900 = 19%
    tax_cents = db.Column(db.Integer, nullable=False, default=0)

    sale = db.relationship("Sale", backref=db.backref("lines", lazy=True, order_by="SaleLine.id"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "code": self.code,
            "description": self.description,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "line_total_cents": self.line_total_cents,
            "tax_type": self.tax_type,
            "tax_rate_bps": self.tax_rate_bps,
            "tax_cents": self.tax_cents,
        }


class SalePayment(db.Model):
    """
    One tender applied to a sale.

    The *_share_cents columns hold the exact slice of the sale's subtotal,
    tax and discount attributed to this payment. Shares across a sale's
    payments always add up to the sale's figures.
    """
    __tablename__ = "sale_payments"
    __table_args__ = (
        db.Index("ix_sale_payments_method", "payment_method_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    payment_method_id = db.Column(db.Integer, db.ForeignKey("payment_methods.id"), nullable=False)

    amount_cents = db.Column(db.Integer, nullable=False)
    subtotal_share_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_share_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_share_cents = db.Column(db.Integer, nullable=False, default=0)

    reference = db.Column(db.String(128), nullable=True)  # Transaction ID, check number, etc.
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    sale = db.relationship("Sale", backref=db.backref("payments", lazy=True, order_by="SalePayment.id"))
    payment_method = db.relationship("PaymentMethod")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "payment_method_id": self.payment_method_id,
            "payment_method": self.payment_method.name if self.payment_method else None,
            "amount_cents": self.amount_cents,
            "subtotal_share_cents": self.subtotal_share_cents,
            "tax_share_cents": self.tax_share_cents,
            "discount_share_cents": self.discount_share_cents,
            "reference": self.reference,
        }
