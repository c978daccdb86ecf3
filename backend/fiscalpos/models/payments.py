from __future__ import annotations

from ..extensions import db
from fiscalpos.time_utils import to_utc_z


class PaymentMethod(db.Model):
    """
    Configured payment instrument.

    Two independent facets drive reconciliation:
    - affects_cash_drawer: amount counts toward the physical cash balance
    - include_in_sales_summary: amount counts toward the displayed sales total

    A digital wallet is typically (False, True); a cash-back voucher that is
    redeemed at the drawer may be (True, False).

    Methods are never deleted once referenced, only deactivated.
    """
    __tablename__ = "payment_methods"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(64), nullable=False, unique=True)
    method_type = db.Column(db.String(16), nullable=False, default="other")  # cash, card, digital, check, other

    affects_cash_drawer = db.Column(db.Boolean, nullable=False, default=True)
    include_in_sales_summary = db.Column(db.Boolean, nullable=False, default=True)

    # DIAN parametric payment means code (10=cash, 48=card, 47=transfer, ...)
    dian_payment_method_id = db.Column(db.Integer, nullable=True)

    requires_reference = db.Column(db.Boolean, nullable=False, default=False)
    is_system_default = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)
    display_order = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "method_type": self.method_type,
            "affects_cash_drawer": self.affects_cash_drawer,
            "include_in_sales_summary": self.include_in_sales_summary,
            "dian_payment_method_id": self.dian_payment_method_id,
            "requires_reference": self.requires_reference,
            "is_system_default": self.is_system_default,
            "is_active": self.is_active,
            "display_order": self.display_order,
            "created_at": to_utc_z(self.created_at),
        }
