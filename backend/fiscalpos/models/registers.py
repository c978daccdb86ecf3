from __future__ import annotations

from ..extensions import db
from fiscalpos.time_utils import to_utc_z


SHIFT_STATUS_OPEN = "open"
SHIFT_STATUS_CLOSED = "closed"

MOVEMENT_DEPOSIT = "deposit"
MOVEMENT_WITHDRAWAL = "withdrawal"
MOVEMENT_SALE = "sale"
MOVEMENT_REFUND = "refund"

MOVEMENT_TYPES = (MOVEMENT_DEPOSIT, MOVEMENT_WITHDRAWAL, MOVEMENT_SALE, MOVEMENT_REFUND)

# Reference tag of the synthetic deposit written when a shift opens
OPENING_REFERENCE = "OPENING"


class CashRegisterShift(db.Model):
    """
    Cash register shift for one employee.

    LIFECYCLE:
    - open: movements and sales may be appended
    - closed: counted cash recorded, expected/difference frozen

    IMMUTABLE: Once closed, the shift and its movements are never modified.
    """
    __tablename__ = "cash_register_shifts"
    __table_args__ = (
        db.Index("ix_shifts_employee_status", "employee_id", "status"),
        # At most one open shift per employee
        db.Index(
            "uq_shifts_one_open_per_employee", "employee_id", unique=True,
            sqlite_where=db.text("status = 'open'"), postgresql_where=db.text("status = 'open'"),
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    employee_id = db.Column(db.Integer, nullable=False, index=True)
    register_name = db.Column(db.String(64), nullable=True)

    status = db.Column(db.String(16), nullable=False, default=SHIFT_STATUS_OPEN, index=True)

    # Cash tracking (all amounts in minor units)
    opening_cash_cents = db.Column(db.Integer, nullable=False, default=0)
    closing_cash_cents = db.Column(db.Integer, nullable=True)  # operator count
    expected_cash_cents = db.Column(db.Integer, nullable=True)  # frozen at close
    difference_cents = db.Column(db.Integer, nullable=True)  # closing - expected

    # Bumped by every guarded write; the open-check rides on the same UPDATE
    movement_count = db.Column(db.Integer, nullable=False, default=0)

    opened_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    closed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    closed_by = db.Column(db.Integer, nullable=True)

    notes = db.Column(db.Text, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "employee_id": self.employee_id,
            "register_name": self.register_name,
            "status": self.status,
            "opening_cash_cents": self.opening_cash_cents,
            "closing_cash_cents": self.closing_cash_cents,
            "expected_cash_cents": self.expected_cash_cents,
            "difference_cents": self.difference_cents,
            "opened_at": to_utc_z(self.opened_at),
            "closed_at": to_utc_z(self.closed_at) if self.closed_at else None,
            "closed_by": self.closed_by,
            "notes": self.notes,
        }


class CashMovement(db.Model):
    """
    Append-only cash ledger entry.

    Direction is encoded by movement_type, never by sign: amount_cents is
    always positive.

    MOVEMENT TYPES:
    - deposit: cash added (the OPENING deposit mirrors the opening amount)
    - withdrawal: cash removed
    - sale: cash-affecting portion of a sale (audit trail)
    - refund: money returned to a customer (audit trail)
    """
    __tablename__ = "cash_movements"
    __table_args__ = (
        db.Index("ix_cash_movements_shift_type", "register_shift_id", "movement_type"),
        db.CheckConstraint("amount_cents > 0", name="ck_cash_movements_amount_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    register_shift_id = db.Column(db.Integer, db.ForeignKey("cash_register_shifts.id"), nullable=False, index=True)

    movement_type = db.Column(db.String(16), nullable=False, index=True)
    amount_cents = db.Column(db.Integer, nullable=False)
    reason = db.Column(db.String(255), nullable=True)
    reference = db.Column(db.String(64), nullable=True)  # OPENING, sale number, ...

    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=True)
    created_by = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    register_shift = db.relationship(
        "CashRegisterShift",
        backref=db.backref("movements", lazy=True, order_by="CashMovement.id"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "register_shift_id": self.register_shift_id,
            "movement_type": self.movement_type,
            "amount_cents": self.amount_cents,
            "reason": self.reason,
            "reference": self.reference,
            "sale_id": self.sale_id,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
        }
