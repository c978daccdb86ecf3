# Overview: Service-layer operations for the cash drawer ledger; shifts, movements and reconciliation.

"""
Cash Ledger Service

WHY: Every peso that enters or leaves the drawer must be traceable to a
movement or a sale payment, and the shift close must say exactly how much
cash should be there.

DESIGN PRINCIPLES:
- One open shift per employee
- Movements are append-only, amount > 0, direction encoded by type
- Every write is one conditional UPDATE on the shift (WHERE status = 'open')
- Closed shifts are immutable
- A cash difference is informational: recorded, never raised

EXPECTED CASH:
    opening
    + payments (method.affects_cash_drawer) of completed sales in the shift
    + deposits (excluding the OPENING deposit)
    - withdrawals
Sale and refund movements are audit entries; they never feed the formula
(sales are counted through their payments, refunded sales drop out).
"""

from __future__ import annotations

from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import CashRegisterShift, CashMovement
from ..models.registers import (
    SHIFT_STATUS_OPEN,
    SHIFT_STATUS_CLOSED,
    MOVEMENT_DEPOSIT,
    MOVEMENT_WITHDRAWAL,
    MOVEMENT_SALE,
    MOVEMENT_REFUND,
    OPENING_REFERENCE,
)
from ..repositories import cash as cash_repo
from ..repositories import sales as sales_repo
from fiscalpos.time_utils import utcnow


class ShiftError(Exception):
    """Raised for shift management errors."""
    pass


class AlreadyOpen(ShiftError):
    """Employee already has an open shift."""


class NotOpen(ShiftError):
    """Shift is closed or does not exist."""


class ReconciliationMismatch(Exception):
    """
    Counted cash differs from expected cash.

    Informational only: recorded in the close summary, never raised.
    """

    def __init__(self, shift_id: int, expected_cents: int, counted_cents: int):
        self.shift_id = shift_id
        self.expected_cents = expected_cents
        self.counted_cents = counted_cents
        self.difference_cents = counted_cents - expected_cents
        super().__init__(
            f"Shift {shift_id}: counted {counted_cents} vs expected {expected_cents} "
            f"(difference {self.difference_cents})"
        )

    def to_dict(self) -> dict:
        return {
            "shift_id": self.shift_id,
            "expected_cents": self.expected_cents,
            "counted_cents": self.counted_cents,
            "difference_cents": self.difference_cents,
            "message": str(self),
        }


# Movement types an operator may record directly
MANUAL_MOVEMENT_TYPES = (MOVEMENT_DEPOSIT, MOVEMENT_WITHDRAWAL)


# =============================================================================
# SHIFT LIFECYCLE
# =============================================================================

def open_shift(
    employee_id: int,
    opening_cash_cents: int,
    *,
    register_name: str | None = None,
    notes: str | None = None,
) -> CashRegisterShift:
    """
    Open a shift for an employee and write the OPENING deposit.

    Raises:
        AlreadyOpen: employee already has an open shift
        ShiftError: negative opening amount
    """
    if opening_cash_cents is None or opening_cash_cents < 0:
        raise ShiftError("opening_cash_cents must be >= 0")

    existing = cash_repo.get_open_shift_for_employee(employee_id)
    if existing:
        raise AlreadyOpen(f"Employee {employee_id} already has open shift {existing.id}")

    now = utcnow()
    shift = CashRegisterShift(
        employee_id=employee_id,
        register_name=register_name,
        status=SHIFT_STATUS_OPEN,
        opening_cash_cents=opening_cash_cents,
        movement_count=0,
        opened_at=now,
        notes=notes,
    )
    db.session.add(shift)
    try:
        db.session.flush()
    except IntegrityError:
        # Another shift for this employee was opened since the check above
        db.session.rollback()
        raise AlreadyOpen(f"Employee {employee_id} already has an open shift") from None

    if opening_cash_cents > 0:
        cash_repo.claim_open_shift(shift.id)
        cash_repo.add_movement(
            register_shift_id=shift.id,
            movement_type=MOVEMENT_DEPOSIT,
            amount_cents=opening_cash_cents,
            reason="Shift opened",
            reference=OPENING_REFERENCE,
            created_by=employee_id,
            created_at=now,
        )

    db.session.commit()
    return shift


def get_open_shift(employee_id: int) -> CashRegisterShift | None:
    return cash_repo.get_open_shift_for_employee(employee_id)


def get_shift(shift_id: int) -> CashRegisterShift:
    shift = cash_repo.get_shift(shift_id)
    if not shift:
        raise NotOpen(f"Shift {shift_id} not found")
    return shift


def close_shift(
    shift_id: int,
    counted_cash_cents: int,
    notes: str | None = None,
    *,
    closed_by: int | None = None,
) -> dict:
    """
    Close a shift: freeze expected cash, counted cash and the difference.

    Returns the close summary. A non-zero difference is reported as a
    ReconciliationMismatch entry in the summary.

    Raises:
        NotOpen: shift closed or missing
    """
    if counted_cash_cents is None or counted_cash_cents < 0:
        raise ShiftError("counted_cash_cents must be >= 0")

    shift = cash_repo.get_shift(shift_id)
    if not shift:
        raise NotOpen(f"Shift {shift_id} not found")
    if shift.status != SHIFT_STATUS_OPEN:
        raise NotOpen(f"Shift {shift_id} is not open")

    # Flip status first: no movement can land between the totals and the close
    closed = cash_repo.close_open_shift(
        shift_id,
        closing_cash_cents=counted_cash_cents,
        closed_at=utcnow(),
        closed_by=closed_by if closed_by is not None else shift.employee_id,
        notes=notes if notes is not None else shift.notes,
    )
    if not closed:
        db.session.rollback()
        raise NotOpen(f"Shift {shift_id} is not open")
    db.session.refresh(shift)

    totals = shift_totals(shift_id)
    expected = totals["expected_cash_cents"]
    difference = counted_cash_cents - expected

    shift.expected_cash_cents = expected
    shift.difference_cents = difference
    db.session.commit()

    summary = dict(totals)
    summary["shift"] = shift.to_dict()
    summary["counted_cash_cents"] = counted_cash_cents
    summary["difference_cents"] = difference
    summary["mismatch"] = (
        ReconciliationMismatch(shift_id, expected, counted_cash_cents).to_dict() if difference else None
    )
    return summary


# =============================================================================
# MOVEMENTS
# =============================================================================

def _append(
    shift_id: int,
    movement_type: str,
    amount_cents: int,
    *,
    created_by: int,
    reason: str | None = None,
    reference: str | None = None,
    sale_id: int | None = None,
) -> CashMovement:
    if amount_cents is None or amount_cents <= 0:
        raise ShiftError("amount_cents must be > 0")

    if not cash_repo.claim_open_shift(shift_id):
        raise NotOpen(f"Shift {shift_id} is not open")

    return cash_repo.add_movement(
        register_shift_id=shift_id,
        movement_type=movement_type,
        amount_cents=amount_cents,
        reason=reason,
        reference=reference,
        sale_id=sale_id,
        created_by=created_by,
        created_at=utcnow(),
    )


def record_movement(
    shift_id: int,
    movement_type: str,
    amount_cents: int,
    reason: str | None = None,
    *,
    created_by: int | None = None,
    reference: str | None = None,
) -> CashMovement:
    """
    Append a deposit or withdrawal.

    Raises:
        ShiftError: invalid type or non-positive amount
        NotOpen: shift closed or missing
    """
    if movement_type not in MANUAL_MOVEMENT_TYPES:
        raise ShiftError(f"Invalid movement_type: {movement_type}")
    if reference == OPENING_REFERENCE:
        raise ShiftError(f"Reference {OPENING_REFERENCE} is reserved")

    if created_by is None:
        shift = cash_repo.get_shift(shift_id)
        if not shift:
            raise NotOpen(f"Shift {shift_id} not found")
        created_by = shift.employee_id

    try:
        movement = _append(
            shift_id, movement_type, amount_cents,
            created_by=created_by, reason=reason, reference=reference,
        )
        db.session.commit()
    except ShiftError:
        db.session.rollback()
        raise
    return movement


def record_sale_entry(shift_id: int, sale, cash_amount_cents: int, *, created_by: int) -> CashMovement | None:
    """
    Stage the audit movement for the cash-affecting part of a sale.

    The caller commits together with the sale. Raises NotOpen when the
    shift closed in the meantime, which aborts the sale.
    """
    if cash_amount_cents <= 0:
        if not cash_repo.claim_open_shift(shift_id):
            raise NotOpen(f"Shift {shift_id} is not open")
        return None
    return _append(
        shift_id, MOVEMENT_SALE, cash_amount_cents,
        created_by=created_by,
        reason="Sale",
        reference=sale.sale_number,
        sale_id=sale.id,
    )


def record_refund_entry(shift_id: int, sale, amount_cents: int, *, created_by: int, reason: str | None = None) -> CashMovement:
    """Stage the audit movement for money returned to a customer (caller commits)."""
    return _append(
        shift_id, MOVEMENT_REFUND, amount_cents,
        created_by=created_by,
        reason=reason or "Refund",
        reference=sale.sale_number,
        sale_id=sale.id,
    )


def list_movements(shift_id: int) -> list[CashMovement]:
    return cash_repo.list_movements(shift_id)


# =============================================================================
# RECONCILIATION
# =============================================================================

def shift_totals(shift_id: int) -> dict:
    """
    Expected cash and sales summary for a shift.

    Two grouped queries: payments by method over completed sales, and
    movements by type.
    """
    shift = cash_repo.get_shift(shift_id)
    if not shift:
        raise NotOpen(f"Shift {shift_id} not found")

    by_method = sales_repo.payment_breakdown(register_shift_id=shift_id)
    movements = cash_repo.movement_totals(shift_id)

    cash_payments = sum(row["total_cents"] for row in by_method if row["affects_cash_drawer"])
    sales_summary = sum(row["total_cents"] for row in by_method if row["include_in_sales_summary"])
    deposits = movements.get(MOVEMENT_DEPOSIT, {}).get("total_cents", 0)
    withdrawals = movements.get(MOVEMENT_WITHDRAWAL, {}).get("total_cents", 0)

    expected = shift.opening_cash_cents + cash_payments + deposits - withdrawals

    return {
        "shift_id": shift_id,
        "status": shift.status,
        "opening_cash_cents": shift.opening_cash_cents,
        "cash_payments_cents": cash_payments,
        "deposits_cents": deposits,
        "withdrawals_cents": withdrawals,
        "sale_entries_cents": movements.get(MOVEMENT_SALE, {}).get("total_cents", 0),
        "refunds_cents": movements.get(MOVEMENT_REFUND, {}).get("total_cents", 0),
        "expected_cash_cents": expected,
        "sales_summary_cents": sales_summary,
        "payment_methods": by_method,
    }


def expected_cash(shift_id: int) -> int:
    return shift_totals(shift_id)["expected_cash_cents"]


def sales_summary(shift_id: int) -> int:
    return shift_totals(shift_id)["sales_summary_cents"]


def shift_summary(shift_id: int) -> dict:
    """Shift, its totals and its movements. Closed shifts report their frozen figures."""
    shift = get_shift(shift_id)
    totals = shift_totals(shift_id)
    if shift.status == SHIFT_STATUS_CLOSED:
        totals["expected_cash_cents"] = shift.expected_cash_cents
        totals["counted_cash_cents"] = shift.closing_cash_cents
        totals["difference_cents"] = shift.difference_cents
    totals["shift"] = shift.to_dict()
    totals["movements"] = [m.to_dict() for m in list_movements(shift_id)]
    return totals
