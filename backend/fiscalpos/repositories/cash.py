# Overview: Reads and guarded writes for cash register shifts and movements.

from __future__ import annotations

from sqlalchemy import func, update

from ..extensions import db
from ..models import CashRegisterShift, CashMovement
from ..models.registers import SHIFT_STATUS_OPEN, SHIFT_STATUS_CLOSED, MOVEMENT_DEPOSIT, OPENING_REFERENCE
from ..services.concurrency import guarded_update


def get_shift(shift_id: int) -> CashRegisterShift | None:
    return db.session.get(CashRegisterShift, shift_id)


def get_open_shift_for_employee(employee_id: int) -> CashRegisterShift | None:
    return (
        db.session.query(CashRegisterShift)
        .filter_by(employee_id=employee_id, status=SHIFT_STATUS_OPEN)
        .first()
    )


def list_shifts(*, status: str | None = None, employee_id: int | None = None, limit: int = 50) -> list[CashRegisterShift]:
    query = db.session.query(CashRegisterShift)
    if status:
        query = query.filter(CashRegisterShift.status == status)
    if employee_id is not None:
        query = query.filter(CashRegisterShift.employee_id == employee_id)
    return query.order_by(CashRegisterShift.opened_at.desc(), CashRegisterShift.id.desc()).limit(limit).all()


def claim_open_shift(shift_id: int) -> bool:
    """
    Bump the shift's write counter only if it is still open.

    Every ledger write rides on this UPDATE, so a movement can never land
    after the close UPDATE has committed.
    """
    stmt = (
        update(CashRegisterShift)
        .where(CashRegisterShift.id == shift_id, CashRegisterShift.status == SHIFT_STATUS_OPEN)
        .values(movement_count=CashRegisterShift.movement_count + 1)
        .execution_options(synchronize_session=False)
    )
    return guarded_update(stmt)


def close_open_shift(shift_id: int, **values) -> bool:
    stmt = (
        update(CashRegisterShift)
        .where(CashRegisterShift.id == shift_id, CashRegisterShift.status == SHIFT_STATUS_OPEN)
        .values(status=SHIFT_STATUS_CLOSED, **values)
        .execution_options(synchronize_session=False)
    )
    return guarded_update(stmt)


def add_movement(**fields) -> CashMovement:
    movement = CashMovement(**fields)
    db.session.add(movement)
    return movement


def list_movements(shift_id: int) -> list[CashMovement]:
    return (
        db.session.query(CashMovement)
        .filter_by(register_shift_id=shift_id)
        .order_by(CashMovement.id)
        .all()
    )


def movement_totals(shift_id: int) -> dict:
    """Sum of amounts per movement type, the OPENING deposit excluded (one grouped query)."""
    rows = (
        db.session.query(
            CashMovement.movement_type,
            func.count(CashMovement.id),
            func.coalesce(func.sum(CashMovement.amount_cents), 0),
        )
        .filter(CashMovement.register_shift_id == shift_id)
        .filter(
            ~(
                (CashMovement.movement_type == MOVEMENT_DEPOSIT)
                & (func.coalesce(CashMovement.reference, "") == OPENING_REFERENCE)
            )
        )
        .group_by(CashMovement.movement_type)
        .all()
    )
    return {row[0]: {"count": int(row[1]), "total_cents": int(row[2])} for row in rows}
