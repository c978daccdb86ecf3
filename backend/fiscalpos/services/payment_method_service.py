# Overview: Service-layer operations for payment methods; registry of tenders and their reconciliation facets.

"""
Payment Method Registry

WHY: Reconciliation never looks at a method's name or type. Whether a tender
counts toward the drawer or toward the displayed sales total is decided by
two explicit flags on the method itself.

DESIGN PRINCIPLES:
- affects_cash_drawer and include_in_sales_summary are independent
- Methods are soft-disabled, never deleted (sales keep their FK)
- System defaults cannot be deactivated
"""

from __future__ import annotations

from ..extensions import db
from ..models import PaymentMethod


class PaymentMethodError(Exception):
    """Raised for payment method registry errors."""
    pass


METHOD_TYPES = ("cash", "card", "digital", "check", "other")

# DIAN "medios de pago" codes used for the seeded defaults
DEFAULT_METHODS = [
    {"name": "Efectivo", "method_type": "cash", "affects_cash_drawer": True,
     "include_in_sales_summary": True, "dian_payment_method_id": 10,
     "is_system_default": True, "display_order": 1},
    {"name": "Tarjeta Débito", "method_type": "card", "affects_cash_drawer": False,
     "include_in_sales_summary": True, "dian_payment_method_id": 49,
     "requires_reference": True, "display_order": 2},
    {"name": "Tarjeta Crédito", "method_type": "card", "affects_cash_drawer": False,
     "include_in_sales_summary": True, "dian_payment_method_id": 48,
     "requires_reference": True, "display_order": 3},
    {"name": "Transferencia", "method_type": "digital", "affects_cash_drawer": False,
     "include_in_sales_summary": True, "dian_payment_method_id": 47,
     "requires_reference": True, "display_order": 4},
]


def create_payment_method(
    name: str,
    *,
    method_type: str = "other",
    affects_cash_drawer: bool = True,
    include_in_sales_summary: bool = True,
    dian_payment_method_id: int | None = None,
    requires_reference: bool = False,
    is_system_default: bool = False,
    display_order: int = 0,
) -> PaymentMethod:
    name = (name or "").strip()
    if not name:
        raise PaymentMethodError("name is required")
    if method_type not in METHOD_TYPES:
        raise PaymentMethodError(f"Invalid method_type: {method_type}")

    existing = db.session.query(PaymentMethod).filter_by(name=name).first()
    if existing:
        raise PaymentMethodError(f"Payment method '{name}' already exists")

    method = PaymentMethod(
        name=name,
        method_type=method_type,
        affects_cash_drawer=bool(affects_cash_drawer),
        include_in_sales_summary=bool(include_in_sales_summary),
        dian_payment_method_id=dian_payment_method_id,
        requires_reference=bool(requires_reference),
        is_system_default=bool(is_system_default),
        display_order=display_order,
        is_active=True,
    )
    db.session.add(method)
    db.session.commit()
    return method


def get_payment_method(method_id: int) -> PaymentMethod | None:
    return db.session.get(PaymentMethod, method_id)


def list_payment_methods(include_inactive: bool = False) -> list[PaymentMethod]:
    query = db.session.query(PaymentMethod)
    if not include_inactive:
        query = query.filter_by(is_active=True)
    return query.order_by(PaymentMethod.display_order, PaymentMethod.id).all()


def deactivate_payment_method(method_id: int) -> PaymentMethod:
    """
    Soft-disable a payment method.

    WHY: Historical sales reference the method; deleting it would orphan
    their reconciliation flags.
    """
    method = db.session.get(PaymentMethod, method_id)
    if not method:
        raise PaymentMethodError("Payment method not found")
    if method.is_system_default:
        raise PaymentMethodError("System default payment methods cannot be deactivated")

    method.is_active = False
    db.session.commit()
    return method


def seed_default_payment_methods() -> int:
    """Create the default tenders that are missing. Returns how many were added."""
    created = 0
    for defaults in DEFAULT_METHODS:
        if db.session.query(PaymentMethod).filter_by(name=defaults["name"]).first():
            continue
        db.session.add(PaymentMethod(is_active=True, **defaults))
        created += 1
    db.session.commit()
    return created
