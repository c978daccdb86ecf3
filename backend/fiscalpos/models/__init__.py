from .payments import PaymentMethod
from .registers import CashRegisterShift, CashMovement
from .sales import Sale, SaleLine, SalePayment
from .fiscal import Resolution, ElectronicInvoice, CreditNote, DebitNote, FiscalAlert

__all__ = [
    'PaymentMethod',
    'CashRegisterShift', 'CashMovement',
    'Sale', 'SaleLine', 'SalePayment',
    'Resolution', 'ElectronicInvoice', 'CreditNote', 'DebitNote', 'FiscalAlert',
]
