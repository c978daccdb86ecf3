# Overview: Builds the gateway JSON body for invoices, credit notes and debit notes.

"""
Gateway payload builder.

The gateway turns this JSON into signed UBL 2.1 XML; we only guarantee that
the figures are internally consistent (line totals, tax totals, payable
amount) and that the document carries its allocated prefix/number.
"""

from __future__ import annotations

from collections import OrderedDict
from datetime import datetime

from ..models.fiscal import KIND_INVOICE, KIND_CREDIT_NOTE, KIND_DEBIT_NOTE
from fiscalpos.time_utils import cents_to_amount
from .money import split_proportionally, tax_exclusive_from_gross


TYPE_DOCUMENT_IDS = {
    KIND_INVOICE: 1,
    KIND_CREDIT_NOTE: 4,
    KIND_DEBIT_NOTE: 5,
}

# DIAN tax scheme ids
TAX_IDS = {"IVA": 1, "INC": 4, "EXENTO": 1}

# DIAN identification document types
IDENTIFICATION_TYPE_IDS = {"CC": 3, "CE": 5, "NIT": 6, "PP": 7, "TI": 2}

FINAL_CONSUMER_ID = "222222222222"
FINAL_CONSUMER_NAME = "CONSUMIDOR FINAL"

UNIT_MEASURE_UNIT = 70  # "unidad"
ITEM_IDENTIFICATION_STANDARD = 4
PAYMENT_FORM_CASH = 1  # contado
DEFAULT_PAYMENT_MEANS = 10  # efectivo


class PayloadError(Exception):
    """Raised when a document cannot be turned into a gateway payload."""
    pass


def _percent(rate_bps: int) -> str:
    return f"{rate_bps // 100}.{rate_bps % 100:02d}"


def _customer(sale) -> dict:
    if not sale.customer_identification or sale.customer_identification == FINAL_CONSUMER_ID:
        return {
            "identification_number": FINAL_CONSUMER_ID,
            "name": FINAL_CONSUMER_NAME,
        }
    customer = {
        "identification_number": sale.customer_identification,
        "name": sale.customer_name or FINAL_CONSUMER_NAME,
    }
    type_id = IDENTIFICATION_TYPE_IDS.get((sale.customer_identification_type or "").upper())
    if type_id:
        customer["type_document_identification_id"] = type_id
    if sale.customer_dv:
        customer["dv"] = sale.customer_dv
    if sale.customer_email:
        customer["email"] = sale.customer_email
    return customer


def _is_final_consumer(sale) -> bool:
    return not sale.customer_identification or sale.customer_identification == FINAL_CONSUMER_ID


def _tax_groups(lines) -> "OrderedDict[tuple[str, int], dict]":
    groups: OrderedDict = OrderedDict()
    for line in lines:
        key = (line.tax_type, line.tax_rate_bps)
        group = groups.setdefault(key, {"taxable": 0, "tax": 0})
        group["taxable"] += line.line_total_cents
        group["tax"] += line.tax_cents
    return groups


def _tax_total(tax_type: str, rate_bps: int, taxable: int, tax: int) -> dict:
    return {
        "tax_id": TAX_IDS.get(tax_type, 1),
        "tax_amount": cents_to_amount(tax),
        "percent": _percent(rate_bps),
        "taxable_amount": cents_to_amount(taxable),
    }


def _issue_stamp(now_local: datetime) -> dict:
    return {"date": now_local.strftime("%Y-%m-%d"), "time": now_local.strftime("%H:%M:%S")}


# =============================================================================
# INVOICE
# =============================================================================

def build_invoice_payload(invoice, now_local: datetime) -> dict:
    sale = invoice.sale
    resolution = invoice.resolution
    if sale is None:
        raise PayloadError(f"Invoice {invoice.id} has no sale")
    if resolution is None or invoice.number is None:
        raise PayloadError(f"Invoice {invoice.id} has no allocated number")
    if not sale.lines:
        raise PayloadError(f"Sale {sale.sale_number} has no lines")

    invoice_lines = []
    for line in sale.lines:
        unit_price = line.line_total_cents // line.quantity if line.quantity else line.line_total_cents
        invoice_lines.append({
            "unit_measure_id": UNIT_MEASURE_UNIT,
            "invoiced_quantity": str(line.quantity),
            "line_extension_amount": cents_to_amount(line.line_total_cents),
            "free_of_charge_indicator": False,
            "tax_totals": [_tax_total(line.tax_type, line.tax_rate_bps, line.line_total_cents, line.tax_cents)],
            "description": line.description,
            "code": line.code or str(line.id),
            "type_item_identification_id": ITEM_IDENTIFICATION_STANDARD,
            "price_amount": cents_to_amount(unit_price),
            "base_quantity": "1",
        })

    tax_totals = [
        _tax_total(tax_type, rate_bps, figures["taxable"], figures["tax"])
        for (tax_type, rate_bps), figures in _tax_groups(sale.lines).items()
    ]

    payment_means = DEFAULT_PAYMENT_MEANS
    if sale.payments:
        largest = max(sale.payments, key=lambda p: p.amount_cents)
        if largest.payment_method and largest.payment_method.dian_payment_method_id:
            payment_means = largest.payment_method.dian_payment_method_id

    payload = {
        "number": invoice.number,
        "type_document_id": TYPE_DOCUMENT_IDS[KIND_INVOICE],
        "resolution_number": resolution.resolution_number,
        "prefix": invoice.prefix,
        "notes": sale.notes or "",
        "disable_confirmation_text": True,
        "sendmail": bool(invoice.send_email),
        "sendmailtome": _is_final_consumer(sale),
        "customer": _customer(sale),
        "payment_form": {
            "payment_form_id": PAYMENT_FORM_CASH,
            "payment_method_id": payment_means,
            "payment_due_date": now_local.strftime("%Y-%m-%d"),
            "duration_measure": "0",
        },
        "legal_monetary_totals": {
            "line_extension_amount": cents_to_amount(sale.subtotal_cents),
            "tax_exclusive_amount": cents_to_amount(sale.subtotal_cents),
            "tax_inclusive_amount": cents_to_amount(sale.subtotal_cents + sale.tax_cents),
            "allowance_total_amount": cents_to_amount(sale.discount_cents),
            "payable_amount": cents_to_amount(sale.total_cents),
        },
        "tax_totals": tax_totals,
        "invoice_lines": invoice_lines,
    }
    payload.update(_issue_stamp(now_local))

    if sale.discount_cents:
        payload["allowance_charges"] = [{
            "discount_id": 1,
            "charge_indicator": False,
            "allowance_charge_reason": "DESCUENTO GENERAL",
            "amount": cents_to_amount(sale.discount_cents),
            "base_amount": cents_to_amount(sale.subtotal_cents + sale.tax_cents),
        }]
    return payload


# =============================================================================
# NOTES
# =============================================================================

def _note_tax_split(sale, amount_cents: int) -> list[tuple[str, int, int, int]]:
    """
    Spread a tax-inclusive note amount over the sale's tax groups,
    proportionally to each group's gross. Returns (tax_type, rate_bps, taxable, tax).
    """
    groups = _tax_groups(sale.lines)
    if not groups:
        return [("IVA", 0, amount_cents, 0)]
    keys = list(groups.keys())
    gross = [groups[k]["taxable"] + groups[k]["tax"] for k in keys]
    shares = split_proportionally(amount_cents, gross)
    split = []
    for (tax_type, rate_bps), share in zip(keys, shares):
        if share == 0:
            continue
        taxable, tax = tax_exclusive_from_gross(share, rate_bps)
        split.append((tax_type, rate_bps, taxable, tax))
    return split


def _build_note_payload(note, now_local: datetime, kind: str) -> dict:
    invoice = note.electronic_invoice
    if invoice is None or invoice.sale is None:
        raise PayloadError(f"{kind} {note.id} has no invoice")
    if note.resolution is None or note.number is None:
        raise PayloadError(f"{kind} {note.id} has no allocated number")

    sale = invoice.sale
    split = _note_tax_split(sale, note.amount_cents)
    taxable_total = sum(s[2] for s in split)

    lines = []
    for tax_type, rate_bps, taxable, tax in split:
        lines.append({
            "unit_measure_id": UNIT_MEASURE_UNIT,
            "invoiced_quantity": "1",
            "line_extension_amount": cents_to_amount(taxable),
            "free_of_charge_indicator": False,
            "tax_totals": [_tax_total(tax_type, rate_bps, taxable, tax)],
            "description": note.reason,
            "notes": note.reason,
            "code": f"{kind.upper()}-{note.id}",
            "type_item_identification_id": ITEM_IDENTIFICATION_STANDARD,
            "price_amount": cents_to_amount(taxable),
            "base_quantity": "1",
        })

    monetary_totals = {
        "line_extension_amount": cents_to_amount(taxable_total),
        "tax_exclusive_amount": cents_to_amount(taxable_total),
        "tax_inclusive_amount": cents_to_amount(note.amount_cents),
        "payable_amount": cents_to_amount(note.amount_cents),
    }

    issue_date = invoice.sent_at or invoice.created_at
    payload = {
        "number": note.number,
        "type_document_id": TYPE_DOCUMENT_IDS[kind],
        "prefix": note.prefix,
        "notes": note.reason,
        "billing_reference": {
            "number": invoice.full_number,
            "uuid": invoice.cufe or invoice.uuid,
            "issue_date": issue_date.strftime("%Y-%m-%d") if issue_date else now_local.strftime("%Y-%m-%d"),
        },
        "discrepancyresponsecode": note.discrepancy_code,
        "customer": _customer(sale),
        "tax_totals": [_tax_total(t, r, taxable, tax) for t, r, taxable, tax in split],
    }
    payload.update(_issue_stamp(now_local))

    if kind == KIND_CREDIT_NOTE:
        payload["legal_monetary_totals"] = monetary_totals
        payload["credit_note_lines"] = lines
    else:
        payload["discrepancyresponsedescription"] = note.reason
        payload["requested_monetary_totals"] = monetary_totals
        payload["debit_note_lines"] = lines
    return payload


def build_credit_note_payload(note, now_local: datetime) -> dict:
    return _build_note_payload(note, now_local, KIND_CREDIT_NOTE)


def build_debit_note_payload(note, now_local: datetime) -> dict:
    return _build_note_payload(note, now_local, KIND_DEBIT_NOTE)


BUILDERS = {
    KIND_INVOICE: build_invoice_payload,
    KIND_CREDIT_NOTE: build_credit_note_payload,
    KIND_DEBIT_NOTE: build_debit_note_payload,
}


def build_payload(document, now_local: datetime) -> dict:
    return BUILDERS[document.document_kind](document, now_local)
