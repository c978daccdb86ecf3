# Overview: Integer minor-unit helpers shared by sales intake, note payloads and reports.

from __future__ import annotations


def split_proportionally(total: int, weights: list[int]) -> list[int]:
    """
    Split an integer amount across weights (largest remainder method).

    The parts always add up to total exactly; leftover units go to the
    largest fractional remainders, earliest index first on ties.
    """
    if not weights:
        return []
    weight_sum = sum(weights)
    if weight_sum <= 0:
        parts = [0] * len(weights)
        parts[0] = total
        return parts

    sign = -1 if total < 0 else 1
    magnitude = abs(total)

    parts = []
    remainders = []
    for index, weight in enumerate(weights):
        quotient, remainder = divmod(magnitude * weight, weight_sum)
        parts.append(quotient)
        remainders.append((remainder, -index))

    leftover = magnitude - sum(parts)
    for _, neg_index in sorted(remainders, reverse=True)[:leftover]:
        parts[-neg_index] += 1

    return [sign * p for p in parts]


def tax_exclusive_from_gross(gross_cents: int, rate_bps: int) -> tuple[int, int]:
    """Split a tax-inclusive amount into (taxable, tax) for a rate in basis points."""
    if rate_bps <= 0:
        return gross_cents, 0
    taxable = (gross_cents * 10000 + (10000 + rate_bps) // 2) // (10000 + rate_bps)
    return taxable, gross_cents - taxable


def line_tax(line_total_cents: int, rate_bps: int) -> int:
    """Tax on a pre-tax amount, half-up to the cent."""
    return (line_total_cents * rate_bps + 5000) // 10000
