"""
amounts.py — Cart Totals

Computes subtotal, tax and grand total of a cart. Pure functions, no I/O.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable

from .models import CartLine

TAX_RATE = Decimal("0.01")
CENT = Decimal("0.01")


@dataclass(frozen=True)
class Totals:
    subtotal: Decimal
    tax: Decimal
    grandTotal: Decimal


def quantize(amount: Decimal) -> Decimal:
    """Rounds an amount to cents (half up)."""
    return Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


def calculate_totals(lines: Iterable[CartLine]) -> Totals:
    """
    Computes the totals of a cart.

    Args:
        lines (Iterable[CartLine]): The cart lines, in display order.

    Returns:
        Totals: subtotal = Σ unitPrice × quantity, tax = subtotal × 1 %,
        grandTotal = subtotal + tax, all rounded to cents. An empty cart yields zeros.
    """
    subtotal = quantize(sum((line.unitPrice * line.quantity for line in lines), Decimal("0")))
    tax = quantize(subtotal * TAX_RATE)
    return Totals(subtotal=subtotal, tax=tax, grandTotal=subtotal + tax)
