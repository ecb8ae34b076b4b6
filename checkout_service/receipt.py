"""
receipt.py — Receipt Rendering

Renders the order of a settled checkout as a plain-text receipt and hands it
to the host's print facility on request.
"""

import sys
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional

from . import errors
from .models import Order, PaymentMethod, PaymentSession, SessionPhase

CURRENCY_SYMBOLS = {"INR": "₹", "USD": "$", "EUR": "€"}
WIDTH = 40


def _money(amount: Decimal, currency: str) -> str:
    symbol = CURRENCY_SYMBOLS.get(currency, f"{currency} ")
    return f"{symbol}{amount:.2f}"


def _row(label: str, value: str) -> str:
    width = max(WIDTH - len(label), len(value) + 1)
    return f"{label}{value:>{width}}"


def status_badge(order: Order) -> str:
    return "PAID" if order.paymentMethod == PaymentMethod.ELECTRONIC else "RECEIVED"


def render_receipt(order: Order, currency: str = "INR", printed_at: Optional[datetime] = None) -> str:
    """
    Renders a settled order as a plain-text receipt.

    Args:
        order (Order): The settled order.
        currency (str): Currency code used to format amounts.
        printed_at (datetime): Timestamp shown when the order carries no creation time.

    Returns:
        str: The receipt, one line per row, WIDTH characters wide.
    """
    timestamp = order.createdAt or printed_at or datetime.now()
    lines = [
        "Payment Successful!".center(WIDTH),
        "=" * WIDTH,
        _row("Order Receipt", f"[{status_badge(order)}]"),
        _row("Order ID", order.orderId),
        _row("Date & Time", timestamp.strftime("%d %B %Y, %I:%M %p")),
        _row("Customer", order.customerName),
        _row("Phone", order.phoneNumber),
        "-" * WIDTH,
        "Items Ordered",
    ]
    for line in order.lines:
        lines.append(_row(f"{line.name} x{line.quantity}", _money(line.unitPrice * line.quantity, currency)))
    lines += [
        "-" * WIDTH,
        _row("Subtotal", _money(order.subtotal, currency)),
        _row("Tax (1%)", _money(order.tax, currency)),
        _row("Total Paid", _money(order.grandTotal, currency)),
        _row("Payment Method", order.paymentMethod.value),
    ]
    details = order.paymentDetails
    if order.paymentMethod == PaymentMethod.ELECTRONIC and details is not None:
        lines.append(_row("Payment ID", f"{details.gatewayIntentId[:20]}..."))
    lines += [
        "=" * WIDTH,
        "Thank you for your business!".center(WIDTH),
        "Keep this receipt for your records".center(WIDTH),
    ]
    return "\n".join(lines)


def stdout_printer(text: str):
    """
    Print facility used when the host provides none: writes the receipt to the
    service's stdout, where the terminal's print spooler picks it up.
    """
    sys.stdout.write(text + "\n")
    sys.stdout.flush()


class ReceiptPresenter:
    """Read-only view of a SETTLED checkout."""

    def __init__(self, session: PaymentSession, printer: Optional[Callable[[str], None]] = None,
                 currency: str = "INR"):
        if session.phase != SessionPhase.SETTLED or session.order is None:
            raise errors.ValidationError(f"No receipt for a checkout in phase {session.phase.value}")
        self.order = session.order
        self.printer = printer or stdout_printer
        self.currency = currency

    def render(self) -> str:
        return render_receipt(self.order, currency=self.currency)

    def print(self):
        """Sends the receipt to the host print facility."""
        self.printer(self.render())
