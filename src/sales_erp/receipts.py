"""HTML receipts for completed sales."""

from __future__ import annotations

import re
from decimal import Decimal

from jinja2 import Environment

from .records import BillRecord, CustomerRecord, to_utc


_environment = Environment(autoescape=True, trim_blocks=True, lstrip_blocks=True)
_environment.filters["money"] = lambda value: f"{Decimal(value):.2f}"

RECEIPT_TEMPLATE = _environment.from_string(
    """\
<div style="font-family: Arial, sans-serif; padding: 20px; color: #333;">
  <h1 style="color: #2d3748;">Customer Receipt</h1>
  <p><strong>Customer:</strong> {{ customer.first_name }} {{ customer.last_name }}</p>
  <p><strong>Bill ID:</strong> {{ bill.id }}</p>
  <p><strong>Date:</strong> {{ created_at }}</p>
  <p><strong>Total Amount:</strong> <span style="color: #2f855a;">${{ bill.total_amount | money }}</span></p>
  <h2 style="margin-top: 30px;">Sales Details</h2>
  <table style="width: 100%; border-collapse: collapse; margin-top: 10px;">
    <thead>
      <tr style="background-color: #edf2f7;">
        <th style="text-align: left; padding: 8px;">Product</th>
        <th style="text-align: right; padding: 8px;">Quantity</th>
        <th style="text-align: right; padding: 8px;">Sale Price</th>
        <th style="text-align: right; padding: 8px;">Line Total</th>
      </tr>
    </thead>
    <tbody>
    {% for line in bill.lines %}
      <tr>
        <td style="padding: 8px;">{{ line.product_name }}</td>
        <td style="text-align: right; padding: 8px;">{{ line.quantity }}</td>
        <td style="text-align: right; padding: 8px;">${{ line.sale_price | money }}</td>
        <td style="text-align: right; padding: 8px;">${{ line.line_total | money }}</td>
      </tr>
    {% endfor %}
    </tbody>
  </table>
  <p style="margin-top: 40px;">Thank you for your purchase! If you have any questions, feel free to contact our support team.</p>
  <p style="margin-top: 20px; font-size: 0.9em; color: #888;">This receipt was generated automatically. Please do not reply to this email.</p>
</div>
"""
)

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def render_receipt(customer: CustomerRecord, bill: BillRecord) -> str:
    """Render the receipt for ``bill``; customer supplied text is escaped."""

    return RECEIPT_TEMPLATE.render(
        customer=customer,
        bill=bill,
        created_at=to_utc(bill.created_at).strftime("%Y-%m-%d %H:%M:%S UTC"),
    )


def receipt_name(customer: CustomerRecord, bill: BillRecord) -> str:
    """Build the object name ``{first}-{last}-bill-{timestamp}.html``.

    Characters outside ``[A-Za-z0-9._-]`` are replaced so the name is safe as
    both an object key and a file name.
    """

    stamp = to_utc(bill.created_at).strftime("%Y%m%dT%H%M%S%fZ")
    first = _UNSAFE.sub("_", customer.first_name).strip("_") or "customer"
    last = _UNSAFE.sub("_", customer.last_name).strip("_") or "customer"
    return f"{first}-{last}-bill-{stamp}.html"
