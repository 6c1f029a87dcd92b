"""Tests for receipt rendering and naming."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

from sales_erp.receipts import receipt_name, render_receipt
from sales_erp.records import BillRecord, CustomerRecord, SaleLineRecord


def _customer(first="Ada", last="Lovelace"):
    return CustomerRecord(id=1, email="a@b.com", first_name=first, last_name=last)


def _bill():
    return BillRecord(
        id=12,
        customer_id=1,
        created_at=datetime(2024, 5, 1, 12, 30, 0, 250000, tzinfo=timezone.utc),
        total_amount=Decimal("36"),
        lines=(
            SaleLineRecord(id=1, bill_id=12, product_id=2, product_name="Widget", quantity=3, sale_price=Decimal("12")),
        ),
    )


def test_receipt_lists_lines_and_totals():
    html = render_receipt(_customer(), _bill())

    assert "Ada Lovelace" in html
    assert "<strong>Bill ID:</strong> 12" in html
    assert "$36.00" in html
    assert "Widget" in html
    assert "$12.00" in html
    assert "2024-05-01 12:30:00 UTC" in html


def test_receipt_escapes_customer_text():
    html = render_receipt(_customer(first="<script>alert(1)</script>"), _bill())

    assert "<script>" not in html
    assert "&lt;script&gt;" in html


def test_receipt_name_uses_customer_and_timestamp():
    assert receipt_name(_customer(), _bill()) == "Ada-Lovelace-bill-20240501T123000250000Z.html"


def test_receipt_name_sanitises_unsafe_characters():
    name = receipt_name(_customer(first="Jean Luc", last="../Picard"), _bill())

    assert name.startswith("Jean_Luc-.._Picard-bill-")
    assert "/" not in name
