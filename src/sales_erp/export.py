"""Spreadsheet export of bills and their sale lines."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, Mapping

import openpyxl
from openpyxl.styles import Font

from . import log
from .records import BillRecord, CustomerRecord, to_utc


SHEET_COLUMNS = {
    "Bills": ["BillID", "CustomerID", "CustomerEmail", "CustomerName", "CreatedAt", "TotalAmount"],
    "SaleLines": ["SaleLineID", "BillID", "ProductID", "ProductName", "Quantity", "SalePrice", "LineTotal"],
}


def export_bills(
    bills: Iterable[BillRecord],
    customers: Mapping[int, CustomerRecord],
    destination: Path,
    *,
    overwrite: bool = False,
) -> Path:
    """Write ``bills`` into a workbook with a ``Bills`` and a ``SaleLines`` sheet.

    Args:
        bills (Iterable[BillRecord]): Bills to export, lines included.
        customers (Mapping[int, CustomerRecord]): Customers keyed by id; bills
            whose customer is missing get empty contact columns.
        destination (Path): Target ``.xlsx`` file.
        overwrite (bool): Replace an existing file instead of failing.

    Returns:
        Path: The resolved path of the written workbook.

    Raises:
        FileExistsError: If ``destination`` exists and ``overwrite`` is false.
    """

    destination = Path(destination).expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(f"Export target already exists: {destination}")

    workbook = openpyxl.Workbook()
    workbook.remove(workbook.active)
    bold_font = Font(bold=True)
    for sheet_name, columns in SHEET_COLUMNS.items():
        sheet = workbook.create_sheet(title=sheet_name)
        sheet.append(columns)
        for cell in sheet[1]:
            cell.font = bold_font

    bill_sheet = workbook["Bills"]
    line_sheet = workbook["SaleLines"]
    exported = 0
    for bill in bills:
        customer = customers.get(bill.customer_id)
        bill_sheet.append(
            [
                bill.id,
                bill.customer_id,
                customer.email if customer else None,
                customer.full_name if customer else None,
                to_utc(bill.created_at).replace(tzinfo=None),
                bill.total_amount,
            ]
        )
        for line in bill.lines:
            line_sheet.append(
                [line.id, bill.id, line.product_id, line.product_name, line.quantity, line.sale_price, line.line_total]
            )
        exported += 1

    destination.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(destination)
    log.info("Exported %d bill(s) to '%s'", exported, destination)
    return destination
