"""
Reading tax report spreadsheets (CSV / XLSX) into rows for aggregation.

Columns are found by header name: a tax amount column ("Net Total Tax",
"Tax Total", ...), an optional group column ("Country", "billing_country",
...) and an optional descriptor column ("Description", "Type", ...).
"""

import csv
import io
import logging
import re
from decimal import Decimal, InvalidOperation
from typing import Any

from openpyxl import load_workbook

from ..resilience.errors import InvalidInputError
from ..schemas.parsing import parse_amount_text
from .engine import TaxRow

logger = logging.getLogger(__name__)

AMOUNT_HEADERS = [
    "net total tax",
    "net_total_tax",
    "tax total",
    "total tax",
    "tax_total",
    "tax amount",
    "vat amount",
    "vat",
]
GROUP_HEADERS = [
    "country",
    "billing_country",
    "shipping_country",
    "country_code",
    "region",
    "category",
]
DESCRIPTION_HEADERS = ["description", "row type", "type", "label", "product", "name", "item"]

# Header row must appear within the first rows of a sheet
HEADER_SCAN_ROWS = 10

XLSX_MIME = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
CSV_MIMES = ("text/csv", "text/plain")


def _norm(header: Any) -> str:
    return re.sub(r"\s+", " ", str(header or "")).strip().lower()


def find_column(headers: list[str], candidates: list[str]) -> int:
    """Index of the first header matching a candidate (exact, then substring)."""
    normalized = [_norm(h) for h in headers]
    for candidate in candidates:
        if candidate in normalized:
            return normalized.index(candidate)
    for candidate in candidates:
        for i, header in enumerate(normalized):
            if candidate in header:
                return i
    return -1


def parse_cell_amount(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        try:
            amount = Decimal(str(value))
        except InvalidOperation:
            return None
        # Missing values exported as NaN
        return amount if amount.is_finite() else None
    text = re.sub(r"[€$£]|EUR|USD|GBP", "", str(value)).strip()
    return parse_amount_text(text)


def _read_csv(content: bytes) -> list[list[Any]]:
    text = content.decode("utf-8-sig", errors="replace")
    try:
        dialect = csv.Sniffer().sniff(text[:4096], delimiters=",;\t")
    except csv.Error:
        dialect = csv.excel
    return [row for row in csv.reader(io.StringIO(text), dialect)]


def _read_xlsx(content: bytes) -> list[list[Any]]:
    try:
        workbook = load_workbook(io.BytesIO(content), read_only=True, data_only=True)
    except Exception as e:
        raise InvalidInputError("Unreadable XLSX workbook", [str(e)]) from e
    try:
        sheet = workbook.worksheets[0]
        return [list(row) for row in sheet.iter_rows(values_only=True)]
    finally:
        workbook.close()


def read_table(content: bytes, mime_type: str) -> list[list[Any]]:
    """Raw cell grid of the first sheet."""
    if mime_type == XLSX_MIME:
        return _read_xlsx(content)
    if mime_type in CSV_MIMES:
        return _read_csv(content)
    raise InvalidInputError(f"Unsupported report format: {mime_type}")


def read_report(content: bytes, mime_type: str) -> list[TaxRow]:
    """
    Read a tax report into TaxRows.

    Rows without a parseable amount (blank lines, notes) are skipped.
    Raises InvalidInputError when no tax amount column can be found.
    """
    grid = read_table(content, mime_type)

    header_index = -1
    amount_col = -1
    for i, row in enumerate(grid[:HEADER_SCAN_ROWS]):
        headers = [_norm(cell) for cell in row]
        amount_col = find_column(headers, AMOUNT_HEADERS)
        if amount_col >= 0:
            header_index = i
            break

    if header_index < 0:
        raise InvalidInputError("Tax amount column not found in report")

    headers = [_norm(cell) for cell in grid[header_index]]
    group_col = find_column(headers, GROUP_HEADERS)
    description_col = find_column(
        [h if i not in (amount_col, group_col) else "" for i, h in enumerate(headers)],
        DESCRIPTION_HEADERS,
    )
    logger.debug(
        "Report columns: amount=%r group=%r description=%r",
        headers[amount_col],
        headers[group_col] if group_col >= 0 else None,
        headers[description_col] if description_col >= 0 else None,
    )

    def cell(row: list[Any], idx: int) -> Any:
        return row[idx] if 0 <= idx < len(row) else None

    rows: list[TaxRow] = []
    for position, raw in enumerate(grid[header_index + 1 :], start=header_index + 2):
        amount = parse_cell_amount(cell(raw, amount_col))
        if amount is None:
            continue
        group = cell(raw, group_col)
        description = cell(raw, description_col)
        rows.append(
            TaxRow(
                group=str(group).strip() if group not in (None, "") else "Unknown",
                description=str(description).strip() if description is not None else "",
                amount=amount,
                position=position,
            )
        )

    logger.info("Read %d report rows (%s)", len(rows), mime_type)
    return rows
