"""Test fixtures and utilities."""

import io
import json
from decimal import Decimal
from pathlib import Path

import pytest
from openpyxl import Workbook

from taxdoc_pipeline.config import Config, ResilienceConfig
from taxdoc_pipeline.monitoring import MetricsCollector
from taxdoc_pipeline.resilience import ResilienceKernel, RetryHandler, VisionServiceError
from taxdoc_pipeline.schemas.document import Document
from taxdoc_pipeline.state_store import StateStore
from taxdoc_pipeline.tabular import TaxRow
from taxdoc_pipeline.vision import VisionResponse

# Sample invoice text (English notation, Irish supplier)
SAMPLE_INVOICE_TEXT = """
Acme Supplies Ltd
12 Harbour Road, Dublin 2
VAT No: IE1234567T

Invoice Number: INV-2024-0042
Invoice Date: 15/03/2024

Office chairs    4 x €200.00    €800.00
Desk lamps       2 x €50.00     €100.00

Net Amount: €900.00
VAT 23%: €207.00
Total Due: €1,107.00
"""

# Same issuer and layout, different figures
SAMPLE_INVOICE_TEXT_NEXT = """
Acme Supplies Ltd
12 Harbour Road, Dublin 2
VAT No: IE1234567T

Invoice Number: INV-2024-0057
Invoice Date: 02/04/2024

Office chairs    2 x €200.00    €400.00
Desk lamps       4 x €50.00     €200.00

Net Amount: €600.00
VAT 23%: €138.00
Total Due: €738.00
"""

SAMPLE_RECEIPT_TEXT_DE = """
SPAR Österreich
Filiale 5631
Herrengasse 12
8010 Graz

Datum: 18.11.2024
Beleg-Nr.: R-2024-11832

Butter 250g                     2,49
Milch 1L                        1,29
Brot                            3,20
Käse 200g                       4,50

------------------------------------
Summe EUR                      11,48
MwSt. 10%                       1,04

Gesamtbetrag EUR               11,48
"""

# Fields a vision model would report for SAMPLE_INVOICE_TEXT
SAMPLE_VISION_FIELDS = {
    "total_amount": {"value": "1107.00", "confidence": 0.92},
    "vat_amount": {"value": "207.00", "confidence": 0.9},
    "net_amount": {"value": "900.00", "confidence": 0.88},
    "vat_rate": {"value": "23", "confidence": 0.9},
    "invoice_date": {"value": "2024-03-15", "confidence": 0.85},
    "invoice_number": {"value": "INV-2024-0042", "confidence": 0.9},
    "vendor_name": {"value": "Acme Supplies Ltd", "confidence": 0.95},
    "vat_number": {"value": "IE1234567T", "confidence": 0.9},
}

SAMPLE_VISION_FIELDS_NEXT = {
    "total_amount": {"value": "738.00", "confidence": 0.92},
    "vat_amount": {"value": "138.00", "confidence": 0.9},
    "net_amount": {"value": "600.00", "confidence": 0.88},
    "vat_rate": {"value": "23", "confidence": 0.9},
    "invoice_date": {"value": "2024-04-02", "confidence": 0.85},
    "invoice_number": {"value": "INV-2024-0057", "confidence": 0.9},
    "vendor_name": {"value": "Acme Supplies Ltd", "confidence": 0.95},
    "vat_number": {"value": "IE1234567T", "confidence": 0.9},
}

# WooCommerce-style country tax report; the correct total is 5475.24
WOOCOMMERCE_EXPECTED_TOTAL = Decimal("5475.24")
WOOCOMMERCE_ROWS = [
    ("Ireland", "Order #1001", "120.50"),
    ("Ireland", "Order #1002", "98.25"),
    ("Ireland", "Order #1003", "150.00"),
    ("Ireland", "Order #1004", "120.25"),
    ("Ireland", "Ireland Subtotal", "5333.62"),
    ("United Kingdom", "Order #2001", "22.10"),
    ("United Kingdom", "Order #2002", "18.66"),
    ("United Kingdom", "United Kingdom Subtotal", "40.76"),
    ("Germany", "Germany Subtotal", "7.55"),
    ("France", "France Subtotal", "58.37"),
    ("Spain", "Spain Subtotal", "14.26"),
    ("Netherlands", "Netherlands Subtotal", "20.68"),
]
WOOCOMMERCE_SUBTOTALS_ONLY_ROWS = [
    ("Ireland", "Ireland", "5374.38"),
    ("Rest of EU", "Rest of EU", "100.86"),
]

XLSX_MIME = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


def make_document(text: str, filename: str = "invoice.txt", mime_type: str = "text/plain") -> Document:
    """Plain-text document from a string."""
    return Document(content=text.encode("utf-8"), mime_type=mime_type, filename=filename)


def report_csv(rows: list[tuple[str, str, str]]) -> bytes:
    lines = ["Country,Description,Net Total Tax"]
    lines.extend(f"{country},{description},{amount}" for country, description, amount in rows)
    return ("\n".join(lines) + "\n").encode("utf-8")


def report_xlsx(rows: list[tuple[str, str, str]]) -> bytes:
    workbook = Workbook()
    sheet = workbook.active
    sheet.append(["Tax report Q1 2024"])
    sheet.append([])
    sheet.append(["Country", "Description", "Net Total Tax"])
    for country, description, amount in rows:
        sheet.append([country, description, float(amount)])
    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def tax_rows(rows: list[tuple[str, str, str]]) -> list[TaxRow]:
    return [
        TaxRow(group=country, description=description, amount=Decimal(amount), position=i)
        for i, (country, description, amount) in enumerate(rows)
    ]


class FakeVisionClient:
    """Scripted vision backend that records every call."""

    def __init__(self, fields=None, text: str = "", model: str = "fake-vision"):
        self.fields = fields if fields is not None else dict(SAMPLE_VISION_FIELDS)
        self.text = text
        self.model = model
        self.calls: list[dict] = []
        self.error: Exception | None = None
        self.healthy = True

    def infer(self, content, mime_type, prompt, system_prompt=None):
        self.calls.append({"mime_type": mime_type, "prompt": prompt, "system_prompt": system_prompt})
        if self.error is not None:
            raise self.error
        return VisionResponse(
            text=self.text,
            structured_fields=json.loads(json.dumps(self.fields)),
            model=self.model,
        )

    def ping(self) -> bool:
        if not self.healthy:
            raise VisionServiceError("unreachable")
        return True


@pytest.fixture
def temp_db(tmp_path: Path) -> Path:
    """Temporary database path."""
    return tmp_path / "test_state.db"


@pytest.fixture
def state_store(temp_db: Path) -> StateStore:
    return StateStore(temp_db)


@pytest.fixture
def config(tmp_path: Path) -> Config:
    """Default config with the state DB in a temp directory."""
    return Config(state_db_path=tmp_path / "state.db")


@pytest.fixture
def kernel() -> ResilienceKernel:
    """Kernel whose retries do not sleep."""
    kernel = ResilienceKernel(
        ResilienceConfig(call_timeout_seconds=5.0),
        retry=RetryHandler(max_retries=3, base_delay=0.0, max_delay=0.0, sleep=lambda _: None),
    )
    yield kernel
    kernel.close()


@pytest.fixture
def collector() -> MetricsCollector:
    return MetricsCollector()


@pytest.fixture
def vision_client() -> FakeVisionClient:
    return FakeVisionClient()


@pytest.fixture
def sample_invoice() -> Document:
    return make_document(SAMPLE_INVOICE_TEXT, "acme-0042.txt")


@pytest.fixture
def sample_invoice_next() -> Document:
    return make_document(SAMPLE_INVOICE_TEXT_NEXT, "acme-0057.txt")


@pytest.fixture
def woocommerce_csv() -> Document:
    return Document(
        content=report_csv(WOOCOMMERCE_ROWS), mime_type="text/csv", filename="woocommerce-tax.csv"
    )


@pytest.fixture
def woocommerce_xlsx() -> Document:
    return Document(
        content=report_xlsx(WOOCOMMERCE_ROWS), mime_type=XLSX_MIME, filename="woocommerce-tax.xlsx"
    )
