"""
Invoice document rendering and storage.

Renders the invoice PDF with ReportLab and stores it either on the local
filesystem or in a Supabase Storage bucket. Paths have the shape
``<organization_id>/<year>/<invoice_number>.pdf``.
"""

import asyncio
import io
import os
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import List, Optional
from xml.sax.saxutils import escape as xml_escape

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.pdfbase import pdfmetrics
from reportlab.pdfbase.ttfonts import TTFont
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from ..config import settings
from ..schemas import CalculatedItem, InvoiceTotals
from ..utils.logging import get_logger
from ..utils.text import format_currency, format_number, format_quantity

logger = get_logger(__name__)

# Fonts with Czech glyphs, tried in order; Helvetica is the fallback
_FONT_CANDIDATES = (
    "/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf",
    "/usr/share/fonts/dejavu/DejaVuSans.ttf",
    "/Library/Fonts/Arial Unicode.ttf",
)
_font_name: Optional[str] = None


def _body_font() -> str:
    """Register a Unicode TTF font once; fall back to Helvetica."""
    global _font_name

    if _font_name is None:
        _font_name = "Helvetica"
        for path in _FONT_CANDIDATES:
            if os.path.exists(path):
                pdfmetrics.registerFont(TTFont("InvoiceSans", path))
                _font_name = "InvoiceSans"
                break
    return _font_name


@dataclass
class InvoiceDocumentData:
    """Everything printed on an invoice."""

    invoice_number: str
    variable_symbol: str
    issue_date: date
    due_date: date
    currency: str
    totals: InvoiceTotals
    supplier_name: str
    supplier_ico: str
    supplier_dic: Optional[str] = None
    supplier_is_vat_payer: bool = True
    supplier_street: str = ""
    supplier_city: str = ""
    supplier_zip: str = ""
    client_name: str = "Klient"
    client_city: Optional[str] = None
    notes: Optional[str] = None
    items: List[CalculatedItem] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.items:
            self.items = list(self.totals.items)


class InvoiceRenderer:
    """Renders invoices to A4 PDF bytes."""

    async def render(self, data: InvoiceDocumentData) -> bytes:
        """Render off the event loop; ReportLab is synchronous."""
        return await asyncio.to_thread(self.render_sync, data)

    def render_sync(self, data: InvoiceDocumentData) -> bytes:
        font = _body_font()
        styles = getSampleStyleSheet()
        normal = ParagraphStyle("InvoiceNormal", parent=styles["Normal"], fontName=font, fontSize=9)
        heading = ParagraphStyle("InvoiceHeading", parent=styles["Title"], fontName=font, fontSize=18)

        buffer = io.BytesIO()
        doc = SimpleDocTemplate(
            buffer,
            pagesize=A4,
            topMargin=10 * mm,
            rightMargin=12 * mm,
            bottomMargin=12 * mm,
            leftMargin=12 * mm,
            title=f"Faktura {data.invoice_number}",
        )

        supplier_lines = [
            "<b>Dodavatel</b>",
            data.supplier_name,
            data.supplier_street,
            f"{data.supplier_zip} {data.supplier_city}".strip(),
            f"IČO: {data.supplier_ico}",
        ]
        if data.supplier_dic:
            supplier_lines.append(f"DIČ: {data.supplier_dic}")
        if not data.supplier_is_vat_payer:
            supplier_lines.append("Nejsem plátce DPH")

        client_lines = ["<b>Odběratel</b>", data.client_name]
        if data.client_city:
            client_lines.append(data.client_city)

        def _block(lines: List[str]) -> Paragraph:
            title, rest = lines[0], [xml_escape(line) for line in lines[1:] if line]
            return Paragraph("<br/>".join([title] + rest), normal)

        parties = Table(
            [
                [
                    _block(supplier_lines),
                    _block(client_lines),
                ]
            ],
            colWidths=[93 * mm, 93 * mm],
        )

        meta = Table(
            [
                ["Datum vystavení:", data.issue_date.strftime("%d.%m.%Y")],
                ["Datum splatnosti:", data.due_date.strftime("%d.%m.%Y")],
                ["Variabilní symbol:", data.variable_symbol],
            ],
            colWidths=[40 * mm, 50 * mm],
        )
        meta.setStyle(TableStyle([("FONTNAME", (0, 0), (-1, -1), font), ("FONTSIZE", (0, 0), (-1, -1), 9)]))

        rows = [["#", "Popis", "Množství", "Jedn. cena", "DPH", "Celkem"]]
        for position, item in enumerate(data.items, start=1):
            rows.append(
                [
                    str(position),
                    Paragraph(xml_escape(item.description), normal),
                    f"{format_quantity(item.quantity)} {item.unit}",
                    format_number(item.unit_price),
                    f"{format_quantity(item.vat_rate)} %",
                    format_number(item.total),
                ]
            )
        items_table = Table(
            rows,
            colWidths=[8 * mm, 78 * mm, 24 * mm, 28 * mm, 16 * mm, 32 * mm],
            repeatRows=1,
        )
        items_table.setStyle(
            TableStyle(
                [
                    ("FONTNAME", (0, 0), (-1, -1), font),
                    ("FONTSIZE", (0, 0), (-1, -1), 9),
                    ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#EEF1F5")),
                    ("LINEBELOW", (0, 0), (-1, 0), 0.5, colors.HexColor("#9AA5B1")),
                    ("ALIGN", (2, 1), (-1, -1), "RIGHT"),
                    ("VALIGN", (0, 0), (-1, -1), "TOP"),
                ]
            )
        )

        summary_rows = [["Základ:", format_currency(data.totals.subtotal, data.currency)]]
        if data.supplier_is_vat_payer:
            summary_rows.append(["DPH:", format_currency(data.totals.vat_amount, data.currency)])
        summary_rows.append(["Celkem k úhradě:", format_currency(data.totals.total, data.currency)])
        summary = Table(summary_rows, colWidths=[40 * mm, 40 * mm], hAlign="RIGHT")
        summary.setStyle(
            TableStyle(
                [
                    ("FONTNAME", (0, 0), (-1, -1), font),
                    ("FONTSIZE", (0, 0), (-1, -1), 10),
                    ("ALIGN", (1, 0), (1, -1), "RIGHT"),
                    ("LINEABOVE", (0, -1), (-1, -1), 0.75, colors.black),
                ]
            )
        )

        story = [
            Paragraph(f"Faktura {xml_escape(data.invoice_number)}", heading),
            Spacer(1, 4 * mm),
            parties,
            Spacer(1, 4 * mm),
            meta,
            Spacer(1, 6 * mm),
            items_table,
            Spacer(1, 6 * mm),
            summary,
        ]
        if data.notes:
            story.extend([Spacer(1, 6 * mm), Paragraph(xml_escape(data.notes), normal)])

        doc.build(story)
        pdf = buffer.getvalue()

        logger.info(
            "Invoice document rendered",
            extra={"invoice_number": data.invoice_number, "size_bytes": len(pdf)},
        )
        return pdf


def document_path(organization_id: int, year: int, invoice_number: str) -> str:
    """
    Relative storage path for an invoice document.

    Example:
        >>> document_path(3, 2025, "FV/2025-00001")
        '3/2025/FV-2025-00001.pdf'
    """
    file_name = f"{invoice_number.replace('/', '-')}.pdf"
    return f"{organization_id}/{year}/{file_name}"


class DocumentStore:
    """Persists rendered documents and reads them back by relative path."""

    async def save(self, data: bytes, organization_id: int, year: int, invoice_number: str) -> str:
        raise NotImplementedError

    async def load(self, path: str) -> bytes:
        raise NotImplementedError


class LocalDocumentStore(DocumentStore):
    """Stores documents under a base directory on the local filesystem."""

    def __init__(self, base_path: Optional[str] = None) -> None:
        self.base_path = Path(base_path or settings.pdf_storage_path)

    async def save(self, data: bytes, organization_id: int, year: int, invoice_number: str) -> str:
        relative = document_path(organization_id, year, invoice_number)
        target = self.base_path / relative

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)

        await asyncio.to_thread(_write)
        logger.info("Document stored", extra={"path": relative, "backend": "local"})
        return relative

    async def load(self, path: str) -> bytes:
        return await asyncio.to_thread((self.base_path / path).read_bytes)


class SupabaseDocumentStore(DocumentStore):
    """
    Stores documents in a Supabase Storage bucket.

    Uses the service-role key; the bucket is expected to exist.
    """

    def __init__(self, client=None, bucket: Optional[str] = None) -> None:
        if client is None:
            from supabase import create_client

            if not settings.supabase_url or not settings.supabase_secret_key:
                raise ValueError("SUPABASE_URL and SUPABASE_SECRET_KEY must be set")
            client = create_client(settings.supabase_url, settings.supabase_secret_key)
        self.client = client
        self.bucket = bucket or settings.supabase_bucket

    async def save(self, data: bytes, organization_id: int, year: int, invoice_number: str) -> str:
        relative = document_path(organization_id, year, invoice_number)
        storage = self.client.storage.from_(self.bucket)
        await asyncio.to_thread(
            storage.upload,
            relative,
            data,
            {"content-type": "application/pdf", "upsert": "true"},
        )
        logger.info("Document stored", extra={"path": relative, "backend": "supabase"})
        return relative

    async def load(self, path: str) -> bytes:
        storage = self.client.storage.from_(self.bucket)
        return await asyncio.to_thread(storage.download, path)


def get_document_store() -> DocumentStore:
    """Build the configured document store."""
    backend = settings.document_storage_backend.lower()
    if backend == "supabase":
        return SupabaseDocumentStore()
    if backend == "local":
        return LocalDocumentStore()
    raise ValueError(f"Unknown document storage backend: {settings.document_storage_backend}")
