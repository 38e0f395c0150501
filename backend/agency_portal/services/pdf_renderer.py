"""
Contract PDF rendering with reportlab platypus.

``render`` takes the frozen contract body, optional signature images (data
URLs) and an optional watermark label, and returns PDF bytes. It has no
knowledge of contract status; callers decide the watermark.
"""
from __future__ import annotations

import base64
import binascii
import io
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER
from reportlab.lib.pagesizes import letter
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.lib.utils import ImageReader
from reportlab.platypus import HRFlowable, Image, Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from agency_portal.config import settings

logger = logging.getLogger(__name__)

DARK = colors.HexColor("#1F2937")
ACCENT = colors.HexColor("#00AFF0")
LIGHT_GRAY = colors.HexColor("#D1D5DB")
WATERMARK_GRAY = colors.Color(0.6, 0.6, 0.6, alpha=0.25)

SIGNATURE_WIDTH = 2.2 * inch
SIGNATURE_HEIGHT = 0.8 * inch


@dataclass
class SignatureBlock:
    label: str
    name: Optional[str] = None
    signed_at: Optional[datetime] = None
    image_data_url: Optional[str] = None


@dataclass
class ContractDocument:
    title: str
    body: str
    project_name: str
    client_name: str
    signatures: List[SignatureBlock] = field(default_factory=list)
    watermark: Optional[str] = None


def decode_data_url(data_url: Optional[str]) -> Optional[bytes]:
    """Bytes of a ``data:image/...;base64,`` URL, or None when it is not one."""
    if not data_url or not data_url.startswith("data:image/") or "," not in data_url:
        return None
    header, payload = data_url.split(",", 1)
    if ";base64" not in header:
        return None
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError):
        return None


class ContractPdfRenderer:
    def __init__(self) -> None:
        styles = getSampleStyleSheet()
        self.title_style = ParagraphStyle(
            "ContractTitle",
            parent=styles["Title"],
            fontSize=18,
            textColor=DARK,
            fontName="Helvetica-Bold",
            alignment=TA_CENTER,
            spaceAfter=6,
        )
        self.meta_style = ParagraphStyle(
            "ContractMeta",
            parent=styles["Normal"],
            fontSize=9,
            textColor=colors.HexColor("#6B7280"),
            alignment=TA_CENTER,
        )
        self.body_style = ParagraphStyle(
            "ContractBody",
            parent=styles["Normal"],
            fontSize=10,
            leading=14,
            spaceAfter=6,
        )
        self.label_style = ParagraphStyle(
            "SignatureLabel",
            parent=styles["Normal"],
            fontSize=9,
            fontName="Helvetica-Bold",
            textColor=DARK,
        )

    def _body_flowables(self, body: str) -> list:
        flowables = []
        for block in body.replace("\r\n", "\n").split("\n\n"):
            text = block.strip()
            if not text:
                continue
            flowables.append(Paragraph(escape(text).replace("\n", "<br/>"), self.body_style))
        return flowables

    def _signature_cell(self, block: SignatureBlock) -> list:
        cell = [Paragraph(escape(block.label), self.label_style), Spacer(1, 4)]
        image_bytes = decode_data_url(block.image_data_url)
        if image_bytes:
            try:
                ImageReader(io.BytesIO(image_bytes)).getSize()
                cell.append(Image(io.BytesIO(image_bytes), width=SIGNATURE_WIDTH, height=SIGNATURE_HEIGHT))
            except Exception as exc:
                logger.warning("Signature image could not be embedded: %s", exc)
                cell.append(Paragraph("[signature on file]", self.body_style))
        else:
            cell.append(Spacer(1, SIGNATURE_HEIGHT))
        cell.append(HRFlowable(width="100%", thickness=0.5, color=LIGHT_GRAY))
        cell.append(Paragraph(escape(block.name or "Not signed"), self.body_style))
        if block.signed_at:
            cell.append(Paragraph(f"Date: {block.signed_at.strftime('%Y-%m-%d %H:%M UTC')}", self.meta_style))
        return cell

    def _draw_watermark(self, label: str):
        def on_page(canvas, doc):
            canvas.saveState()
            canvas.setFont("Helvetica-Bold", 96)
            canvas.setFillColor(WATERMARK_GRAY)
            width, height = letter
            canvas.translate(width / 2, height / 2)
            canvas.rotate(45)
            canvas.drawCentredString(0, 0, label)
            canvas.restoreState()
        return on_page

    def render(self, document: ContractDocument) -> bytes:
        buffer = io.BytesIO()
        doc = SimpleDocTemplate(
            buffer,
            pagesize=letter,
            rightMargin=0.75 * inch,
            leftMargin=0.75 * inch,
            topMargin=0.75 * inch,
            bottomMargin=0.75 * inch,
            title=document.title,
            author=settings.BUSINESS_NAME,
        )

        story = [
            Paragraph(escape(document.title), self.title_style),
            Paragraph(
                escape(f"{settings.BUSINESS_NAME} | {document.project_name} | {document.client_name}"),
                self.meta_style,
            ),
            Spacer(1, 8),
            HRFlowable(width="100%", thickness=1, color=ACCENT),
            Spacer(1, 12),
        ]
        story.extend(self._body_flowables(document.body))

        if document.signatures:
            story.append(Spacer(1, 24))
            cells = [self._signature_cell(block) for block in document.signatures]
            table = Table([cells], colWidths=[doc.width / len(cells)] * len(cells))
            table.setStyle(TableStyle([
                ("VALIGN", (0, 0), (-1, -1), "TOP"),
                ("LEFTPADDING", (0, 0), (-1, -1), 6),
                ("RIGHTPADDING", (0, 0), (-1, -1), 6),
            ]))
            story.append(table)

        if document.watermark:
            on_page = self._draw_watermark(document.watermark)
            doc.build(story, onFirstPage=on_page, onLaterPages=on_page)
        else:
            doc.build(story)
        return buffer.getvalue()


def get_pdf_renderer() -> ContractPdfRenderer:
    return ContractPdfRenderer()
