"""
Audit trail page generator.

Renders the compliance page appended to every signed PDF: document identity,
integrity hashes and the event timeline. Built with ReportLab and merged into
the stamped document with PyMuPDF.
"""
import io
import logging
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.pdfbase import pdfmetrics
from reportlab.pdfbase.ttfonts import TTFont
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from app.models import AuditEvent, AuditEventType
from app.services.audit import event_label
from app.utils.datetime_utils import format_display

logger = logging.getLogger(__name__)

_FONTS_REGISTERED = False

FONT_PATHS = {
    "DejaVuSans": "/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf",
    "DejaVuSans-Bold": "/usr/share/fonts/truetype/dejavu/DejaVuSans-Bold.ttf",
}

# Font names to use (will be set after registration)
FONT_NORMAL = "Helvetica"
FONT_BOLD = "Helvetica-Bold"
FONT_MONO = "Courier"

NOT_RECORDED = "not recorded"


def _register_fonts():
    """Register TTF fonts so names and addresses keep their diacritics."""
    global _FONTS_REGISTERED, FONT_NORMAL, FONT_BOLD

    if _FONTS_REGISTERED:
        return

    try:
        if os.path.exists(FONT_PATHS["DejaVuSans"]):
            pdfmetrics.registerFont(TTFont("DejaVuSans", FONT_PATHS["DejaVuSans"]))
            FONT_NORMAL = "DejaVuSans"
        if os.path.exists(FONT_PATHS["DejaVuSans-Bold"]):
            pdfmetrics.registerFont(TTFont("DejaVuSans-Bold", FONT_PATHS["DejaVuSans-Bold"]))
            FONT_BOLD = "DejaVuSans-Bold"
    except Exception as e:
        # Keep Helvetica fallback (Latin-1 only)
        logger.warning(f"Failed to register DejaVu fonts: {e}")

    _FONTS_REGISTERED = True


_register_fonts()


@dataclass
class TrailDocument:
    """Document details printed in the header of the trail page."""
    id: str
    title: str
    sender: Optional[str]
    signed_sha256: str
    original_sha256: Optional[str] = None


@dataclass
class TrailEvent:
    label: str
    created_at: Optional[datetime]
    ip_address: Optional[str] = None
    signer: Optional[str] = None
    field: Optional[str] = None
    sha256: Optional[str] = None


def trail_events(events: List[AuditEvent]) -> List[TrailEvent]:
    """Project stored audit events onto timeline rows."""
    rows = []
    for event in events:
        meta: Dict[str, Any] = event.meta_json
        rows.append(TrailEvent(
            label=event_label(event.event),
            created_at=event.created_at,
            ip_address=event.ip,
            signer=meta.get("signerEmail") or meta.get("recipientEmail"),
            field=meta.get("spotKey"),
            sha256=meta.get("sha256") if event.event == AuditEventType.COMPLETED.value else None,
        ))
    return rows


class AuditTrailGenerator:
    """Renders the audit trail page as standalone PDF bytes."""

    def __init__(self):
        self.styles = getSampleStyleSheet()
        self._setup_custom_styles()

    def _setup_custom_styles(self):
        self.styles['Normal'].fontName = FONT_NORMAL
        self.styles['Title'].fontName = FONT_BOLD
        self.styles['Heading2'].fontName = FONT_BOLD

        self.styles.add(ParagraphStyle(
            name='TrailTitle',
            parent=self.styles['Title'],
            fontName=FONT_BOLD,
            fontSize=18,
            spaceAfter=12,
        ))
        self.styles.add(ParagraphStyle(
            name='SectionHeader',
            parent=self.styles['Heading2'],
            fontName=FONT_BOLD,
            fontSize=12,
            spaceBefore=12,
            spaceAfter=6,
            textColor=colors.HexColor('#1a1a1a'),
        ))
        self.styles.add(ParagraphStyle(
            name='Cell',
            parent=self.styles['Normal'],
            fontName=FONT_NORMAL,
            fontSize=7,
            leading=9,
        ))
        self.styles.add(ParagraphStyle(
            name='Footer',
            parent=self.styles['Normal'],
            fontName=FONT_NORMAL,
            fontSize=8,
            textColor=colors.grey,
            alignment=TA_CENTER,
        ))

    def generate(
        self,
        document: TrailDocument,
        events: List[TrailEvent],
        generated_at: datetime,
    ) -> bytes:
        """
        Render the trail page(s).

        Returns:
            PDF bytes, one or more A4 pages
        """
        buffer = io.BytesIO()
        doc = SimpleDocTemplate(
            buffer,
            pagesize=A4,
            rightMargin=20*mm,
            leftMargin=20*mm,
            topMargin=20*mm,
            bottomMargin=20*mm,
            title=f"Audit Trail - {document.title}",
        )

        elements = [
            Paragraph("Audit Trail", self.styles['TrailTitle']),
            Paragraph(self._escape(document.title), self.styles['Normal']),
            Spacer(1, 8*mm),
            Paragraph("Document", self.styles['SectionHeader']),
            self._build_document_section(document, generated_at),
            Spacer(1, 6*mm),
            Paragraph("Event Timeline", self.styles['SectionHeader']),
            self._build_events_section(events),
            Spacer(1, 10*mm),
            Paragraph(
                "The signed document hash covers every page before this audit trail.",
                self.styles['Footer'],
            ),
        ]

        doc.build(elements)
        logger.info(f"Generated audit trail for document {document.id} with {len(events)} event(s)")
        return buffer.getvalue()

    def _build_document_section(self, document: TrailDocument, generated_at: datetime) -> Table:
        data = [
            ["Document ID:", document.id],
            ["Title:", Paragraph(self._escape(document.title), self.styles['Cell'])],
            ["Sender:", document.sender or "-"],
            ["Generated:", format_display(generated_at)],
            ["Original SHA-256:", document.original_sha256 or NOT_RECORDED],
            ["Signed SHA-256:", document.signed_sha256],
        ]

        table = Table(data, colWidths=[40*mm, 130*mm])
        table.setStyle(TableStyle([
            ('FONTNAME', (0, 0), (0, -1), FONT_BOLD),
            ('FONTNAME', (1, 0), (1, -1), FONT_NORMAL),
            ('FONTNAME', (1, 4), (1, 5), FONT_MONO),
            ('FONTSIZE', (0, 0), (-1, -1), 8),
            ('VALIGN', (0, 0), (-1, -1), 'TOP'),
            ('BOTTOMPADDING', (0, 0), (-1, -1), 4),
        ]))
        return table

    def _build_events_section(self, events: List[TrailEvent]) -> Table:
        data = [["Event", "Time", "IP address", "Signer", "Field"]]

        for event in events:
            label = event.label
            if event.sha256:
                label = f"{label}<br/><font size=6>SHA-256: {event.sha256}</font>"
            data.append([
                Paragraph(label, self.styles['Cell']),
                format_display(event.created_at) if event.created_at else "-",
                event.ip_address or "-",
                Paragraph(self._escape(event.signer or "-"), self.styles['Cell']),
                Paragraph(self._escape(event.field or "-"), self.styles['Cell']),
            ])

        table = Table(data, colWidths=[45*mm, 35*mm, 25*mm, 40*mm, 25*mm], repeatRows=1)
        table.setStyle(TableStyle([
            ('FONTNAME', (0, 0), (-1, 0), FONT_BOLD),
            ('FONTNAME', (0, 1), (-1, -1), FONT_NORMAL),
            ('FONTSIZE', (0, 0), (-1, -1), 7),
            ('BACKGROUND', (0, 0), (-1, 0), colors.HexColor('#f0f0f0')),
            ('GRID', (0, 0), (-1, -1), 0.5, colors.grey),
            ('VALIGN', (0, 0), (-1, -1), 'TOP'),
            ('BOTTOMPADDING', (0, 0), (-1, -1), 3),
            ('TOPPADDING', (0, 0), (-1, -1), 3),
        ]))
        return table

    @staticmethod
    def _escape(text: str) -> str:
        return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


# Singleton instance
_audit_trail_generator: Optional[AuditTrailGenerator] = None


def get_audit_trail_generator() -> AuditTrailGenerator:
    """Get the audit trail generator singleton."""
    global _audit_trail_generator
    if _audit_trail_generator is None:
        _audit_trail_generator = AuditTrailGenerator()
    return _audit_trail_generator
