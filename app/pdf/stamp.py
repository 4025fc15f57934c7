"""
Field stamping using PyMuPDF (fitz).

Draws every collected input into the unsigned PDF: signature/initial images,
text and date values, checkbox marks. Stored field rectangles use a top-left
origin (browser editor), PDF user space uses a bottom-left origin and PyMuPDF
draws in top-left device space again, so each rectangle goes through both
conversions.
"""
import io
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional

import fitz  # PyMuPDF
from PIL import Image, UnidentifiedImageError

from app.models import FieldType
from app.services.field_catalog import CatalogField

logger = logging.getLogger(__name__)

# Fonts with full Latin Extended coverage, installed in the container image
FONT_PATHS = [
    "/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf",
    "/usr/share/fonts/truetype/freefont/FreeSans.ttf",
    "/usr/share/fonts/truetype/liberation/LiberationSans-Regular.ttf",
]

MAX_TEXT_FONT_SIZE = 12.0
TEXT_HEIGHT_RATIO = 0.6
LABEL_FONT_SIZE = 8.0
LABEL_MIN_BOTTOM = 10.0
TEXT_PADDING = 2.0
ELLIPSIS = "..."
CHECKED_VALUES = {"true", "1", "checked", "on"}

MAX_SIGNATURE_PIXELS = 4000 * 4000


class StampingError(Exception):
    """PDF stamping error."""
    pass


class InvalidImageError(StampingError):
    """Uploaded signature is not a usable raster image."""
    pass


def _find_font() -> Optional[str]:
    for path in FONT_PATHS:
        if os.path.exists(path):
            return path
    return None


@dataclass
class Placement:
    """
    Field rectangle in PDF user space: origin bottom-left, Y up, points.
    """
    page: int  # 1-indexed
    x: float
    y: float
    w: float
    h: float

    @classmethod
    def from_top_left(cls, f: CatalogField, page_height: float) -> "Placement":
        """Flip a stored (top-left origin) field rectangle into PDF coordinates."""
        return cls(
            page=f.page,
            x=f.x,
            y=page_height - f.y - f.height,
            w=f.width,
            h=f.height,
        )

    def to_rect(self, page_height: float) -> fitz.Rect:
        """PyMuPDF rectangle (top-left device space) for this placement."""
        y_top = page_height - self.y - self.h
        return fitz.Rect(self.x, y_top, self.x + self.w, y_top + self.h)


@dataclass
class StampValue:
    """Collected input for one spot."""
    image: Optional[bytes] = None
    text: Optional[str] = None
    signed_at: Optional[datetime] = None


@dataclass
class StampResult:
    pdf_bytes: bytes
    stamped: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)


def prepare_signature_image(data: bytes) -> bytes:
    """
    Validate an uploaded signature raster and re-encode it as PNG.

    Raises:
        InvalidImageError: not an image, or unreasonably large
    """
    try:
        with Image.open(io.BytesIO(data)) as image:
            image.verify()
        img = Image.open(io.BytesIO(data))
        img.load()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, SyntaxError) as e:
        raise InvalidImageError(f"Signature is not a valid image: {e}")

    width, height = img.size
    if width == 0 or height == 0 or width * height > MAX_SIGNATURE_PIXELS:
        raise InvalidImageError(f"Signature image has unsupported dimensions {width}x{height}")

    if img.mode not in ("RGB", "RGBA", "L", "LA"):
        img = img.convert("RGBA")

    out = io.BytesIO()
    img.save(out, format="PNG", optimize=True)
    return out.getvalue()


def is_checked(value: Optional[str]) -> bool:
    return value is not None and value.strip().lower() in CHECKED_VALUES


def truncate_to_width(text: str, font: fitz.Font, font_size: float, max_width: float) -> str:
    """Shorten `text` with a trailing ellipsis so it fits `max_width`."""
    if font.text_length(text, fontsize=font_size) <= max_width:
        return text
    while text and font.text_length(text + ELLIPSIS, fontsize=font_size) > max_width:
        text = text[:-1]
    return text + ELLIPSIS if text else ""


class PDFStamper:
    """Stamps collected field inputs into a PDF."""

    def __init__(self, font_path: Optional[str] = None):
        self.font_path = font_path if font_path is not None else _find_font()
        if self.font_path:
            self.font = fitz.Font(fontfile=self.font_path)
            self.fontname = "stampsans"
        else:
            self.font = fitz.Font("helv")
            self.fontname = "helv"

    def stamp(
        self,
        pdf_bytes: bytes,
        fields: Iterable[CatalogField],
        values: Dict[str, StampValue],
        stamp_creator_values: bool = True,
    ) -> StampResult:
        """
        Stamp every field that has a value.

        Owner-supplied values of creator-filled fields are stamped only when
        `stamp_creator_values` is set; template documents already carry them
        in the unsigned PDF.

        Fields without a value, with an out-of-range page or a degenerate
        rectangle are skipped. The output is saved without a new file id, so
        identical inputs produce identical bytes.

        Raises:
            StampingError: the PDF cannot be opened or saved
        """
        try:
            doc = fitz.open(stream=pdf_bytes, filetype="pdf")
        except (fitz.FileDataError, RuntimeError) as e:
            raise StampingError(f"Invalid PDF file: {e}")

        result = StampResult(pdf_bytes=b"")
        try:
            for f in fields:
                value = values.get(f.spot_key)
                if value is None and stamp_creator_values and f.creator_fills and f.value is not None:
                    value = StampValue(text=f.value)

                if value is None or (value.image is None and value.text is None):
                    result.skipped.append(f.spot_key)
                    continue
                if f.page < 1 or f.page > doc.page_count:
                    logger.warning(
                        f"Field {f.spot_key} targets page {f.page}, document has {doc.page_count}; skipping"
                    )
                    result.skipped.append(f.spot_key)
                    continue
                if f.width <= 0 or f.height <= 0:
                    logger.warning(f"Field {f.spot_key} has an empty rectangle; skipping")
                    result.skipped.append(f.spot_key)
                    continue

                page = doc[f.page - 1]
                page_height = page.rect.height
                rect = Placement.from_top_left(f, page_height).to_rect(page_height)

                if self._stamp_field(page, f, rect, value):
                    result.stamped.append(f.spot_key)
                else:
                    result.skipped.append(f.spot_key)

            result.pdf_bytes = doc.tobytes(garbage=4, deflate=True, no_new_id=True)
        except RuntimeError as e:
            raise StampingError(f"Failed to stamp PDF: {e}")
        finally:
            doc.close()

        logger.info(f"Stamped {len(result.stamped)} field(s), skipped {len(result.skipped)}")
        return result

    def _stamp_field(self, page: fitz.Page, f: CatalogField, rect: fitz.Rect, value: StampValue) -> bool:
        if f.field_type.is_image:
            if value.image is None:
                return False
            page.insert_image(rect, stream=value.image, keep_proportion=True)
            self._add_signed_label(page, rect, value.signed_at)
            return True

        if value.text is None:
            return False

        if f.field_type == FieldType.CHECKBOX:
            if not is_checked(value.text):
                return False
            self._draw_centered(page, rect, "X", min(MAX_TEXT_FONT_SIZE, rect.height * 0.8))
            return True

        self._draw_text(page, rect, value.text, f.font_size)
        return True

    def _draw_text(self, page: fitz.Page, rect: fitz.Rect, text: str, font_size: Optional[float]) -> None:
        size = min(font_size or MAX_TEXT_FONT_SIZE, MAX_TEXT_FONT_SIZE, rect.height * TEXT_HEIGHT_RATIO)
        text = truncate_to_width(" ".join(text.split()), self.font, size, rect.width - 2 * TEXT_PADDING)
        if not text:
            return
        baseline = rect.y0 + (rect.height + size * 0.7) / 2
        self._insert(page, fitz.Point(rect.x0 + TEXT_PADDING, baseline), text, size)

    def _draw_centered(self, page: fitz.Page, rect: fitz.Rect, text: str, size: float) -> None:
        width = self.font.text_length(text, fontsize=size)
        x = rect.x0 + (rect.width - width) / 2
        baseline = rect.y0 + (rect.height + size * 0.7) / 2
        self._insert(page, fitz.Point(x, baseline), text, size)

    def _add_signed_label(self, page: fitz.Page, rect: fitz.Rect, signed_at: Optional[datetime]) -> None:
        if signed_at is None:
            return
        label = f"Signed: {signed_at.strftime('%Y-%m-%d')}"
        # Bottom edge of the box measured from the page bottom, in PDF user space
        bottom_pdf = page.rect.height - rect.y1
        if bottom_pdf < LABEL_MIN_BOTTOM:
            point = fitz.Point(rect.x0, rect.y0 - 2)
        else:
            point = fitz.Point(rect.x0, rect.y1 + LABEL_FONT_SIZE + 1)
        self._insert(page, point, label, LABEL_FONT_SIZE, color=(0.3, 0.3, 0.3))

    def _insert(self, page: fitz.Page, point: fitz.Point, text: str, size: float, color=(0, 0, 0)) -> None:
        if self.font_path:
            page.insert_text(point, text, fontsize=size, fontname=self.fontname, fontfile=self.font_path, color=color)
        else:
            page.insert_text(point, text, fontsize=size, fontname=self.fontname, color=color)


def append_pages(pdf_bytes: bytes, extra_pdf_bytes: bytes) -> bytes:
    """Append every page of `extra_pdf_bytes` to `pdf_bytes`."""
    try:
        with fitz.open(stream=pdf_bytes, filetype="pdf") as doc, \
                fitz.open(stream=extra_pdf_bytes, filetype="pdf") as extra:
            doc.insert_pdf(extra)
            return doc.tobytes(garbage=4, deflate=True)
    except (fitz.FileDataError, RuntimeError) as e:
        raise StampingError(f"Failed to append audit trail: {e}")


# Singleton instance
_pdf_stamper: Optional[PDFStamper] = None


def get_pdf_stamper() -> PDFStamper:
    """Get the PDF stamper singleton."""
    global _pdf_stamper
    if _pdf_stamper is None:
        _pdf_stamper = PDFStamper()
    return _pdf_stamper
