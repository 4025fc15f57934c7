# PDF module
from app.pdf.stamp import (
    PDFStamper,
    get_pdf_stamper,
    StampValue,
    StampResult,
    StampingError,
    InvalidImageError,
    prepare_signature_image,
)
from app.pdf.audit_trail import AuditTrailGenerator, get_audit_trail_generator

__all__ = [
    "PDFStamper",
    "get_pdf_stamper",
    "StampValue",
    "StampResult",
    "StampingError",
    "InvalidImageError",
    "prepare_signature_image",
    "AuditTrailGenerator",
    "get_audit_trail_generator",
]
