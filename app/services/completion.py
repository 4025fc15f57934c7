"""
Completion validation: has a signer (or the whole document, in single-signer
mode) filled every field it is required to fill.
"""
import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Set

from app.exceptions import ConflictError, MissingFieldsError, ValidationException
from app.models import Document, SignatureAsset, Signer, TextFieldValue
from app.services.field_catalog import FieldCatalog

logger = logging.getLogger(__name__)


@dataclass
class CompletionResult:
    satisfied: bool
    missing: List[str] = field(default_factory=list)


def completed_spot_keys(
    assets: Iterable[SignatureAsset],
    values: Iterable[TextFieldValue],
) -> Set[str]:
    """Spot keys that already have an uploaded image or a submitted value."""
    keys = {a.spot_key for a in assets}
    keys.update(v.spot_key for v in values)
    return keys


def validate(
    document: Document,
    signer: Optional[Signer],
    catalog: FieldCatalog,
    assets: Iterable[SignatureAsset],
    values: Iterable[TextFieldValue],
) -> CompletionResult:
    """
    Compute the fields still missing for `signer`.

    `missing` keeps catalog order so clients can highlight fields
    deterministically.
    """
    role = signer.role if signer else None
    done = completed_spot_keys(assets, values)
    missing = [key for key in catalog.required_spot_keys(role) if key not in done]
    if missing:
        logger.debug(f"Document {document.id} role={role!r} missing {len(missing)} field(s)")
    return CompletionResult(satisfied=not missing, missing=missing)


def ensure_not_completed(document: Document) -> None:
    """Uploads, submissions and completion are rejected once a document is final."""
    if document.is_completed:
        raise ConflictError("Document has already been completed")


def ensure_consent(consent: bool) -> None:
    if not consent:
        raise ValidationException("Consent to sign electronically is required")


def awaits_finalization(document: Document, signer: Optional[Signer], signers: Iterable[Signer]) -> bool:
    """
    True when every signer is done but the document never reached completed,
    i.e. an earlier finalization of the last signer failed part way.
    """
    if document.is_completed or signer is None or not signer.is_completed:
        return False
    return all(s.is_completed for s in signers)


def ensure_can_complete(
    document: Document,
    signer: Optional[Signer],
    consent: bool,
    result: CompletionResult,
) -> None:
    """
    Raises:
        ConflictError: document already completed, or signer already signed
        ValidationException: consent not given
        MissingFieldsError: required fields are still empty
    """
    ensure_not_completed(document)
    ensure_consent(consent)

    if signer is not None and signer.is_completed:
        raise ConflictError("You have already signed this document")

    if not result.satisfied:
        raise MissingFieldsError(result.missing)
