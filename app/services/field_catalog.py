"""
Field/spot catalog.

Documents get their fields from one of two places: one-off uploads describe
them inline in data_json.fields, template documents read the template's
signature_spots (legacy, signature/initial only) and template_fields tables.
Both are parsed into a source variant and normalized by one function into
CatalogField, which is the only shape the rest of the engine sees.
"""
import logging
from dataclasses import dataclass, field as dc_field
from typing import Any, Dict, Iterable, List, Optional, Union

from app.models import Document, FieldType, FieldView
from app.supabase_client import SupabaseClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OneOffField:
    """Entry of data_json.fields."""
    id: str
    field_type: FieldType
    signer_id: Optional[str]
    page: int
    x: float
    y: float
    width: float
    height: float
    required: bool = True
    creator_fills: bool = False
    placeholder: Optional[str] = None
    input_mode: Optional[str] = None
    value: Optional[str] = None


@dataclass(frozen=True)
class TemplateField:
    """Row of signature_spots or template_fields."""
    spot_key: str
    field_type: FieldType
    signer_role: Optional[str]
    page: int
    x: float
    y: float
    width: float
    height: float
    required: bool = True
    creator_fills: bool = False
    label: Optional[str] = None
    font_size: Optional[float] = None
    value: Optional[str] = None
    legacy_spot: bool = False


SourceField = Union[OneOffField, TemplateField]


@dataclass(frozen=True)
class CatalogField:
    id: str
    spot_key: str
    field_type: FieldType
    page: int
    x: float
    y: float
    width: float
    height: float
    owner_signer_role: Optional[str]
    required: bool = True
    creator_fills: bool = False
    label: Optional[str] = None
    placeholder: Optional[str] = None
    input_mode: Optional[str] = None
    font_size: Optional[float] = None
    value: Optional[str] = None

    @property
    def is_image(self) -> bool:
        return self.field_type.is_image

    def to_view(self, is_completed: bool = False, value: Optional[str] = None) -> FieldView:
        return FieldView(
            id=self.id,
            spot_key=self.spot_key,
            field_type=self.field_type,
            page=self.page,
            x=self.x,
            y=self.y,
            width=self.width,
            height=self.height,
            owner_signer_role=self.owner_signer_role,
            required=self.required,
            creator_fills=self.creator_fills,
            label=self.label,
            placeholder=self.placeholder,
            input_mode=self.input_mode,
            value=value if value is not None else self.value,
            is_completed=is_completed,
        )


def _field_type(raw: Any, default: FieldType = FieldType.SIGNATURE) -> Optional[FieldType]:
    if raw is None:
        return default
    try:
        return FieldType(str(raw).lower())
    except ValueError:
        return None


def _as_bool(raw: Any, default: bool) -> bool:
    if raw is None:
        return default
    if isinstance(raw, str):
        return raw.strip().lower() in ("true", "1", "yes")
    return bool(raw)


def normalize(source: SourceField) -> CatalogField:
    """Single normalization point for every field source."""
    if isinstance(source, OneOffField):
        return CatalogField(
            id=source.id,
            spot_key=source.id,
            field_type=source.field_type,
            page=source.page,
            x=source.x,
            y=source.y,
            width=source.width,
            height=source.height,
            owner_signer_role=source.signer_id,
            required=source.required,
            creator_fills=source.creator_fills and not source.field_type.is_image,
            placeholder=source.placeholder,
            input_mode=source.input_mode,
            value=source.value if source.creator_fills else None,
        )

    return CatalogField(
        id=source.spot_key,
        spot_key=source.spot_key,
        field_type=source.field_type,
        page=source.page,
        x=source.x,
        y=source.y,
        width=source.width,
        height=source.height,
        owner_signer_role=source.signer_role,
        required=source.required,
        creator_fills=source.creator_fills and not source.field_type.is_image,
        label=source.label,
        font_size=source.font_size,
        value=source.value if source.creator_fills else None,
    )


def parse_one_off_fields(data_json: Dict[str, Any]) -> List[OneOffField]:
    """Parse data_json.fields, skipping malformed entries."""
    parsed = []
    for raw in data_json.get("fields") or []:
        field_type = _field_type(raw.get("fieldType"))
        if not raw.get("id") or field_type is None:
            logger.warning(f"Skipping malformed one-off field: {raw.get('id')!r}")
            continue
        try:
            parsed.append(OneOffField(
                id=str(raw["id"]),
                field_type=field_type,
                signer_id=raw.get("signerId"),
                page=int(raw.get("page") or 1),
                x=float(raw.get("x") or 0),
                y=float(raw.get("y") or 0),
                width=float(raw.get("width") or 0),
                height=float(raw.get("height") or 0),
                required=_as_bool(raw.get("required"), True),
                creator_fills=_as_bool(raw.get("creatorFills"), False),
                placeholder=raw.get("placeholder"),
                input_mode=raw.get("inputMode"),
                value=None if raw.get("value") is None else str(raw.get("value")),
            ))
        except (TypeError, ValueError) as e:
            logger.warning(f"Skipping one-off field {raw.get('id')!r} with bad geometry: {e}")
    return parsed


def parse_signature_spots(rows: Iterable[Dict[str, Any]]) -> List[TemplateField]:
    parsed = []
    for row in rows:
        field_type = _field_type(row.get("kind"))
        if field_type is None or not field_type.is_image:
            field_type = FieldType.SIGNATURE
        parsed.append(TemplateField(
            spot_key=row["spot_key"],
            field_type=field_type,
            signer_role=row.get("signer_role"),
            page=int(row.get("page") or 1),
            x=float(row.get("x") or 0),
            y=float(row.get("y") or 0),
            width=float(row.get("w") or 0),
            height=float(row.get("h") or 0),
            legacy_spot=True,
        ))
    return parsed


def _creator_value(api_tag: str, creator_values: Dict[str, Any], data_json: Dict[str, Any]) -> Optional[str]:
    value = creator_values.get(api_tag)
    if value is None:
        value = data_json.get(api_tag)
    return None if value is None else str(value)


def parse_template_fields(
    rows: Iterable[Dict[str, Any]],
    data_json: Optional[Dict[str, Any]] = None,
) -> List[TemplateField]:
    """
    Template fields. Owner-supplied values are read from
    data_json.creatorFieldValues, falling back to the top-level data of
    API-created documents; either way they are keyed by api_tag.
    """
    data_json = data_json or {}
    creator_values = data_json.get("creatorFieldValues") or {}
    parsed = []
    for row in rows:
        field_type = _field_type(row.get("field_type"), default=FieldType.TEXT)
        if field_type is None:
            logger.warning(f"Skipping template field {row.get('api_tag')!r} with unknown type")
            continue
        parsed.append(TemplateField(
            spot_key=row["api_tag"],
            field_type=field_type,
            signer_role=row.get("signer_role"),
            page=int(row.get("page") or 1),
            x=float(row.get("x") or 0),
            y=float(row.get("y") or 0),
            width=float(row.get("width") or 0),
            height=float(row.get("height") or 0),
            required=_as_bool(row.get("required"), True),
            creator_fills=_as_bool(row.get("creator_fills"), False),
            label=row.get("label"),
            font_size=float(row["font_size"]) if row.get("font_size") else None,
            value=_creator_value(row["api_tag"], creator_values, data_json),
        ))
    return parsed


@dataclass
class FieldCatalog:
    """Normalized fields of one document."""
    fields: List[CatalogField] = dc_field(default_factory=list)

    @classmethod
    def from_sources(cls, sources: Iterable[SourceField]) -> "FieldCatalog":
        by_key: Dict[str, CatalogField] = {}
        for source in sources:
            normalized = normalize(source)
            existing = by_key.get(normalized.spot_key)
            # A template field overrides a legacy spot with the same key
            if existing is not None and isinstance(source, TemplateField) and source.legacy_spot:
                continue
            if existing is not None:
                logger.debug(f"Duplicate spot key {normalized.spot_key}, keeping the later definition")
            by_key[normalized.spot_key] = normalized
        return cls(fields=list(by_key.values()))

    def rendering_fields(self) -> List[CatalogField]:
        """Every field, including creator-filled ones, for display and stamping."""
        return list(self.fields)

    def get(self, spot_key: str) -> Optional[CatalogField]:
        for f in self.fields:
            if f.spot_key == spot_key:
                return f
        return None

    def required_fields(self, signer_role: Optional[str] = None) -> List[CatalogField]:
        """
        Fields a signer must fill before completing.

        `None` means single-signer mode: every required field of the document.
        Creator-filled fields are never required from a signer.
        """
        return [
            f for f in self.fields
            if f.required
            and not f.creator_fills
            and (signer_role is None or f.owner_signer_role == signer_role)
        ]

    def required_spot_keys(self, signer_role: Optional[str] = None) -> List[str]:
        return [f.spot_key for f in self.required_fields(signer_role)]

    def creator_values(self) -> Dict[str, str]:
        return {f.spot_key: f.value for f in self.fields if f.creator_fills and f.value is not None}


async def load_catalog(document: Document, supabase: SupabaseClient) -> FieldCatalog:
    """Build the catalog for a document from whichever source it uses."""
    if document.is_one_off:
        return FieldCatalog.from_sources(parse_one_off_fields(document.data_json))

    spots = await supabase.get_signature_spots(document.template_id)
    template_fields = await supabase.get_template_fields(document.template_id)
    sources: List[SourceField] = []
    sources.extend(parse_signature_spots(spots))
    sources.extend(parse_template_fields(template_fields, document.data_json))
    return FieldCatalog.from_sources(sources)
