"""Template and field placement model.

Template layouts are stored as loosely shaped JSON and the admin designer has
changed that shape more than once. ``normalize_template`` is the only place
that understands the older encodings; everything downstream works on the
``Template`` model it returns.
"""
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

FIELD_TYPES = ("text", "textarea", "date", "checkbox", "signature")
SIGNATURE_ROLES = ("participant", "caseworker")
MANUAL_SENTINEL = "__manual__"
KNOWN_SOURCES = ("participant", "user", "workflowrequest", "computed")

# A field is required unless its mapping says required=False.
REQUIRED_BY_DEFAULT = True


def is_required(flag: Optional[bool]) -> bool:
    if flag is None:
        return REQUIRED_BY_DEFAULT
    return flag is not False


class Rect(BaseModel):
    x: float = 0.0
    y: float = 0.0
    w: float = 0.0
    h: float = 0.0


class DbMapping(BaseModel):
    mode: Literal["db"] = "db"
    source: str
    field: str
    required: Optional[bool] = None
    editable_after_prefill: bool = False


class ManualMapping(BaseModel):
    mode: Literal["manual"] = "manual"
    manual_key: Optional[str] = None
    manual_label: Optional[str] = None
    required: Optional[bool] = None


class SignatureMapping(BaseModel):
    mode: Literal["signature"] = "signature"
    signature_role: Literal["participant", "caseworker"] = "participant"
    required: Optional[bool] = None


FieldMapping = Annotated[
    Union[DbMapping, ManualMapping, SignatureMapping],
    Field(discriminator="mode"),
]


class FieldPlacement(BaseModel):
    id: str = ""
    type: Literal["text", "textarea", "date", "checkbox", "signature"] = "text"
    display_label: Optional[str] = None
    mapping: FieldMapping
    page: int = 0
    # top-left origin, viewer units
    rect: Optional[Rect] = None
    # legacy placements: bottom-left origin, already in PDF space
    x: Optional[float] = None
    y: Optional[float] = None
    w: Optional[float] = None
    h: Optional[float] = None
    font_size: Optional[float] = None


class Template(BaseModel):
    id: Optional[Union[int, str]] = None
    title: str = ""
    fields: List[FieldPlacement] = Field(default_factory=list)
    signature_field: Optional[FieldPlacement] = None


def _first(*values) -> Optional[str]:
    for v in values:
        if v is not None and str(v).strip():
            return str(v).strip()
    return None


def _flag(value) -> Optional[bool]:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() not in ("false", "0", "no", "off")


def _number(value) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _db_mapping_from_key(map_key: str, raw: Dict[str, Any]) -> DbMapping:
    source, _, path = map_key.partition(".")
    if not path or source.lower() not in KNOWN_SOURCES:
        source, path = "Participant", map_key
    return DbMapping(
        source=source,
        field=path,
        required=_flag(raw.get("required")),
        editable_after_prefill=bool(raw.get("editable_after_prefill")),
    )


def _coerce_mapping(raw: Dict[str, Any], field_type: str):
    mapping = raw.get("mapping")
    if isinstance(mapping, dict) and mapping.get("mode"):
        mode = str(mapping["mode"]).strip().lower()
        required = _flag(mapping.get("required"))
        if mode == "db":
            return DbMapping(
                source=_first(mapping.get("source")) or "Participant",
                field=_first(mapping.get("field"), mapping.get("path")) or "",
                required=required,
                editable_after_prefill=bool(
                    mapping.get("editable_after_prefill")
                    or mapping.get("editableAfterPrefill")
                    or raw.get("editable_after_prefill")
                ),
            )
        if mode == "manual":
            return ManualMapping(
                manual_key=_first(mapping.get("manual_key"), mapping.get("manualKey")),
                manual_label=_first(mapping.get("manual_label"), mapping.get("manualLabel")),
                required=required,
            )
        if mode == "signature":
            role = _first(mapping.get("signature_role"), mapping.get("signatureRole")) or "participant"
            role = role.lower()
            return SignatureMapping(
                signature_role=role if role in SIGNATURE_ROLES else "participant",
                required=required,
            )
        raise ValueError(f"unknown mapping mode {mode!r}")
    if field_type == "signature":
        return SignatureMapping(required=_flag(raw.get("required")))
    map_key = _first(raw.get("map_key"))
    if map_key and map_key != MANUAL_SENTINEL:
        return _db_mapping_from_key(map_key, raw)
    return ManualMapping(required=_flag(raw.get("required")))


def _coerce_placement(raw: Dict[str, Any], default_id: str = "") -> FieldPlacement:
    field_type = str(raw.get("type") or "text").strip().lower()
    if field_type not in FIELD_TYPES:
        field_type = "text"
    display = raw.get("display") if isinstance(raw.get("display"), dict) else {}
    rect = raw.get("rect") if isinstance(raw.get("rect"), dict) else None
    page = _number(raw.get("page", raw.get("page_index")))
    return FieldPlacement(
        id=_first(raw.get("id"), raw.get("key")) or default_id,
        type=field_type,
        display_label=_first(
            raw.get("display_label"), raw.get("displayLabel"), raw.get("label"), display.get("label")
        ),
        mapping=_coerce_mapping(raw, field_type),
        page=int(page) if page is not None else 0,
        rect=Rect(**{k: _number(rect.get(k)) or 0.0 for k in ("x", "y", "w", "h")}) if rect else None,
        x=_number(raw.get("x")),
        y=_number(raw.get("y")),
        w=_number(raw.get("w", raw.get("width"))),
        h=_number(raw.get("h", raw.get("height"))),
        font_size=_number(raw.get("font_size", raw.get("fontSize", raw.get("size")))),
    )


def _as_signature_slot(raw: Dict[str, Any]) -> FieldPlacement:
    placement = _coerce_placement(raw, default_id="signature")
    update: Dict[str, Any] = {"type": "signature"}
    if not isinstance(placement.mapping, SignatureMapping):
        required = raw.get("required")
        if required is None and isinstance(raw.get("mapping"), dict):
            required = raw["mapping"].get("required")
        update["mapping"] = SignatureMapping(required=_flag(required))
    return placement.model_copy(update=update)


def pick_signature(candidates: List[FieldPlacement]) -> Optional[FieldPlacement]:
    """First required signature placement, else the first one, else None."""
    if not candidates:
        return None
    required = [c for c in candidates if is_required(c.mapping.required)]
    return (required or candidates)[0]


def _refold(template: Template) -> Template:
    candidates = [template.signature_field] if template.signature_field is not None else []
    fields = []
    for f in template.fields:
        if isinstance(f.mapping, SignatureMapping):
            candidates.append(f.model_copy(update={"type": "signature"}))
        else:
            fields.append(f)
    if len(fields) == len(template.fields):
        return template
    return template.model_copy(update={"fields": fields, "signature_field": pick_signature(candidates)})


def normalize_template(raw, template_id: Optional[int] = None, title: Optional[str] = None) -> Template:
    """Build a canonical ``Template`` from any stored layout shape.

    Field lists are read from ``fields`` or the older ``designer_fields``.
    Signature placements may live in the dedicated ``signature_field`` slot or
    inside the field list; they are folded into one canonical
    ``signature_field``, preferring the first required candidate so that
    "requires a signature" is the OR over every representation.
    """
    if isinstance(raw, Template):
        return _refold(raw)
    raw = raw or {}
    items = raw.get("fields")
    if not isinstance(items, list):
        items = raw.get("designer_fields")
    if not isinstance(items, list):
        items = []

    fields: List[FieldPlacement] = []
    candidates: List[FieldPlacement] = []
    dedicated = raw.get("signature_field")
    if isinstance(dedicated, dict):
        candidates.append(_as_signature_slot(dedicated))
    for item in items:
        if not isinstance(item, dict):
            continue
        placement = _coerce_placement(item)
        if isinstance(placement.mapping, SignatureMapping):
            candidates.append(placement.model_copy(update={"type": "signature"}))
        else:
            fields.append(placement)

    return Template(
        id=template_id if template_id is not None else raw.get("id"),
        title=title if title is not None else (_first(raw.get("title"), raw.get("name")) or ""),
        fields=fields,
        signature_field=pick_signature(candidates),
    )


def template_layout(template: Template) -> Dict[str, Any]:
    """Canonical layout dict as stored on ``PdfTemplate.layout_json``."""
    return {
        "fields": [f.model_dump(exclude_none=True) for f in template.fields],
        "signature_field": (
            template.signature_field.model_dump(exclude_none=True) if template.signature_field else None
        ),
    }
