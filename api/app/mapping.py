"""Field mapping resolution over a template's field list.

Everything here is pure: no database, no storage, no mutation of the
template. ``Instance.values`` is keyed by ``resolve_manual_key`` so that
function must stay stable for a given field id.
"""
from collections import Counter
from dataclasses import dataclass, field as dc_field
from typing import Dict, List, Mapping, Optional

from .fields import (
    DbMapping,
    FieldPlacement,
    ManualMapping,
    SignatureMapping,
    Template,
    is_required,
    pick_signature,
)

MANUAL_KEY_PREFIX = "manual:"
DEFAULT_MANUAL_LABEL = "Manual field"


@dataclass(frozen=True)
class MissingField:
    key: str
    label: str


@dataclass
class PartitionedFields:
    db_fields: List[FieldPlacement] = dc_field(default_factory=list)
    manual_fields: List[FieldPlacement] = dc_field(default_factory=list)
    signature_field: Optional[FieldPlacement] = None


def partition_fields(template: Template) -> PartitionedFields:
    parts = PartitionedFields()
    signatures = [template.signature_field] if template.signature_field is not None else []
    for f in template.fields:
        mapping = f.mapping
        if isinstance(mapping, DbMapping):
            parts.db_fields.append(f)
        elif isinstance(mapping, ManualMapping):
            parts.manual_fields.append(f)
        elif isinstance(mapping, SignatureMapping):
            # normalized templates never carry these, but a hand-built one might
            signatures.append(f)
        else:
            raise TypeError(f"unsupported mapping {type(mapping).__name__}")
    parts.signature_field = pick_signature(signatures)
    return parts


def fallback_manual_key(field: FieldPlacement) -> str:
    field_id = (field.id or "").strip()
    return f"{MANUAL_KEY_PREFIX}{field_id or 'unknown'}"


def resolve_manual_key(field: FieldPlacement) -> str:
    mapping = field.mapping
    if isinstance(mapping, ManualMapping) and mapping.manual_key and mapping.manual_key.strip():
        return mapping.manual_key.strip()
    return fallback_manual_key(field)


def resolve_manual_label(field: FieldPlacement) -> str:
    mapping = field.mapping
    candidates = [
        mapping.manual_label if isinstance(mapping, ManualMapping) else None,
        field.display_label,
    ]
    for label in candidates:
        if label and label.strip():
            return label.strip()
    return DEFAULT_MANUAL_LABEL


def is_field_required(field: FieldPlacement) -> bool:
    return is_required(field.mapping.required)


def requires_signature(template: Template) -> bool:
    sig = partition_fields(template).signature_field
    return sig is not None and is_field_required(sig)


def find_missing_required_manual_fields(
    manual_fields: List[FieldPlacement], current_values: Optional[Mapping[str, object]]
) -> List[MissingField]:
    values = current_values or {}
    missing = []
    for f in manual_fields:
        if not is_field_required(f):
            continue
        key = resolve_manual_key(f)
        value = values.get(key)
        if value is None or not str(value).strip():
            missing.append(MissingField(key=key, label=resolve_manual_label(f)))
    return missing


def validate_template(template: Template) -> List[str]:
    """Problems that make a template unsafe to save, as readable messages."""
    issues = []
    parts = partition_fields(template)
    all_fields = list(template.fields)
    if template.signature_field is not None:
        all_fields.append(template.signature_field)

    ids = Counter((f.id or "").strip() for f in all_fields)
    for field_id, count in ids.items():
        if not field_id:
            issues.append("every field needs an id")
        elif count > 1:
            issues.append(f"field id {field_id!r} is used {count} times")

    keys: Dict[str, List[str]] = {}
    for f in parts.manual_fields:
        mapping = f.mapping
        if mapping.manual_key and mapping.manual_key.strip().startswith(MANUAL_KEY_PREFIX):
            issues.append(
                f"field {f.id!r}: manual key {mapping.manual_key.strip()!r} uses the reserved prefix {MANUAL_KEY_PREFIX!r}"
            )
        keys.setdefault(resolve_manual_key(f), []).append(f.id)
    for key, owners in keys.items():
        if len(owners) > 1:
            issues.append(f"manual key {key!r} is shared by fields {', '.join(map(repr, owners))}")

    sources: Dict[tuple, List[str]] = {}
    for f in parts.db_fields:
        pair = (f.mapping.source.strip().lower(), f.mapping.field.strip())
        sources.setdefault(pair, []).append(f.id)
        if not f.mapping.field.strip():
            issues.append(f"field {f.id!r}: db mapping has no field")
    for (source, path), owners in sources.items():
        if len(owners) > 1:
            issues.append(f"{source}.{path} is mapped by fields {', '.join(map(repr, owners))}")

    for f in all_fields:
        is_sig_mode = isinstance(f.mapping, SignatureMapping)
        if (f.type == "signature") != is_sig_mode:
            issues.append(f"field {f.id!r}: type {f.type!r} does not match mapping mode {f.mapping.mode!r}")
    return issues
