"""Generation request assembly and the data merge handed to the renderer."""
import copy
import re
from dataclasses import dataclass, field as dc_field
from datetime import date, datetime
from typing import Any, Dict, Mapping, Optional, Union

from .fields import DbMapping, ManualMapping, SignatureMapping, Template
from .lifecycle import InstanceState, ensure_can_submit
from .mapping import fallback_manual_key, resolve_manual_key

TRUTHY = ("1", "true", "yes", "y", "on", "checked")
_ISO_DATE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})")
_DATE_FORMATS = ("%d/%m/%Y", "%d %B %Y", "%d %b %Y", "%B %d, %Y", "%b %d, %Y")


@dataclass(frozen=True)
class GenerationRequest:
    instance_id: Optional[int]
    template_id: Union[int, str]
    manual_values: Dict[str, str]
    signature_ref: Optional[str]


@dataclass
class MappingContext:
    participant: Dict[str, Any] = dc_field(default_factory=dict)
    workflow_request: Dict[str, Any] = dc_field(default_factory=dict)
    caller: Dict[str, Any] = dc_field(default_factory=dict)
    today: Optional[date] = None


def build_generation_request(state: InstanceState, template: Template) -> GenerationRequest:
    ensure_can_submit(state, template)
    return GenerationRequest(
        instance_id=state.id,
        template_id=state.template_id,
        manual_values=copy.deepcopy(dict(state.values)),
        signature_ref=state.signature_ref,
    )


def clean_text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "Yes" if value else "No"
    if isinstance(value, (int, float)):
        if isinstance(value, float) and (value != value or value in (float("inf"), float("-inf"))):
            return ""
        return str(value)
    return str(value).strip()


def is_truthy(value) -> bool:
    if isinstance(value, bool):
        return value
    return clean_text(value).lower() in TRUTHY


def format_date_au(value) -> str:
    if isinstance(value, (date, datetime)):
        return value.strftime("%d/%m/%Y")
    text = clean_text(value)
    if not text:
        return ""
    m = _ISO_DATE.match(text)
    if m:
        return f"{m.group(3)}/{m.group(2)}/{m.group(1)}"
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).strftime("%d/%m/%Y")
        except ValueError:
            continue
    return text


def get_path(obj, path: str):
    if obj is None or not path:
        return None
    cur = obj
    for part in [p for p in str(path).split(".") if p]:
        if cur is None:
            return None
        if isinstance(cur, Mapping):
            cur = cur.get(part)
        else:
            cur = getattr(cur, part, None)
    return cur


def _computed_value(key: str, context: MappingContext) -> str:
    participant = context.participant or {}
    if key == "full_name":
        parts = [clean_text(participant.get("first_name")), clean_text(participant.get("last_name"))]
        return " ".join(p for p in parts if p)
    if key == "dob_au":
        return format_date_au(participant.get("date_of_birth"))
    if key == "today_au":
        return format_date_au(context.today or date.today())
    return ""


def resolve_db_value(mapping: DbMapping, context: MappingContext) -> str:
    source = mapping.source.strip().lower()
    path = mapping.field.strip()
    if source == "participant":
        return clean_text(get_path(context.participant, path))
    if source == "user":
        return clean_text(get_path(context.caller, path))
    if source == "workflowrequest":
        return clean_text(get_path(context.workflow_request, path))
    if source == "computed":
        return clean_text(_computed_value(path, context))
    return clean_text(get_path(context.participant, f"{mapping.source.strip()}.{path}"))


def compute_filled_data(
    template: Template, request: GenerationRequest, context: MappingContext
) -> Dict[str, str]:
    """Field id -> text to draw, for every non-signature field.

    Values stored under keys no field resolves to are ignored, which is what
    happens after a template has been edited under an existing instance.
    """
    values = request.manual_values or {}
    out: Dict[str, str] = {}
    for f in template.fields:
        field_id = (f.id or "").strip()
        if not field_id:
            continue
        mapping = f.mapping
        if isinstance(mapping, SignatureMapping):
            continue
        if isinstance(mapping, ManualMapping):
            out[field_id] = clean_text(values.get(resolve_manual_key(f)))
        elif isinstance(mapping, DbMapping):
            override = clean_text(values.get(fallback_manual_key(f)))
            if mapping.editable_after_prefill and override:
                out[field_id] = override
            else:
                out[field_id] = resolve_db_value(mapping, context)
    return out
