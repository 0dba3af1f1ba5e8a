"""Form instances backed by the database and object storage.

These wrap the pure lifecycle functions: load a row, turn it into an
``InstanceState``, apply the change, write it back and append an audit event.
"""
import logging
from typing import Optional, Tuple

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from .documents import SUBJECT_PARTICIPANT, SUBJECT_WORKFLOW_REQUEST, ensure_document_for_instance
from .events import append_event
from .fields import Template, normalize_template
from .generation import MappingContext, build_generation_request, compute_filled_data
from .lifecycle import (
    FINISHED_STATUSES,
    AlreadyCompleted,
    ExternalServiceFailure,
    InstanceState,
    can_submit_for_generation,
    mark_completed,
    new_instance,
    record_manual_values,
    record_signature,
)
from .mapping import (
    find_missing_required_manual_fields,
    is_field_required,
    partition_fields,
    requires_signature,
    resolve_manual_key,
    resolve_manual_label,
)
from .models import FormInstance, Participant, PdfTemplate, User, WorkflowRequest
from .render import render_pdf
from .storage import get_bytes, put_bytes
from .utils import canonical_json, load_json, sha256_bytes, utcnow

logger = logging.getLogger(__name__)

SUBJECT_TYPES = (SUBJECT_PARTICIPANT, SUBJECT_WORKFLOW_REQUEST)


class NotFound(LookupError):
    pass


def load_template(session: Session, template_id: int) -> Tuple[PdfTemplate, Template]:
    row = session.get(PdfTemplate, template_id)
    if not row:
        raise NotFound("template not found")
    return row, normalize_template(load_json(row.layout_json), template_id=row.id, title=row.title)


def get_instance(session: Session, instance_id: int) -> FormInstance:
    instance = session.get(FormInstance, instance_id)
    if not instance:
        raise NotFound("form instance not found")
    return instance


def to_state(instance: FormInstance) -> InstanceState:
    return InstanceState(
        id=instance.id,
        template_id=instance.template_id,
        subject_type=instance.subject_type,
        subject_id=instance.subject_id,
        values={k: "" if v is None else str(v) for k, v in load_json(instance.values_json).items()},
        signature_ref=instance.signature_ref,
        status=instance.status,
        output_ref=instance.completed_pdf_key,
    )


def apply_state(instance: FormInstance, state: InstanceState) -> FormInstance:
    instance.values_json = canonical_json(state.values)
    instance.signature_ref = state.signature_ref
    instance.status = state.status.value
    instance.completed_pdf_key = state.output_ref
    instance.updated_at = utcnow()
    return instance


def _find_instance(session: Session, subject_type: str, subject_id: str, template_id: int):
    return session.exec(
        select(FormInstance).where(
            FormInstance.subject_type == subject_type,
            FormInstance.subject_id == subject_id,
            FormInstance.template_id == template_id,
        )
    ).first()


def _ensure_subject(session: Session, subject_type: str, subject_id: str):
    if subject_type not in SUBJECT_TYPES:
        raise ValueError(f"subject_type must be one of {', '.join(SUBJECT_TYPES)}")
    model = Participant if subject_type == SUBJECT_PARTICIPANT else WorkflowRequest
    try:
        row = session.get(model, int(subject_id))
    except ValueError:
        row = None
    if not row:
        raise NotFound(f"{subject_type.replace('_', ' ')} not found")
    return row


def get_or_create_instance(
    session: Session,
    subject_type: str,
    subject_id,
    template_id: int,
    assigned_to_id: Optional[int] = None,
    actor: str = "system",
) -> Tuple[FormInstance, bool]:
    """Return the instance for (subject, template), creating it on first use.

    Concurrent callers converge on one row: the loser of the insert race
    hits the unique constraint and re-reads the winner's row.
    """
    subject_id = str(subject_id)
    existing = _find_instance(session, subject_type, subject_id, template_id)
    if existing:
        return existing, False
    _ensure_subject(session, subject_type, subject_id)
    load_template(session, template_id)

    state = new_instance(subject_type, subject_id, template_id)
    instance = FormInstance(
        template_id=template_id,
        subject_type=state.subject_type,
        subject_id=state.subject_id,
        status=state.status.value,
        values_json=canonical_json(state.values),
        assigned_to_id=assigned_to_id,
    )
    session.add(instance)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        existing = _find_instance(session, subject_type, subject_id, template_id)
        if existing is None:
            raise
        logger.info("instance for %s:%s/template %s created concurrently", subject_type, subject_id, template_id)
        return existing, False
    session.refresh(instance)
    append_event(
        session, instance.id, actor, "created",
        {"subject_type": subject_type, "subject_id": subject_id, "template_id": template_id},
    )
    logger.info("created form instance %s for %s:%s", instance.id, subject_type, subject_id)
    return instance, True


def save_manual_values(session: Session, instance: FormInstance, values: dict, actor: str) -> FormInstance:
    state = to_state(instance)
    if state.status in FINISHED_STATUSES:
        raise AlreadyCompleted(state.output_ref)
    state = record_manual_values(state, values)
    apply_state(instance, state)
    session.add(instance)
    append_event(session, instance.id, actor, "filled", {"keys": sorted((values or {}).keys())}, commit=False)
    session.commit()
    session.refresh(instance)
    return instance


def save_signature(session: Session, instance: FormInstance, png: bytes, actor: str) -> FormInstance:
    state = to_state(instance)
    if state.status in FINISHED_STATUSES:
        raise AlreadyCompleted(state.output_ref)
    key = f"pdf_signatures/{instance.id}/{sha256_bytes(png)}.png"
    try:
        put_bytes(key, png, content_type="image/png")
    except Exception as exc:
        logger.exception("storing signature for instance %s failed", instance.id)
        raise ExternalServiceFailure("Could not store the signature, please try again.") from exc
    apply_state(instance, record_signature(state, key))
    session.add(instance)
    append_event(session, instance.id, actor, "signed", {"signature_ref": key}, commit=False)
    session.commit()
    session.refresh(instance)
    return instance


def checklist(instance: FormInstance, template: Template) -> dict:
    state = to_state(instance)
    manual_fields = partition_fields(template).manual_fields
    blocked = can_submit_for_generation(state, template)
    return {
        "manual_fields": [
            {
                "key": resolve_manual_key(f),
                "label": resolve_manual_label(f),
                "type": f.type,
                "required": is_field_required(f),
                "value": state.values.get(resolve_manual_key(f), ""),
            }
            for f in manual_fields
        ],
        "missing": [
            {"key": m.key, "label": m.label}
            for m in find_missing_required_manual_fields(manual_fields, state.values)
        ],
        "requires_signature": requires_signature(template),
        "has_signature": bool(state.signature_ref),
        "ready": blocked is None,
        "blocked_by": blocked.code if blocked else None,
    }


def _participant_dict(row: Optional[Participant]) -> dict:
    if row is None:
        return {}
    data = load_json(row.data_json)
    data.update({
        "id": row.id,
        "first_name": row.first_name,
        "last_name": row.last_name,
        "date_of_birth": row.date_of_birth,
        "email": row.email,
        "phone": row.phone,
    })
    return data


def _caller_dict(caller: Optional[User]) -> dict:
    if caller is None:
        return {}
    return {
        "id": caller.id,
        "email": caller.email,
        "name": caller.name,
        "full_name": caller.name,
        "app_role": caller.app_role,
    }


def build_context(session: Session, instance: FormInstance, caller: Optional[User] = None) -> MappingContext:
    participant: dict = {}
    workflow_request: dict = {}
    if instance.subject_type == SUBJECT_PARTICIPANT:
        participant = _participant_dict(session.get(Participant, int(instance.subject_id)))
    else:
        request = session.get(WorkflowRequest, int(instance.subject_id))
        if request is not None:
            workflow_request = {"id": request.id, "status": request.status}
            participant = load_json(request.participant_data_json)
            workflow_request["participant_data"] = participant
            if not participant and request.participant_id:
                participant = _participant_dict(session.get(Participant, request.participant_id))
    return MappingContext(participant=participant, workflow_request=workflow_request, caller=_caller_dict(caller))


def output_key(instance: FormInstance, digest: str) -> str:
    # one object per attempt; only the attempt that wins the status update is referenced
    return f"pdf_forms/{instance.subject_type}/{instance.subject_id}/{instance.id}-{digest[:16]}.pdf"


def generate_instance_pdf(
    session: Session, instance_id: int, caller: Optional[User] = None, actor: str = "system"
) -> FormInstance:
    """Validate, render and store the completed PDF for one instance.

    Validation errors are raised before storage or the renderer is touched.
    If rendering or storage fails the instance keeps its current status so
    the operator can submit again. When two submissions race, the conditional
    status update picks the winner; the loser's upload is left unreferenced.
    """
    instance = get_instance(session, instance_id)
    row, template = load_template(session, instance.template_id)
    state = to_state(instance)
    request = build_generation_request(state, template)
    filled = compute_filled_data(template, request, build_context(session, instance, caller))

    try:
        template_pdf = get_bytes(row.s3_key)
        signature_png = get_bytes(request.signature_ref) if request.signature_ref else None
        pdf = render_pdf(template_pdf, template, filled, signature_png)
        digest = sha256_bytes(pdf)
        key = output_key(instance, digest)
        put_bytes(key, pdf, content_type="application/pdf")
    except Exception as exc:
        logger.exception("generating PDF for instance %s failed", instance.id)
        append_event(session, instance.id, actor, "generation_failed", {"error": type(exc).__name__})
        raise ExternalServiceFailure("Could not generate the PDF, please try again.") from exc

    completed = mark_completed(state, key)
    now = utcnow()
    result = session.execute(
        update(FormInstance)
        .where(FormInstance.id == instance.id, FormInstance.status.not_in([s.value for s in FINISHED_STATUSES]))
        .values(
            status=completed.status.value,
            completed_pdf_key=key,
            completed_pdf_sha256=digest,
            completed_at=now,
            updated_at=now,
        )
    )
    if result.rowcount == 0:
        session.rollback()
        session.refresh(instance)
        logger.warning("instance %s was completed by another submission; discarding %s", instance.id, key)
        raise AlreadyCompleted(instance.completed_pdf_key)
    session.flush()
    session.refresh(instance)
    if instance.subject_type == SUBJECT_PARTICIPANT:
        ensure_document_for_instance(session, instance, int(instance.subject_id))
    append_event(
        session, instance.id, actor, "generated",
        {"pdf": key, "sha256": instance.completed_pdf_sha256},
        commit=False,
    )
    session.commit()
    session.refresh(instance)
    logger.info("instance %s completed", instance.id)
    return instance
