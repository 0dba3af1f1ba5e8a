from fastapi import APIRouter, Depends, HTTPException, Response, status
from minio.error import S3Error
from sqlmodel import Session, select
from ..db import get_session
from ..models import Event, User
from ..schemas import InstanceCreate, ValuesSave, SignatureSave
from ..auth import AccessContext, resolve_access_context, ensure_can_operate, is_privileged
from ..config import PUBLIC_BASE_URL
from ..events import verify_chain
from ..instances import (
    checklist,
    generate_instance_pdf,
    get_instance,
    get_or_create_instance,
    load_template,
    save_manual_values,
    save_signature,
    to_state,
)
from ..lifecycle import FINISHED_STATUSES, ensure_can_submit
from ..storage import get_bytes
from ..utils import b64png_to_bytes, make_token, load_json
from .. import tasks

router = APIRouter()

def _serialize_instance(instance):
    state = to_state(instance)
    return {
        "id": instance.id,
        "template_id": instance.template_id,
        "subject_type": instance.subject_type,
        "subject_id": instance.subject_id,
        "status": instance.status,
        "values": state.values,
        "has_signature": bool(instance.signature_ref),
        "assigned_to_id": instance.assigned_to_id,
        "created_at": instance.created_at,
        "updated_at": instance.updated_at,
        "completed_at": instance.completed_at,
        "pdf_url": f"/api/instances/{instance.id}/pdf" if instance.completed_pdf_key else None,
    }

def _caller(session: Session, ctx: AccessContext):
    return session.get(User, ctx.user_id) if ctx.user_id else None

@router.post("")
def create_instance(
    data: InstanceCreate,
    response: Response,
    session: Session = Depends(get_session),
    ctx: AccessContext = Depends(resolve_access_context),
):
    assigned_to_id = data.assigned_to_id
    if not is_privileged(ctx):
        if assigned_to_id not in (None, ctx.user_id):
            raise HTTPException(403, "only privileged users can assign forms to others")
        assigned_to_id = ctx.user_id
    try:
        instance, created = get_or_create_instance(
            session,
            data.subject_type,
            data.subject_id,
            data.template_id,
            assigned_to_id=assigned_to_id,
            actor=ctx.actor,
        )
    except ValueError as exc:
        raise HTTPException(422, str(exc))
    ensure_can_operate(ctx, instance)
    if created:
        response.status_code = status.HTTP_201_CREATED
    return {"instance": _serialize_instance(instance), "created": created}

@router.get("/{instance_id}")
def read_instance(
    instance_id: int,
    session: Session = Depends(get_session),
    ctx: AccessContext = Depends(resolve_access_context),
):
    instance = get_instance(session, instance_id)
    ensure_can_operate(ctx, instance)
    row, template = load_template(session, instance.template_id)
    return {
        "instance": _serialize_instance(instance),
        "template": {"id": row.id, "title": row.title, "category": row.category},
        "checklist": checklist(instance, template),
    }

@router.post("/{instance_id}/values")
def save_values(
    instance_id: int,
    payload: ValuesSave,
    session: Session = Depends(get_session),
    ctx: AccessContext = Depends(resolve_access_context),
):
    instance = get_instance(session, instance_id)
    ensure_can_operate(ctx, instance)
    instance = save_manual_values(session, instance, payload.values or {}, ctx.actor)
    _, template = load_template(session, instance.template_id)
    return {"instance": _serialize_instance(instance), "checklist": checklist(instance, template)}

@router.post("/{instance_id}/signature")
def save_instance_signature(
    instance_id: int,
    payload: SignatureSave,
    session: Session = Depends(get_session),
    ctx: AccessContext = Depends(resolve_access_context),
):
    instance = get_instance(session, instance_id)
    ensure_can_operate(ctx, instance)
    try:
        png = b64png_to_bytes(payload.signature_png)
    except ValueError as exc:
        raise HTTPException(422, str(exc))
    if not png:
        raise HTTPException(422, "signature is empty")
    instance = save_signature(session, instance, png, ctx.actor)
    return {"instance": _serialize_instance(instance)}

@router.post("/{instance_id}/generate")
def generate(
    instance_id: int,
    response: Response,
    background: bool = False,
    session: Session = Depends(get_session),
    ctx: AccessContext = Depends(resolve_access_context),
):
    instance = get_instance(session, instance_id)
    ensure_can_operate(ctx, instance)
    if background:
        _, template = load_template(session, instance.template_id)
        ensure_can_submit(to_state(instance), template)
        result = tasks.generate_form_instance.delay(instance.id, ctx.user_id, ctx.actor)
        response.status_code = status.HTTP_202_ACCEPTED
        return {"ok": True, "task_id": result.id, "status": instance.status}
    instance = generate_instance_pdf(session, instance.id, caller=_caller(session, ctx), actor=ctx.actor)
    return {"ok": True, "instance": _serialize_instance(instance), "sha256_final": instance.completed_pdf_sha256}

@router.get("/{instance_id}/pdf")
def download_completed_pdf(
    instance_id: int,
    session: Session = Depends(get_session),
    ctx: AccessContext = Depends(resolve_access_context),
):
    instance = get_instance(session, instance_id)
    ensure_can_operate(ctx, instance)
    if not instance.completed_pdf_key:
        raise HTTPException(404, "completed PDF not ready")
    try:
        pdf_bytes = get_bytes(instance.completed_pdf_key)
    except S3Error:
        raise HTTPException(404, "stored file missing for this form")
    return Response(
        content=pdf_bytes,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="form-{instance.id}.pdf"'},
    )

@router.post("/{instance_id}/signing-link")
def create_signing_link(
    instance_id: int,
    session: Session = Depends(get_session),
    ctx: AccessContext = Depends(resolve_access_context),
):
    instance = get_instance(session, instance_id)
    ensure_can_operate(ctx, instance)
    if instance.status in [s.value for s in FINISHED_STATUSES]:
        raise HTTPException(409, "form already completed")
    token = make_token({"instance_id": instance.id, "purpose": "sign"})
    return {"token": token, "link": f"{PUBLIC_BASE_URL}/sign/{token}"}

@router.get("/{instance_id}/events")
def list_events(
    instance_id: int,
    session: Session = Depends(get_session),
    ctx: AccessContext = Depends(resolve_access_context),
):
    instance = get_instance(session, instance_id)
    ensure_can_operate(ctx, instance)
    events = session.exec(select(Event).where(Event.instance_id == instance.id).order_by(Event.id)).all()
    return {
        "chain_valid": verify_chain(session, instance.id),
        "events": [
            {"type": e.type, "actor": e.actor, "at": e.at, "meta": load_json(e.meta_json).get("meta", {})}
            for e in events
        ],
    }
