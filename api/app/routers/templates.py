import json
import logging
from fastapi import APIRouter, Depends, UploadFile, File, Form, HTTPException, Response
from minio.error import S3Error
from sqlmodel import Session, select
from ..db import get_session
from ..models import PdfTemplate
from ..schemas import LayoutUpdate
from ..fields import Template, normalize_template, template_layout
from ..mapping import partition_fields, requires_signature, validate_template
from ..storage import put_bytes, get_bytes
from ..utils import canonical_json, load_json, sha256_bytes, utcnow
from ..auth import require_admin_access, resolve_access_context
from ..lifecycle import ExternalServiceFailure

logger = logging.getLogger(__name__)

router = APIRouter()

def _checked_layout(raw) -> Template:
    if not isinstance(raw, dict):
        raise HTTPException(422, "layout must be a JSON object")
    try:
        template = normalize_template(raw)
    except ValueError as exc:
        raise HTTPException(422, {"message": "template layout is invalid", "issues": [str(exc)]})
    issues = validate_template(template)
    if issues:
        raise HTTPException(422, {"message": "template layout is invalid", "issues": issues})
    return template

def _serialize_template(row: PdfTemplate):
    template = normalize_template(load_json(row.layout_json), template_id=row.id, title=row.title)
    parts = partition_fields(template)
    return {
        "id": row.id,
        "title": row.title,
        "category": row.category,
        "filename": row.filename,
        "created_at": row.created_at,
        "updated_at": row.updated_at,
        "layout": template_layout(template),
        "requires_signature": requires_signature(template),
        "manual_field_count": len(parts.manual_fields),
        "db_field_count": len(parts.db_fields),
    }

@router.post("")
async def create_template(
    title: str = Form(...),
    category: str = Form("Other"),
    layout: str = Form("{}"),
    file: UploadFile = File(...),
    session: Session = Depends(get_session),
    ctx=Depends(require_admin_access),
):
    try:
        raw_layout = json.loads(layout or "{}")
    except json.JSONDecodeError:
        raise HTTPException(422, "layout is not valid JSON")
    template = _checked_layout(raw_layout)
    data = await file.read()
    row = PdfTemplate(
        title=title,
        category=category or "Other",
        filename=file.filename or "template.pdf",
        sha256=sha256_bytes(data),
        s3_key="pending",
        layout_json=canonical_json(template_layout(template)),
    )
    session.add(row)
    session.flush()
    key = f"pdf_templates/{row.id}-{row.filename}"
    try:
        put_bytes(key, data, content_type=file.content_type or "application/pdf")
    except Exception as exc:
        session.rollback()
        logger.exception("storing template PDF %s failed", key)
        raise ExternalServiceFailure("Could not store the template PDF, please try again.") from exc
    row.s3_key = key
    session.add(row)
    session.commit()
    session.refresh(row)
    return _serialize_template(row)

@router.get("")
def list_templates(
    session: Session = Depends(get_session),
    ctx=Depends(resolve_access_context),
):
    rows = session.exec(select(PdfTemplate).order_by(PdfTemplate.title)).all()
    return [_serialize_template(r) for r in rows]

@router.get("/{template_id}")
def get_template(
    template_id: int,
    session: Session = Depends(get_session),
    ctx=Depends(resolve_access_context),
):
    row = session.get(PdfTemplate, template_id)
    if not row:
        raise HTTPException(404, "template not found")
    return _serialize_template(row)

@router.put("/{template_id}/layout")
def update_layout(
    template_id: int,
    payload: LayoutUpdate,
    session: Session = Depends(get_session),
    ctx=Depends(require_admin_access),
):
    row = session.get(PdfTemplate, template_id)
    if not row:
        raise HTTPException(404, "template not found")
    template = _checked_layout(payload.layout)
    row.layout_json = canonical_json(template_layout(template))
    if payload.title:
        row.title = payload.title
    if payload.category:
        row.category = payload.category
    row.updated_at = utcnow()
    session.add(row)
    session.commit()
    session.refresh(row)
    return _serialize_template(row)

@router.get("/{template_id}/pdf")
def download_template_pdf(
    template_id: int,
    session: Session = Depends(get_session),
    ctx=Depends(resolve_access_context),
):
    row = session.get(PdfTemplate, template_id)
    if not row:
        raise HTTPException(404, "template not found")
    try:
        pdf_bytes = get_bytes(row.s3_key)
    except S3Error:
        raise HTTPException(404, "stored file missing for this template")
    return Response(
        content=pdf_bytes,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{row.filename}"'},
    )
