"""Participant documents produced by completed form instances."""
import logging
import re
from typing import Optional

from sqlmodel import Session, select

from .events import append_event
from .lifecycle import InstanceStatus
from .models import Document, FormInstance, PdfTemplate, WorkflowRequest
from .utils import utcnow

logger = logging.getLogger(__name__)

SUBJECT_PARTICIPANT = "participant"
SUBJECT_WORKFLOW_REQUEST = "workflow_request"


def safe_file_name(name: Optional[str]) -> str:
    cleaned = re.sub(r"[^\w.\-() ]+", "_", str(name or "file"))
    return re.sub(r"\s+", "_", cleaned)


def build_document_record(
    instance: FormInstance, template: Optional[PdfTemplate], participant_id: int
) -> Document:
    title = template.title if template and template.title else None
    return Document(
        participant_id=participant_id,
        file_name=f"{safe_file_name(title or 'PDF_Form')}.pdf",
        file_type="application/pdf",
        storage_key=instance.completed_pdf_key,
        category=(template.category if template and template.category else "Other"),
        description=f"Completed PDF form: {title or 'PDF Form'}",
        source_instance_id=instance.id,
    )


def ensure_document_for_instance(
    session: Session, instance: FormInstance, participant_id: int
) -> Optional[Document]:
    """Create the participant's Document for a completed instance, once.

    Returns the new Document, or None when one already exists or the
    instance has no output yet.
    """
    if not instance.completed_pdf_key:
        return None
    existing = session.exec(
        select(Document).where(
            Document.source_instance_id == instance.id,
            Document.participant_id == participant_id,
        )
    ).first()
    if existing:
        return None
    template = session.get(PdfTemplate, instance.template_id)
    doc = build_document_record(instance, template, participant_id)
    session.add(doc)
    session.flush()
    return doc


def migrate_workflow_forms(session: Session, workflow_request_id: int, participant_id: int) -> dict:
    """Move a workflow request's form instances onto the participant it became."""
    instances = session.exec(
        select(FormInstance).where(
            FormInstance.subject_type == SUBJECT_WORKFLOW_REQUEST,
            FormInstance.subject_id == str(workflow_request_id),
        )
    ).all()
    request = session.get(WorkflowRequest, workflow_request_id)
    if request is not None and request.participant_id is None:
        request.participant_id = participant_id
        session.add(request)

    migrated = 0
    documents_created = 0
    skipped = []
    for inst in instances:
        clash = session.exec(
            select(FormInstance).where(
                FormInstance.subject_type == SUBJECT_PARTICIPANT,
                FormInstance.subject_id == str(participant_id),
                FormInstance.template_id == inst.template_id,
            )
        ).first()
        if clash:
            logger.warning(
                "participant %s already has instance %s for template %s; leaving instance %s on workflow request %s",
                participant_id, clash.id, inst.template_id, inst.id, workflow_request_id,
            )
            skipped.append(inst.id)
            continue
        now = utcnow()
        inst.subject_type = SUBJECT_PARTICIPANT
        inst.subject_id = str(participant_id)
        if inst.status == InstanceStatus.COMPLETED.value:
            inst.status = InstanceStatus.MIGRATED.value
        inst.migrated_at = now
        inst.updated_at = now
        session.add(inst)
        session.flush()
        migrated += 1
        if ensure_document_for_instance(session, inst, participant_id) is not None:
            documents_created += 1
        append_event(
            session, inst.id, "system", "migrated",
            {"workflow_request_id": workflow_request_id, "participant_id": participant_id},
            commit=False,
        )
    session.commit()
    return {"ok": True, "migrated": migrated, "documents_created": documents_created, "skipped": skipped}
