from fastapi import APIRouter, Depends, HTTPException
from sqlmodel import Session, select
from ..db import get_session
from ..models import Participant, Document, FormInstance
from ..schemas import ParticipantCreate
from ..documents import SUBJECT_PARTICIPANT
from ..utils import canonical_json
from ..auth import require_admin_access, resolve_access_context

router = APIRouter()

def _ensure_participant(session: Session, participant_id: int):
    participant = session.get(Participant, participant_id)
    if not participant:
        raise HTTPException(404, "participant not found")
    return participant

@router.post("", status_code=201)
def create_participant(
    payload: ParticipantCreate,
    session: Session = Depends(get_session),
    ctx=Depends(require_admin_access),
):
    participant = Participant(
        first_name=payload.first_name,
        last_name=payload.last_name,
        date_of_birth=payload.date_of_birth,
        email=payload.email,
        phone=payload.phone,
        data_json=canonical_json(payload.data or {}),
    )
    session.add(participant)
    session.commit()
    session.refresh(participant)
    return participant

@router.get("/{participant_id}")
def get_participant(
    participant_id: int,
    session: Session = Depends(get_session),
    ctx=Depends(resolve_access_context),
):
    return _ensure_participant(session, participant_id)

@router.get("/{participant_id}/documents")
def list_documents(
    participant_id: int,
    session: Session = Depends(get_session),
    ctx=Depends(resolve_access_context),
):
    _ensure_participant(session, participant_id)
    return session.exec(
        select(Document).where(Document.participant_id == participant_id).order_by(Document.created_at.desc())
    ).all()

@router.get("/{participant_id}/instances")
def list_instances(
    participant_id: int,
    session: Session = Depends(get_session),
    ctx=Depends(resolve_access_context),
):
    _ensure_participant(session, participant_id)
    rows = session.exec(
        select(FormInstance).where(
            FormInstance.subject_type == SUBJECT_PARTICIPANT,
            FormInstance.subject_id == str(participant_id),
        ).order_by(FormInstance.id)
    ).all()
    return [
        {"id": r.id, "template_id": r.template_id, "status": r.status, "completed_at": r.completed_at}
        for r in rows
    ]
