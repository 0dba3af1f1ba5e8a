from fastapi import APIRouter, Depends, HTTPException
from sqlmodel import Session
from ..db import get_session
from ..models import Participant, WorkflowRequest
from ..schemas import WorkflowRequestCreate, WorkflowMigrate
from ..documents import migrate_workflow_forms
from ..utils import canonical_json
from ..auth import require_admin_access

router = APIRouter()

@router.post("", status_code=201)
def create_workflow_request(
    payload: WorkflowRequestCreate,
    session: Session = Depends(get_session),
    ctx=Depends(require_admin_access),
):
    request = WorkflowRequest(
        status=payload.status,
        participant_data_json=canonical_json(payload.participant_data or {}),
    )
    session.add(request)
    session.commit()
    session.refresh(request)
    return request

@router.post("/{request_id}/migrate")
def migrate_forms(
    request_id: int,
    payload: WorkflowMigrate,
    session: Session = Depends(get_session),
    ctx=Depends(require_admin_access),
):
    if not session.get(WorkflowRequest, request_id):
        raise HTTPException(404, "workflow request not found")
    if not session.get(Participant, payload.participant_id):
        raise HTTPException(404, "participant not found")
    return migrate_workflow_forms(session, request_id, payload.participant_id)
