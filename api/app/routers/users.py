import secrets
from fastapi import APIRouter, Depends, HTTPException, status
from sqlmodel import Session, select
from ..db import get_session
from ..models import User
from ..schemas import UserCreate
from ..auth import require_admin_access

router = APIRouter()

@router.post("", status_code=201)
def create_user(
    payload: UserCreate,
    session: Session = Depends(get_session),
    ctx=Depends(require_admin_access),
):
    existing = session.exec(select(User).where(User.email == payload.email)).first()
    if existing:
        raise HTTPException(status.HTTP_409_CONFLICT, "user email already exists")
    user = User(
        email=payload.email,
        name=payload.name,
        app_role=payload.app_role,
        access_token=secrets.token_urlsafe(32),
    )
    session.add(user)
    session.commit()
    session.refresh(user)
    return user
