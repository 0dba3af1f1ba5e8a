from typing import Optional
from fastapi import Depends, Header, HTTPException, Query, status
from pydantic import BaseModel
from sqlmodel import Session, select

from .config import ADMIN_ACCESS_TOKEN, PRIVILEGED_ROLES
from .db import get_session
from .models import FormInstance, User


class AccessContext(BaseModel):
    role: str
    user_id: Optional[int] = None
    app_role: Optional[str] = None

    @property
    def actor(self) -> str:
        return f"user:{self.user_id}" if self.user_id else self.role


def resolve_access_context(
    x_access_token: Optional[str] = Header(default=None, alias="X-Access-Token"),
    token: Optional[str] = Query(default=None),
    session: Session = Depends(get_session),
) -> AccessContext:
    candidate = x_access_token or token
    if not candidate:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing access token")
    if ADMIN_ACCESS_TOKEN and candidate == ADMIN_ACCESS_TOKEN:
        return AccessContext(role="admin")
    user = session.exec(select(User).where(User.access_token == candidate)).first()
    if user:
        return AccessContext(role="user", user_id=user.id, app_role=user.app_role)
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid access token")


def require_admin_access(context: AccessContext = Depends(resolve_access_context)) -> AccessContext:
    if context.role != "admin":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return context


def is_privileged(context: AccessContext) -> bool:
    return context.role == "admin" or (context.app_role in PRIVILEGED_ROLES)


def ensure_can_operate(context: AccessContext, instance: FormInstance) -> None:
    """Assigned operator or a privileged role may fill, sign and submit."""
    if is_privileged(context):
        return
    if instance.assigned_to_id is not None and instance.assigned_to_id == context.user_id:
        return
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="You do not have permission to complete this form.",
    )
