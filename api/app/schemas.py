from pydantic import BaseModel
from typing import Dict, Optional

class InstanceCreate(BaseModel):
    subject_type: str = "participant"
    subject_id: str
    template_id: int
    assigned_to_id: Optional[int] = None

class ValuesSave(BaseModel):
    values: Dict[str, Optional[str]]  # manual key -> value

class SignatureSave(BaseModel):
    signature_png: str  # data URL or bare base64

class LayoutUpdate(BaseModel):
    layout: dict
    title: Optional[str] = None
    category: Optional[str] = None

class ParticipantCreate(BaseModel):
    first_name: str
    last_name: str = ""
    date_of_birth: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    data: Optional[dict] = None

class WorkflowRequestCreate(BaseModel):
    participant_data: dict = {}
    status: str = "Pending"

class WorkflowMigrate(BaseModel):
    participant_id: int

class UserCreate(BaseModel):
    email: str
    name: str
    app_role: str = "CaseWorker"
