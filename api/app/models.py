from typing import Optional
from datetime import datetime
from sqlalchemy import UniqueConstraint
from sqlmodel import SQLModel, Field as ORMField
from .utils import utcnow

class User(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    email: str
    name: str
    app_role: str = "CaseWorker"
    access_token: Optional[str] = ORMField(default=None, index=True)

class Participant(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    first_name: str
    last_name: str = ""
    date_of_birth: Optional[str] = None  # ISO date
    email: Optional[str] = None
    phone: Optional[str] = None
    data_json: str = "{}"  # extra attributes reachable from db mappings
    created_at: datetime = ORMField(default_factory=utcnow)

class WorkflowRequest(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    status: str = "Pending"
    participant_id: Optional[int] = None
    participant_data_json: str = "{}"
    created_at: datetime = ORMField(default_factory=utcnow)

class PdfTemplate(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    title: str
    category: str = "Other"
    filename: str
    s3_key: str
    sha256: Optional[str] = None
    layout_json: str = "{}"
    created_at: datetime = ORMField(default_factory=utcnow)
    updated_at: datetime = ORMField(default_factory=utcnow)

class FormInstance(SQLModel, table=True):
    __table_args__ = (
        UniqueConstraint("subject_type", "subject_id", "template_id", name="uq_instance_subject_template"),
    )
    id: Optional[int] = ORMField(default=None, primary_key=True)
    template_id: int = ORMField(index=True)
    subject_type: str = "participant"  # participant|workflow_request
    subject_id: str
    status: str = "Draft"  # Draft|InProgress|Completed|Migrated
    values_json: str = "{}"
    signature_ref: Optional[str] = None
    assigned_to_id: Optional[int] = None
    completed_pdf_key: Optional[str] = None
    completed_pdf_sha256: Optional[str] = None
    completed_at: Optional[datetime] = None
    migrated_at: Optional[datetime] = None
    created_at: datetime = ORMField(default_factory=utcnow)
    updated_at: datetime = ORMField(default_factory=utcnow)

class Document(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    participant_id: int = ORMField(index=True)
    file_name: str
    file_type: str = "application/pdf"
    storage_key: Optional[str] = None
    category: str = "Other"
    description: str = ""
    source_instance_id: Optional[int] = None
    created_at: datetime = ORMField(default_factory=utcnow)

class Event(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    instance_id: int = ORMField(index=True)
    actor: str  # system|user:<id>|signer
    type: str   # created|filled|signed|generated|generation_failed|migrated
    meta_json: str = "{}"
    at: datetime = ORMField(default_factory=utcnow)
    prev_hash: Optional[str] = None
    hash: Optional[str] = None
