import logging
from sqlmodel import SQLModel, create_engine, Session
from sqlalchemy import text, inspect
from .config import DATABASE_URL

logger = logging.getLogger(__name__)

engine = create_engine(DATABASE_URL, echo=False, pool_pre_ping=True)

def init_db():
    from .models import User, Participant, WorkflowRequest, PdfTemplate, FormInstance, Document, Event
    SQLModel.metadata.create_all(engine)
    _ensure_instance_unique_index()

def get_session():
    with Session(engine) as session:
        yield session

def _ensure_instance_unique_index():
    # tables created before the constraint existed only get it as an index
    inspector = inspect(engine)
    indexes = inspector.get_indexes("forminstance")
    constraints = inspector.get_unique_constraints("forminstance")
    names = {idx.get("name") for idx in indexes} | {c.get("name") for c in constraints}
    if "uq_instance_subject_template" in names:
        return
    with engine.begin() as conn:
        duplicates = conn.execute(
            text(
                "SELECT subject_type, subject_id, template_id FROM forminstance "
                "GROUP BY subject_type, subject_id, template_id HAVING COUNT(*) > 1"
            )
        ).fetchall()
        if duplicates:
            logger.warning(
                "duplicate form instances detected; resolve before enforcing uniqueness: %s",
                ", ".join(f"{row[0]}:{row[1]}/template {row[2]}" for row in duplicates),
            )
            return
        conn.execute(
            text(
                "CREATE UNIQUE INDEX IF NOT EXISTS uq_instance_subject_template "
                "ON forminstance(subject_type, subject_id, template_id)"
            )
        )
