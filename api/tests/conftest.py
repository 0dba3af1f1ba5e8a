import json
import os
from io import BytesIO
from typing import Dict

import pytest
from fastapi.testclient import TestClient
from minio.error import S3Error
from reportlab.pdfgen import canvas
from sqlmodel import SQLModel, Session, create_engine

os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ.setdefault("ADMIN_ACCESS_TOKEN", "admin-test-token")

from app.main import app  # noqa: E402
from app import db as db_module  # noqa: E402
from app.db import get_session  # noqa: E402
from app import instances as instances_module  # noqa: E402
from app import storage as storage_module  # noqa: E402
from app.routers import templates as templates_router  # noqa: E402
from app.routers import instances as instances_router  # noqa: E402

ADMIN_HEADERS = {"X-Access-Token": os.environ["ADMIN_ACCESS_TOKEN"]}

# 1x1 transparent PNG
SIGNATURE_B64 = "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mP8/5+hHgAHggJ/Pf8icQAAAABJRU5ErkJggg=="


def make_pdf(pages: int = 1, size=(595.28, 841.89)) -> bytes:
    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=size)
    for _ in range(pages):
        c.drawString(72, 72, "template")
        c.showPage()
    c.save()
    return buf.getvalue()


@pytest.fixture
def template_pdf() -> bytes:
    return make_pdf(pages=2)


@pytest.fixture
def signature_png() -> bytes:
    import base64
    return base64.b64decode(SIGNATURE_B64)


@pytest.fixture(scope="session")
def test_engine(tmp_path_factory):
    db_path = tmp_path_factory.mktemp("data") / "test.db"
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )
    return engine


@pytest.fixture
def setup_db(test_engine):
    SQLModel.metadata.drop_all(test_engine)
    SQLModel.metadata.create_all(test_engine)
    yield
    SQLModel.metadata.drop_all(test_engine)


@pytest.fixture
def session(test_engine, setup_db):
    with Session(test_engine) as s:
        yield s


@pytest.fixture
def mock_storage(monkeypatch) -> Dict[str, bytes]:
    store: Dict[str, bytes] = {}

    def fake_put_bytes(key: str, data: bytes, content_type: str = "application/octet-stream"):
        store[key] = bytes(data)

    def fake_get_bytes(key: str) -> bytes:
        if key not in store:
            raise S3Error("NoSuchKey", "missing", f"/{key}", "test-request", "test-host", None)
        return store[key]

    for target in (storage_module, instances_module, templates_router, instances_router):
        if hasattr(target, "put_bytes"):
            monkeypatch.setattr(target, "put_bytes", fake_put_bytes)
        if hasattr(target, "get_bytes"):
            monkeypatch.setattr(target, "get_bytes", fake_get_bytes)
    return store


@pytest.fixture
def client(test_engine, setup_db, mock_storage):
    db_module.engine = test_engine

    def override_session():
        with Session(test_engine) as session:
            yield session

    app.dependency_overrides[get_session] = override_session
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


# ---------- shared API helpers ----------

LAYOUT = {
    "fields": [
        {"id": "full_name", "type": "text", "page": 0, "rect": {"x": 50, "y": 50, "w": 300, "h": 28},
         "mapping": {"mode": "db", "source": "computed", "field": "full_name"}},
        {"id": "goal", "type": "textarea", "page": 0, "rect": {"x": 50, "y": 120, "w": 300, "h": 80},
         "display_label": "Employment goal", "mapping": {"mode": "manual", "manualKey": "goal"}},
        {"id": "notes", "type": "text", "page": 0, "rect": {"x": 50, "y": 220, "w": 300, "h": 28},
         "mapping": {"mode": "manual", "manualLabel": "Extra notes", "required": False}},
    ],
    "signature_field": {"id": "sig", "type": "signature", "page": 0, "rect": {"x": 50, "y": 700, "w": 180, "h": 60},
                        "mapping": {"mode": "signature", "signatureRole": "participant"}},
}


def create_template(client, layout=LAYOUT, title="Consent Form"):
    response = client.post(
        "/api/templates",
        data={"title": title, "category": "Consent", "layout": json.dumps(layout)},
        files={"file": ("consent.pdf", make_pdf(), "application/pdf")},
        headers=ADMIN_HEADERS,
    )
    assert response.status_code == 200, response.text
    return response.json()


def create_participant(client):
    response = client.post(
        "/api/participants",
        json={"first_name": "Ada", "last_name": "Lovelace", "date_of_birth": "1815-12-10"},
        headers=ADMIN_HEADERS,
    )
    assert response.status_code == 201
    return response.json()


def create_user(client, email="cw@example.com", app_role="CaseWorker"):
    response = client.post(
        "/api/users", json={"email": email, "name": "Case Worker", "app_role": app_role}, headers=ADMIN_HEADERS
    )
    assert response.status_code == 201
    return response.json()


def allocate(client, template_id, participant_id, headers=ADMIN_HEADERS, **extra):
    return client.post(
        "/api/instances",
        json={"subject_type": "participant", "subject_id": str(participant_id), "template_id": template_id, **extra},
        headers=headers,
    )
