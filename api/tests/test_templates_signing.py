import json

from app.routers import templates as templates_router

from conftest import ADMIN_HEADERS, LAYOUT, SIGNATURE_B64, allocate, create_participant, create_template, make_pdf


def test_template_upload_normalizes_layout(client, mock_storage):
    legacy = {
        "designer_fields": [
            {"id": "fn", "type": "text", "map_key": "Participant.first_name", "x": 10, "y": 10},
            {"id": "note", "type": "textarea", "map_key": "__manual__", "label": "Notes"},
            {"id": "sig", "type": "signature", "mapping": {"mode": "signature"}},
        ],
    }
    body = create_template(client, layout=legacy, title="Legacy")
    assert body["requires_signature"] is True
    assert body["manual_field_count"] == 1
    assert body["db_field_count"] == 1
    assert body["layout"]["signature_field"]["id"] == "sig"
    assert [f["id"] for f in body["layout"]["fields"]] == ["fn", "note"]
    assert any(key.startswith(f"pdf_templates/{body['id']}-") for key in mock_storage)

    pdf = client.get(f"/api/templates/{body['id']}/pdf", headers=ADMIN_HEADERS)
    assert pdf.status_code == 200
    assert pdf.content.startswith(b"%PDF")


def test_template_upload_rejects_key_collision(client):
    layout = {
        "fields": [
            {"id": "a", "type": "text", "mapping": {"mode": "manual", "manualKey": "goal"}},
            {"id": "b", "type": "text", "mapping": {"mode": "manual", "manualKey": "goal"}},
        ],
    }
    response = client.post(
        "/api/templates",
        data={"title": "Broken", "layout": json.dumps(layout)},
        files={"file": ("b.pdf", make_pdf(), "application/pdf")},
        headers=ADMIN_HEADERS,
    )
    assert response.status_code == 422
    assert any("goal" in issue for issue in response.json()["detail"]["issues"])


def test_template_upload_requires_admin(client):
    response = client.post(
        "/api/templates",
        data={"title": "x", "layout": "{}"},
        files={"file": ("b.pdf", make_pdf(), "application/pdf")},
    )
    assert response.status_code == 401


def test_layout_update_validates(client):
    template = create_template(client)
    bad = client.put(
        f"/api/templates/{template['id']}/layout",
        json={"layout": {"fields": [{"id": "x", "type": "text", "mapping": {"mode": "telepathy"}}]}},
        headers=ADMIN_HEADERS,
    )
    assert bad.status_code == 422
    good = client.put(
        f"/api/templates/{template['id']}/layout",
        json={"layout": {"fields": [{"id": "x", "type": "text", "mapping": {"mode": "manual"}}]}, "title": "Renamed"},
        headers=ADMIN_HEADERS,
    )
    assert good.status_code == 200
    assert good.json()["title"] == "Renamed"
    assert good.json()["requires_signature"] is False


def test_remote_participant_signature(client):
    template = create_template(client)
    participant = create_participant(client)
    iid = allocate(client, template["id"], participant["id"]).json()["instance"]["id"]

    link = client.post(f"/api/instances/{iid}/signing-link", headers=ADMIN_HEADERS).json()
    token = link["token"]
    assert link["link"].endswith(f"/sign/{token}")

    session_view = client.get(f"/api/sign/{token}").json()
    assert session_view["signature_role"] == "participant"
    assert session_view["checklist"]["has_signature"] is False

    signed = client.post(f"/api/sign/{token}/signature", json={"signature_png": SIGNATURE_B64})
    assert signed.status_code == 200
    assert signed.json()["status"] == "InProgress"
    assert client.get(f"/api/sign/{token}").json()["checklist"]["has_signature"] is True

    assert client.get("/api/sign/not-a-token").status_code == 404


def test_caseworker_forms_cannot_be_signed_remotely(client):
    layout = dict(LAYOUT)
    layout["signature_field"] = {
        "id": "sig", "type": "signature", "page": 0, "x": 50, "y": 50,
        "mapping": {"mode": "signature", "signatureRole": "caseworker"},
    }
    template = create_template(client, layout=layout, title="Case worker declaration")
    participant = create_participant(client)
    iid = allocate(client, template["id"], participant["id"]).json()["instance"]["id"]
    token = client.post(f"/api/instances/{iid}/signing-link", headers=ADMIN_HEADERS).json()["token"]
    resp = client.post(f"/api/sign/{token}/signature", json={"signature_png": SIGNATURE_B64})
    assert resp.status_code == 403


def test_invalid_signature_payload(client):
    template = create_template(client)
    participant = create_participant(client)
    iid = allocate(client, template["id"], participant["id"]).json()["instance"]["id"]
    resp = client.post(
        f"/api/instances/{iid}/signature", json={"signature_png": "data:image/png;base64,@@@"}, headers=ADMIN_HEADERS
    )
    assert resp.status_code == 422


def test_workflow_request_migration_endpoint(client):
    template = create_template(client)
    participant = create_participant(client)
    wr = client.post(
        "/api/workflow-requests",
        json={"participant_data": {"first_name": "Grace", "last_name": "Hopper"}},
        headers=ADMIN_HEADERS,
    ).json()
    resp = client.post(
        "/api/instances",
        json={"subject_type": "workflow_request", "subject_id": str(wr["id"]), "template_id": template["id"]},
        headers=ADMIN_HEADERS,
    )
    assert resp.status_code == 201
    iid = resp.json()["instance"]["id"]

    client.post(f"/api/instances/{iid}/values", json={"values": {"goal": "Study"}}, headers=ADMIN_HEADERS)
    client.post(f"/api/instances/{iid}/signature", json={"signature_png": SIGNATURE_B64}, headers=ADMIN_HEADERS)
    done = client.post(f"/api/instances/{iid}/generate", headers=ADMIN_HEADERS)
    assert done.status_code == 200
    assert done.json()["instance"]["status"] == "Completed"

    migrated = client.post(
        f"/api/workflow-requests/{wr['id']}/migrate",
        json={"participant_id": participant["id"]},
        headers=ADMIN_HEADERS,
    ).json()
    assert migrated["migrated"] == 1
    assert migrated["documents_created"] == 1

    docs = client.get(f"/api/participants/{participant['id']}/documents", headers=ADMIN_HEADERS).json()
    assert len(docs) == 1
    assert docs[0]["category"] == "Consent"
    listed = client.get(f"/api/participants/{participant['id']}/instances", headers=ADMIN_HEADERS).json()
    assert listed == [{"id": iid, "template_id": template["id"], "status": "Migrated", "completed_at": listed[0]["completed_at"]}]


def test_template_upload_storage_failure_is_retryable(client, monkeypatch):
    def broken_put(*args, **kwargs):
        raise ConnectionError("object store unavailable")

    monkeypatch.setattr(templates_router, "put_bytes", broken_put)
    response = client.post(
        "/api/templates",
        data={"title": "Consent Form", "layout": json.dumps(LAYOUT)},
        files={"file": ("consent.pdf", make_pdf(), "application/pdf")},
        headers=ADMIN_HEADERS,
    )
    assert response.status_code == 502
    assert response.json()["code"] == "try_again"
    assert client.get("/api/templates", headers=ADMIN_HEADERS).json() == []
