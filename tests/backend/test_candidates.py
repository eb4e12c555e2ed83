from __future__ import annotations

import base64

from fastapi.testclient import TestClient

from backend.app.main import create_app
from backend.app.services.documents import DocumentStorageError

PDF_BYTES = b"%PDF-1.4\n1 0 obj\n<<>>\nendobj\n%%EOF\n"


def _pdf_upload(filename: str = "cv.pdf", content: bytes = PDF_BYTES, **overrides) -> dict:
    upload = {
        "filename": filename,
        "content_type": "application/pdf",
        "content_base64": base64.b64encode(content).decode("ascii"),
    }
    upload.update(overrides)
    return upload


def _create_process(client) -> dict:
    response = client.post(
        "/processes",
        json={
            "title": "Ejecutivo Comercial",
            "manager": "Laura Gómez",
            "stages": [
                {"name": "Aplicación"},
                {"name": "Revisión CV", "responsible": "Ana Pérez"},
                {"name": "Entrevista Final", "responsible": "Laura Gómez"},
            ],
        },
    )
    assert response.status_code == 201
    return response.json()


def _candidate_payload(process: dict, index: int = 1, **overrides) -> dict:
    payload = {
        "name": f"Postulante {index}",
        "email": f"Postulante{index}@Example.com",
        "phone": "+56 9 1234 5678",
        "location": "Santiago",
        "origin": "LinkedIn",
        "process_id": process["process"]["id"],
        "current_stage_id": process["stages"][0]["id"],
    }
    payload.update(overrides)
    return payload


def test_create_candidate_with_document(client) -> None:
    process = _create_process(client)
    response = client.post(
        "/candidates",
        json=_candidate_payload(process, document=_pdf_upload(), author="Pedro Soto"),
    )
    assert response.status_code == 201
    candidate = response.json()
    assert candidate["status"] == "Activo"
    assert candidate["comments"] == 0
    assert candidate["email"] == "postulante1@example.com"
    assert candidate["cv"] is not None

    timeline = client.get(f"/candidates/{candidate['id']}/timeline").json()
    assert len(timeline) == 1
    assert timeline[0]["type"] == "application"
    assert timeline[0]["icon"] == "UserPlus"
    assert timeline[0]["author"] == "Pedro Soto"

    document = client.get(f"/candidates/{candidate['id']}/document")
    assert document.status_code == 200
    assert document.content == PDF_BYTES
    assert document.headers["content-type"] == "application/pdf"


def test_invalid_document_creates_no_candidate(client) -> None:
    process = _create_process(client)
    bad_base64 = client.post(
        "/candidates",
        json=_candidate_payload(process, document=_pdf_upload(content_base64="not base64!!")),
    )
    assert bad_base64.status_code == 400

    wrong_type = client.post(
        "/candidates",
        json=_candidate_payload(process, document=_pdf_upload(content_type="image/png")),
    )
    assert wrong_type.status_code == 400

    assert client.get("/candidates").json() == []
    assert client.get("/changes").json()[-1]["table"] == "stages"


def test_document_storage_failure_creates_no_candidate(client, monkeypatch) -> None:
    process = _create_process(client)
    store = client.app.state.store

    def failing_save(upload):
        raise DocumentStorageError("blob store unavailable")

    monkeypatch.setattr(store.documents, "save", failing_save)
    response = client.post(
        "/candidates", json=_candidate_payload(process, document=_pdf_upload())
    )
    assert response.status_code == 502
    assert store.list_candidates() == []
    assert store.timeline == []


def test_oversized_document_is_rejected(monkeypatch) -> None:
    monkeypatch.setenv("PERSISTENCE_ENABLED", "false")
    monkeypatch.setenv("AUTH_ENABLED", "false")
    monkeypatch.setenv("DOCUMENT_MAX_BYTES", "1024")
    client = TestClient(create_app())
    process = _create_process(client)

    response = client.post(
        "/candidates",
        json=_candidate_payload(process, document=_pdf_upload(content=b"%PDF" + b"0" * 2048)),
    )
    assert response.status_code == 400
    assert "exceeds" in response.json()["detail"]


def test_candidate_stage_must_belong_to_process(client) -> None:
    first = _create_process(client)
    second = _create_process(client)
    response = client.post(
        "/candidates",
        json=_candidate_payload(first, current_stage_id=second["stages"][0]["id"]),
    )
    assert response.status_code == 409

    missing = client.post("/candidates", json=_candidate_payload(first, process_id=999))
    assert missing.status_code == 404


def test_candidate_email_validation(client) -> None:
    process = _create_process(client)
    response = client.post("/candidates", json=_candidate_payload(process, email="sin-arroba"))
    assert response.status_code == 422


def test_rejection_keeps_stage_and_records_reason(client) -> None:
    process = _create_process(client)
    ids = [
        client.post("/candidates", json=_candidate_payload(process, index)).json()["id"]
        for index in range(1, 8)
    ]
    assert ids[-1] == 7
    stage_before = client.get("/candidates/7").json()["current_stage_id"]

    response = client.post(
        "/candidates/7/reject",
        json={"reason": "No cumple requisitos", "author": "Ana Pérez"},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "Rechazado"
    assert body["current_stage_id"] == stage_before
    assert body["timeline_event_id"] is not None

    timeline = client.get("/candidates/7/timeline").json()
    movement = [event for event in timeline if event["type"] == "movement"]
    assert len(movement) == 1
    assert "No cumple requisitos" in movement[0]["description"]
    assert movement[0]["icon"] == "X"
    assert client.get("/notifications").json() == []


def test_rejection_requires_reason(client) -> None:
    process = _create_process(client)
    candidate_id = client.post("/candidates", json=_candidate_payload(process)).json()["id"]

    response = client.post(f"/candidates/{candidate_id}/reject", json={"reason": "   "})
    assert response.status_code == 422
    assert client.get(f"/candidates/{candidate_id}").json()["status"] == "Activo"


def test_rejection_stands_when_timeline_append_fails(client, monkeypatch) -> None:
    process = _create_process(client)
    candidate_id = client.post("/candidates", json=_candidate_payload(process)).json()["id"]
    store = client.app.state.store

    def broken_append(**kwargs):
        raise RuntimeError("timeline unavailable")

    monkeypatch.setattr(store, "_append_timeline", broken_append)
    response = client.post(
        f"/candidates/{candidate_id}/reject", json={"reason": "No cumple requisitos"}
    )
    assert response.status_code == 200
    assert response.json()["status"] == "Rechazado"
    assert response.json()["timeline_event_id"] is None
    assert store.get_candidate(candidate_id).status.value == "Rechazado"


def test_comments_increment_counter(client) -> None:
    process = _create_process(client)
    candidate_id = client.post("/candidates", json=_candidate_payload(process)).json()["id"]

    for text in ("Buen perfil técnico", "Agendar segunda entrevista"):
        response = client.post(
            f"/candidates/{candidate_id}/comments",
            json={"text": text, "author": "Laura Gómez"},
        )
        assert response.status_code == 201
        assert response.json()["icon"] == "MessageCircle"

    assert client.get(f"/candidates/{candidate_id}").json()["comments"] == 2
    timeline = client.get(f"/candidates/{candidate_id}/timeline").json()
    assert [event["type"] for event in timeline] == ["application", "comment", "comment"]
    assert timeline[1]["description"] == "Buen perfil técnico"

    blank = client.post(f"/candidates/{candidate_id}/comments", json={"text": "  "})
    assert blank.status_code == 422


def test_replacing_document_updates_cv(client) -> None:
    process = _create_process(client)
    candidate_id = client.post("/candidates", json=_candidate_payload(process)).json()["id"]
    assert client.get(f"/candidates/{candidate_id}/document").status_code == 404

    response = client.post(
        f"/candidates/{candidate_id}/document",
        json={"document": _pdf_upload(filename="cv-2025.pdf")},
    )
    assert response.status_code == 200
    assert response.json()["cv"] is not None

    timeline = client.get(f"/candidates/{candidate_id}/timeline").json()
    assert timeline[-1]["description"] == "CV actualizado: cv-2025.pdf"
    assert timeline[-1]["icon"] == "FileText"
    assert client.get(f"/candidates/{candidate_id}/document").content == PDF_BYTES


def test_hire_candidate(client) -> None:
    process = _create_process(client)
    hired_id = client.post("/candidates", json=_candidate_payload(process, 1)).json()["id"]
    rejected_id = client.post("/candidates", json=_candidate_payload(process, 2)).json()["id"]
    client.post(f"/candidates/{rejected_id}/reject", json={"reason": "Desistió"})

    hired = client.post(f"/candidates/{hired_id}/hire")
    assert hired.status_code == 200
    assert hired.json()["status"] == "Contratado"

    conflict = client.post(f"/candidates/{rejected_id}/hire")
    assert conflict.status_code == 409

    counts = client.get(f"/processes/{process['process']['id']}").json()["candidate_counts"]
    assert counts == {"Activo": 0, "Rechazado": 1, "Contratado": 1}


def test_nearby_candidates_by_role(client) -> None:
    process = _create_process(client)
    stages = process["stages"]
    in_review = client.post(
        "/candidates", json=_candidate_payload(process, 1, current_stage_id=stages[1]["id"])
    ).json()["id"]
    in_final = client.post(
        "/candidates", json=_candidate_payload(process, 2, current_stage_id=stages[2]["id"])
    ).json()["id"]
    rejected = client.post(
        "/candidates", json=_candidate_payload(process, 3, current_stage_id=stages[1]["id"])
    ).json()["id"]
    client.post(f"/candidates/{rejected}/reject", json={"reason": "Duplicado"})

    for_ana = client.get("/candidates/nearby", params={"user": "ana perez"}).json()
    assert [(item["candidate_id"], item["relevance"]) for item in for_ana] == [
        (in_review, "responsible")
    ]
    assert for_ana[0]["days_since_update"] == 0

    for_laura = client.get("/candidates/nearby", params={"user": "Laura Gómez"}).json()
    relevance = {item["candidate_id"]: item["relevance"] for item in for_laura}
    assert relevance == {in_review: "manager", in_final: "both"}

    assert client.get("/candidates/nearby", params={"user": "Nadie"}).json() == []
