from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi.testclient import TestClient

from backend.app.main import create_app


def _token(secret: str, subject: str, roles: list[str], name: Optional[str] = None) -> str:
    payload = {
        "sub": subject,
        "roles": roles,
        "exp": datetime.now(timezone.utc) + timedelta(hours=1),
    }
    if name:
        payload["name"] = name
    return jwt.encode(payload, secret, algorithm="HS256")


def _auth_client(monkeypatch) -> TestClient:
    monkeypatch.setenv("PERSISTENCE_ENABLED", "false")
    monkeypatch.setenv("AUTH_ENABLED", "true")
    monkeypatch.setenv("JWT_SECRET", "test-secret")
    monkeypatch.setenv("EMAIL_ENABLED", "false")
    return TestClient(create_app())


def test_auth_blocks_missing_token_when_enabled(monkeypatch) -> None:
    client = _auth_client(monkeypatch)
    response = client.post("/processes", json={"title": "Cajero"})
    assert response.status_code == 401


def test_auth_rejects_token_signed_with_other_secret(monkeypatch) -> None:
    client = _auth_client(monkeypatch)
    token = _token("other-secret", "manager-1", ["manager"])
    response = client.get("/processes", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401


def test_recruiter_cannot_create_process(monkeypatch) -> None:
    client = _auth_client(monkeypatch)
    token = _token("test-secret", "recruiter-1", ["recruiter"])
    headers = {"Authorization": f"Bearer {token}"}

    assert client.post("/processes", headers=headers, json={"title": "Cajero"}).status_code == 403
    assert client.get("/processes", headers=headers).status_code == 200


def test_token_name_is_used_as_timeline_author(monkeypatch) -> None:
    client = _auth_client(monkeypatch)
    token = _token("test-secret", "manager-1", ["manager"], name="María López")
    headers = {"Authorization": f"Bearer {token}"}

    process = client.post("/processes", headers=headers, json={"title": "Cajero"})
    assert process.status_code == 201
    body = process.json()
    candidate = client.post(
        "/candidates",
        headers=headers,
        json={
            "name": "Javiera Fuentes",
            "email": "javiera@example.com",
            "process_id": body["process"]["id"],
            "current_stage_id": body["stages"][0]["id"],
        },
    )
    assert candidate.status_code == 201

    timeline = client.get(f"/candidates/{candidate.json()['id']}/timeline", headers=headers)
    assert timeline.json()[0]["author"] == "María López"


def test_change_feed_requires_service_role(monkeypatch) -> None:
    client = _auth_client(monkeypatch)
    recruiter = _token("test-secret", "recruiter-1", ["recruiter"])
    service = _token("test-secret", "sync-worker", ["service"])

    denied = client.get("/changes", headers={"Authorization": f"Bearer {recruiter}"})
    assert denied.status_code == 403
    allowed = client.get("/changes", headers={"Authorization": f"Bearer {service}"})
    assert allowed.status_code == 200


def test_health_is_public_when_auth_enabled(monkeypatch) -> None:
    client = _auth_client(monkeypatch)
    assert client.get("/health").status_code == 200
