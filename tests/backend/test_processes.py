from __future__ import annotations


def build_process_payload(**overrides) -> dict:
    payload = {
        "title": "Desarrollador Backend",
        "description": "Equipo de pagos",
        "manager": "Laura Gómez",
        "salary_min": 1500000,
        "salary_max": 2200000,
        "stages": [
            {"name": "Aplicación"},
            {"name": "Revisión CV", "responsible": "Pedro Soto"},
            {"name": "Entrevista Técnica", "responsible": "Ana Pérez"},
            {"name": "Entrevista Final", "responsible": "Laura Gómez"},
        ],
    }
    payload.update(overrides)
    return payload


def test_create_process_returns_ordered_stages(client) -> None:
    response = client.post("/processes", json=build_process_payload())
    assert response.status_code == 201
    body = response.json()
    assert body["process"]["title"] == "Desarrollador Backend"
    assert body["process"]["status"] == "Activo"
    assert body["process"]["salary_range"] == "$1500000 - $2200000"
    assert [stage["order"] for stage in body["stages"]] == [1, 2, 3, 4]
    assert body["stages"][0]["name"] == "Aplicación"
    assert body["stages"][0]["responsible"] is None
    assert body["stages"][2]["responsible"] == "Ana Pérez"
    assert body["candidate_counts"] == {"Activo": 0, "Rechazado": 0, "Contratado": 0}


def test_application_stage_is_prepended_when_missing(client) -> None:
    payload = build_process_payload(
        stages=[{"name": "Entrevista", "responsible": "Ana Pérez"}],
        salary_min=None,
        salary_max=900000,
    )
    response = client.post("/processes", json=payload)
    assert response.status_code == 201
    body = response.json()
    assert [stage["name"] for stage in body["stages"]] == ["Aplicación", "Entrevista"]
    assert body["process"]["salary_range"] == "Hasta $900000"


def test_default_stage_plan_is_used_without_stages(client) -> None:
    response = client.post("/processes", json=build_process_payload(stages=[]))
    assert response.status_code == 201
    names = [stage["name"] for stage in response.json()["stages"]]
    assert names == ["Aplicación", "Revisión CV", "Entrevista Técnica", "Entrevista Final"]


def test_salary_band_validation(client) -> None:
    response = client.post(
        "/processes", json=build_process_payload(salary_min=3000000, salary_max=1000000)
    )
    assert response.status_code == 422


def test_next_stage_lookup(client) -> None:
    stages = client.post("/processes", json=build_process_payload()).json()["stages"]

    second = client.get(f"/stages/{stages[1]['id']}/next")
    assert second.status_code == 200
    assert second.json()["next_stage"]["id"] == stages[2]["id"]

    last = client.get(f"/stages/{stages[3]['id']}/next")
    assert last.status_code == 200
    assert last.json()["next_stage"] is None

    missing = client.get("/stages/999/next")
    assert missing.status_code == 404


def test_update_process_and_filter_by_status(client) -> None:
    first = client.post("/processes", json=build_process_payload()).json()
    client.post("/processes", json=build_process_payload(title="Diseñador UX"))
    process_id = first["process"]["id"]

    updated = client.patch(
        f"/processes/{process_id}",
        json={"status": "Pausado", "salary_min": 2000000, "salary_max": None},
    )
    assert updated.status_code == 200
    assert updated.json()["process"]["status"] == "Pausado"
    assert updated.json()["process"]["salary_range"] == "Desde $2000000"
    assert updated.json()["process"]["title"] == "Desarrollador Backend"

    paused = client.get("/processes?status=Pausado")
    assert paused.status_code == 200
    assert [item["process"]["id"] for item in paused.json()] == [process_id]

    everything = client.get("/processes")
    assert len(everything.json()) == 2


def test_unknown_process_returns_404(client) -> None:
    assert client.get("/processes/42").status_code == 404
    assert client.get("/processes/42/stages").status_code == 404
    assert client.get("/processes/42/pipeline").status_code == 404
    assert client.patch("/processes/42", json={"status": "Cerrado"}).status_code == 404
