from __future__ import annotations

from datetime import datetime

from backend.app.models import StageDefinition, StageRecord
from backend.app.services.workflow import (
    build_stage_plan,
    days_since,
    format_salary_range,
    resolve_author,
    resolve_next_stage,
    same_person,
    stage_change_description,
)


def _stages() -> list[StageRecord]:
    names = ["Aplicación", "Revisión CV", "Entrevista Técnica", "Entrevista Final"]
    return [
        StageRecord(id=index + 10, process_id=1, name=name, responsible=None, order=index + 1)
        for index, name in enumerate(names)
    ]


def test_stage_plan_drops_responsible_from_application_stage() -> None:
    plan = build_stage_plan(
        [
            StageDefinition(name="aplicacion", responsible="Ana Pérez"),
            StageDefinition(name="Entrevista", responsible="Ana Pérez"),
        ]
    )
    assert [stage.name for stage in plan] == ["aplicacion", "Entrevista"]
    assert plan[0].responsible is None
    assert plan[1].responsible == "Ana Pérez"


def test_next_stage_is_order_plus_one() -> None:
    stages = _stages()
    for index, stage in enumerate(stages[:-1]):
        assert resolve_next_stage(stages, stage) == stages[index + 1]
    assert resolve_next_stage(stages, stages[-1]) is None


def test_next_stage_ignores_other_processes() -> None:
    stages = _stages()
    foreign = StageRecord(id=99, process_id=2, name="Oferta", responsible=None, order=2)
    assert resolve_next_stage([foreign, *stages], stages[0]) == stages[1]


def test_salary_range_formats() -> None:
    assert format_salary_range(800000, 1200000) == "$800000 - $1200000"
    assert format_salary_range(800000, None) == "Desde $800000"
    assert format_salary_range(None, 1200000) == "Hasta $1200000"
    assert format_salary_range(None, None) is None


def test_stage_change_descriptions() -> None:
    stages = _stages()
    assert (
        stage_change_description(stages[1], stages[2], reactivated=False)
        == 'El candidato fue movido de "Revisión CV" a "Entrevista Técnica"'
    )
    assert (
        stage_change_description(stages[1], stages[2], reactivated=True)
        == 'El candidato fue movido de Rechazado a "Entrevista Técnica"'
    )


def test_helpers() -> None:
    assert resolve_author(None, "  ", "Laura Gómez") == "Laura Gómez"
    assert resolve_author(None) == "Usuario"
    assert same_person("José Núñez", "jose nunez")
    assert not same_person(None, "José Núñez")
    assert days_since(datetime(2025, 1, 1), datetime(2025, 1, 11, 8)) == 10
    assert days_since(datetime(2025, 1, 2), datetime(2025, 1, 1)) == 0
