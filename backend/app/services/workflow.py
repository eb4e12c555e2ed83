from __future__ import annotations

import unicodedata
from datetime import datetime
from typing import Iterable, Optional

from backend.app.models import StageDefinition, StageRecord, TimelineEventType, TimelineIcon

FIRST_STAGE_NAME = "Aplicación"
DEFAULT_AUTHOR = "Usuario"
REJECTED_LABEL = "Rechazado"

DEFAULT_ICONS = {
    TimelineEventType.application: TimelineIcon.user_plus,
    TimelineEventType.comment: TimelineIcon.message_circle,
    TimelineEventType.stage_change: TimelineIcon.arrow_right,
    TimelineEventType.movement: TimelineIcon.x,
}

DEFAULT_STAGE_PLAN = (
    StageDefinition(name=FIRST_STAGE_NAME),
    StageDefinition(name="Revisión CV"),
    StageDefinition(name="Entrevista Técnica"),
    StageDefinition(name="Entrevista Final"),
)


def _fold(value: str) -> str:
    decomposed = unicodedata.normalize("NFKD", value.strip().casefold())
    return "".join(char for char in decomposed if not unicodedata.combining(char))


def build_stage_plan(requested: Iterable[StageDefinition]) -> list[StageDefinition]:
    """Ordered stage definitions for a new process.

    The first stage is always the application intake and never has a human
    responsible; it is prepended when the caller did not send it.
    """
    stages = list(requested) or list(DEFAULT_STAGE_PLAN)
    if _fold(stages[0].name) == _fold(FIRST_STAGE_NAME):
        stages[0] = StageDefinition(name=stages[0].name)
    else:
        stages.insert(0, StageDefinition(name=FIRST_STAGE_NAME))
    return stages


def format_salary_range(salary_min: Optional[int], salary_max: Optional[int]) -> Optional[str]:
    if salary_min is not None and salary_max is not None:
        return f"${salary_min} - ${salary_max}"
    if salary_min is not None:
        return f"Desde ${salary_min}"
    if salary_max is not None:
        return f"Hasta ${salary_max}"
    return None


def resolve_next_stage(
    process_stages: Iterable[StageRecord], current: StageRecord
) -> Optional[StageRecord]:
    for stage in process_stages:
        if stage.process_id == current.process_id and stage.order == current.order + 1:
            return stage
    return None


def resolve_author(*candidates: Optional[str]) -> str:
    for value in candidates:
        if value and value.strip():
            return value.strip()
    return DEFAULT_AUTHOR


def stage_change_title(to_stage: StageRecord) -> str:
    return f"Movido a {to_stage.name}"


def stage_change_description(
    from_stage: Optional[StageRecord], to_stage: StageRecord, *, reactivated: bool
) -> str:
    if reactivated:
        return f'El candidato fue movido de {REJECTED_LABEL} a "{to_stage.name}"'
    from_name = from_stage.name if from_stage else "Sin etapa"
    return f'El candidato fue movido de "{from_name}" a "{to_stage.name}"'


def rejection_description(reason: str) -> str:
    return f"Motivo: {reason}"


def notification_message(
    *, candidate_name: str, stage_name: str, process_title: str, moved_by: str
) -> str:
    return (
        f'El candidato {candidate_name} está ahora en tu etapa "{stage_name}" '
        f"para el puesto de {process_title}. Movido por: {moved_by}"
    )


def days_since(moment: datetime, now: datetime) -> int:
    return max(0, (now - moment).days)


def same_person(left: Optional[str], right: Optional[str]) -> bool:
    if not left or not right:
        return False
    return _fold(left) == _fold(right)
