from __future__ import annotations

import logging

from pydantic import BaseModel, ValidationError

from backend.app.models import (
    CandidateRecord,
    ChangeEventRequest,
    ChangeEventResponse,
    ChangeTable,
    ChangeType,
    NotificationRecord,
    ProcessRecord,
    StageRecord,
    TimelineEventRecord,
    UserProfileRecord,
)
from backend.app.store import InMemoryStore, StoreValidationError

logger = logging.getLogger("recruitment_pipeline.sync")

RECORD_MODELS: dict[ChangeTable, type[BaseModel]] = {
    ChangeTable.processes: ProcessRecord,
    ChangeTable.stages: StageRecord,
    ChangeTable.candidates: CandidateRecord,
    ChangeTable.timeline: TimelineEventRecord,
    ChangeTable.notifications: NotificationRecord,
    ChangeTable.users: UserProfileRecord,
}


def apply_change_event(store: InMemoryStore, event: ChangeEventRequest) -> ChangeEventResponse:
    """
    Mirror one row change pushed by the upstream database.

    Inserts that are already mirrored are reported as duplicates and updates replace
    the mirrored row outright. Timeline rows are never edited or removed. Deleting a
    process or stage that still has dependents raises StoreConflictError; deleting a
    candidate takes its timeline and notifications with it.
    """
    table = event.table
    if event.event_type == ChangeType.delete:
        record_id = int(event.old["id"])
        removed = store.remove_record(table, record_id)
        status = "applied" if removed else "ignored"
        logger.info(
            "change_event_applied table=%s event=DELETE record_id=%s status=%s",
            table.value,
            record_id,
            status,
        )
        return ChangeEventResponse(status=status, table=table, record_id=record_id)

    try:
        record = RECORD_MODELS[table].model_validate(event.new)
    except ValidationError as exc:
        raise StoreValidationError(f"invalid {table.value} record: {exc.errors()}") from exc
    record_id = getattr(record, "id")

    if event.event_type == ChangeType.insert and store.has_record(table, record_id):
        logger.info(
            "change_event_duplicate table=%s record_id=%s", table.value, record_id
        )
        return ChangeEventResponse(status="duplicate", table=table, record_id=record_id)
    if table == ChangeTable.timeline and event.event_type == ChangeType.update:
        return ChangeEventResponse(status="ignored", table=table, record_id=record_id)

    store.merge_record(table, record, event.event_type)
    logger.info(
        "change_event_applied table=%s event=%s record_id=%s",
        table.value,
        event.event_type.value,
        record_id,
    )
    return ChangeEventResponse(status="applied", table=table, record_id=record_id)
