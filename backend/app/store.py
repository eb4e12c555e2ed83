from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from threading import RLock
from typing import TYPE_CHECKING, Iterator, Optional

from pydantic import BaseModel

from backend.app.models import (
    CandidateCreateRequest,
    CandidateRecord,
    CandidateStatus,
    ChangeLogEntry,
    ChangeTable,
    ChangeType,
    DocumentRecord,
    DocumentUpload,
    NearbyCandidateItem,
    NearbyRelevance,
    NotificationOutboxRecord,
    NotificationRecord,
    NotificationStatus,
    OutboxStatus,
    ProcessCreateRequest,
    ProcessRecord,
    ProcessStatus,
    ProcessUpdateRequest,
    StageRecord,
    TimelineEventRecord,
    TimelineEventType,
    TimelineIcon,
    UserCreateRequest,
    UserProfileRecord,
    utc_now,
)
from backend.app.services.documents import DocumentStorage
from backend.app.services.workflow import (
    DEFAULT_ICONS,
    build_stage_plan,
    days_since,
    format_salary_range,
    notification_message,
    rejection_description,
    resolve_next_stage,
    same_person,
    stage_change_description,
    stage_change_title,
)

if TYPE_CHECKING:
    from backend.app.persistence import DatabasePersistence

logger = logging.getLogger("recruitment_pipeline.store")

CHANGE_LOG_LIMIT = 1000
OUTBOX_LEASE_SECONDS = 300


class StoreConflictError(Exception):
    pass


class StoreNotFoundError(Exception):
    pass


class StoreValidationError(Exception):
    pass


@dataclass
class StageMoveResult:
    candidate: CandidateRecord
    from_stage_id: int
    reactivated: bool
    timeline_event: Optional[TimelineEventRecord]
    notification: Optional[NotificationRecord]
    outbox_entry: Optional[NotificationOutboxRecord]


class InMemoryStore:
    def __init__(
        self,
        persistence: Optional["DatabasePersistence"] = None,
        documents: Optional[DocumentStorage] = None,
    ) -> None:
        self._lock = RLock()
        self.persistence = persistence
        self.documents = documents or DocumentStorage(persistence=persistence)
        self.processes: dict[int, ProcessRecord] = {}
        self.stages: dict[int, StageRecord] = {}
        self.candidates: dict[int, CandidateRecord] = {}
        self.timeline: list[TimelineEventRecord] = []
        self.notifications: dict[int, NotificationRecord] = {}
        self.users: dict[int, UserProfileRecord] = {}
        self.outbox: dict[int, NotificationOutboxRecord] = {}
        self.change_log: list[ChangeLogEntry] = []
        self._sequences: dict[str, int] = {}

        if self.persistence:
            snapshot = self.persistence.load_snapshot()
            if snapshot:
                self._hydrate_from_snapshot(snapshot)
            else:
                for entry in self.persistence.list_outbox_entries():
                    self.outbox[entry.id] = entry
                    self._bump_sequence("outbox", entry.id)

    # Processes and stages

    def create_process(
        self, request: ProcessCreateRequest
    ) -> tuple[ProcessRecord, list[StageRecord]]:
        with self._transaction():
            now = utc_now()
            process = ProcessRecord(
                id=self._next_id("processes"),
                title=request.title.strip(),
                description=request.description,
                manager=request.manager.strip() if request.manager else None,
                salary_range=format_salary_range(request.salary_min, request.salary_max),
                status=request.status,
                created_at=now,
                updated_at=now,
            )
            self.processes[process.id] = process
            self._record_change(ChangeTable.processes, ChangeType.insert, process)

            stages: list[StageRecord] = []
            for order, definition in enumerate(build_stage_plan(request.stages), start=1):
                stage = StageRecord(
                    id=self._next_id("stages"),
                    process_id=process.id,
                    name=definition.name,
                    responsible=(definition.responsible or "").strip() or None,
                    order=order,
                )
                self.stages[stage.id] = stage
                self._record_change(ChangeTable.stages, ChangeType.insert, stage)
                stages.append(stage)
            logger.info("process_created process_id=%s stages=%s", process.id, len(stages))
            return process, stages

    def update_process(self, process_id: int, request: ProcessUpdateRequest) -> ProcessRecord:
        with self._transaction():
            process = self.get_process(process_id)
            fields = request.model_fields_set
            update: dict = {"updated_at": utc_now()}
            if "title" in fields and request.title:
                update["title"] = request.title.strip()
            if "description" in fields:
                update["description"] = request.description
            if "manager" in fields:
                update["manager"] = request.manager.strip() if request.manager else None
            if "status" in fields and request.status:
                update["status"] = request.status
            if fields & {"salary_min", "salary_max"}:
                update["salary_range"] = format_salary_range(request.salary_min, request.salary_max)
            updated = process.model_copy(update=update)
            self.processes[process.id] = updated
            self._record_change(ChangeTable.processes, ChangeType.update, updated)
            return updated

    def get_process(self, process_id: int) -> ProcessRecord:
        process = self.processes.get(process_id)
        if not process:
            raise StoreNotFoundError(f"process not found: {process_id}")
        return process

    def list_processes(self, status: Optional[ProcessStatus] = None) -> list[ProcessRecord]:
        with self._lock:
            processes = sorted(self.processes.values(), key=lambda item: item.id)
        if status:
            processes = [process for process in processes if process.status == status]
        return processes

    def get_stage(self, stage_id: int) -> StageRecord:
        stage = self.stages.get(stage_id)
        if not stage:
            raise StoreNotFoundError(f"stage not found: {stage_id}")
        return stage

    def list_process_stages(self, process_id: int) -> list[StageRecord]:
        self.get_process(process_id)
        with self._lock:
            stages = [stage for stage in self.stages.values() if stage.process_id == process_id]
        return sorted(stages, key=lambda item: item.order)

    def next_stage(self, stage_id: int) -> Optional[StageRecord]:
        current = self.get_stage(stage_id)
        return resolve_next_stage(self.list_process_stages(current.process_id), current)

    def candidate_counts(self, process_id: int) -> dict[CandidateStatus, int]:
        counts = {status: 0 for status in CandidateStatus}
        with self._lock:
            for candidate in self.candidates.values():
                if candidate.process_id == process_id:
                    counts[candidate.status] += 1
        return counts

    # Users

    def create_user(self, request: UserCreateRequest) -> UserProfileRecord:
        with self._transaction():
            for user in self.users.values():
                if user.email == request.email:
                    raise StoreConflictError(f"user email already registered: {request.email}")
                if same_person(user.full_name, request.full_name):
                    raise StoreConflictError(f"user name already registered: {request.full_name}")
            user = UserProfileRecord(
                id=self._next_id("users"),
                full_name=request.full_name,
                email=request.email,
                role=request.role,
                created_at=utc_now(),
            )
            self.users[user.id] = user
            self._record_change(ChangeTable.users, ChangeType.insert, user)
            return user

    def list_users(self) -> list[UserProfileRecord]:
        with self._lock:
            return sorted(self.users.values(), key=lambda item: item.full_name.casefold())

    def find_user_by_name(self, full_name: str) -> Optional[UserProfileRecord]:
        with self._lock:
            for user in self.users.values():
                if same_person(user.full_name, full_name):
                    return user
        return None

    # Candidates

    def create_candidate(
        self, request: CandidateCreateRequest, *, author: str
    ) -> CandidateRecord:
        with self._lock:
            process = self.get_process(request.process_id)
            stage = self.get_stage(request.current_stage_id)
            if stage.process_id != process.id:
                raise StoreConflictError(
                    f"stage {stage.id} does not belong to process {process.id}"
                )

            # The blob goes first: a failed upload must leave no candidate behind.
            document: Optional[DocumentRecord] = None
            if request.document:
                document = self.documents.save(request.document)

            with self._transaction():
                now = utc_now()
                candidate = CandidateRecord(
                    id=self._next_id("candidates"),
                    process_id=process.id,
                    current_stage_id=stage.id,
                    name=request.name.strip(),
                    email=request.email,
                    phone=request.phone,
                    location=request.location,
                    origin=request.origin,
                    cv=document.id if document else None,
                    status=CandidateStatus.activo,
                    comments=0,
                    applied_date=now.date(),
                    last_updated=now,
                )
                self.candidates[candidate.id] = candidate
                self._record_change(ChangeTable.candidates, ChangeType.insert, candidate)
                self._append_timeline(
                    candidate_id=candidate.id,
                    event_type=TimelineEventType.application,
                    title="Postulación recibida",
                    description=f'{candidate.name} postuló al proceso "{process.title}"',
                    author=author,
                )
            logger.info(
                "candidate_created candidate_id=%s process_id=%s stage_id=%s",
                candidate.id,
                process.id,
                stage.id,
            )
            return candidate

    def get_candidate(self, candidate_id: int) -> CandidateRecord:
        candidate = self.candidates.get(candidate_id)
        if not candidate:
            raise StoreNotFoundError(f"candidate not found: {candidate_id}")
        return candidate

    def list_candidates(
        self,
        *,
        process_id: Optional[int] = None,
        stage_id: Optional[int] = None,
        status: Optional[CandidateStatus] = None,
    ) -> list[CandidateRecord]:
        with self._lock:
            candidates = sorted(self.candidates.values(), key=lambda item: item.id)
        if process_id is not None:
            candidates = [item for item in candidates if item.process_id == process_id]
        if stage_id is not None:
            candidates = [item for item in candidates if item.current_stage_id == stage_id]
        if status is not None:
            candidates = [item for item in candidates if item.status == status]
        return candidates

    def move_candidate_to_stage(
        self, candidate_id: int, to_stage_id: int, *, author: str
    ) -> StageMoveResult:
        with self._transaction():
            candidate = self.get_candidate(candidate_id)
            target = self.get_stage(to_stage_id)
            process = self.get_process(candidate.process_id)
            if target.process_id != process.id:
                raise StoreConflictError(
                    f"stage {target.id} does not belong to process {candidate.process_id}"
                )
            reactivated = candidate.status == CandidateStatus.rechazado
            if not reactivated and candidate.current_stage_id == target.id:
                return StageMoveResult(
                    candidate=candidate,
                    from_stage_id=candidate.current_stage_id,
                    reactivated=False,
                    timeline_event=None,
                    notification=None,
                    outbox_entry=None,
                )

            from_stage = self.stages.get(candidate.current_stage_id)
            updated = candidate.model_copy(
                update={
                    "current_stage_id": target.id,
                    "last_updated": utc_now(),
                    "status": CandidateStatus.activo if reactivated else candidate.status,
                }
            )
            self.candidates[updated.id] = updated
            self._record_change(ChangeTable.candidates, ChangeType.update, updated)
            event = self._append_timeline(
                candidate_id=updated.id,
                event_type=TimelineEventType.stage_change,
                title=stage_change_title(target),
                description=stage_change_description(from_stage, target, reactivated=reactivated),
                author=author,
            )

            notification = None
            outbox_entry = None
            if target.responsible:
                notification, outbox_entry = self._enqueue_notification(
                    candidate=updated, process=process, stage=target, moved_by=author
                )
            logger.info(
                "candidate_moved candidate_id=%s from_stage=%s to_stage=%s reactivated=%s",
                updated.id,
                candidate.current_stage_id,
                target.id,
                reactivated,
            )
            return StageMoveResult(
                candidate=updated,
                from_stage_id=candidate.current_stage_id,
                reactivated=reactivated,
                timeline_event=event,
                notification=notification,
                outbox_entry=outbox_entry,
            )

    def reject_candidate(
        self, candidate_id: int, reason: str, *, author: str
    ) -> tuple[CandidateRecord, Optional[TimelineEventRecord]]:
        reason = (reason or "").strip()
        if not reason:
            raise StoreValidationError("rejection reason is required")

        with self._lock:
            with self._transaction():
                candidate = self.get_candidate(candidate_id)
                updated = candidate.model_copy(
                    update={"status": CandidateStatus.rechazado, "last_updated": utc_now()}
                )
                self.candidates[updated.id] = updated
                self._record_change(ChangeTable.candidates, ChangeType.update, updated)

            # The rejection stands once persisted; a missing audit entry is only logged.
            event: Optional[TimelineEventRecord] = None
            try:
                with self._transaction():
                    event = self._append_timeline(
                        candidate_id=updated.id,
                        event_type=TimelineEventType.movement,
                        title="Candidato rechazado",
                        description=rejection_description(reason),
                        author=author,
                    )
            except Exception:
                logger.exception("rejection_timeline_failed candidate_id=%s", updated.id)
            logger.info("candidate_rejected candidate_id=%s", updated.id)
            return updated, event

    def hire_candidate(self, candidate_id: int, *, author: str) -> CandidateRecord:
        with self._transaction():
            candidate = self.get_candidate(candidate_id)
            if candidate.status == CandidateStatus.contratado:
                return candidate
            if candidate.status == CandidateStatus.rechazado:
                raise StoreConflictError("rejected candidates must be reactivated before hiring")
            updated = candidate.model_copy(
                update={"status": CandidateStatus.contratado, "last_updated": utc_now()}
            )
            self.candidates[updated.id] = updated
            self._record_change(ChangeTable.candidates, ChangeType.update, updated)
            self._append_timeline(
                candidate_id=updated.id,
                event_type=TimelineEventType.movement,
                title="Candidato contratado",
                description=f"{updated.name} fue contratado",
                author=author,
                icon=TimelineIcon.user_plus,
            )
            return updated

    def add_comment(self, candidate_id: int, text: str, *, author: str) -> TimelineEventRecord:
        with self._transaction():
            candidate = self.get_candidate(candidate_id)
            updated = candidate.model_copy(update={"comments": candidate.comments + 1})
            self.candidates[updated.id] = updated
            self._record_change(ChangeTable.candidates, ChangeType.update, updated)
            return self._append_timeline(
                candidate_id=updated.id,
                event_type=TimelineEventType.comment,
                title="Comentario",
                description=text.strip(),
                author=author,
            )

    def attach_document(
        self, candidate_id: int, upload: DocumentUpload, *, author: str
    ) -> tuple[CandidateRecord, TimelineEventRecord]:
        with self._lock:
            self.get_candidate(candidate_id)
            document = self.documents.save(upload)
            with self._transaction():
                candidate = self.get_candidate(candidate_id)
                updated = candidate.model_copy(
                    update={"cv": document.id, "last_updated": utc_now()}
                )
                self.candidates[updated.id] = updated
                self._record_change(ChangeTable.candidates, ChangeType.update, updated)
                event = self._append_timeline(
                    candidate_id=updated.id,
                    event_type=TimelineEventType.movement,
                    title="CV actualizado",
                    description=f"CV actualizado: {document.filename}",
                    author=author,
                    icon=TimelineIcon.file_text,
                )
            return updated, event

    def get_candidate_document(self, candidate_id: int) -> tuple[DocumentRecord, bytes]:
        candidate = self.get_candidate(candidate_id)
        if candidate.cv is None:
            raise StoreNotFoundError(f"candidate {candidate_id} has no document")
        return self.documents.load(candidate.cv)

    def list_timeline(self, candidate_id: int) -> list[TimelineEventRecord]:
        self.get_candidate(candidate_id)
        with self._lock:
            events = [event for event in self.timeline if event.candidate_id == candidate_id]
        return sorted(events, key=lambda item: (item.date, item.id))

    def nearby_candidates(self, user_full_name: str) -> list[NearbyCandidateItem]:
        now = utc_now()
        items: list[NearbyCandidateItem] = []
        with self._lock:
            for candidate in self.candidates.values():
                if candidate.status != CandidateStatus.activo:
                    continue
                process = self.processes.get(candidate.process_id)
                stage = self.stages.get(candidate.current_stage_id)
                if not process or not stage:
                    continue
                is_manager = same_person(process.manager, user_full_name)
                is_responsible = same_person(stage.responsible, user_full_name)
                if is_manager and is_responsible:
                    relevance = NearbyRelevance.both
                elif is_manager:
                    relevance = NearbyRelevance.manager
                elif is_responsible:
                    relevance = NearbyRelevance.responsible
                else:
                    continue
                items.append(
                    NearbyCandidateItem(
                        candidate_id=candidate.id,
                        name=candidate.name,
                        email=candidate.email,
                        process_id=process.id,
                        process_title=process.title,
                        current_stage=stage,
                        relevance=relevance,
                        days_since_update=days_since(candidate.last_updated, now),
                        last_updated=candidate.last_updated,
                    )
                )
        items.sort(key=lambda item: item.last_updated, reverse=True)
        return items

    # Notifications and outbox

    def list_notifications(
        self, *, recipient_name: Optional[str] = None, unread_only: bool = False
    ) -> list[NotificationRecord]:
        with self._lock:
            notifications = list(self.notifications.values())
        if recipient_name:
            notifications = [
                item for item in notifications if same_person(item.recipient_name, recipient_name)
            ]
        if unread_only:
            notifications = [
                item for item in notifications if item.status == NotificationStatus.unread
            ]
        notifications.sort(key=lambda item: (item.created_at, item.id), reverse=True)
        return notifications

    def mark_notification_read(self, notification_id: int) -> NotificationRecord:
        with self._transaction():
            notification = self.notifications.get(notification_id)
            if not notification:
                raise StoreNotFoundError(f"notification not found: {notification_id}")
            if notification.status == NotificationStatus.read:
                return notification
            updated = notification.model_copy(
                update={"status": NotificationStatus.read, "read_at": utc_now()}
            )
            self.notifications[updated.id] = updated
            self._record_change(ChangeTable.notifications, ChangeType.update, updated)
            return updated

    def get_outbox_entry(self, outbox_id: int) -> NotificationOutboxRecord:
        entry = self.outbox.get(outbox_id)
        if not entry:
            raise StoreNotFoundError(f"outbox entry not found: {outbox_id}")
        return entry

    def list_outbox(self, status: Optional[OutboxStatus] = None) -> list[NotificationOutboxRecord]:
        with self._lock:
            entries = sorted(self.outbox.values(), key=lambda item: item.id)
        if status:
            entries = [entry for entry in entries if entry.status == status]
        return entries

    def claim_due_outbox(
        self,
        *,
        now: Optional[datetime] = None,
        limit: int = 50,
        lease_seconds: int = OUTBOX_LEASE_SECONDS,
    ) -> list[NotificationOutboxRecord]:
        """Mark due entries as `sending` and return them.

        An entry is due when pending, when its retry time has passed, or when a
        previous claim expired without recording an attempt. Claimed entries are
        invisible to other callers until the lease runs out.
        """
        moment = now or utc_now()
        with self._transaction():
            claimed: list[NotificationOutboxRecord] = []
            for entry in sorted(self.outbox.values(), key=lambda item: item.id):
                if len(claimed) >= max(1, limit):
                    break
                waiting = entry.status in (OutboxStatus.retry_pending, OutboxStatus.sending)
                if entry.status != OutboxStatus.pending and not (
                    waiting and (entry.next_retry_at is None or entry.next_retry_at <= moment)
                ):
                    continue
                updated = entry.model_copy(
                    update={
                        "status": OutboxStatus.sending,
                        "next_retry_at": moment + timedelta(seconds=lease_seconds),
                        "updated_at": moment,
                    }
                )
                self.outbox[updated.id] = updated
                self._persist_outbox_entry(updated)
                claimed.append(updated)
            return claimed

    def record_outbox_attempt(
        self,
        outbox_id: int,
        *,
        success: bool,
        provider_message_id: Optional[str] = None,
        error: Optional[str] = None,
        transient: bool = False,
        skipped: bool = False,
        max_attempts: int = 3,
        backoff_seconds: int = 60,
    ) -> NotificationOutboxRecord:
        with self._transaction():
            entry = self.get_outbox_entry(outbox_id)
            attempts = entry.attempts + 1
            next_retry = None
            if skipped:
                status = OutboxStatus.skipped
                last_error = error
            elif success:
                status = OutboxStatus.sent
                last_error = None
            else:
                last_error = error or "unknown notification delivery error"
                if transient and attempts < max_attempts:
                    status = OutboxStatus.retry_pending
                    next_retry = utc_now() + timedelta(seconds=backoff_seconds * attempts)
                else:
                    status = OutboxStatus.failed

            updated = entry.model_copy(
                update={
                    "attempts": attempts,
                    "status": status,
                    "last_error": last_error,
                    "provider_message_id": provider_message_id or entry.provider_message_id,
                    "next_retry_at": next_retry,
                    "updated_at": utc_now(),
                }
            )
            self.outbox[updated.id] = updated
            self._persist_outbox_entry(updated)
            return updated

    # Change feed

    def list_changes(self, *, since: int = 0, limit: int = 100) -> list[ChangeLogEntry]:
        safe_limit = max(1, min(limit, 500))
        with self._lock:
            entries = [entry for entry in self.change_log if entry.sequence > since]
        return entries[:safe_limit]

    def has_record(self, table: ChangeTable, record_id: int) -> bool:
        with self._lock:
            if table == ChangeTable.timeline:
                return any(event.id == record_id for event in self.timeline)
            return record_id in self._table(table)

    def merge_record(self, table: ChangeTable, record: BaseModel, event_type: ChangeType) -> None:
        """Last write wins: the incoming record replaces whatever is mirrored under its id.

        Rows that would break a reference between processes, stages, candidates and
        the timeline are refused with ``StoreValidationError`` and nothing is applied.
        """
        record_id = getattr(record, "id")
        with self._transaction():
            self._check_references(table, record)
            if table == ChangeTable.timeline:
                if not self.has_record(table, record_id):
                    self.timeline.append(record)
            else:
                self._table(table)[record_id] = record
            self._bump_sequence(table.value, record_id)
            self._record_change(table, event_type, record)

    def remove_record(self, table: ChangeTable, record_id: int) -> bool:
        with self._transaction():
            if table == ChangeTable.timeline:
                return False
            current = self._table(table).get(record_id)
            if current is None:
                return False
            blockers = self._dependents(table, record_id)
            if blockers:
                raise StoreConflictError(
                    f"{table.value} {record_id} is still referenced by {', '.join(blockers)}"
                )
            if table == ChangeTable.candidates:
                self._cascade_candidate(record_id)
            del self._table(table)[record_id]
            self._record_change(table, ChangeType.delete, current)
            return True

    # Internals

    def _check_references(self, table: ChangeTable, record: BaseModel) -> None:
        if table == ChangeTable.candidates:
            stage = self.stages.get(record.current_stage_id)
            if record.process_id not in self.processes:
                raise StoreValidationError(f"unknown process {record.process_id}")
            if not stage or stage.process_id != record.process_id:
                raise StoreValidationError(
                    f"stage {record.current_stage_id} does not belong to process {record.process_id}"
                )
        elif table == ChangeTable.stages:
            if record.process_id not in self.processes:
                raise StoreValidationError(f"unknown process {record.process_id}")
            for stage in self.stages.values():
                if (
                    stage.id != record.id
                    and stage.process_id == record.process_id
                    and stage.order == record.order
                ):
                    raise StoreValidationError(
                        f"order {record.order} already used by stage {stage.id} "
                        f"in process {record.process_id}"
                    )
            previous = self.stages.get(record.id)
            if previous and previous.process_id != record.process_id:
                if any(item.current_stage_id == record.id for item in self.candidates.values()):
                    raise StoreValidationError(
                        f"stage {record.id} still holds candidates of process {previous.process_id}"
                    )
        elif table == ChangeTable.timeline:
            if record.candidate_id not in self.candidates:
                raise StoreValidationError(f"unknown candidate {record.candidate_id}")
        elif table == ChangeTable.notifications:
            stage = self.stages.get(record.stage_id)
            if record.candidate_id not in self.candidates:
                raise StoreValidationError(f"unknown candidate {record.candidate_id}")
            if not stage or stage.process_id != record.process_id:
                raise StoreValidationError(
                    f"stage {record.stage_id} does not belong to process {record.process_id}"
                )
        elif table == ChangeTable.users:
            for user in self.users.values():
                if user.id != record.id and user.email == record.email:
                    raise StoreValidationError(f"user email already registered: {record.email}")

    def _dependents(self, table: ChangeTable, record_id: int) -> list[str]:
        blockers: list[str] = []
        if table == ChangeTable.processes:
            if any(item.process_id == record_id for item in self.stages.values()):
                blockers.append("stages")
            if any(item.process_id == record_id for item in self.candidates.values()):
                blockers.append("candidates")
            if any(item.process_id == record_id for item in self.notifications.values()):
                blockers.append("notifications")
        elif table == ChangeTable.stages:
            if any(item.current_stage_id == record_id for item in self.candidates.values()):
                blockers.append("candidates")
            if any(item.stage_id == record_id for item in self.notifications.values()):
                blockers.append("notifications")
        return blockers

    def _cascade_candidate(self, candidate_id: int) -> None:
        for event in [item for item in self.timeline if item.candidate_id == candidate_id]:
            self.timeline.remove(event)
            self._record_change(ChangeTable.timeline, ChangeType.delete, event)
        for notification in [
            item for item in self.notifications.values() if item.candidate_id == candidate_id
        ]:
            del self.notifications[notification.id]
            self._record_change(ChangeTable.notifications, ChangeType.delete, notification)

    def _table(self, table: ChangeTable) -> dict:
        tables = {
            ChangeTable.processes: self.processes,
            ChangeTable.stages: self.stages,
            ChangeTable.candidates: self.candidates,
            ChangeTable.notifications: self.notifications,
            ChangeTable.users: self.users,
        }
        return tables[table]

    def _enqueue_notification(
        self,
        *,
        candidate: CandidateRecord,
        process: ProcessRecord,
        stage: StageRecord,
        moved_by: str,
    ) -> tuple[NotificationRecord, NotificationOutboxRecord]:
        now = utc_now()
        notification = NotificationRecord(
            id=self._next_id("notifications"),
            recipient_name=stage.responsible or "",
            candidate_id=candidate.id,
            stage_id=stage.id,
            process_id=process.id,
            message=notification_message(
                candidate_name=candidate.name,
                stage_name=stage.name,
                process_title=process.title,
                moved_by=moved_by,
            ),
            status=NotificationStatus.unread,
            created_at=now,
        )
        self.notifications[notification.id] = notification
        self._record_change(ChangeTable.notifications, ChangeType.insert, notification)

        entry = NotificationOutboxRecord(
            id=self._next_id("outbox"),
            notification_id=notification.id,
            candidate_id=candidate.id,
            stage_id=stage.id,
            recipient_name=notification.recipient_name,
            moved_by=moved_by,
            status=OutboxStatus.pending,
            attempts=0,
            last_error=None,
            provider_message_id=None,
            next_retry_at=None,
            created_at=now,
            updated_at=now,
        )
        self.outbox[entry.id] = entry
        self._persist_outbox_entry(entry)
        return notification, entry

    def _append_timeline(
        self,
        *,
        candidate_id: int,
        event_type: TimelineEventType,
        title: str,
        description: str,
        author: str,
        icon: Optional[TimelineIcon] = None,
    ) -> TimelineEventRecord:
        event = TimelineEventRecord(
            id=self._next_id("timeline"),
            candidate_id=candidate_id,
            type=event_type,
            title=title,
            description=description,
            author=author,
            date=utc_now(),
            icon=icon or DEFAULT_ICONS[event_type],
        )
        self.timeline.append(event)
        self._record_change(ChangeTable.timeline, ChangeType.insert, event)
        return event

    def _record_change(self, table: ChangeTable, event_type: ChangeType, record: BaseModel) -> None:
        entry = ChangeLogEntry(
            sequence=self._next_id("changes"),
            table=table,
            event_type=event_type,
            record_id=getattr(record, "id"),
            payload=record.model_dump(mode="json"),
            created_at=utc_now(),
        )
        self.change_log.append(entry)
        if len(self.change_log) > CHANGE_LOG_LIMIT:
            del self.change_log[: len(self.change_log) - CHANGE_LOG_LIMIT]

    def _next_id(self, sequence: str) -> int:
        value = self._sequences.get(sequence, 0) + 1
        self._sequences[sequence] = value
        return value

    def _bump_sequence(self, sequence: str, value: int) -> None:
        self._sequences[sequence] = max(self._sequences.get(sequence, 0), value)

    @contextmanager
    def _transaction(self) -> Iterator[None]:
        """Apply a mutation to the mirror and persist it, restoring the mirror on failure."""
        with self._lock:
            before = self._snapshot_data()
            try:
                yield
                self._persist_state()
            except Exception:
                self._hydrate_from_snapshot(before)
                raise

    def _persist_outbox_entry(self, record: NotificationOutboxRecord) -> None:
        if self.persistence:
            self.persistence.upsert_outbox_entry(record)

    def _persist_state(self) -> None:
        if not self.persistence:
            return
        with self._lock:
            self.persistence.save_snapshot(self._snapshot_data())

    def _snapshot_data(self) -> dict:
        return {
            "processes": [record.model_dump(mode="json") for record in self.processes.values()],
            "stages": [record.model_dump(mode="json") for record in self.stages.values()],
            "candidates": [record.model_dump(mode="json") for record in self.candidates.values()],
            "timeline": [record.model_dump(mode="json") for record in self.timeline],
            "notifications": [
                record.model_dump(mode="json") for record in self.notifications.values()
            ],
            "users": [record.model_dump(mode="json") for record in self.users.values()],
            "outbox": [record.model_dump(mode="json") for record in self.outbox.values()],
            "change_log": [record.model_dump(mode="json") for record in self.change_log],
            "sequences": dict(self._sequences),
        }

    def _hydrate_from_snapshot(self, snapshot: dict) -> None:
        self.processes = {
            record["id"]: ProcessRecord.model_validate(record)
            for record in snapshot.get("processes", [])
        }
        self.stages = {
            record["id"]: StageRecord.model_validate(record)
            for record in snapshot.get("stages", [])
        }
        self.candidates = {
            record["id"]: CandidateRecord.model_validate(record)
            for record in snapshot.get("candidates", [])
        }
        self.timeline = [
            TimelineEventRecord.model_validate(record) for record in snapshot.get("timeline", [])
        ]
        self.notifications = {
            record["id"]: NotificationRecord.model_validate(record)
            for record in snapshot.get("notifications", [])
        }
        self.users = {
            record["id"]: UserProfileRecord.model_validate(record)
            for record in snapshot.get("users", [])
        }
        self.outbox = {
            record["id"]: NotificationOutboxRecord.model_validate(record)
            for record in snapshot.get("outbox", [])
        }
        self.change_log = [
            ChangeLogEntry.model_validate(record) for record in snapshot.get("change_log", [])
        ]
        self._sequences = {
            str(key): int(value) for key, value in snapshot.get("sequences", {}).items()
        }
