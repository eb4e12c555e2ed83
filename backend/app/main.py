from __future__ import annotations

import json
import logging
from typing import Optional

from fastapi import (
    APIRouter,
    BackgroundTasks,
    Depends,
    FastAPI,
    HTTPException,
    Query,
    Request,
    Response,
    status,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import ValidationError

from backend.app.auth import AuthContext, require_roles
from backend.app.models import (
    CandidateCreateRequest,
    CandidateRecord,
    CandidateStatus,
    ChangeEventRequest,
    ChangeEventResponse,
    ChangeLogEntry,
    CommentRequest,
    DocumentAttachRequest,
    NearbyCandidateItem,
    NextStageResponse,
    NotificationEmailRequest,
    NotificationOutboxRecord,
    NotificationRecord,
    OutboxProcessResponse,
    OutboxStatus,
    PipelineColumn,
    PipelineResponse,
    ProcessCreateRequest,
    ProcessStatus,
    ProcessSummary,
    ProcessUpdateRequest,
    RejectRequest,
    RejectResponse,
    StageMoveRequest,
    StageMoveResponse,
    StageRecord,
    TimelineEventRecord,
    UserCreateRequest,
    UserProfileRecord,
)
from backend.app.observability import MetricsRegistry, configure_logging, observe_request
from backend.app.persistence import DatabasePersistence
from backend.app.services.documents import (
    DocumentNotFoundError,
    DocumentStorage,
    DocumentStorageError,
    DocumentValidationError,
)
from backend.app.services.notifications import (
    NotificationConfigError,
    NotificationDeliveryError,
    compose_stage_notification,
    process_outbox,
    process_outbox_in_background,
    send_email,
)
from backend.app.services.sync import apply_change_event
from backend.app.services.webhooks import SignatureVerificationError, verify_change_feed_signature
from backend.app.services.workflow import resolve_author
from backend.app.settings import Settings, load_settings
from backend.app.store import (
    InMemoryStore,
    StoreConflictError,
    StoreNotFoundError,
    StoreValidationError,
)

logger = logging.getLogger("recruitment_pipeline.api")

READ_ROLES = ("admin", "manager", "recruiter")
WRITE_ROLES = ("admin", "manager", "recruiter")


def create_app() -> FastAPI:
    app = FastAPI(title="Recruitment Pipeline API", version="0.1.0")
    configure_logging()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    settings = load_settings()
    persistence = (
        DatabasePersistence(settings.database_url) if settings.persistence_enabled else None
    )
    documents = DocumentStorage(persistence, max_bytes=settings.document_max_bytes)
    app.state.store = InMemoryStore(persistence=persistence, documents=documents)
    app.state.settings = settings
    app.state.metrics = MetricsRegistry()

    @app.middleware("http")
    async def observability_middleware(request: Request, call_next):
        return await observe_request(request, call_next, metrics=app.state.metrics)

    app.include_router(build_router())
    return app


def get_store(request: Request) -> InMemoryStore:
    return request.app.state.store


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_metrics(request: Request) -> MetricsRegistry:
    return request.app.state.metrics


def _not_found(exc: Exception) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


def _conflict(exc: Exception) -> HTTPException:
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))


def _document_error(exc: Exception) -> HTTPException:
    if isinstance(exc, DocumentValidationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if isinstance(exc, DocumentNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))


def _process_summary(store: InMemoryStore, process_id: int) -> ProcessSummary:
    return ProcessSummary(
        process=store.get_process(process_id),
        stages=store.list_process_stages(process_id),
        candidate_counts=store.candidate_counts(process_id),
    )


def build_router() -> APIRouter:
    router = APIRouter()

    @router.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @router.get("/health/ready")
    def readiness(request: Request) -> dict[str, str]:
        settings = get_settings(request)
        persistence = getattr(request.app.state.store, "persistence", None)
        if settings.persistence_enabled and persistence and not persistence.ping():
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="database unavailable",
            )
        return {"status": "ready"}

    @router.get("/metrics", response_class=PlainTextResponse)
    def metrics(request: Request) -> Response:
        registry = get_metrics(request)
        return PlainTextResponse(registry.to_prometheus())

    # Processes and stages

    @router.post("/processes", response_model=ProcessSummary, status_code=201)
    def create_process(
        payload: ProcessCreateRequest,
        request: Request,
        _: AuthContext = Depends(require_roles("admin", "manager")),
    ) -> ProcessSummary:
        store = get_store(request)
        process, _stages = store.create_process(payload)
        return _process_summary(store, process.id)

    @router.get("/processes", response_model=list[ProcessSummary])
    def list_processes(
        request: Request,
        process_status: Optional[ProcessStatus] = Query(default=None, alias="status"),
        _: AuthContext = Depends(require_roles(*READ_ROLES)),
    ) -> list[ProcessSummary]:
        store = get_store(request)
        return [_process_summary(store, item.id) for item in store.list_processes(process_status)]

    @router.get("/processes/{process_id}", response_model=ProcessSummary)
    def get_process(
        process_id: int,
        request: Request,
        _: AuthContext = Depends(require_roles(*READ_ROLES)),
    ) -> ProcessSummary:
        try:
            return _process_summary(get_store(request), process_id)
        except StoreNotFoundError as exc:
            raise _not_found(exc) from exc

    @router.patch("/processes/{process_id}", response_model=ProcessSummary)
    def update_process(
        process_id: int,
        payload: ProcessUpdateRequest,
        request: Request,
        _: AuthContext = Depends(require_roles("admin", "manager")),
    ) -> ProcessSummary:
        store = get_store(request)
        try:
            store.update_process(process_id, payload)
        except StoreNotFoundError as exc:
            raise _not_found(exc) from exc
        return _process_summary(store, process_id)

    @router.get("/processes/{process_id}/stages", response_model=list[StageRecord])
    def list_process_stages(
        process_id: int,
        request: Request,
        _: AuthContext = Depends(require_roles(*READ_ROLES)),
    ) -> list[StageRecord]:
        try:
            return get_store(request).list_process_stages(process_id)
        except StoreNotFoundError as exc:
            raise _not_found(exc) from exc

    @router.get("/processes/{process_id}/pipeline", response_model=PipelineResponse)
    def pipeline(
        process_id: int,
        request: Request,
        _: AuthContext = Depends(require_roles(*READ_ROLES)),
    ) -> PipelineResponse:
        store = get_store(request)
        try:
            stages = store.list_process_stages(process_id)
        except StoreNotFoundError as exc:
            raise _not_found(exc) from exc
        candidates = store.list_candidates(process_id=process_id)
        columns = [
            PipelineColumn(
                stage=stage,
                candidates=[
                    item
                    for item in candidates
                    if item.current_stage_id == stage.id
                    and item.status != CandidateStatus.rechazado
                ],
            )
            for stage in stages
        ]
        rejected = [item for item in candidates if item.status == CandidateStatus.rechazado]
        return PipelineResponse(process_id=process_id, columns=columns, rejected=rejected)

    @router.get("/stages/{stage_id}/next", response_model=NextStageResponse)
    def next_stage(
        stage_id: int,
        request: Request,
        _: AuthContext = Depends(require_roles(*READ_ROLES)),
    ) -> NextStageResponse:
        try:
            following = get_store(request).next_stage(stage_id)
        except StoreNotFoundError as exc:
            raise _not_found(exc) from exc
        return NextStageResponse(stage_id=stage_id, next_stage=following)

    # Candidates

    @router.post("/candidates", response_model=CandidateRecord, status_code=201)
    def create_candidate(
        payload: CandidateCreateRequest,
        request: Request,
        auth: AuthContext = Depends(require_roles(*WRITE_ROLES)),
    ) -> CandidateRecord:
        store = get_store(request)
        try:
            return store.create_candidate(
                payload, author=resolve_author(payload.author, auth.display_name)
            )
        except StoreNotFoundError as exc:
            raise _not_found(exc) from exc
        except StoreConflictError as exc:
            raise _conflict(exc) from exc
        except (DocumentValidationError, DocumentStorageError) as exc:
            raise _document_error(exc) from exc

    @router.get("/candidates", response_model=list[CandidateRecord])
    def list_candidates(
        request: Request,
        process_id: Optional[int] = None,
        stage_id: Optional[int] = None,
        candidate_status: Optional[CandidateStatus] = Query(default=None, alias="status"),
        _: AuthContext = Depends(require_roles(*READ_ROLES)),
    ) -> list[CandidateRecord]:
        return get_store(request).list_candidates(
            process_id=process_id, stage_id=stage_id, status=candidate_status
        )

    @router.get("/candidates/nearby", response_model=list[NearbyCandidateItem])
    def nearby_candidates(
        request: Request,
        user: Optional[str] = None,
        auth: AuthContext = Depends(require_roles(*READ_ROLES)),
    ) -> list[NearbyCandidateItem]:
        full_name = resolve_author(user, auth.display_name)
        return get_store(request).nearby_candidates(full_name)

    @router.get("/candidates/{candidate_id}", response_model=CandidateRecord)
    def get_candidate(
        candidate_id: int,
        request: Request,
        _: AuthContext = Depends(require_roles(*READ_ROLES)),
    ) -> CandidateRecord:
        try:
            return get_store(request).get_candidate(candidate_id)
        except StoreNotFoundError as exc:
            raise _not_found(exc) from exc

    @router.post("/candidates/{candidate_id}/stage", response_model=StageMoveResponse)
    def move_candidate(
        candidate_id: int,
        payload: StageMoveRequest,
        request: Request,
        background_tasks: BackgroundTasks,
        auth: AuthContext = Depends(require_roles(*WRITE_ROLES)),
    ) -> StageMoveResponse:
        store = get_store(request)
        try:
            result = store.move_candidate_to_stage(
                candidate_id,
                payload.to_stage_id,
                author=resolve_author(payload.author, auth.display_name),
            )
        except StoreNotFoundError as exc:
            raise _not_found(exc) from exc
        except StoreConflictError as exc:
            raise _conflict(exc) from exc
        if result.outbox_entry:
            background_tasks.add_task(
                process_outbox_in_background,
                store,
                get_settings(request),
                get_metrics(request),
            )
        return StageMoveResponse(
            candidate_id=result.candidate.id,
            from_stage_id=result.from_stage_id,
            to_stage_id=result.candidate.current_stage_id,
            status=result.candidate.status,
            reactivated=result.reactivated,
            timeline_event_id=result.timeline_event.id if result.timeline_event else None,
            notification_id=result.notification.id if result.notification else None,
        )

    @router.post("/candidates/{candidate_id}/reject", response_model=RejectResponse)
    def reject_candidate(
        candidate_id: int,
        payload: RejectRequest,
        request: Request,
        auth: AuthContext = Depends(require_roles(*WRITE_ROLES)),
    ) -> RejectResponse:
        try:
            candidate, event = get_store(request).reject_candidate(
                candidate_id,
                payload.reason,
                author=resolve_author(payload.author, auth.display_name),
            )
        except StoreNotFoundError as exc:
            raise _not_found(exc) from exc
        except StoreValidationError as exc:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)
            ) from exc
        return RejectResponse(
            candidate_id=candidate.id,
            status=candidate.status,
            current_stage_id=candidate.current_stage_id,
            timeline_event_id=event.id if event else None,
        )

    @router.post("/candidates/{candidate_id}/hire", response_model=CandidateRecord)
    def hire_candidate(
        candidate_id: int,
        request: Request,
        auth: AuthContext = Depends(require_roles("admin", "manager")),
    ) -> CandidateRecord:
        try:
            return get_store(request).hire_candidate(candidate_id, author=auth.display_name)
        except StoreNotFoundError as exc:
            raise _not_found(exc) from exc
        except StoreConflictError as exc:
            raise _conflict(exc) from exc

    @router.post(
        "/candidates/{candidate_id}/comments",
        response_model=TimelineEventRecord,
        status_code=201,
    )
    def add_comment(
        candidate_id: int,
        payload: CommentRequest,
        request: Request,
        auth: AuthContext = Depends(require_roles(*WRITE_ROLES)),
    ) -> TimelineEventRecord:
        try:
            return get_store(request).add_comment(
                candidate_id,
                payload.text,
                author=resolve_author(payload.author, auth.display_name),
            )
        except StoreNotFoundError as exc:
            raise _not_found(exc) from exc

    @router.get("/candidates/{candidate_id}/timeline", response_model=list[TimelineEventRecord])
    def candidate_timeline(
        candidate_id: int,
        request: Request,
        _: AuthContext = Depends(require_roles(*READ_ROLES)),
    ) -> list[TimelineEventRecord]:
        try:
            return get_store(request).list_timeline(candidate_id)
        except StoreNotFoundError as exc:
            raise _not_found(exc) from exc

    @router.post("/candidates/{candidate_id}/document", response_model=CandidateRecord)
    def attach_document(
        candidate_id: int,
        payload: DocumentAttachRequest,
        request: Request,
        auth: AuthContext = Depends(require_roles(*WRITE_ROLES)),
    ) -> CandidateRecord:
        try:
            candidate, _event = get_store(request).attach_document(
                candidate_id,
                payload.document,
                author=resolve_author(payload.author, auth.display_name),
            )
        except StoreNotFoundError as exc:
            raise _not_found(exc) from exc
        except (DocumentValidationError, DocumentStorageError) as exc:
            raise _document_error(exc) from exc
        return candidate

    @router.get("/candidates/{candidate_id}/document")
    def download_document(
        candidate_id: int,
        request: Request,
        _: AuthContext = Depends(require_roles(*READ_ROLES)),
    ) -> Response:
        try:
            record, content = get_store(request).get_candidate_document(candidate_id)
        except StoreNotFoundError as exc:
            raise _not_found(exc) from exc
        except (DocumentNotFoundError, DocumentStorageError) as exc:
            raise _document_error(exc) from exc
        return Response(
            content=content,
            media_type=record.content_type,
            headers={"Content-Disposition": f'attachment; filename="{record.filename}"'},
        )

    # Users

    @router.post("/users", response_model=UserProfileRecord, status_code=201)
    def create_user(
        payload: UserCreateRequest,
        request: Request,
        _: AuthContext = Depends(require_roles("admin")),
    ) -> UserProfileRecord:
        try:
            return get_store(request).create_user(payload)
        except StoreConflictError as exc:
            raise _conflict(exc) from exc

    @router.get("/users", response_model=list[UserProfileRecord])
    def list_users(
        request: Request,
        _: AuthContext = Depends(require_roles(*READ_ROLES)),
    ) -> list[UserProfileRecord]:
        return get_store(request).list_users()

    # Notifications

    @router.get("/notifications", response_model=list[NotificationRecord])
    def list_notifications(
        request: Request,
        recipient: Optional[str] = None,
        unread_only: bool = False,
        _: AuthContext = Depends(require_roles(*READ_ROLES)),
    ) -> list[NotificationRecord]:
        return get_store(request).list_notifications(
            recipient_name=recipient, unread_only=unread_only
        )

    @router.post("/notifications/{notification_id}/read", response_model=NotificationRecord)
    def mark_notification_read(
        notification_id: int,
        request: Request,
        _: AuthContext = Depends(require_roles(*READ_ROLES)),
    ) -> NotificationRecord:
        try:
            return get_store(request).mark_notification_read(notification_id)
        except StoreNotFoundError as exc:
            raise _not_found(exc) from exc

    @router.get("/notifications/outbox", response_model=list[NotificationOutboxRecord])
    def list_outbox(
        request: Request,
        outbox_status: Optional[OutboxStatus] = Query(default=None, alias="status"),
        _: AuthContext = Depends(require_roles("service", "admin")),
    ) -> list[NotificationOutboxRecord]:
        return get_store(request).list_outbox(outbox_status)

    @router.post("/notifications/outbox/process", response_model=OutboxProcessResponse)
    def run_outbox(
        request: Request,
        limit: int = Query(default=50, ge=1, le=500),
        _: AuthContext = Depends(require_roles("service", "admin")),
    ) -> OutboxProcessResponse:
        return process_outbox(
            get_store(request),
            get_settings(request),
            metrics=get_metrics(request),
            limit=limit,
        )

    @router.post("/api/send-notification-email")
    def send_notification_email(
        payload: NotificationEmailRequest,
        request: Request,
        _: AuthContext = Depends(require_roles("service", "admin", "manager", "recruiter")),
    ) -> JSONResponse:
        missing = payload.missing_fields()
        if missing:
            logger.warning("notification_email_rejected missing=%s", sorted(missing))
            return JSONResponse(
                status_code=status.HTTP_400_BAD_REQUEST,
                content={"error": "Faltan datos requeridos", "missingData": missing},
            )
        settings = get_settings(request)
        message = compose_stage_notification(
            recipient_email=payload.recipient_email.strip(),
            recipient_name=payload.recipient_name,
            candidate_name=payload.candidate_name.strip(),
            stage_name=payload.stage_name.strip(),
            process_title=payload.process_title.strip(),
            moved_by=payload.moved_by,
            app_url=settings.app_url,
        )
        try:
            email_id = send_email(message, settings=settings)
        except NotificationConfigError as exc:
            logger.error("notification_email_unconfigured error=%s", exc)
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={"error": "Configuración de email incompleta", "details": str(exc)},
            )
        except NotificationDeliveryError as exc:
            logger.warning("notification_email_failed to=%s error=%s", message.to, exc)
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={"error": "Error enviando email", "details": str(exc)},
            )
        get_metrics(request).record_notification(status="sent")
        return JSONResponse(
            content={
                "success": True,
                "emailId": email_id,
                "message": "Email enviado exitosamente",
            }
        )

    # Change feed

    @router.get("/changes", response_model=list[ChangeLogEntry])
    def list_changes(
        request: Request,
        since: int = Query(default=0, ge=0),
        limit: int = Query(default=100, ge=1, le=500),
        _: AuthContext = Depends(require_roles("service", "admin")),
    ) -> list[ChangeLogEntry]:
        return get_store(request).list_changes(since=since, limit=limit)

    @router.post("/changes", response_model=ChangeEventResponse)
    async def receive_change(
        request: Request,
        _: AuthContext = Depends(require_roles("service", "admin")),
    ) -> ChangeEventResponse:
        store = get_store(request)
        settings = get_settings(request)
        raw_body = await request.body()
        try:
            verify_change_feed_signature(
                headers=request.headers,
                raw_body=raw_body,
                secret=settings.change_feed_secret,
            )
        except SignatureVerificationError as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

        try:
            payload = ChangeEventRequest.model_validate(json.loads(raw_body.decode("utf-8")))
        except (json.JSONDecodeError, ValidationError, ValueError) as exc:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="invalid change event payload",
            ) from exc

        try:
            return apply_change_event(store, payload)
        except StoreValidationError as exc:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)
            ) from exc
        except StoreConflictError as exc:
            raise _conflict(exc) from exc

    return router


app = create_app()
