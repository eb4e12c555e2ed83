from __future__ import annotations

from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ProcessStatus(str, Enum):
    activo = "Activo"
    pausado = "Pausado"
    cerrado = "Cerrado"


class CandidateStatus(str, Enum):
    activo = "Activo"
    rechazado = "Rechazado"
    contratado = "Contratado"


class TimelineEventType(str, Enum):
    application = "application"
    comment = "comment"
    stage_change = "stage_change"
    movement = "movement"


class TimelineIcon(str, Enum):
    user_plus = "UserPlus"
    message_circle = "MessageCircle"
    arrow_right = "ArrowRight"
    x = "X"
    file_text = "FileText"


class NotificationStatus(str, Enum):
    unread = "unread"
    read = "read"


class OutboxStatus(str, Enum):
    pending = "pending"
    sending = "sending"
    sent = "sent"
    retry_pending = "retry_pending"
    failed = "failed"
    skipped = "skipped"


class UserRole(str, Enum):
    administrador = "Administrador"
    manager = "Manager"
    reclutador = "Reclutador"


class NearbyRelevance(str, Enum):
    manager = "manager"
    responsible = "responsible"
    both = "both"


class ChangeTable(str, Enum):
    processes = "processes"
    stages = "stages"
    candidates = "candidates"
    timeline = "timeline"
    notifications = "notifications"
    users = "users"


class ChangeType(str, Enum):
    insert = "INSERT"
    update = "UPDATE"
    delete = "DELETE"


def _require_text(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    stripped = value.strip()
    if not stripped:
        raise ValueError("value cannot be blank")
    return stripped


def _normalize_email(value: str) -> str:
    normalized = value.strip().lower()
    local, _, domain = normalized.partition("@")
    if not local or "." not in domain:
        raise ValueError("email must look like name@domain.tld")
    return normalized


class StageDefinition(BaseModel):
    name: str = Field(min_length=1, max_length=80)
    responsible: Optional[str] = Field(default=None, max_length=120)

    normalize_name = field_validator("name")(_require_text)


class ProcessCreateRequest(BaseModel):
    title: str = Field(min_length=2, max_length=120)
    description: Optional[str] = Field(default=None, max_length=2000)
    manager: Optional[str] = Field(default=None, max_length=120)
    salary_min: Optional[int] = Field(default=None, ge=0)
    salary_max: Optional[int] = Field(default=None, ge=0)
    status: ProcessStatus = ProcessStatus.activo
    stages: list[StageDefinition] = Field(default_factory=list, max_length=30)

    @model_validator(mode="after")
    def validate_salary_band(self) -> "ProcessCreateRequest":
        if (
            self.salary_min is not None
            and self.salary_max is not None
            and self.salary_min > self.salary_max
        ):
            raise ValueError("salary_min cannot be greater than salary_max")
        return self


class ProcessUpdateRequest(BaseModel):
    title: Optional[str] = Field(default=None, min_length=2, max_length=120)
    description: Optional[str] = Field(default=None, max_length=2000)
    manager: Optional[str] = Field(default=None, max_length=120)
    salary_min: Optional[int] = Field(default=None, ge=0)
    salary_max: Optional[int] = Field(default=None, ge=0)
    status: Optional[ProcessStatus] = None

    @model_validator(mode="after")
    def validate_salary_band(self) -> "ProcessUpdateRequest":
        if (
            self.salary_min is not None
            and self.salary_max is not None
            and self.salary_min > self.salary_max
        ):
            raise ValueError("salary_min cannot be greater than salary_max")
        return self


class DocumentUpload(BaseModel):
    filename: str = Field(min_length=1, max_length=255)
    content_type: str = Field(default="application/pdf", max_length=120)
    content_base64: str = Field(min_length=1)


class CandidateCreateRequest(BaseModel):
    name: str = Field(min_length=2, max_length=120)
    email: str = Field(min_length=3, max_length=254)
    phone: Optional[str] = Field(default=None, max_length=30)
    location: Optional[str] = Field(default=None, max_length=120)
    origin: Optional[str] = Field(default=None, max_length=120)
    process_id: int = Field(ge=1)
    current_stage_id: int = Field(ge=1)
    document: Optional[DocumentUpload] = None
    author: Optional[str] = Field(default=None, max_length=120)

    normalize_email = field_validator("email")(_normalize_email)


class StageMoveRequest(BaseModel):
    to_stage_id: int = Field(ge=1)
    author: Optional[str] = Field(default=None, max_length=120)


class StageMoveResponse(BaseModel):
    candidate_id: int
    from_stage_id: int
    to_stage_id: int
    status: CandidateStatus
    reactivated: bool
    timeline_event_id: Optional[int]
    notification_id: Optional[int]


class RejectRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=500)
    author: Optional[str] = Field(default=None, max_length=120)

    normalize_reason = field_validator("reason")(_require_text)


class RejectResponse(BaseModel):
    candidate_id: int
    status: CandidateStatus
    current_stage_id: int
    timeline_event_id: Optional[int]


class CommentRequest(BaseModel):
    text: str = Field(min_length=1, max_length=2000)
    author: Optional[str] = Field(default=None, max_length=120)

    normalize_text = field_validator("text")(_require_text)


class DocumentAttachRequest(BaseModel):
    document: DocumentUpload
    author: Optional[str] = Field(default=None, max_length=120)


class UserCreateRequest(BaseModel):
    full_name: str = Field(min_length=2, max_length=120)
    email: str = Field(min_length=3, max_length=254)
    role: UserRole = UserRole.reclutador

    normalize_name = field_validator("full_name")(_require_text)
    normalize_email = field_validator("email")(_normalize_email)


class NotificationEmailRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    recipient_email: Optional[str] = Field(default=None, alias="recipientEmail")
    recipient_name: Optional[str] = Field(default=None, alias="recipientName")
    candidate_name: Optional[str] = Field(default=None, alias="candidateName")
    stage_name: Optional[str] = Field(default=None, alias="stageName")
    process_title: Optional[str] = Field(default=None, alias="processTitle")
    moved_by: Optional[str] = Field(default=None, alias="movedBy")

    def missing_fields(self) -> dict[str, Optional[str]]:
        required = {
            "recipientEmail": self.recipient_email,
            "candidateName": self.candidate_name,
            "stageName": self.stage_name,
            "processTitle": self.process_title,
        }
        if all(value and value.strip() for value in required.values()):
            return {}
        return required


class OutboxProcessResponse(BaseModel):
    processed: int
    sent: int
    retry_pending: int
    failed: int
    skipped: int


class ChangeEventRequest(BaseModel):
    table: ChangeTable
    event_type: ChangeType
    new: Optional[dict[str, Any]] = None
    old: Optional[dict[str, Any]] = None

    @model_validator(mode="after")
    def validate_payload(self) -> "ChangeEventRequest":
        if self.event_type == ChangeType.delete:
            if not self.old or "id" not in self.old:
                raise ValueError("DELETE events require old.id")
        elif not self.new or "id" not in self.new:
            raise ValueError(f"{self.event_type.value} events require new.id")
        return self


class ChangeEventResponse(BaseModel):
    status: str
    table: ChangeTable
    record_id: int


class ProcessRecord(BaseModel):
    id: int
    title: str
    description: Optional[str]
    manager: Optional[str]
    salary_range: Optional[str]
    status: ProcessStatus
    created_at: datetime
    updated_at: datetime


class StageRecord(BaseModel):
    id: int
    process_id: int
    name: str
    responsible: Optional[str]
    order: int = Field(ge=1)


class CandidateRecord(BaseModel):
    id: int
    process_id: int
    current_stage_id: int
    name: str
    email: str
    phone: Optional[str]
    location: Optional[str]
    origin: Optional[str]
    cv: Optional[int] = None
    status: CandidateStatus = CandidateStatus.activo
    comments: int = 0
    applied_date: date
    last_updated: datetime


class TimelineEventRecord(BaseModel):
    id: int
    candidate_id: int
    type: TimelineEventType
    title: str
    description: str
    author: str
    date: datetime
    icon: TimelineIcon


class NotificationRecord(BaseModel):
    id: int
    recipient_name: str
    candidate_id: int
    stage_id: int
    process_id: int
    message: str
    status: NotificationStatus = NotificationStatus.unread
    created_at: datetime
    read_at: Optional[datetime] = None


class UserProfileRecord(BaseModel):
    id: int
    full_name: str
    email: str
    role: UserRole
    created_at: datetime


class DocumentRecord(BaseModel):
    id: int
    filename: str
    content_type: str
    size_bytes: int
    created_at: datetime


class NotificationOutboxRecord(BaseModel):
    id: int
    notification_id: int
    candidate_id: int
    stage_id: int
    recipient_name: str
    moved_by: str
    status: OutboxStatus
    attempts: int
    last_error: Optional[str]
    provider_message_id: Optional[str]
    next_retry_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime


class ChangeLogEntry(BaseModel):
    sequence: int
    table: ChangeTable
    event_type: ChangeType
    record_id: int
    payload: dict[str, Any]
    created_at: datetime


class ProcessSummary(BaseModel):
    process: ProcessRecord
    stages: list[StageRecord]
    candidate_counts: dict[CandidateStatus, int]


class PipelineColumn(BaseModel):
    stage: StageRecord
    candidates: list[CandidateRecord]


class PipelineResponse(BaseModel):
    process_id: int
    columns: list[PipelineColumn]
    rejected: list[CandidateRecord]


class NextStageResponse(BaseModel):
    stage_id: int
    next_stage: Optional[StageRecord]


class NearbyCandidateItem(BaseModel):
    candidate_id: int
    name: str
    email: str
    process_id: int
    process_title: str
    current_stage: StageRecord
    relevance: NearbyRelevance
    days_since_update: int
    last_updated: datetime
