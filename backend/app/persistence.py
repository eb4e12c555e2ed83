from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import Optional

from sqlalchemy import (
    Column,
    DateTime,
    Integer,
    LargeBinary,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    func,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from backend.app.models import (
    DocumentRecord,
    NotificationOutboxRecord,
    OutboxStatus,
    utc_now,
)


def _normalize_database_url(database_url: str) -> str:
    value = database_url.strip()
    if value.startswith("sqlite:///"):
        sqlite_path = value[len("sqlite:///") :].split("?", 1)[0]
        if sqlite_path and sqlite_path != ":memory:":
            path = Path(sqlite_path)
            if path.parent:
                path.parent.mkdir(parents=True, exist_ok=True)
        return value
    if "://" in value:
        return value
    path = Path(value)
    if path.parent:
        path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{str(path).replace(chr(92), '/')}"


class DatabasePersistence:
    """
    SQLAlchemy Core storage for the pipeline store. Works with SQLite and PostgreSQL URLs.

    The whole store is kept as one JSON snapshot row; the notification outbox and
    the document blobs also get their own tables so they can be read without
    loading the snapshot.
    """

    def __init__(self, database_url: str) -> None:
        self.database_url = _normalize_database_url(database_url)
        self._lock = Lock()
        self.engine: Engine = create_engine(
            self.database_url,
            future=True,
            pool_pre_ping=True,
        )
        self.metadata = MetaData()
        self.state_snapshots = Table(
            "state_snapshots",
            self.metadata,
            Column("id", String(50), primary_key=True),
            Column("payload_json", Text, nullable=False),
            Column("updated_at_utc", DateTime, nullable=False),
        )
        self.notification_outbox = Table(
            "notification_outbox",
            self.metadata,
            Column("id", Integer, primary_key=True, autoincrement=False),
            Column("notification_id", Integer, nullable=False),
            Column("candidate_id", Integer, nullable=False),
            Column("stage_id", Integer, nullable=False),
            Column("recipient_name", String(120), nullable=False),
            Column("moved_by", String(120), nullable=False),
            Column("status", String(50), nullable=False),
            Column("attempts", Integer, nullable=False),
            Column("last_error", Text, nullable=True),
            Column("provider_message_id", String(255), nullable=True),
            Column("next_retry_at", DateTime, nullable=True),
            Column("created_at", DateTime, nullable=False),
            Column("updated_at", DateTime, nullable=False),
        )
        self.documents = Table(
            "documents",
            self.metadata,
            Column("id", Integer, primary_key=True, autoincrement=False),
            Column("filename", String(255), nullable=False),
            Column("content_type", String(120), nullable=False),
            Column("size_bytes", Integer, nullable=False),
            Column("content", LargeBinary, nullable=False),
            Column("created_at", DateTime, nullable=False),
        )
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        self.metadata.create_all(self.engine)

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(select(1))
            return True
        except SQLAlchemyError:
            return False

    def save_snapshot(self, payload: dict) -> None:
        with self._lock:
            serialized = json.dumps(payload)
            now = utc_now()
            with self.engine.begin() as conn:
                existing = conn.execute(
                    select(self.state_snapshots.c.id).where(self.state_snapshots.c.id == "default")
                ).first()
                if existing:
                    conn.execute(
                        self.state_snapshots.update()
                        .where(self.state_snapshots.c.id == "default")
                        .values(payload_json=serialized, updated_at_utc=now)
                    )
                else:
                    conn.execute(
                        self.state_snapshots.insert().values(
                            id="default",
                            payload_json=serialized,
                            updated_at_utc=now,
                        )
                    )

    def load_snapshot(self) -> Optional[dict]:
        with self._lock:
            with self.engine.connect() as conn:
                row = conn.execute(
                    select(self.state_snapshots.c.payload_json).where(
                        self.state_snapshots.c.id == "default"
                    )
                ).first()
            if not row:
                return None
            return json.loads(row[0])

    def upsert_outbox_entry(self, record: NotificationOutboxRecord) -> None:
        with self._lock:
            with self.engine.begin() as conn:
                existing = conn.execute(
                    select(self.notification_outbox.c.id).where(
                        self.notification_outbox.c.id == record.id
                    )
                ).first()
                payload = {
                    "notification_id": record.notification_id,
                    "candidate_id": record.candidate_id,
                    "stage_id": record.stage_id,
                    "recipient_name": record.recipient_name,
                    "moved_by": record.moved_by,
                    "status": record.status.value,
                    "attempts": record.attempts,
                    "last_error": record.last_error,
                    "provider_message_id": record.provider_message_id,
                    "next_retry_at": record.next_retry_at,
                    "created_at": record.created_at,
                    "updated_at": record.updated_at,
                }
                if existing:
                    conn.execute(
                        self.notification_outbox.update()
                        .where(self.notification_outbox.c.id == record.id)
                        .values(**payload)
                    )
                else:
                    conn.execute(self.notification_outbox.insert().values(id=record.id, **payload))

    def list_outbox_entries(self) -> list[NotificationOutboxRecord]:
        with self._lock:
            with self.engine.connect() as conn:
                rows = conn.execute(
                    select(self.notification_outbox).order_by(self.notification_outbox.c.id)
                ).all()
        output: list[NotificationOutboxRecord] = []
        for row in rows:
            output.append(
                NotificationOutboxRecord(
                    id=row.id,
                    notification_id=row.notification_id,
                    candidate_id=row.candidate_id,
                    stage_id=row.stage_id,
                    recipient_name=row.recipient_name,
                    moved_by=row.moved_by,
                    status=OutboxStatus(row.status),
                    attempts=row.attempts,
                    last_error=row.last_error,
                    provider_message_id=row.provider_message_id,
                    next_retry_at=row.next_retry_at,
                    created_at=row.created_at or utc_now(),
                    updated_at=row.updated_at or utc_now(),
                )
            )
        return output

    def insert_document(self, record: DocumentRecord, content: bytes) -> None:
        with self._lock:
            with self.engine.begin() as conn:
                conn.execute(
                    self.documents.insert().values(
                        id=record.id,
                        filename=record.filename,
                        content_type=record.content_type,
                        size_bytes=record.size_bytes,
                        content=content,
                        created_at=record.created_at,
                    )
                )

    def load_document(self, document_id: int) -> Optional[tuple[DocumentRecord, bytes]]:
        with self._lock:
            with self.engine.connect() as conn:
                row = conn.execute(
                    select(self.documents).where(self.documents.c.id == document_id)
                ).first()
        if not row:
            return None
        record = DocumentRecord(
            id=row.id,
            filename=row.filename,
            content_type=row.content_type,
            size_bytes=row.size_bytes,
            created_at=row.created_at or datetime.min,
        )
        return record, bytes(row.content)

    def max_document_id(self) -> int:
        with self._lock:
            with self.engine.connect() as conn:
                value = conn.execute(select(func.max(self.documents.c.id))).scalar()
        return int(value or 0)
