from __future__ import annotations

import base64
import binascii
import logging
from threading import Lock
from typing import TYPE_CHECKING, Optional

from sqlalchemy.exc import SQLAlchemyError

from backend.app.models import DocumentRecord, DocumentUpload, utc_now

if TYPE_CHECKING:
    from backend.app.persistence import DatabasePersistence

logger = logging.getLogger("recruitment_pipeline.documents")

ALLOWED_CONTENT_TYPES = {"application/pdf"}
DEFAULT_MAX_BYTES = 10 * 1024 * 1024


class DocumentValidationError(Exception):
    pass


class DocumentStorageError(Exception):
    pass


class DocumentNotFoundError(Exception):
    pass


def decode_upload(upload: DocumentUpload, *, max_bytes: int) -> bytes:
    content_type = upload.content_type.strip().lower()
    if content_type not in ALLOWED_CONTENT_TYPES:
        raise DocumentValidationError(f"unsupported document type: {upload.content_type}")
    try:
        content = base64.b64decode(upload.content_base64, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DocumentValidationError("document payload is not valid base64") from exc
    if not content:
        raise DocumentValidationError("document payload is empty")
    if len(content) > max_bytes:
        raise DocumentValidationError(f"document exceeds {max_bytes} bytes")
    return content


class DocumentStorage:
    """Blob store for candidate CVs.

    Uses the ``documents`` table when persistence is configured and keeps the
    blobs in memory otherwise.
    """

    def __init__(
        self,
        persistence: Optional["DatabasePersistence"] = None,
        *,
        max_bytes: int = DEFAULT_MAX_BYTES,
    ) -> None:
        self._lock = Lock()
        self.persistence = persistence
        self.max_bytes = max_bytes
        self._blobs: dict[int, tuple[DocumentRecord, bytes]] = {}
        self._last_id = persistence.max_document_id() if persistence else 0

    def save(self, upload: DocumentUpload) -> DocumentRecord:
        content = decode_upload(upload, max_bytes=self.max_bytes)
        with self._lock:
            record = DocumentRecord(
                id=self._last_id + 1,
                filename=upload.filename.strip(),
                content_type=upload.content_type.strip().lower(),
                size_bytes=len(content),
                created_at=utc_now(),
            )
            if self.persistence:
                try:
                    self.persistence.insert_document(record, content)
                except SQLAlchemyError as exc:
                    logger.exception("document_store_failed filename=%s", record.filename)
                    raise DocumentStorageError("document could not be stored") from exc
            else:
                self._blobs[record.id] = (record, content)
            self._last_id = record.id
        logger.info(
            "document_stored document_id=%s size_bytes=%s", record.id, record.size_bytes
        )
        return record

    def load(self, document_id: int) -> tuple[DocumentRecord, bytes]:
        if self.persistence:
            try:
                found = self.persistence.load_document(document_id)
            except SQLAlchemyError as exc:
                raise DocumentStorageError("document could not be read") from exc
        else:
            found = self._blobs.get(document_id)
        if not found:
            raise DocumentNotFoundError(f"document not found: {document_id}")
        return found
