from __future__ import annotations

import html
import json
import logging
from dataclasses import dataclass
from typing import Optional
from urllib import request
from urllib.error import HTTPError, URLError

from backend.app.models import NotificationOutboxRecord, OutboxProcessResponse, OutboxStatus
from backend.app.observability import MetricsRegistry
from backend.app.services.workflow import notification_message
from backend.app.settings import Settings
from backend.app.store import InMemoryStore, StoreNotFoundError

logger = logging.getLogger("recruitment_pipeline.notifications")


class NotificationDeliveryError(Exception):
    pass


class NotificationConfigError(Exception):
    pass


class MissingRecipientError(Exception):
    pass


@dataclass(frozen=True)
class EmailMessage:
    to: str
    subject: str
    text: str
    html: str


def compose_stage_notification(
    *,
    recipient_email: str,
    recipient_name: Optional[str],
    candidate_name: str,
    stage_name: str,
    process_title: str,
    moved_by: Optional[str],
    app_url: str,
) -> EmailMessage:
    moved_by = moved_by or "Usuario"
    text = notification_message(
        candidate_name=candidate_name,
        stage_name=stage_name,
        process_title=process_title,
        moved_by=moved_by,
    )
    greeting = html.escape(recipient_name or recipient_email)
    body = (
        "<html><body>"
        f"<p>Hola <strong>{greeting}</strong>,</p>"
        f"<p>{html.escape(text)}</p>"
        "<ul>"
        f"<li><strong>Candidato:</strong> {html.escape(candidate_name)}</li>"
        f"<li><strong>Etapa:</strong> {html.escape(stage_name)}</li>"
        f"<li><strong>Puesto:</strong> {html.escape(process_title)}</li>"
        f"<li><strong>Movido por:</strong> {html.escape(moved_by)}</li>"
        "</ul>"
        "<p>Por favor, revisa el candidato y toma las acciones necesarias para continuar "
        "con el proceso de selección.</p>"
        f'<p><a href="{html.escape(app_url, quote=True)}">Ver en AgendaPro</a></p>'
        "</body></html>"
    )
    return EmailMessage(
        to=recipient_email,
        subject=f"Nuevo candidato en tu etapa: {stage_name}",
        text=text,
        html=body,
    )


def send_email(message: EmailMessage, *, settings: Settings, timeout: int = 10) -> str:
    """Hand the message to the email provider and return the provider's message id."""
    if not settings.email_api_key:
        raise NotificationConfigError("RESEND_API_KEY is not configured")
    payload = {
        "from": settings.email_from,
        "to": [message.to],
        "subject": message.subject,
        "html": message.html,
        "text": message.text,
    }
    req = request.Request(
        settings.email_api_url,
        data=json.dumps(payload).encode("utf-8"),
        method="POST",
        headers={
            "Authorization": f"Bearer {settings.email_api_key}",
            "Content-Type": "application/json",
        },
    )
    try:
        with request.urlopen(req, timeout=timeout) as response:
            body = response.read().decode("utf-8")
    except HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="replace")
        raise NotificationDeliveryError(f"email provider returned {exc.code}: {detail}") from exc
    except URLError as exc:
        raise NotificationDeliveryError("email provider request failed") from exc

    try:
        decoded = json.loads(body)
    except json.JSONDecodeError as exc:
        raise NotificationDeliveryError("email provider response was not valid json") from exc
    message_id = decoded.get("id") if isinstance(decoded, dict) else None
    if not message_id:
        raise NotificationDeliveryError("email provider response missing id")
    return str(message_id)


def _compose_for_entry(
    store: InMemoryStore, settings: Settings, entry: NotificationOutboxRecord
) -> EmailMessage:
    user = store.find_user_by_name(entry.recipient_name)
    if not user:
        raise MissingRecipientError(f"no user registered as {entry.recipient_name!r}")
    candidate = store.get_candidate(entry.candidate_id)
    stage = store.get_stage(entry.stage_id)
    process = store.get_process(candidate.process_id)
    return compose_stage_notification(
        recipient_email=user.email,
        recipient_name=user.full_name,
        candidate_name=candidate.name,
        stage_name=stage.name,
        process_title=process.title,
        moved_by=entry.moved_by,
        app_url=settings.app_url,
    )


def dispatch_outbox_entry(
    store: InMemoryStore,
    settings: Settings,
    entry: NotificationOutboxRecord,
) -> NotificationOutboxRecord:
    attempt = {
        "max_attempts": settings.notification_max_attempts,
        "backoff_seconds": settings.notification_retry_backoff_seconds,
    }
    if not settings.email_enabled:
        return store.record_outbox_attempt(
            entry.id, success=False, skipped=True, error="email delivery disabled", **attempt
        )
    try:
        message = _compose_for_entry(store, settings, entry)
        message_id = send_email(message, settings=settings)
    except NotificationDeliveryError as exc:
        logger.warning("notification_delivery_failed outbox_id=%s error=%s", entry.id, exc)
        return store.record_outbox_attempt(
            entry.id, success=False, transient=True, error=str(exc), **attempt
        )
    except (MissingRecipientError, NotificationConfigError, StoreNotFoundError) as exc:
        logger.warning("notification_undeliverable outbox_id=%s error=%s", entry.id, exc)
        return store.record_outbox_attempt(
            entry.id, success=False, transient=False, error=str(exc), **attempt
        )
    except Exception as exc:
        logger.exception("notification_dispatch_error outbox_id=%s", entry.id)
        return store.record_outbox_attempt(
            entry.id, success=False, transient=True, error=str(exc), **attempt
        )
    logger.info("notification_sent outbox_id=%s message_id=%s", entry.id, message_id)
    return store.record_outbox_attempt(
        entry.id, success=True, provider_message_id=message_id, **attempt
    )


def process_outbox(
    store: InMemoryStore,
    settings: Settings,
    *,
    metrics: Optional[MetricsRegistry] = None,
    limit: int = 50,
) -> OutboxProcessResponse:
    counts = {status: 0 for status in OutboxStatus}
    processed = 0
    for entry in store.claim_due_outbox(limit=limit):
        updated = dispatch_outbox_entry(store, settings, entry)
        processed += 1
        counts[updated.status] += 1
        if metrics:
            metrics.record_notification(status=updated.status.value)
    return OutboxProcessResponse(
        processed=processed,
        sent=counts[OutboxStatus.sent],
        retry_pending=counts[OutboxStatus.retry_pending],
        failed=counts[OutboxStatus.failed],
        skipped=counts[OutboxStatus.skipped],
    )


def process_outbox_in_background(
    store: InMemoryStore,
    settings: Settings,
    metrics: Optional[MetricsRegistry] = None,
) -> None:
    """Process due outbox entries and log the run summary or the failure."""
    try:
        summary = process_outbox(store, settings, metrics=metrics)
    except Exception:
        logger.exception("notification_outbox_run_failed")
        return
    if summary.processed:
        logger.info(
            "notification_outbox_run processed=%s sent=%s retry_pending=%s failed=%s skipped=%s",
            summary.processed,
            summary.sent,
            summary.retry_pending,
            summary.failed,
            summary.skipped,
        )
