import smtplib
import time
from contextlib import contextmanager
from email.message import EmailMessage
from typing import Any, Iterator

from fastapi import BackgroundTasks
from sqlalchemy.orm import Session

from .config import settings
from .email_templates import RenderedEmail
from .logging_utils import log_event, log_warning, logger
from .task_queue import JOB_TYPE_SEND_EMAIL, enqueue_job

SMTP_ATTEMPTS = 3
SMTP_TIMEOUT_SECONDS = 10


def email_delivery_configured() -> bool:
    return bool(settings.email_enabled and settings.smtp_host and settings.smtp_sender)


@contextmanager
def _smtp_connection() -> Iterator[smtplib.SMTP]:
    with smtplib.SMTP(settings.smtp_host, settings.smtp_port or 25, timeout=SMTP_TIMEOUT_SECONDS) as server:
        if settings.smtp_use_tls:
            server.starttls()
        if settings.smtp_username:
            server.login(settings.smtp_username, settings.smtp_password or "")
        yield server


def _mime_message(to_email: str, email: RenderedEmail) -> EmailMessage:
    message = EmailMessage()
    message["From"] = settings.smtp_sender
    message["To"] = to_email
    message["Subject"] = email.subject
    message.set_content(email.text)
    if email.html:
        message.add_alternative(email.html, subtype="html")
    return message


def send_email_now(to_email: str, email: RenderedEmail, context: dict[str, Any] | None = None) -> bool:
    """Deliver over SMTP with a short linear backoff. Returns whether the message went out."""
    context = context or {}
    if not email_delivery_configured():
        log_warning("email_skipped", to=to_email, subject=email.subject, enabled=settings.email_enabled, **context)
        return False

    message = _mime_message(to_email, email)
    for attempt in range(1, SMTP_ATTEMPTS + 1):
        try:
            with _smtp_connection() as server:
                server.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            log_warning("email_attempt_failed", to=to_email, attempt=attempt, error=str(exc), **context)
            if attempt < SMTP_ATTEMPTS:
                time.sleep(0.5 * attempt)
            continue
        log_event("email_sent", to=to_email, subject=email.subject, attempt=attempt, **context)
        return True

    logger.error("email_undeliverable to=%s subject=%s smtp_host=%s", to_email, email.subject, settings.smtp_host)
    return False


def email_job_payload(to_email: str, email: RenderedEmail, context: dict[str, Any] | None = None) -> dict[str, Any]:
    return {"to_email": to_email, **email._asdict(), "context": context or {}}


def email_from_payload(payload: dict[str, Any]) -> tuple[str, RenderedEmail, dict[str, Any]]:
    email = RenderedEmail(subject=payload["subject"], text=payload["text"], html=payload.get("html"))
    return payload["to_email"], email, payload.get("context") or {}


def send_email_async(
    background_tasks: BackgroundTasks | None,
    db: Session | None,
    to_email: str,
    email: RenderedEmail,
    context: dict[str, Any] | None = None,
) -> None:
    # Durable job when the queue is on; otherwise after the response, or inline outside a request.
    if settings.task_queue_enabled:
        if db is None:
            raise RuntimeError("task_queue_enabled is true but no DB session was provided")
        enqueue_job(db, JOB_TYPE_SEND_EMAIL, email_job_payload(to_email, email, context))
        return
    if background_tasks is None:
        send_email_now(to_email, email, context)
        return
    background_tasks.add_task(send_email_now, to_email, email, context)
