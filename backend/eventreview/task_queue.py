"""Database-backed job queue shared by the API process and `eventreview.worker`.

Jobs carry an optional `dedupe_key`; while a job with the same (type, key) is
queued or running, enqueueing returns that job instead of a new row. Finished
jobs release their key so the next run can be scheduled.
"""

from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models
from .config import settings
from .logging_utils import log_event, log_warning


JOB_TYPE_SEND_EMAIL = "send_email"
JOB_TYPE_GENERATE_RECOMMENDATIONS = "generate_recommendations"
JOB_TYPE_PURGE_STALE_RECOMMENDATIONS = "purge_stale_recommendations"
JOB_TYPE_PURGE_OLD_NOTIFICATIONS = "purge_old_notifications"
JOB_TYPE_SEND_EVENT_REMINDERS = "send_event_reminders"
JOB_TYPE_BACKFILL_REVIEW_SENTIMENT = "backfill_review_sentiment"

ACTIVE_STATUSES = ("queued", "running")
MAX_BACKOFF_SECONDS = 60

JobHandler = Callable[[Session, dict[str, Any]], dict[str, Any]]
_HANDLERS: dict[str, JobHandler] = {}


def job_handler(job_type: str) -> Callable[[JobHandler], JobHandler]:
    def register(func: JobHandler) -> JobHandler:
        _HANDLERS[job_type] = func
        return func

    return register


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _optional_int(payload: dict[str, Any], key: str) -> int | None:
    value = payload.get(key)
    return int(value) if value is not None else None


def _active_duplicate(db: Session, job_type: str, dedupe_key: str) -> models.BackgroundJob | None:
    return (
        db.query(models.BackgroundJob)
        .filter(
            models.BackgroundJob.job_type == job_type,
            models.BackgroundJob.dedupe_key == dedupe_key,
            models.BackgroundJob.status.in_(ACTIVE_STATUSES),
        )
        .order_by(models.BackgroundJob.id.desc())
        .first()
    )


def enqueue_job(
    db: Session,
    job_type: str,
    payload: dict[str, Any],
    *,
    dedupe_key: str | None = None,
    run_at: datetime | None = None,
    max_attempts: int | None = None,
) -> models.BackgroundJob:
    job = models.BackgroundJob(
        job_type=job_type,
        dedupe_key=dedupe_key,
        payload=payload,
        status="queued",
        attempts=0,
        max_attempts=max_attempts or settings.task_queue_max_attempts,
        run_at=run_at or _now_utc(),
    )
    db.add(job)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = _active_duplicate(db, job_type, dedupe_key) if dedupe_key is not None else None
        if existing is None:
            raise
        # Callers check this flag to tell a reused job from a fresh one.
        setattr(existing, "_deduped", True)
        log_event("job_deduped", job_id=existing.id, job_type=job_type, dedupe_key=dedupe_key)
        return existing
    db.refresh(job)
    log_event("job_enqueued", job_id=job.id, job_type=job.job_type, dedupe_key=dedupe_key)
    return job


def requeue_stale_jobs(db: Session, *, stale_after_seconds: int | None = None) -> int:
    """Put `running` jobs whose lock is older than the cutoff back in the queue."""
    cutoff = _now_utc() - timedelta(seconds=stale_after_seconds or settings.task_queue_stale_after_seconds)
    count = (
        db.query(models.BackgroundJob)
        .filter(
            models.BackgroundJob.status == "running",
            models.BackgroundJob.locked_at.is_not(None),
            models.BackgroundJob.locked_at < cutoff,
        )
        .update({"status": "queued", "locked_at": None, "locked_by": None}, synchronize_session=False)
    )
    if count:
        db.commit()
        log_warning("jobs_requeued_stale", count=count)
    return int(count or 0)


def claim_next_job(db: Session, *, worker_id: str) -> models.BackgroundJob | None:
    now = _now_utc()
    query = (
        db.query(models.BackgroundJob)
        .filter(models.BackgroundJob.status == "queued", models.BackgroundJob.run_at <= now)
        .order_by(models.BackgroundJob.run_at.asc(), models.BackgroundJob.id.asc())
    )
    if db.bind is not None and db.bind.dialect.name == "postgresql":
        query = query.with_for_update(skip_locked=True)
    job = query.first()
    if job is None:
        return None
    job.status = "running"
    job.locked_at = now
    job.locked_by = worker_id
    db.commit()
    db.refresh(job)
    return job


def _finish(db: Session, job: models.BackgroundJob, status: str) -> None:
    job.status = status
    job.finished_at = _now_utc()
    job.dedupe_key = None
    job.locked_at = None
    job.locked_by = None
    db.add(job)
    db.commit()


def mark_job_succeeded(db: Session, job: models.BackgroundJob, result: dict[str, Any] | None = None) -> None:
    job.result = result
    _finish(db, job, "succeeded")
    log_event("job_succeeded", job_id=job.id, job_type=job.job_type, attempts=job.attempts)


def retry_backoff_seconds(attempts: int) -> int:
    return min(MAX_BACKOFF_SECONDS, 2 ** max(0, attempts - 1))


def mark_job_failed(db: Session, job: models.BackgroundJob, error: str) -> None:
    job.attempts = (job.attempts or 0) + 1
    job.last_error = error
    max_attempts = job.max_attempts or settings.task_queue_max_attempts

    if job.attempts >= max_attempts:
        _finish(db, job, "failed")
        log_warning("job_failed", job_id=job.id, job_type=job.job_type, attempts=job.attempts, error=error)
        return

    backoff = retry_backoff_seconds(job.attempts)
    job.status = "queued"
    job.run_at = _now_utc() + timedelta(seconds=backoff)
    job.locked_at = None
    job.locked_by = None
    db.add(job)
    db.commit()
    log_warning(
        "job_failed_retrying",
        job_id=job.id,
        job_type=job.job_type,
        attempts=job.attempts,
        max_attempts=max_attempts,
        backoff_seconds=backoff,
        error=error,
    )


@job_handler(JOB_TYPE_SEND_EMAIL)
def _send_email(db: Session, payload: dict[str, Any]) -> dict[str, Any]:
    from .email_service import email_delivery_configured, email_from_payload, send_email_now  # noqa: PLC0415

    to_email, email, context = email_from_payload(payload)
    delivered = send_email_now(to_email, email, context)
    if not delivered and email_delivery_configured():
        raise RuntimeError(f"email_delivery_failed to={to_email}")
    return {"delivered": delivered}


@job_handler(JOB_TYPE_GENERATE_RECOMMENDATIONS)
def _generate_recommendations(db: Session, payload: dict[str, Any]) -> dict[str, Any]:
    from .recommendation_store import generate_for_all_users, generate_recommendations  # noqa: PLC0415

    limit = _optional_int(payload, "limit")
    user_id = _optional_int(payload, "user_id")
    if user_id is None:
        return generate_for_all_users(db, limit=limit)
    return {"user_id": user_id, **generate_recommendations(db, user_id, limit=limit).as_dict()}


@job_handler(JOB_TYPE_PURGE_STALE_RECOMMENDATIONS)
def _purge_stale_recommendations(db: Session, payload: dict[str, Any]) -> dict[str, Any]:
    from .recommendation_store import purge_stale_recommendations  # noqa: PLC0415

    return {"deleted": purge_stale_recommendations(db, days=_optional_int(payload, "days"))}


@job_handler(JOB_TYPE_PURGE_OLD_NOTIFICATIONS)
def _purge_old_notifications(db: Session, payload: dict[str, Any]) -> dict[str, Any]:
    from .notifications import purge_old_notifications  # noqa: PLC0415

    return {"deleted": purge_old_notifications(db, days=_optional_int(payload, "days"))}


@job_handler(JOB_TYPE_SEND_EVENT_REMINDERS)
def _send_event_reminders(db: Session, payload: dict[str, Any]) -> dict[str, Any]:
    from .notifications import send_event_reminders  # noqa: PLC0415

    return send_event_reminders(db)


@job_handler(JOB_TYPE_BACKFILL_REVIEW_SENTIMENT)
def _backfill_review_sentiment(db: Session, payload: dict[str, Any]) -> dict[str, Any]:
    from .sentiment import backfill_review_sentiment  # noqa: PLC0415

    return backfill_review_sentiment(db, batch_size=_optional_int(payload, "batch_size") or 200).as_dict()


def run_job(db: Session, job_type: str, payload: dict[str, Any]) -> dict[str, Any]:
    """Execute one job body and return its result; raises on failure."""
    handler = _HANDLERS.get(job_type)
    if handler is None:
        raise ValueError(f"Unknown job_type: {job_type}")
    return handler(db, payload)


def process_job(db: Session, job: models.BackgroundJob) -> None:
    try:
        result = run_job(db, job.job_type, job.payload or {})
    except Exception as exc:  # noqa: BLE001
        db.rollback()
        mark_job_failed(db, job, error=str(exc))
        return
    mark_job_succeeded(db, job, result=result)


def idle_sleep() -> None:
    time.sleep(max(0.1, float(settings.task_queue_poll_interval_seconds)))
