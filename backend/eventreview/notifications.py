from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from sqlalchemy.orm import Session, joinedload

from . import models
from .config import settings
from .logging_utils import log_event

NOTIFICATION_TYPES = ("review", "event_update", "reminder", "system", "recommendation")

# Longest reminder lead time accepted by ReminderSettings.
_MAX_REMINDER_MINUTES = 60 * 24 * 7


def _normalize_dt(value: Optional[datetime]) -> Optional[datetime]:
    if not value:
        return value
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def create_notification(
    db: Session,
    user_id: int,
    content: str,
    notification_type: str = "system",
    related_id: int | None = None,
) -> models.Notification:
    notification = models.Notification(
        user_id=user_id,
        content=content,
        type=notification_type,
        related_id=related_id,
        is_read=False,
    )
    db.add(notification)
    return notification


def notify_users(
    db: Session,
    user_ids: Iterable[int],
    content: str,
    notification_type: str,
    related_id: int | None = None,
) -> int:
    unique_ids = sorted({int(user_id) for user_id in user_ids})
    for user_id in unique_ids:
        create_notification(db, user_id, content, notification_type, related_id)
    return len(unique_ids)


def notify_event_attendees(db: Session, event: models.Event, content: str) -> int:
    user_ids = [
        row[0]
        for row in db.query(models.CalendarEntry.user_id)
        .filter(models.CalendarEntry.event_id == event.id, models.CalendarEntry.user_id != event.organizer_id)
        .all()
    ]
    count = notify_users(db, user_ids, content, "event_update", related_id=event.id)
    if count:
        log_event("event_attendees_notified", event_id=event.id, count=count)
    return count


def broadcast_system_notification(db: Session, content: str) -> int:
    user_ids = [row[0] for row in db.query(models.User.id).filter(models.User.is_active.is_(True)).all()]
    count = notify_users(db, user_ids, content, "system")
    db.commit()
    log_event("system_notification_broadcast", count=count)
    return count


def purge_old_notifications(db: Session, days: int | None = None) -> int:
    days = days if days is not None else settings.notification_retention_days
    cutoff = datetime.now(timezone.utc) - timedelta(days=days)
    count = (
        db.query(models.Notification)
        .filter(models.Notification.is_read.is_(True), models.Notification.created_at < cutoff)
        .delete(synchronize_session=False)
    )
    db.commit()
    if count:
        log_event("notifications_purged", count=count, retention_days=days)
    return int(count or 0)


def _reminder_due(entry: models.CalendarEntry, now: datetime) -> bool:
    reminder = entry.reminder_settings or {}
    if not reminder.get("remind", True):
        return False
    start = _normalize_dt(entry.event.start_time)
    if start is None or start <= now:
        return False
    lead_minutes = int(reminder.get("time", 60) or 0)
    return start - now <= timedelta(minutes=lead_minutes)


def send_event_reminders(db: Session, now: datetime | None = None) -> dict[str, int]:
    from .email_service import send_email_async  # noqa: PLC0415
    from .email_templates import render_event_reminder_email  # noqa: PLC0415

    now = _normalize_dt(now) or datetime.now(timezone.utc)
    horizon = now + timedelta(minutes=_MAX_REMINDER_MINUTES)
    entries = (
        db.query(models.CalendarEntry)
        .join(models.Event, models.Event.id == models.CalendarEntry.event_id)
        .options(joinedload(models.CalendarEntry.event), joinedload(models.CalendarEntry.user))
        .filter(models.CalendarEntry.reminder_sent_at.is_(None))
        .filter(models.Event.status == "upcoming")
        .filter(models.Event.start_time > now, models.Event.start_time <= horizon)
        .order_by(models.Event.start_time.asc(), models.CalendarEntry.id.asc())
        .all()
    )

    tally = {"checked": len(entries), "notified": 0, "emails": 0}
    for entry in entries:
        if not _reminder_due(entry, now):
            continue
        event = entry.event
        create_notification(
            db,
            entry.user_id,
            f'Reminder: "{event.title}" starts at {_normalize_dt(event.start_time):%Y-%m-%d %H:%M} UTC',
            "reminder",
            related_id=event.id,
        )
        entry.reminder_sent_at = now
        db.add(entry)
        tally["notified"] += 1
        if (entry.reminder_settings or {}).get("method", "email") == "email" and entry.user and entry.user.is_active:
            send_email_async(
                None,
                db,
                entry.user.email,
                render_event_reminder_email(event, entry.user),
                context={"notification": "event_reminder", "user_id": entry.user_id, "event_id": event.id},
            )
            tally["emails"] += 1
    db.commit()
    log_event("event_reminders_sent", **tally)
    return tally
