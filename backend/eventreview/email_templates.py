from datetime import datetime
from html import escape
from typing import NamedTuple, Optional

from .models import Event, User


class RenderedEmail(NamedTuple):
    subject: str
    text: str
    html: Optional[str] = None


def _format_dt(dt: Optional[datetime]) -> str:
    if not dt:
        return ""
    return dt.strftime("%Y-%m-%d %H:%M UTC")


def render_event_reminder_email(event: Event, user: User) -> RenderedEmail:
    start = _format_dt(event.start_time)
    location = event.location or "-"
    text = (
        f"Hi {user.username},\n\n"
        f"'{event.title}' from your calendar starts at {start}.\n"
        f"Location: {location}\n\n"
        "Enjoy the event!"
    )
    html = (
        f"<p>Hi {escape(user.username)},</p>"
        f"<p><strong>{escape(event.title)}</strong> from your calendar starts soon.</p>"
        f"<p><strong>Starts:</strong> {escape(start)}<br>"
        f"<strong>Location:</strong> {escape(location)}</p>"
        "<p>Enjoy the event!</p>"
    )
    return RenderedEmail(f"Reminder: {event.title} starts soon", text, html)


def render_password_reset_email(user: User, reset_link: str) -> RenderedEmail:
    text = (
        f"Hi {user.username},\n\n"
        "We received a request to reset your password. Use the link below to choose a new one:\n"
        f"{reset_link}\n\n"
        "If you did not request this, you can ignore this email."
    )
    html = (
        f"<p>Hi {escape(user.username)},</p>"
        "<p>We received a request to reset your password.</p>"
        f'<p><a href="{escape(reset_link, quote=True)}">Choose a new password</a></p>'
        "<p>If you did not request this, you can ignore this email.</p>"
    )
    return RenderedEmail("Reset your password", text, html)


def render_new_review_email(event: Event, organizer: User, rating: int) -> RenderedEmail:
    average = float(event.avg_rating or 0)
    text = (
        f"Hi {organizer.username},\n\n"
        f'Your event "{event.title}" received a new {rating}-star review.\n'
        f"The event now averages {average:.2f} stars."
    )
    html = (
        f"<p>Hi {escape(organizer.username)},</p>"
        f"<p>Your event <strong>{escape(event.title)}</strong> received a new {rating}-star review.</p>"
        f"<p>The event now averages {average:.2f} stars.</p>"
    )
    return RenderedEmail(f"New {rating}-star review for {event.title}", text, html)
