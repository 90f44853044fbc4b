from datetime import date, datetime, timedelta, timezone
from typing import List, Optional
from contextlib import asynccontextmanager, suppress
import time
import logging
import asyncio
import secrets
from pathlib import Path

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, status, Request, Query
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from sqlalchemy import func, or_, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import auth, models, schemas
from .config import settings
from .database import engine, get_db, SessionLocal
from .email_service import send_email_async
from .email_templates import render_new_review_email, render_password_reset_email
from .filters import (
    CategoryFilter,
    EventFilter,
    ListingQueryError,
    Pagination,
    ReviewFilter,
    UserFilter,
    apply_filters,
    category_ordering,
    event_ordering,
    review_ordering,
    start_of_day_utc,
)
from .logging_utils import configure_logging, RequestIdMiddleware, log_event, log_warning
from .notifications import (
    broadcast_system_notification,
    create_notification,
    notify_event_attendees,
    purge_old_notifications,
)
from .recommendation_store import (
    generate_recommendations as generate_user_recommendations,
    get_popular_events,
    get_top_recommendations,
    list_recommendations,
    purge_stale_recommendations,
)
from .sentiment import apply_sentiment, summarize_reviews
from .task_queue import (
    JOB_TYPE_BACKFILL_REVIEW_SENTIMENT,
    JOB_TYPE_GENERATE_RECOMMENDATIONS,
    enqueue_job,
    run_job,
)

configure_logging()


def _run_migrations():
    """Run Alembic migrations to latest head. Controlled via settings.auto_run_migrations."""
    try:
        from alembic import command
        from alembic.config import Config
        base_dir = Path(__file__).resolve().parent.parent
        alembic_ini = base_dir / "alembic.ini"
        if not alembic_ini.exists():
            logging.warning("alembic.ini not found; skipping migrations")
            return
        cfg = Config(str(alembic_ini))
        cfg.set_main_option("script_location", str(base_dir / "alembic"))
        command.upgrade(cfg, "head")
        log_event("migrations_applied", revision="head")
    except Exception:
        logging.exception("Failed to run migrations on startup")


def _check_configuration():
    if not settings.database_url:
        raise RuntimeError("DATABASE_URL is required")
    if not settings.secret_key:
        raise RuntimeError("SECRET_KEY is required")
    if settings.email_enabled and (not settings.smtp_host or not settings.smtp_sender):
        log_warning("email_disabled_missing_smtp", smtp_host=settings.smtp_host, smtp_sender=settings.smtp_sender)
        settings.email_enabled = False


def _run_cleanup_once() -> None:
    """Drop expired reset tokens, stale recommendations and old read notifications."""
    now = datetime.now(timezone.utc)
    db = SessionLocal()
    try:
        expired_tokens = (
            db.query(models.PasswordResetToken)
            .filter((models.PasswordResetToken.used.is_(True)) | (models.PasswordResetToken.expires_at < now))
            .delete(synchronize_session=False)
        )
        db.commit()
        stale_recommendations = purge_stale_recommendations(db)
        old_notifications = purge_old_notifications(db)
        log_event(
            "cleanup_completed",
            expired_tokens=expired_tokens,
            stale_recommendations=stale_recommendations,
            old_notifications=old_notifications,
        )
    except Exception as exc:  # noqa: BLE001
        db.rollback()
        log_warning("cleanup_failed", error=str(exc))
    finally:
        db.close()


async def _cleanup_loop() -> None:
    while True:
        _run_cleanup_once()
        await asyncio.sleep(max(60, settings.cleanup_interval_seconds))


@asynccontextmanager
async def lifespan(_app: FastAPI):
    _check_configuration()
    if settings.auto_run_migrations:
        _run_migrations()
    elif settings.auto_create_tables:
        models.Base.metadata.create_all(bind=engine)

    cleanup_task = asyncio.create_task(_cleanup_loop()) if settings.background_cleanup_enabled else None
    try:
        yield
    finally:
        if cleanup_task is not None:
            cleanup_task.cancel()
            with suppress(asyncio.CancelledError):
                await cleanup_task


app = FastAPI(title="Event Review API", version="1.0.0", lifespan=lifespan)

app.add_middleware(RequestIdMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins or [],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _error_response(status_code: int, code: str, message: str, headers: dict | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "error": {"code": code, "message": message, "status": status_code},
            "detail": message,
        },
        headers=headers,
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    message = exc.detail if isinstance(exc.detail, str) else "Error"
    return _error_response(exc.status_code, f"http_{exc.status_code}", message, getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"{location}: {first.get('msg')}" if location else str(first.get("msg") or "Invalid request")
    return _error_response(status.HTTP_422_UNPROCESSABLE_ENTITY, "validation_error", message)


@app.exception_handler(ListingQueryError)
async def listing_query_exception_handler(request: Request, exc: ListingQueryError):
    return _error_response(status.HTTP_400_BAD_REQUEST, "http_400", str(exc))


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logging.getLogger("eventreview").error("unhandled_exception path=%s", request.url.path, exc_info=exc)
    return _error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "internal_error", "An unexpected error occurred.")


_RATE_LIMIT_STORE: dict[str, list[float]] = {}


def _enforce_rate_limit(
    action: str,
    request: Request | None = None,
    limit: int | None = None,
    window_seconds: int | None = None,
    identifier: str | None = None,
) -> None:
    limit = limit or settings.auth_rate_limit
    window_seconds = window_seconds or settings.auth_rate_window_seconds
    now = time.time()
    identity = identifier or (request.client.host if request and request.client else "unknown")
    key = f"{action}:{identity}"
    entries = [ts for ts in _RATE_LIMIT_STORE.get(key, []) if now - ts < window_seconds]
    if len(entries) >= limit:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many requests. Please try again shortly.",
        )
    entries.append(now)
    _RATE_LIMIT_STORE[key] = entries


def _normalize_dt(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize datetimes to timezone-aware UTC instances."""
    if not value:
        return value
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _format_ics_dt(value: Optional[datetime]) -> str:
    value = _normalize_dt(value)
    if not value:
        return ""
    return value.strftime("%Y%m%dT%H%M%SZ")


def _ics_escape(value: str | None) -> str:
    return (value or "").replace("\\", "\\\\").replace(";", "\\;").replace(",", "\\,").replace("\n", "\\n")


def _event_to_ics(event: models.Event) -> str:
    lines = [
        "BEGIN:VEVENT",
        f"UID:event-{event.id}@eventreview",
        f"DTSTAMP:{_format_ics_dt(datetime.now(timezone.utc))}",
        f"DTSTART:{_format_ics_dt(event.start_time)}",
        f"SUMMARY:{_ics_escape(event.title)}",
        f"DESCRIPTION:{_ics_escape(event.description)}",
        f"LOCATION:{_ics_escape(event.location)}",
        "END:VEVENT",
    ]
    return "\r\n".join(lines)


def _ok(data=None, message: str | None = None, count: int | None = None) -> dict:  # noqa: ANN001
    if count is None and isinstance(data, list):
        count = len(data)
    return {"success": True, "message": message, "count": count, "data": data}


def _page(items: list, total: int, pagination: Pagination) -> dict:
    return {
        "items": items,
        "total": total,
        "page": pagination.page,
        "page_size": pagination.page_size,
        "total_pages": pagination.total_pages(total),
    }


def _serialize_event(event: models.Event) -> schemas.EventResponse:
    return schemas.EventResponse(
        id=event.id,
        title=event.title,
        description=event.description,
        start_time=_normalize_dt(event.start_time),
        location=event.location,
        cover_url=event.cover_url,
        organizer_id=event.organizer_id,
        organizer_name=event.organizer.username if event.organizer else None,
        status=event.status,
        avg_rating=float(event.avg_rating or 0),
        categories=[schemas.CategoryRef(id=c.id, name=c.name) for c in event.categories],
        created_at=_normalize_dt(event.created_at),
    )


def _serialize_review(review: models.Review) -> schemas.ReviewResponse:
    return schemas.ReviewResponse(
        id=review.id,
        user_id=review.user_id,
        username=review.user.username if review.user else None,
        event_id=review.event_id,
        event_title=review.event.title if review.event else None,
        rating=review.rating,
        content=review.content,
        sentiment_score=review.sentiment_score,
        sentiment_category=review.sentiment_category,
        created_at=_normalize_dt(review.created_at),
        updated_at=_normalize_dt(review.updated_at),
    )


def _serialize_calendar_entry(entry: models.CalendarEntry) -> schemas.CalendarEntryResponse:
    return schemas.CalendarEntryResponse(
        id=entry.id,
        event_id=entry.event_id,
        reminder_settings=schemas.ReminderSettings(
            **{**models.DEFAULT_REMINDER_SETTINGS, **(entry.reminder_settings or {})}
        ),
        is_synced=bool(entry.is_synced),
        created_at=_normalize_dt(entry.created_at),
        event=_serialize_event(entry.event),
    )


def _serialize_recommendation(rec: models.Recommendation, event: models.Event) -> schemas.RecommendationResponse:
    return schemas.RecommendationResponse(
        id=rec.id,
        event_id=rec.event_id,
        score=float(rec.score),
        reason=rec.reason,
        created_at=_normalize_dt(rec.created_at),
        updated_at=_normalize_dt(rec.updated_at),
        event=_serialize_event(event),
    )


def _events_query(db: Session):
    return db.query(models.Event).options(
        selectinload(models.Event.categories),
        selectinload(models.Event.organizer),
    )


def _get_event_or_404(db: Session, event_id: int) -> models.Event:
    event = _events_query(db).filter(models.Event.id == event_id).first()
    if not event:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Event not found")
    return event


def _get_category_or_404(db: Session, category_id: int) -> models.Category:
    category = db.query(models.Category).filter(models.Category.id == category_id).first()
    if not category:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Category not found")
    return category


def _load_categories(db: Session, category_ids: list[int]) -> list[models.Category]:
    wanted = sorted(set(category_ids))
    if not wanted:
        return []
    categories = db.query(models.Category).filter(models.Category.id.in_(wanted)).order_by(models.Category.id).all()
    missing = sorted(set(wanted) - {c.id for c in categories})
    if missing:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unknown category ids: {', '.join(str(m) for m in missing)}",
        )
    return categories


def _recompute_avg_rating(db: Session, event: models.Event) -> float:
    db.flush()
    average = db.query(func.avg(models.Review.rating)).filter(models.Review.event_id == event.id).scalar()
    event.avg_rating = round(float(average), 2) if average is not None else 0.0
    db.add(event)
    return event.avg_rating


def _category_counts_subquery(db: Session):
    link = models.event_categories
    return (
        db.query(link.c.category_id, func.count(link.c.event_id).label("event_count"))
        .group_by(link.c.category_id)
        .subquery()
    )


def _categories_with_counts_query(db: Session):
    counts = _category_counts_subquery(db)
    query = db.query(models.Category, func.coalesce(counts.c.event_count, 0).label("event_count")).outerjoin(
        counts, models.Category.id == counts.c.category_id
    )
    return query, counts


def _serialize_category(category: models.Category, event_count: int) -> schemas.CategoryResponse:
    return schemas.CategoryResponse(
        id=category.id,
        name=category.name,
        description=category.description,
        created_at=_normalize_dt(category.created_at),
        event_count=int(event_count or 0),
    )


@app.get("/")
def read_root():
    return {"message": "Hello from Event Review API!"}


@app.get("/api/health")
def health_check(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
    except Exception as exc:  # noqa: BLE001
        log_warning("health_check_failed", error=str(exc))
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Database unavailable")
    return {"status": "ok", "database": "ok"}


# --- auth -----------------------------------------------------------------


@app.post("/register", response_model=schemas.Token)
def register(user: schemas.UserRegister, request: Request, db: Session = Depends(get_db)):
    _enforce_rate_limit("register", request=request, identifier=user.email.lower())
    existing = (
        db.query(models.User)
        .filter((func.lower(models.User.email) == user.email.lower()) | (models.User.username == user.username))
        .first()
    )
    if existing:
        raise HTTPException(status_code=400, detail="Username or email already in use")

    new_user = models.User(
        username=user.username,
        email=user.email.lower(),
        password_hash=auth.get_password_hash(user.password),
        role=models.UserRole.user,
        is_active=True,
    )
    db.add(new_user)
    db.commit()
    db.refresh(new_user)
    log_event("user_registered", user_id=new_user.id, username=new_user.username)
    return auth.issue_tokens(new_user)


@app.post("/login", response_model=schemas.Token)
def login(user_credentials: schemas.UserLogin, request: Request, db: Session = Depends(get_db)):
    _enforce_rate_limit("login", request=request, identifier=user_credentials.email.lower())
    user = db.query(models.User).filter(func.lower(models.User.email) == user_credentials.email.lower()).first()
    if not user or not auth.verify_password(user_credentials.password, user.password_hash):
        log_warning("login_failed", email=user_credentials.email)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if user.is_active is False:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account is deactivated.")
    log_event("login_success", user_id=user.id, role=user.role.value)
    return auth.issue_tokens(user)


@app.post("/refresh", response_model=schemas.Token)
def refresh_token(payload: schemas.RefreshRequest, db: Session = Depends(get_db)):
    return auth.issue_tokens(auth.user_from_refresh_token(db, payload.refresh_token))


@app.get("/me", response_model=schemas.UserResponse)
def get_me(current_user: models.User = Depends(auth.get_current_user)):
    return current_user


@app.post("/password/forgot")
def password_forgot(
    payload: schemas.PasswordResetRequest,
    background_tasks: BackgroundTasks,
    request: Request,
    db: Session = Depends(get_db),
):
    _enforce_rate_limit("password_forgot", request=request, identifier=payload.email.lower(), limit=5, window_seconds=300)
    user = db.query(models.User).filter(func.lower(models.User.email) == payload.email.lower()).first()
    if user:
        db.query(models.PasswordResetToken).filter(
            models.PasswordResetToken.user_id == user.id, models.PasswordResetToken.used.is_(False)
        ).update({"used": True})
        token = secrets.token_urlsafe(32)
        expires_at = datetime.now(timezone.utc) + timedelta(minutes=settings.password_reset_token_minutes)
        db.add(models.PasswordResetToken(user_id=user.id, token=token, expires_at=expires_at, used=False))
        db.commit()
        link = f"{settings.frontend_url.rstrip('/')}/reset-password?token={token}"
        send_email_async(
            background_tasks,
            db,
            user.email,
            render_password_reset_email(user, link),
            context={"user_id": user.id},
        )
        log_event("password_reset_requested", user_id=user.id)
    return {"status": "ok"}


@app.post("/password/reset")
def password_reset(payload: schemas.PasswordResetConfirm, request: Request, db: Session = Depends(get_db)):
    _enforce_rate_limit("password_reset", request=request, limit=10, window_seconds=300)
    token_row = (
        db.query(models.PasswordResetToken)
        .filter(models.PasswordResetToken.token == payload.token, models.PasswordResetToken.used.is_(False))
        .first()
    )
    expires_at = _normalize_dt(token_row.expires_at) if token_row else None
    if not token_row or (expires_at and expires_at < datetime.now(timezone.utc)):
        raise HTTPException(status_code=400, detail="Invalid or expired token.")

    user = db.query(models.User).filter(models.User.id == token_row.user_id).first()
    if not user:
        raise HTTPException(status_code=400, detail="Invalid or expired token.")

    user.password_hash = auth.get_password_hash(payload.new_password)
    token_row.used = True
    db.add(user)
    db.add(token_row)
    db.commit()
    log_event("password_reset", user_id=user.id)
    return {"status": "password_reset"}


# --- users ----------------------------------------------------------------


@app.put("/api/users/me", response_model=schemas.ApiResponse[schemas.UserResponse])
def update_profile(
    payload: schemas.UserUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user),
):
    changes = payload.model_dump(exclude_unset=True)
    changes = {key: value for key, value in changes.items() if value is not None or key == "bio"}
    if not changes:
        raise HTTPException(status_code=400, detail="No fields to update")

    username = changes.get("username")
    email = changes.get("email")
    if username or email:
        conflict = db.query(models.User).filter(models.User.id != current_user.id)
        clauses = []
        if username:
            clauses.append(models.User.username == username)
        if email:
            clauses.append(func.lower(models.User.email) == str(email).lower())
        if conflict.filter(or_(*clauses)).first():
            raise HTTPException(status_code=400, detail="Username or email already in use")

    if username:
        current_user.username = username
    if email:
        current_user.email = str(email).lower()
    if "bio" in changes:
        current_user.bio = changes["bio"]
    if changes.get("profile_pic") is not None:
        current_user.profile_pic = str(changes["profile_pic"])
    db.add(current_user)
    db.commit()
    db.refresh(current_user)
    log_event("profile_updated", user_id=current_user.id, fields=",".join(sorted(changes)))
    return _ok(schemas.UserResponse.model_validate(current_user), message="Profile updated successfully")


@app.put("/api/users/me/password", response_model=schemas.ApiResponse[None])
def change_password(
    payload: schemas.PasswordChange,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user),
):
    if not auth.verify_password(payload.current_password, current_user.password_hash):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Current password is incorrect")
    current_user.password_hash = auth.get_password_hash(payload.new_password)
    db.add(current_user)
    db.commit()
    log_event("password_changed", user_id=current_user.id)
    return _ok(message="Password updated successfully")


@app.delete("/api/users/me", response_model=schemas.ApiResponse[None])
def delete_account(
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user),
):
    user_id = current_user.id
    db.delete(current_user)
    db.commit()
    log_event("account_deleted", user_id=user_id)
    return _ok(message="Account deleted successfully")


@app.get("/api/users/{user_id}", response_model=schemas.ApiResponse[schemas.PublicUserResponse])
def get_public_profile(user_id: int, db: Session = Depends(get_db)):
    user = db.query(models.User).filter(models.User.id == user_id, models.User.is_active.is_(True)).first()
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return _ok(schemas.PublicUserResponse.model_validate(user))


@app.get("/api/admin/users", response_model=schemas.ApiResponse[schemas.Page[schemas.UserResponse]])
def admin_list_users(
    search: Optional[str] = None,
    role: Optional[models.UserRole] = None,
    is_active: Optional[bool] = None,
    page: int = 1,
    page_size: int = 20,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.require_admin),
):
    pagination = Pagination(page=page, page_size=page_size)
    query = apply_filters(db.query(models.User), UserFilter(search=search, role=role, is_active=is_active).predicates())
    total = query.count()
    users = pagination.apply(query.order_by(models.User.created_at.desc(), models.User.id.desc())).all()
    items = [schemas.UserResponse.model_validate(u) for u in users]
    return _ok(_page(items, total, pagination), count=len(items))


@app.patch("/api/admin/users/{user_id}", response_model=schemas.ApiResponse[schemas.UserResponse])
def admin_update_user(
    user_id: int,
    payload: schemas.AdminUserUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.require_admin),
):
    user = db.query(models.User).filter(models.User.id == user_id).first()
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    if payload.role is None and payload.is_active is None:
        raise HTTPException(status_code=400, detail="No fields to update")
    if user.id == current_user.id and (
        (payload.role is not None and payload.role != models.UserRole.admin) or payload.is_active is False
    ):
        raise HTTPException(status_code=400, detail="You cannot demote or deactivate your own account")

    if payload.role is not None:
        user.role = payload.role
    if payload.is_active is not None:
        user.is_active = payload.is_active
    db.add(user)
    db.commit()
    db.refresh(user)
    log_event("admin_user_updated", actor_id=current_user.id, user_id=user.id, role=user.role.value, is_active=user.is_active)
    return _ok(schemas.UserResponse.model_validate(user), message="User updated successfully")


@app.delete("/api/admin/users/{user_id}", response_model=schemas.ApiResponse[None])
def admin_delete_user(
    user_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.require_admin),
):
    if user_id == current_user.id:
        raise HTTPException(status_code=400, detail="Use the account endpoint to delete your own account")
    user = db.query(models.User).filter(models.User.id == user_id).first()
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    db.delete(user)
    db.commit()
    log_event("admin_user_deleted", actor_id=current_user.id, user_id=user_id)
    return _ok(message="User deleted successfully")


# --- events ---------------------------------------------------------------


@app.get("/api/events", response_model=schemas.ApiResponse[schemas.Page[schemas.EventResponse]])
def get_events(
    category_id: Optional[int] = None,
    status_filter: Optional[str] = Query(None, alias="status"),
    organizer_id: Optional[int] = None,
    search: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    upcoming_only: bool = False,
    sort_by: Optional[str] = None,
    sort_dir: Optional[str] = None,
    page: int = 1,
    page_size: int = 10,
    db: Session = Depends(get_db),
):
    pagination = Pagination(page=page, page_size=page_size)
    event_filter = EventFilter(
        category_id=category_id,
        status=status_filter,
        organizer_id=organizer_id,
        search=search,
        start_date=start_date,
        end_date=end_date,
        upcoming_only=upcoming_only,
    )
    query = apply_filters(_events_query(db), event_filter.predicates())
    total = query.count()
    events = pagination.apply(query.order_by(*event_ordering(sort_by, sort_dir))).all()
    items = [_serialize_event(event) for event in events]
    return _ok(_page(items, total, pagination), count=len(items))


@app.get("/api/events/featured", response_model=schemas.ApiResponse[List[schemas.EventResponse]])
def get_featured_events(limit: int = Query(6, ge=1, le=50), db: Session = Depends(get_db)):
    events = (
        _events_query(db)
        .filter(models.Event.status == "upcoming", models.Event.start_time >= start_of_day_utc())
        .order_by(models.Event.avg_rating.desc(), models.Event.start_time.asc(), models.Event.id.asc())
        .limit(limit)
        .all()
    )
    return _ok([_serialize_event(event) for event in events])


@app.get("/api/events/{event_id}", response_model=schemas.ApiResponse[schemas.EventDetailResponse])
def get_event(
    event_id: int,
    db: Session = Depends(get_db),
    current_user: Optional[models.User] = Depends(auth.get_optional_user),
):
    event = _get_event_or_404(db, event_id)
    review_count, review_avg = (
        db.query(func.count(models.Review.id), func.avg(models.Review.rating))
        .filter(models.Review.event_id == event.id)
        .one()
    )
    in_calendar = False
    if current_user is not None:
        in_calendar = (
            db.query(models.CalendarEntry.id)
            .filter(models.CalendarEntry.event_id == event.id, models.CalendarEntry.user_id == current_user.id)
            .first()
            is not None
        )
    detail = schemas.EventDetailResponse(
        **_serialize_event(event).model_dump(),
        review_stats=schemas.ReviewStats(
            count=int(review_count or 0),
            average_rating=round(float(review_avg), 2) if review_avg is not None else 0.0,
        ),
        in_calendar=in_calendar,
        is_owner=bool(current_user and current_user.id == event.organizer_id),
    )
    return _ok(detail)


@app.post(
    "/api/events",
    response_model=schemas.ApiResponse[schemas.EventResponse],
    status_code=status.HTTP_201_CREATED,
)
def create_event(
    payload: schemas.EventCreate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user),
):
    categories = _load_categories(db, payload.category_ids)
    event = models.Event(
        title=payload.title.strip(),
        description=payload.description,
        start_time=_normalize_dt(payload.start_time),
        location=payload.location,
        cover_url=str(payload.cover_url) if payload.cover_url else None,
        organizer_id=current_user.id,
        status=payload.status,
        avg_rating=0.0,
    )
    event.categories = categories
    db.add(event)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        log_warning("event_create_failed", organizer_id=current_user.id)
        raise HTTPException(status_code=400, detail="Could not create event")
    log_event("event_created", event_id=event.id, organizer_id=current_user.id, categories=len(categories))
    return _ok(_serialize_event(_get_event_or_404(db, event.id)), message="Event created successfully")


@app.put("/api/events/{event_id}", response_model=schemas.ApiResponse[schemas.EventResponse])
def update_event(
    event_id: int,
    payload: schemas.EventUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user),
):
    event = _get_event_or_404(db, event_id)
    auth.ensure_owner_or_admin(current_user, event.organizer_id, "update this event")

    changes = payload.model_dump(exclude_unset=True)
    if not changes:
        raise HTTPException(status_code=400, detail="No fields to update")

    if payload.category_ids is not None:
        event.categories = _load_categories(db, payload.category_ids)
    if payload.title is not None:
        event.title = payload.title.strip()
    if "description" in changes:
        event.description = payload.description
    if payload.start_time is not None:
        event.start_time = _normalize_dt(payload.start_time)
    if "location" in changes:
        event.location = payload.location
    if "cover_url" in changes:
        event.cover_url = str(payload.cover_url) if payload.cover_url else None
    if payload.status is not None:
        event.status = payload.status

    db.add(event)
    notify_event_attendees(db, event, f'The event "{event.title}" has been updated')
    db.commit()
    log_event("event_updated", event_id=event.id, actor_id=current_user.id, fields=",".join(sorted(changes)))
    return _ok(_serialize_event(_get_event_or_404(db, event.id)), message="Event updated successfully")


@app.put("/api/events/{event_id}/status", response_model=schemas.ApiResponse[schemas.EventResponse])
def update_event_status(
    event_id: int,
    payload: schemas.EventStatusUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user),
):
    event = _get_event_or_404(db, event_id)
    auth.ensure_owner_or_admin(current_user, event.organizer_id, "update this event")
    previous = event.status
    event.status = payload.status
    db.add(event)
    if previous != payload.status:
        notify_event_attendees(db, event, f'The event "{event.title}" is now {payload.status}')
    db.commit()
    log_event("event_status_updated", event_id=event.id, previous=previous, status=payload.status)
    return _ok(_serialize_event(event), message="Event status updated successfully")


@app.delete("/api/events/{event_id}", response_model=schemas.ApiResponse[None])
def delete_event(
    event_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user),
):
    event = _get_event_or_404(db, event_id)
    auth.ensure_owner_or_admin(current_user, event.organizer_id, "delete this event")
    db.delete(event)
    db.commit()
    log_event("event_deleted", event_id=event_id, actor_id=current_user.id)
    return _ok(message="Event deleted successfully")


@app.get("/api/me/events/organized", response_model=schemas.ApiResponse[List[schemas.EventResponse]])
def organized_events(db: Session = Depends(get_db), current_user: models.User = Depends(auth.get_current_user)):
    events = (
        _events_query(db)
        .filter(models.Event.organizer_id == current_user.id)
        .order_by(models.Event.start_time.asc(), models.Event.id.asc())
        .all()
    )
    return _ok([_serialize_event(event) for event in events])


@app.get("/api/me/events/attending", response_model=schemas.ApiResponse[List[schemas.EventResponse]])
def attending_events(db: Session = Depends(get_db), current_user: models.User = Depends(auth.get_current_user)):
    events = (
        _events_query(db)
        .join(models.CalendarEntry, models.CalendarEntry.event_id == models.Event.id)
        .filter(models.CalendarEntry.user_id == current_user.id)
        .order_by(models.Event.start_time.asc(), models.Event.id.asc())
        .all()
    )
    return _ok([_serialize_event(event) for event in events])


# --- categories -----------------------------------------------------------


@app.get("/api/categories", response_model=schemas.ApiResponse[schemas.Page[schemas.CategoryResponse]])
def get_categories(
    search: Optional[str] = None,
    sort_by: Optional[str] = None,
    sort_dir: Optional[str] = None,
    page: int = 1,
    page_size: int = 50,
    db: Session = Depends(get_db),
):
    pagination = Pagination(page=page, page_size=page_size)
    query, _ = _categories_with_counts_query(db)
    query = apply_filters(query, CategoryFilter(search=search).predicates())
    total = query.count()
    rows = pagination.apply(query.order_by(*category_ordering(sort_by, sort_dir))).all()
    items = [_serialize_category(category, count) for category, count in rows]
    return _ok(_page(items, total, pagination), count=len(items))


@app.get("/api/categories/popular", response_model=schemas.ApiResponse[List[schemas.CategoryResponse]])
def get_popular_categories(limit: int = Query(5, ge=1, le=50), db: Session = Depends(get_db)):
    query, counts = _categories_with_counts_query(db)
    rows = (
        query.order_by(func.coalesce(counts.c.event_count, 0).desc(), models.Category.name.asc())
        .limit(limit)
        .all()
    )
    return _ok([_serialize_category(category, count) for category, count in rows])


@app.get("/api/categories/{category_id}", response_model=schemas.ApiResponse[schemas.CategoryResponse])
def get_category(category_id: int, db: Session = Depends(get_db)):
    query, _ = _categories_with_counts_query(db)
    row = query.filter(models.Category.id == category_id).first()
    if not row:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Category not found")
    return _ok(_serialize_category(*row))


@app.get(
    "/api/categories/{category_id}/events",
    response_model=schemas.ApiResponse[schemas.Page[schemas.EventResponse]],
)
def get_category_events(
    category_id: int,
    status_filter: Optional[str] = Query(None, alias="status"),
    page: int = 1,
    page_size: int = 10,
    db: Session = Depends(get_db),
):
    pagination = Pagination(page=page, page_size=page_size)
    _get_category_or_404(db, category_id)
    query = apply_filters(_events_query(db), EventFilter(category_id=category_id, status=status_filter).predicates())
    total = query.count()
    events = pagination.apply(query.order_by(*event_ordering("date", "desc"))).all()
    items = [_serialize_event(event) for event in events]
    return _ok(_page(items, total, pagination), count=len(items))


def _ensure_unique_category_name(db: Session, name: str, exclude_id: int | None = None) -> None:
    query = db.query(models.Category.id).filter(func.lower(models.Category.name) == name.strip().lower())
    if exclude_id is not None:
        query = query.filter(models.Category.id != exclude_id)
    if query.first():
        raise HTTPException(status_code=400, detail="Category already exists")


@app.post(
    "/api/categories",
    response_model=schemas.ApiResponse[schemas.CategoryResponse],
    status_code=status.HTTP_201_CREATED,
)
def create_category(
    payload: schemas.CategoryCreate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.require_admin),
):
    _ensure_unique_category_name(db, payload.name)
    category = models.Category(name=payload.name.strip(), description=payload.description)
    db.add(category)
    db.commit()
    db.refresh(category)
    log_event("category_created", category_id=category.id, actor_id=current_user.id)
    return _ok(_serialize_category(category, 0), message="Category created successfully")


@app.put("/api/categories/{category_id}", response_model=schemas.ApiResponse[schemas.CategoryResponse])
def update_category(
    category_id: int,
    payload: schemas.CategoryUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.require_admin),
):
    category = _get_category_or_404(db, category_id)
    changes = payload.model_dump(exclude_unset=True)
    if not changes:
        raise HTTPException(status_code=400, detail="No fields to update")
    if payload.name is not None:
        _ensure_unique_category_name(db, payload.name, exclude_id=category.id)
        category.name = payload.name.strip()
    if "description" in changes:
        category.description = payload.description
    db.add(category)
    db.commit()
    log_event("category_updated", category_id=category.id, actor_id=current_user.id)
    query, _ = _categories_with_counts_query(db)
    return _ok(_serialize_category(*query.filter(models.Category.id == category.id).one()), message="Category updated successfully")


@app.delete("/api/categories/{category_id}", response_model=schemas.ApiResponse[None])
def delete_category(
    category_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.require_admin),
):
    category = _get_category_or_404(db, category_id)
    db.delete(category)
    db.commit()
    log_event("category_deleted", category_id=category_id, actor_id=current_user.id)
    return _ok(message="Category deleted successfully")


# --- reviews --------------------------------------------------------------


def _reviews_query(db: Session):
    return db.query(models.Review).options(selectinload(models.Review.user), selectinload(models.Review.event))


def _get_review_or_404(db: Session, review_id: int) -> models.Review:
    review = _reviews_query(db).filter(models.Review.id == review_id).first()
    if not review:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Review not found")
    return review


def _paginated_reviews(db: Session, review_filter: ReviewFilter, sort: Optional[str], pagination: Pagination) -> dict:
    query = apply_filters(_reviews_query(db), review_filter.predicates())
    total = query.count()
    reviews = pagination.apply(query.order_by(*review_ordering(sort))).all()
    return _page([_serialize_review(r) for r in reviews], total, pagination)


@app.post(
    "/api/events/{event_id}/reviews",
    response_model=schemas.ApiResponse[schemas.ReviewResponse],
    status_code=status.HTTP_201_CREATED,
)
def create_review(
    event_id: int,
    payload: schemas.ReviewCreate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user),
):
    event = _get_event_or_404(db, event_id)
    existing = (
        db.query(models.Review.id)
        .filter(models.Review.event_id == event.id, models.Review.user_id == current_user.id)
        .first()
    )
    if existing:
        raise HTTPException(status_code=400, detail="You have already reviewed this event")

    review = models.Review(user_id=current_user.id, event_id=event.id, rating=payload.rating, content=payload.content)
    sentiment = apply_sentiment(review)
    db.add(review)
    try:
        _recompute_avg_rating(db, event)
        organizer = event.organizer
        notify_organizer = organizer is not None and organizer.id != current_user.id
        if notify_organizer:
            create_notification(
                db,
                organizer.id,
                f'Your event "{event.title}" received a new {payload.rating}-star review',
                "review",
                related_id=event.id,
            )
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=400, detail="You have already reviewed this event")

    log_event(
        "review_created",
        review_id=review.id,
        event_id=event.id,
        user_id=current_user.id,
        rating=payload.rating,
        sentiment=sentiment.category,
    )
    if notify_organizer and organizer.is_active:
        send_email_async(
            background_tasks,
            db,
            organizer.email,
            render_new_review_email(event, organizer, payload.rating),
            context={"notification": "new_review", "event_id": event.id},
        )
    return _ok(_serialize_review(_get_review_or_404(db, review.id)), message="Review created successfully")


@app.get(
    "/api/events/{event_id}/reviews",
    response_model=schemas.ApiResponse[schemas.Page[schemas.ReviewResponse]],
)
def get_event_reviews(
    event_id: int,
    rating: Optional[int] = Query(None, ge=1, le=5),
    sentiment: Optional[str] = None,
    sort: Optional[str] = None,
    page: int = 1,
    page_size: int = 10,
    db: Session = Depends(get_db),
):
    pagination = Pagination(page=page, page_size=page_size)
    _get_event_or_404(db, event_id)
    data = _paginated_reviews(db, ReviewFilter(event_id=event_id, rating=rating, sentiment=sentiment), sort, pagination)
    return _ok(data, count=len(data["items"]))


@app.get("/api/events/{event_id}/reviews/stats", response_model=schemas.ApiResponse[schemas.ReviewStatsResponse])
def get_event_review_stats(event_id: int, db: Session = Depends(get_db)):
    _get_event_or_404(db, event_id)
    rating_counts = {star: 0 for star in range(1, 6)}
    for rating, count in (
        db.query(models.Review.rating, func.count(models.Review.id))
        .filter(models.Review.event_id == event_id)
        .group_by(models.Review.rating)
        .all()
    ):
        rating_counts[int(rating)] = int(count)
    sentiment_counts = {"positive": 0, "neutral": 0, "negative": 0}
    for category, count in (
        db.query(models.Review.sentiment_category, func.count(models.Review.id))
        .filter(models.Review.event_id == event_id, models.Review.sentiment_category.is_not(None))
        .group_by(models.Review.sentiment_category)
        .all()
    ):
        sentiment_counts[category] = int(count)
    total = sum(rating_counts.values())
    average = sum(star * count for star, count in rating_counts.items()) / total if total else 0.0
    return _ok(
        schemas.ReviewStatsResponse(
            event_id=event_id,
            total=total,
            average_rating=round(average, 2),
            rating_counts=rating_counts,
            sentiment_counts=sentiment_counts,
        )
    )


@app.get(
    "/api/events/{event_id}/reviews/summary",
    response_model=schemas.ApiResponse[schemas.ReviewSummaryResponse],
)
def get_event_review_summary(event_id: int, db: Session = Depends(get_db)):
    _get_event_or_404(db, event_id)
    reviews = db.query(models.Review).filter(models.Review.event_id == event_id).all()
    summary = summarize_reviews(reviews)
    return _ok(
        schemas.ReviewSummaryResponse(
            event_id=event_id,
            review_count=summary.review_count,
            average_rating=summary.average_rating,
            sentiment_breakdown=summary.sentiment_breakdown,
            rating_distribution=summary.rating_distribution,
            summary=summary.summary,
        )
    )


@app.get("/api/reviews/{review_id}", response_model=schemas.ApiResponse[schemas.ReviewResponse])
def get_review(review_id: int, db: Session = Depends(get_db)):
    return _ok(_serialize_review(_get_review_or_404(db, review_id)))


@app.get("/api/me/reviews", response_model=schemas.ApiResponse[schemas.Page[schemas.ReviewResponse]])
def my_reviews(
    sort: Optional[str] = None,
    page: int = 1,
    page_size: int = 10,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user),
):
    pagination = Pagination(page=page, page_size=page_size)
    data = _paginated_reviews(db, ReviewFilter(user_id=current_user.id), sort, pagination)
    return _ok(data, count=len(data["items"]))


@app.put("/api/reviews/{review_id}", response_model=schemas.ApiResponse[schemas.ReviewResponse])
def update_review(
    review_id: int,
    payload: schemas.ReviewUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user),
):
    review = _get_review_or_404(db, review_id)
    auth.ensure_owner_or_admin(current_user, review.user_id, "update this review")
    if payload.rating is None and payload.content is None:
        raise HTTPException(status_code=400, detail="No fields to update")

    if payload.content is not None:
        review.content = payload.content
        apply_sentiment(review)
    if payload.rating is not None:
        review.rating = payload.rating
    db.add(review)
    _recompute_avg_rating(db, review.event)
    db.commit()
    log_event("review_updated", review_id=review.id, actor_id=current_user.id)
    return _ok(_serialize_review(_get_review_or_404(db, review.id)), message="Review updated successfully")


@app.delete("/api/reviews/{review_id}", response_model=schemas.ApiResponse[None])
def delete_review(
    review_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user),
):
    review = _get_review_or_404(db, review_id)
    auth.ensure_owner_or_admin(current_user, review.user_id, "delete this review")
    event = review.event
    db.delete(review)
    _recompute_avg_rating(db, event)
    db.commit()
    log_event("review_deleted", review_id=review_id, event_id=event.id, actor_id=current_user.id)
    return _ok(message="Review deleted successfully")


@app.get("/api/admin/reviews", response_model=schemas.ApiResponse[schemas.Page[schemas.ReviewResponse]])
def admin_list_reviews(
    event_id: Optional[int] = None,
    user_id: Optional[int] = None,
    rating: Optional[int] = Query(None, ge=1, le=5),
    sentiment: Optional[str] = None,
    sort: Optional[str] = None,
    page: int = 1,
    page_size: int = 20,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.require_admin),
):
    pagination = Pagination(page=page, page_size=page_size)
    review_filter = ReviewFilter(event_id=event_id, user_id=user_id, rating=rating, sentiment=sentiment)
    data = _paginated_reviews(db, review_filter, sort, pagination)
    return _ok(data, count=len(data["items"]))


def _run_or_enqueue(db: Session, job_type: str, payload: dict) -> dict:
    if settings.task_queue_enabled:
        job = enqueue_job(db, job_type, payload, dedupe_key="global")
        return {"job_id": int(job.id), "job_type": job.job_type, "status": job.status, "result": None}
    result = run_job(db, job_type, payload)
    log_event(f"{job_type}_completed", inline=True)
    return {"job_id": None, "job_type": job_type, "status": "succeeded", "result": result}


@app.post(
    "/api/admin/reviews/sentiment-backfill",
    response_model=schemas.ApiResponse[schemas.EnqueuedJobResponse],
)
def admin_backfill_review_sentiment(
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.require_admin),
):
    return _ok(_run_or_enqueue(db, JOB_TYPE_BACKFILL_REVIEW_SENTIMENT, {}))


# --- calendar -------------------------------------------------------------


def _calendar_query(db: Session, user_id: int):
    return (
        db.query(models.CalendarEntry)
        .join(models.Event, models.Event.id == models.CalendarEntry.event_id)
        .options(
            selectinload(models.CalendarEntry.event).selectinload(models.Event.categories),
            selectinload(models.CalendarEntry.event).selectinload(models.Event.organizer),
        )
        .filter(models.CalendarEntry.user_id == user_id)
    )


def _get_own_entry_or_404(db: Session, entry_id: int, user_id: int) -> models.CalendarEntry:
    entry = _calendar_query(db, user_id).filter(models.CalendarEntry.id == entry_id).first()
    if not entry:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Calendar entry not found")
    return entry


@app.get("/api/calendar", response_model=schemas.ApiResponse[List[schemas.CalendarEntryResponse]])
def get_calendar(db: Session = Depends(get_db), current_user: models.User = Depends(auth.get_current_user)):
    entries = (
        _calendar_query(db, current_user.id)
        .order_by(models.Event.start_time.asc(), models.CalendarEntry.id.asc())
        .all()
    )
    return _ok([_serialize_calendar_entry(entry) for entry in entries])


@app.get("/api/calendar/upcoming", response_model=schemas.ApiResponse[List[schemas.CalendarEntryResponse]])
def get_upcoming_calendar(
    days: int = Query(7, ge=1, le=365),
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user),
):
    now = datetime.now(timezone.utc)
    entries = (
        _calendar_query(db, current_user.id)
        .filter(models.Event.start_time >= now, models.Event.start_time <= now + timedelta(days=days))
        .order_by(models.Event.start_time.asc(), models.CalendarEntry.id.asc())
        .all()
    )
    return _ok([_serialize_calendar_entry(entry) for entry in entries])


@app.get("/api/calendar/export")
def export_calendar(db: Session = Depends(get_db), current_user: models.User = Depends(auth.get_current_user)):
    entries = _calendar_query(db, current_user.id).order_by(models.Event.start_time.asc()).all()
    body = "\r\n".join(
        ["BEGIN:VCALENDAR", "VERSION:2.0", "PRODID:-//Event Review//Calendar//EN"]
        + [_event_to_ics(entry.event) for entry in entries]
        + ["END:VCALENDAR"]
    )
    return Response(
        content=body + "\r\n",
        media_type="text/calendar",
        headers={"Content-Disposition": 'attachment; filename="calendar.ics"'},
    )


@app.post(
    "/api/calendar",
    response_model=schemas.ApiResponse[schemas.CalendarEntryResponse],
    status_code=status.HTTP_201_CREATED,
)
def add_to_calendar(
    payload: schemas.CalendarEntryCreate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user),
):
    event = _get_event_or_404(db, payload.event_id)
    existing = (
        db.query(models.CalendarEntry.id)
        .filter(models.CalendarEntry.user_id == current_user.id, models.CalendarEntry.event_id == event.id)
        .first()
    )
    if existing:
        raise HTTPException(status_code=400, detail="Event already in calendar")

    reminder = payload.reminder_settings.model_dump() if payload.reminder_settings else dict(models.DEFAULT_REMINDER_SETTINGS)
    entry = models.CalendarEntry(user_id=current_user.id, event_id=event.id, reminder_settings=reminder, is_synced=False)
    db.add(entry)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=400, detail="Event already in calendar")
    log_event("calendar_entry_added", entry_id=entry.id, event_id=event.id, user_id=current_user.id)
    return _ok(
        _serialize_calendar_entry(_get_own_entry_or_404(db, entry.id, current_user.id)),
        message="Event added to calendar",
    )


@app.put(
    "/api/calendar/{entry_id}/reminder",
    response_model=schemas.ApiResponse[schemas.CalendarEntryResponse],
)
def update_calendar_reminder(
    entry_id: int,
    payload: schemas.CalendarReminderUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user),
):
    entry = _get_own_entry_or_404(db, entry_id, current_user.id)
    entry.reminder_settings = payload.reminder_settings.model_dump()
    entry.reminder_sent_at = None
    db.add(entry)
    db.commit()
    log_event("calendar_reminder_updated", entry_id=entry.id, user_id=current_user.id)
    return _ok(_serialize_calendar_entry(entry), message="Reminder settings updated")


@app.put("/api/calendar/{entry_id}/sync", response_model=schemas.ApiResponse[schemas.CalendarEntryResponse])
def update_calendar_sync(
    entry_id: int,
    payload: schemas.CalendarSyncUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user),
):
    entry = _get_own_entry_or_404(db, entry_id, current_user.id)
    entry.is_synced = payload.is_synced
    db.add(entry)
    db.commit()
    return _ok(_serialize_calendar_entry(entry), message="Sync status updated")


@app.delete("/api/calendar/{entry_id}", response_model=schemas.ApiResponse[None])
def remove_from_calendar(
    entry_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user),
):
    entry = _get_own_entry_or_404(db, entry_id, current_user.id)
    db.delete(entry)
    db.commit()
    log_event("calendar_entry_removed", entry_id=entry_id, user_id=current_user.id)
    return _ok(message="Event removed from calendar")


# --- notifications --------------------------------------------------------


def _get_own_notification_or_404(db: Session, notification_id: int, user_id: int) -> models.Notification:
    notification = (
        db.query(models.Notification)
        .filter(models.Notification.id == notification_id, models.Notification.user_id == user_id)
        .first()
    )
    if not notification:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification not found")
    return notification


@app.get(
    "/api/notifications",
    response_model=schemas.ApiResponse[schemas.Page[schemas.NotificationResponse]],
)
def get_notifications(
    unread_only: bool = False,
    page: int = 1,
    page_size: int = 20,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user),
):
    pagination = Pagination(page=page, page_size=page_size)
    query = db.query(models.Notification).filter(models.Notification.user_id == current_user.id)
    if unread_only:
        query = query.filter(models.Notification.is_read.is_(False))
    total = query.count()
    rows = pagination.apply(
        query.order_by(models.Notification.created_at.desc(), models.Notification.id.desc())
    ).all()
    items = [schemas.NotificationResponse.model_validate(n) for n in rows]
    return _ok(_page(items, total, pagination), count=len(items))


@app.get("/api/notifications/unread-count", response_model=schemas.ApiResponse[schemas.UnreadCountResponse])
def get_unread_count(db: Session = Depends(get_db), current_user: models.User = Depends(auth.get_current_user)):
    count = (
        db.query(func.count(models.Notification.id))
        .filter(models.Notification.user_id == current_user.id, models.Notification.is_read.is_(False))
        .scalar()
    )
    return _ok(schemas.UnreadCountResponse(count=int(count or 0)))


@app.put("/api/notifications/read-all", response_model=schemas.ApiResponse[None])
def mark_all_notifications_read(
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user),
):
    updated = (
        db.query(models.Notification)
        .filter(models.Notification.user_id == current_user.id, models.Notification.is_read.is_(False))
        .update({"is_read": True}, synchronize_session=False)
    )
    db.commit()
    return _ok(message="All notifications marked as read", count=int(updated or 0))


@app.put("/api/notifications/{notification_id}/read", response_model=schemas.ApiResponse[schemas.NotificationResponse])
def mark_notification_read(
    notification_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user),
):
    notification = _get_own_notification_or_404(db, notification_id, current_user.id)
    notification.is_read = True
    db.add(notification)
    db.commit()
    db.refresh(notification)
    return _ok(schemas.NotificationResponse.model_validate(notification), message="Notification marked as read")


@app.delete("/api/notifications/read", response_model=schemas.ApiResponse[None])
def delete_read_notifications(
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user),
):
    deleted = (
        db.query(models.Notification)
        .filter(models.Notification.user_id == current_user.id, models.Notification.is_read.is_(True))
        .delete(synchronize_session=False)
    )
    db.commit()
    return _ok(message="Read notifications deleted", count=int(deleted or 0))


@app.delete("/api/notifications/{notification_id}", response_model=schemas.ApiResponse[None])
def delete_notification(
    notification_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user),
):
    notification = _get_own_notification_or_404(db, notification_id, current_user.id)
    db.delete(notification)
    db.commit()
    return _ok(message="Notification deleted")


@app.post(
    "/api/admin/notifications/system",
    response_model=schemas.ApiResponse[None],
    status_code=status.HTTP_201_CREATED,
)
def admin_send_system_notification(
    payload: schemas.SystemNotificationCreate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.require_admin),
):
    count = broadcast_system_notification(db, payload.content.strip())
    return _ok(message="System notification sent", count=count)


# --- recommendations ------------------------------------------------------


def _get_own_recommendation_or_404(db: Session, recommendation_id: int, user_id: int) -> models.Recommendation:
    rec = (
        db.query(models.Recommendation)
        .filter(models.Recommendation.id == recommendation_id, models.Recommendation.user_id == user_id)
        .first()
    )
    if not rec:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Recommendation not found")
    return rec


def _serialize_recommendation_rows(rows) -> list[schemas.RecommendationResponse]:  # noqa: ANN001
    return [_serialize_recommendation(rec, event) for rec, event in rows]


@app.get(
    "/api/recommendations",
    response_model=schemas.ApiResponse[schemas.Page[schemas.RecommendationResponse]],
)
def get_recommendations(
    page: int = 1,
    page_size: int = 20,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user),
):
    pagination = Pagination(page=page, page_size=page_size)
    rows, total = list_recommendations(db, current_user.id, pagination)
    items = _serialize_recommendation_rows(rows)
    return _ok(_page(items, total, pagination), count=len(items))


@app.get("/api/recommendations/top", response_model=schemas.ApiResponse[List[schemas.RecommendationResponse]])
def get_recommendations_top(
    limit: Optional[int] = Query(None, ge=1, le=50),
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user),
):
    rows = get_top_recommendations(db, current_user.id, limit=limit)
    return _ok(_serialize_recommendation_rows(rows))


@app.get("/api/recommendations/popular", response_model=schemas.ApiResponse[List[schemas.PopularEventResponse]])
def get_recommendations_popular(
    category_id: Optional[int] = None,
    limit: Optional[int] = Query(None, ge=1, le=50),
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user),
):
    if category_id is not None:
        _get_category_or_404(db, category_id)
    popular = get_popular_events(db, category_id=category_id, limit=limit)
    items = [
        schemas.PopularEventResponse(
            event_id=item.event_id,
            popularity_score=round(item.popularity_score, 4),
            review_count=item.review_count,
            calendar_count=item.calendar_count,
            event=_serialize_event(item.event),
        )
        for item in popular
    ]
    return _ok(items)


@app.get(
    "/api/recommendations/category/{category_id}",
    response_model=schemas.ApiResponse[schemas.Page[schemas.RecommendationResponse]],
)
def get_recommendations_by_category(
    category_id: int,
    page: int = 1,
    page_size: int = 20,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user),
):
    pagination = Pagination(page=page, page_size=page_size)
    _get_category_or_404(db, category_id)
    rows, total = list_recommendations(db, current_user.id, pagination, category_id=category_id)
    items = _serialize_recommendation_rows(rows)
    return _ok(_page(items, total, pagination), count=len(items))


@app.post(
    "/api/recommendations/generate",
    response_model=schemas.ApiResponse[List[schemas.GeneratedRecommendation]],
)
def generate_recommendations(
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user),
):
    result = generate_user_recommendations(db, current_user.id)
    if result.candidates == 0:
        return _ok([], message="No new events available for recommendations")
    items = [
        schemas.GeneratedRecommendation(event_id=item.event_id, score=item.score, reason=item.reason)
        for item in result.items
    ]
    message = f"Generated {result.succeeded} recommendations"
    if result.failed:
        message += f" ({result.failed} could not be saved)"
    return _ok(items, message=message)


@app.post("/api/recommendations/{recommendation_id}/feedback", response_model=schemas.ApiResponse[None])
def recommendation_feedback(
    recommendation_id: int,
    payload: schemas.RecommendationFeedbackCreate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user),
):
    feedback = (payload.feedback or "").strip().lower()
    if feedback not in models.FEEDBACK_VALUES:
        raise HTTPException(status_code=400, detail="Feedback must be 'relevant' or 'not_relevant'")
    rec = _get_own_recommendation_or_404(db, recommendation_id, current_user.id)
    db.add(models.RecommendationFeedback(recommendation_id=rec.id, user_id=current_user.id, feedback=feedback))
    db.commit()
    log_event("recommendation_feedback", recommendation_id=rec.id, user_id=current_user.id, feedback=feedback)
    return _ok(message="Feedback recorded successfully")


@app.delete("/api/recommendations/{recommendation_id}", response_model=schemas.ApiResponse[None])
def delete_recommendation(
    recommendation_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.get_current_user),
):
    rec = _get_own_recommendation_or_404(db, recommendation_id, current_user.id)
    db.delete(rec)
    db.commit()
    log_event("recommendation_deleted", recommendation_id=recommendation_id, user_id=current_user.id)
    return _ok(message="Recommendation deleted successfully")


@app.post(
    "/api/admin/recommendations/generate",
    response_model=schemas.ApiResponse[schemas.EnqueuedJobResponse],
)
def admin_generate_recommendations(
    db: Session = Depends(get_db),
    current_user: models.User = Depends(auth.require_admin),
):
    return _ok(_run_or_enqueue(db, JOB_TYPE_GENERATE_RECOMMENDATIONS, {}))
