from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from . import models
from .config import settings
from .filters import Pagination, start_of_day_utc
from .logging_utils import log_event, log_warning
from .recommender import (
    CalendarSignal,
    CandidateEvent,
    Recommender,
    RecommenderConfig,
    ReviewSignal,
    ScoredCandidate,
    candidate_from_row,
    popularity_score,
)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def default_recommender() -> Recommender:
    return Recommender(RecommenderConfig(score_jitter=settings.recommendation_score_jitter))


def _category_ids_by_event(db: Session, event_ids: Iterable[int]) -> dict[int, frozenset[int]]:
    ids = sorted({int(event_id) for event_id in event_ids})
    if not ids:
        return {}
    link = models.event_categories
    grouped: dict[int, set[int]] = {event_id: set() for event_id in ids}
    rows = db.query(link.c.event_id, link.c.category_id).filter(link.c.event_id.in_(ids)).all()
    for event_id, category_id in rows:
        grouped[int(event_id)].add(int(category_id))
    return {event_id: frozenset(categories) for event_id, categories in grouped.items()}


def fetch_review_signals(db: Session, user_id: int) -> list[ReviewSignal]:
    reviews = (
        db.query(models.Review.event_id, models.Review.rating, models.Review.content)
        .filter(models.Review.user_id == user_id)
        .order_by(models.Review.created_at.asc(), models.Review.id.asc())
        .all()
    )
    categories = _category_ids_by_event(db, (row.event_id for row in reviews))
    return [
        ReviewSignal(
            event_id=int(row.event_id),
            rating=int(row.rating),
            category_ids=categories.get(int(row.event_id), frozenset()),
            review_text=row.content,
        )
        for row in reviews
    ]


def fetch_calendar_signals(db: Session, user_id: int) -> list[CalendarSignal]:
    entries = (
        db.query(models.CalendarEntry.event_id)
        .filter(models.CalendarEntry.user_id == user_id)
        .order_by(models.CalendarEntry.created_at.asc(), models.CalendarEntry.id.asc())
        .all()
    )
    categories = _category_ids_by_event(db, (row.event_id for row in entries))
    return [
        CalendarSignal(event_id=int(row.event_id), category_ids=categories.get(int(row.event_id), frozenset()))
        for row in entries
    ]


def fetch_candidate_events(db: Session, user_id: int) -> list[CandidateEvent]:
    reviewed = select(models.Review.event_id).where(models.Review.user_id == user_id)
    calendared = select(models.CalendarEntry.event_id).where(models.CalendarEntry.user_id == user_id)
    events = (
        db.query(models.Event.id, models.Event.title, models.Event.description, models.Event.avg_rating)
        .filter(models.Event.start_time >= start_of_day_utc())
        .filter(models.Event.status == "upcoming")
        .filter(~models.Event.id.in_(reviewed))
        .filter(~models.Event.id.in_(calendared))
        .order_by(models.Event.start_time.asc(), models.Event.id.asc())
        .all()
    )
    categories = _category_ids_by_event(db, (row.id for row in events))
    return [
        candidate_from_row(
            event_id=row.id,
            title=row.title,
            description=row.description,
            avg_rating=row.avg_rating,
            category_ids=categories.get(int(row.id), frozenset()),
        )
        for row in events
    ]


def _write_recommendation(db: Session, user_id: int, event_id: int, score: float, reason: str) -> None:
    now = _now_utc()
    existing = (
        db.query(models.Recommendation)
        .filter(models.Recommendation.user_id == user_id, models.Recommendation.event_id == event_id)
        .first()
    )
    if existing is not None:
        existing.score = score
        existing.reason = reason
        existing.updated_at = now
        db.add(existing)
    else:
        db.add(
            models.Recommendation(
                user_id=user_id,
                event_id=event_id,
                score=score,
                reason=reason,
                created_at=now,
                updated_at=now,
            )
        )
    db.flush()


def upsert_recommendation(db: Session, user_id: int, event_id: int, score: float, reason: str) -> bool:
    """Insert or overwrite one (user, event) row inside its own savepoint."""
    try:
        with db.begin_nested():
            _write_recommendation(db, user_id, event_id, score, reason)
        return True
    except IntegrityError:
        # Another writer inserted the same pair first; overwrite it.
        try:
            with db.begin_nested():
                _write_recommendation(db, user_id, event_id, score, reason)
            return True
        except SQLAlchemyError as exc:
            log_warning("recommendation_upsert_failed", user_id=user_id, event_id=event_id, error=str(exc))
            return False
    except SQLAlchemyError as exc:
        log_warning("recommendation_upsert_failed", user_id=user_id, event_id=event_id, error=str(exc))
        return False


Upsert = Callable[[Session, int, int, float, str], bool]


@dataclass
class GenerationResult:
    items: list[ScoredCandidate] = field(default_factory=list)
    succeeded: int = 0
    failed: int = 0
    candidates: int = 0

    def as_dict(self) -> dict:
        return {"candidates": self.candidates, "succeeded": self.succeeded, "failed": self.failed}


def generate_recommendations(
    db: Session,
    user_id: int,
    *,
    recommender: Recommender | None = None,
    limit: int | None = None,
    upsert: Upsert | None = None,
) -> GenerationResult:
    recommender = recommender or default_recommender()
    upsert = upsert or upsert_recommendation
    limit = limit if limit is not None else settings.recommendation_generation_limit

    candidates = fetch_candidate_events(db, user_id)
    if not candidates:
        log_event("recommendations_generated", user_id=user_id, candidates=0, succeeded=0, failed=0)
        return GenerationResult()

    reviews = fetch_review_signals(db, user_id)
    calendar = fetch_calendar_signals(db, user_id)
    ranked = recommender.recommend(candidates, reviews, calendar, limit=limit)

    result = GenerationResult(candidates=len(candidates))
    for scored in ranked:
        if upsert(db, user_id, scored.event_id, scored.score, scored.reason):
            result.items.append(scored)
            result.succeeded += 1
        else:
            result.failed += 1
    db.commit()
    log_event(
        "recommendations_generated",
        user_id=user_id,
        candidates=result.candidates,
        succeeded=result.succeeded,
        failed=result.failed,
    )
    return result


def generate_for_all_users(db: Session, *, limit: int | None = None) -> dict[str, int]:
    tally = {"users": 0, "succeeded": 0, "failed": 0, "rows_persisted": 0, "rows_failed": 0}
    user_ids = [
        int(row[0])
        for row in db.query(models.User.id).filter(models.User.is_active.is_(True)).order_by(models.User.id).all()
    ]
    recommender = default_recommender()
    for user_id in user_ids:
        tally["users"] += 1
        try:
            result = generate_recommendations(db, user_id, recommender=recommender, limit=limit)
        except SQLAlchemyError as exc:
            db.rollback()
            tally["failed"] += 1
            log_warning("recommendations_generation_failed", user_id=user_id, error=str(exc))
            continue
        tally["succeeded"] += 1
        tally["rows_persisted"] += result.succeeded
        tally["rows_failed"] += result.failed
    return tally


def _visible_recommendations_query(db: Session, user_id: int):
    return (
        db.query(models.Recommendation, models.Event)
        .join(models.Event, models.Event.id == models.Recommendation.event_id)
        .filter(models.Recommendation.user_id == user_id)
        .filter(models.Event.status == "upcoming")
        .filter(models.Event.start_time >= start_of_day_utc())
    )


def _ordered(query):  # noqa: ANN001
    return query.order_by(
        models.Recommendation.score.desc(),
        models.Event.start_time.asc(),
        models.Recommendation.id.asc(),
    )


def get_top_recommendations(
    db: Session,
    user_id: int,
    limit: int | None = None,
) -> list[tuple[models.Recommendation, models.Event]]:
    limit = limit if limit is not None else settings.recommendation_top_limit
    return _ordered(_visible_recommendations_query(db, user_id)).limit(max(0, limit)).all()


def list_recommendations(
    db: Session,
    user_id: int,
    pagination: Pagination,
    *,
    category_id: int | None = None,
) -> tuple[list[tuple[models.Recommendation, models.Event]], int]:
    query = _visible_recommendations_query(db, user_id)
    if category_id is not None:
        query = query.filter(models.Event.categories.any(models.Category.id == category_id))
    total = query.count()
    rows = pagination.apply(_ordered(query)).all()
    return rows, total


@dataclass(frozen=True)
class PopularEvent:
    event: models.Event
    review_count: int
    calendar_count: int
    popularity_score: float

    @property
    def event_id(self) -> int:
        return int(self.event.id)


def fetch_popular_events(db: Session, category_id: int | None = None, limit: int = 10) -> list[PopularEvent]:
    reviews_subquery = (
        db.query(models.Review.event_id, func.count(models.Review.id).label("review_count"))
        .group_by(models.Review.event_id)
        .subquery()
    )
    calendar_subquery = (
        db.query(models.CalendarEntry.event_id, func.count(models.CalendarEntry.id).label("calendar_count"))
        .group_by(models.CalendarEntry.event_id)
        .subquery()
    )
    review_count = func.coalesce(reviews_subquery.c.review_count, 0)
    calendar_count = func.coalesce(calendar_subquery.c.calendar_count, 0)
    score = func.coalesce(models.Event.avg_rating, 0) * 0.5 + calendar_count * 0.3 + review_count * 0.2

    query = (
        db.query(models.Event, review_count.label("review_count"), calendar_count.label("calendar_count"))
        .outerjoin(reviews_subquery, models.Event.id == reviews_subquery.c.event_id)
        .outerjoin(calendar_subquery, models.Event.id == calendar_subquery.c.event_id)
        .filter(models.Event.status == "upcoming")
        .filter(models.Event.start_time >= start_of_day_utc())
    )
    if category_id is not None:
        query = query.filter(models.Event.categories.any(models.Category.id == category_id))
    rows = query.order_by(score.desc(), models.Event.start_time.asc(), models.Event.id.asc()).limit(max(0, limit)).all()
    return [
        PopularEvent(
            event=event,
            review_count=int(reviews or 0),
            calendar_count=int(calendars or 0),
            popularity_score=popularity_score(event.avg_rating, int(calendars or 0), int(reviews or 0)),
        )
        for event, reviews, calendars in rows
    ]


def get_popular_events(db: Session, category_id: int | None = None, limit: int | None = None) -> list[PopularEvent]:
    limit = limit if limit is not None else settings.popular_events_limit
    return fetch_popular_events(db, category_id=category_id, limit=limit)


def purge_stale_recommendations(db: Session, days: int | None = None) -> int:
    days = days if days is not None else settings.recommendation_retention_days
    cutoff = _now_utc() - timedelta(days=days)
    count = (
        db.query(models.Recommendation)
        .filter(models.Recommendation.updated_at < cutoff)
        .delete(synchronize_session=False)
    )
    db.commit()
    if count:
        log_event("recommendations_purged", count=count, retention_days=days)
    return int(count or 0)
