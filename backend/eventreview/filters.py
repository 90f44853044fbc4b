"""Typed listing filters translated into SQLAlchemy predicates and orderings."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timezone

from sqlalchemy import func, or_

from . import models

MAX_PAGE_SIZE = 100


class ListingQueryError(ValueError):
    """Raised for out-of-range paging parameters; rendered as HTTP 400."""


@dataclass(frozen=True)
class Pagination:
    page: int = 1
    page_size: int = 10

    def __post_init__(self):
        if self.page < 1:
            raise ListingQueryError("Page must be at least 1.")
        if self.page_size < 1 or self.page_size > MAX_PAGE_SIZE:
            raise ListingQueryError(f"Page size must be between 1 and {MAX_PAGE_SIZE}.")

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size

    @property
    def limit(self) -> int:
        return self.page_size

    def total_pages(self, total: int) -> int:
        return (total + self.page_size - 1) // self.page_size

    def page_info(self, total: int) -> dict:
        pages = self.total_pages(total)
        return {
            "total": total,
            "page": self.page,
            "page_size": self.page_size,
            "total_pages": pages,
            "has_next": self.page < pages,
            "has_prev": self.page > 1,
        }

    def apply(self, query):  # noqa: ANN001
        return query.offset(self.offset).limit(self.limit)


def _like(value: str) -> str:
    escaped = value.strip().lower().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _contains(column, value: str):  # noqa: ANN001
    return func.lower(column).like(_like(value), escape="\\")


def _direction(value: str | None, default: str = "asc") -> str:
    normalized = (value or "").strip().lower()
    return normalized if normalized in {"asc", "desc"} else default


def start_of_day_utc(day: date | None = None) -> datetime:
    day = day or datetime.now(timezone.utc).date()
    return datetime.combine(day, time.min).replace(tzinfo=timezone.utc)


def end_of_day_utc(day: date) -> datetime:
    return datetime.combine(day, time.max).replace(tzinfo=timezone.utc)


EVENT_SORT_COLUMNS = {
    "date": models.Event.start_time,
    "title": models.Event.title,
    "avg_rating": models.Event.avg_rating,
    "created_at": models.Event.created_at,
}
DEFAULT_EVENT_SORT = "date"


@dataclass(frozen=True)
class EventFilter:
    category_id: int | None = None
    status: str | None = None
    organizer_id: int | None = None
    search: str | None = None
    start_date: date | None = None
    end_date: date | None = None
    upcoming_only: bool = False

    def predicates(self) -> list:
        clauses = []
        if self.category_id is not None:
            clauses.append(models.Event.categories.any(models.Category.id == self.category_id))
        if self.status:
            clauses.append(models.Event.status == self.status.strip().lower())
        if self.organizer_id is not None:
            clauses.append(models.Event.organizer_id == self.organizer_id)
        if self.search and self.search.strip():
            clauses.append(
                or_(
                    _contains(models.Event.title, self.search),
                    _contains(models.Event.description, self.search),
                    _contains(models.Event.location, self.search),
                )
            )
        if self.start_date:
            clauses.append(models.Event.start_time >= start_of_day_utc(self.start_date))
        if self.end_date:
            clauses.append(models.Event.start_time <= end_of_day_utc(self.end_date))
        if self.upcoming_only:
            clauses.append(models.Event.start_time >= start_of_day_utc())
        return clauses


def event_ordering(sort_by: str | None, sort_dir: str | None) -> list:
    key = (sort_by or "").strip().lower()
    column = EVENT_SORT_COLUMNS.get(key, EVENT_SORT_COLUMNS[DEFAULT_EVENT_SORT])
    if _direction(sort_dir) == "desc":
        return [column.desc(), models.Event.id.desc()]
    return [column.asc(), models.Event.id.asc()]


CATEGORY_SORT_COLUMNS = {
    "name": models.Category.name,
    "created_at": models.Category.created_at,
}
DEFAULT_CATEGORY_SORT = "name"


@dataclass(frozen=True)
class CategoryFilter:
    search: str | None = None

    def predicates(self) -> list:
        if not self.search or not self.search.strip():
            return []
        return [
            or_(
                _contains(models.Category.name, self.search),
                _contains(models.Category.description, self.search),
            )
        ]


def category_ordering(sort_by: str | None, sort_dir: str | None) -> list:
    key = (sort_by or "").strip().lower()
    column = CATEGORY_SORT_COLUMNS.get(key, CATEGORY_SORT_COLUMNS[DEFAULT_CATEGORY_SORT])
    if _direction(sort_dir) == "desc":
        return [column.desc(), models.Category.id.desc()]
    return [column.asc(), models.Category.id.asc()]


REVIEW_SORTS = {
    "newest": (models.Review.created_at.desc(), models.Review.id.desc()),
    "oldest": (models.Review.created_at.asc(), models.Review.id.asc()),
    "highest": (models.Review.rating.desc(), models.Review.created_at.desc(), models.Review.id.desc()),
    "lowest": (models.Review.rating.asc(), models.Review.created_at.desc(), models.Review.id.desc()),
}
DEFAULT_REVIEW_SORT = "newest"


@dataclass(frozen=True)
class ReviewFilter:
    event_id: int | None = None
    user_id: int | None = None
    rating: int | None = None
    sentiment: str | None = None

    def predicates(self) -> list:
        clauses = []
        if self.event_id is not None:
            clauses.append(models.Review.event_id == self.event_id)
        if self.user_id is not None:
            clauses.append(models.Review.user_id == self.user_id)
        if self.rating is not None:
            clauses.append(models.Review.rating == self.rating)
        if self.sentiment:
            clauses.append(models.Review.sentiment_category == self.sentiment.strip().lower())
        return clauses


def review_ordering(sort: str | None) -> list:
    key = (sort or "").strip().lower()
    return list(REVIEW_SORTS.get(key, REVIEW_SORTS[DEFAULT_REVIEW_SORT]))


@dataclass(frozen=True)
class UserFilter:
    search: str | None = None
    role: models.UserRole | None = None
    is_active: bool | None = None

    def predicates(self) -> list:
        clauses = []
        if self.search and self.search.strip():
            clauses.append(or_(_contains(models.User.username, self.search), _contains(models.User.email, self.search)))
        if self.role is not None:
            clauses.append(models.User.role == self.role)
        if self.is_active is not None:
            clauses.append(models.User.is_active.is_(self.is_active))
        return clauses


def apply_filters(query, predicates: list):  # noqa: ANN001
    for clause in predicates:
        query = query.filter(clause)
    return query
