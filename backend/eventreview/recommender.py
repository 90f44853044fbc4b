"""Preference profiling and candidate scoring for event recommendations.

Everything here is pure: signals come in as frozen dataclasses fetched by
`recommendation_store`, and scores come out. No database or settings access.
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Iterable, Sequence


REASON_HIGH = "highly matches your interests"
REASON_SIMILAR = "similar to events you've enjoyed"
REASON_INTERESTING = "you might find this interesting"
REASON_DIFFERENT = "offers something different from your usual preferences"

PROFILE_POSITIVE_KEYWORDS = ("great", "amazing", "excellent", "good", "love", "best", "awesome", "enjoyed")
PROFILE_NEGATIVE_KEYWORDS = ("bad", "terrible", "awful", "poor", "hate", "worst", "disappointed")


@dataclass(frozen=True)
class ReviewSignal:
    event_id: int
    rating: int
    category_ids: frozenset[int]
    review_text: str | None = None


@dataclass(frozen=True)
class CalendarSignal:
    event_id: int
    category_ids: frozenset[int]


@dataclass(frozen=True)
class CategoryAffinity:
    count: int
    cumulative_rating: float
    avg_rating: float


@dataclass(frozen=True)
class PreferenceProfile:
    categories: dict[int, CategoryAffinity]
    overall_avg_rating: float
    positive_keywords: frozenset[str]
    negative_keywords: frozenset[str]

    @property
    def is_cold_start(self) -> bool:
        return not self.categories and self.overall_avg_rating == 0


@dataclass(frozen=True)
class CandidateEvent:
    id: int
    title: str
    description: str | None
    avg_rating: float | None
    category_ids: frozenset[int]


@dataclass(frozen=True)
class ScoredCandidate:
    event: CandidateEvent
    score: float
    reason: str

    @property
    def event_id(self) -> int:
        return self.event.id


@dataclass(frozen=True)
class RecommenderConfig:
    category_weight: float = 0.4
    rating_weight: float = 0.3
    keyword_weight: float = 0.3
    keyword_step: float = 0.1
    # Calendar additions count as a mid-scale rating on the 1..5 review scale.
    implicit_interest_rating: float = 3.0
    max_rating: float = 5.0
    category_count_scale: float = 10.0
    positive_keywords: tuple[str, ...] = PROFILE_POSITIVE_KEYWORDS
    negative_keywords: tuple[str, ...] = PROFILE_NEGATIVE_KEYWORDS
    score_jitter: float = 0.0


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _as_float(value: float | int | str | None) -> float:
    try:
        return float(value) if value is not None else 0.0
    except (TypeError, ValueError):
        return 0.0


def reason_for(score: float) -> str:
    if score > 0.8:
        return REASON_HIGH
    if score > 0.6:
        return REASON_SIMILAR
    if score > 0.4:
        return REASON_INTERESTING
    return REASON_DIFFERENT


def popularity_score(avg_rating: float | None, calendar_count: int, review_count: int) -> float:
    return _as_float(avg_rating) * 0.5 + int(calendar_count or 0) * 0.3 + int(review_count or 0) * 0.2


def rank(scored: Iterable[ScoredCandidate], limit: int | None = None) -> list[ScoredCandidate]:
    # sorted() is stable with reverse=True, so equal scores keep their input order.
    ordered = sorted(scored, key=lambda item: item.score, reverse=True)
    if limit is not None:
        ordered = ordered[: max(0, limit)]
    return ordered


class Recommender:
    """Stateless scorer configured once with weights and lexicons.

    `rng` only matters when `config.score_jitter` is positive.
    """

    def __init__(self, config: RecommenderConfig | None = None, rng: random.Random | None = None):
        self.config = config or RecommenderConfig()
        self._rng = rng or random.Random()

    def build_profile(
        self,
        reviews: Sequence[ReviewSignal],
        calendar: Sequence[CalendarSignal] = (),
    ) -> PreferenceProfile:
        counts: dict[int, int] = {}
        totals: dict[int, float] = {}

        for review in reviews:
            for category_id in review.category_ids:
                counts[category_id] = counts.get(category_id, 0) + 1
                totals[category_id] = totals.get(category_id, 0.0) + float(review.rating)

        for entry in calendar:
            for category_id in entry.category_ids:
                counts[category_id] = counts.get(category_id, 0) + 1
                totals[category_id] = totals.get(category_id, 0.0) + self.config.implicit_interest_rating

        categories = {
            category_id: CategoryAffinity(
                count=count,
                cumulative_rating=totals[category_id],
                avg_rating=totals[category_id] / count,
            )
            for category_id, count in counts.items()
        }

        overall = sum(float(r.rating) for r in reviews) / len(reviews) if reviews else 0.0

        text = " ".join(r.review_text or "" for r in reviews).lower()
        positive = frozenset(word for word in self.config.positive_keywords if word in text)
        negative = frozenset(word for word in self.config.negative_keywords if word in text)

        return PreferenceProfile(
            categories=categories,
            overall_avg_rating=overall,
            positive_keywords=positive,
            negative_keywords=negative,
        )

    def category_component(self, event: CandidateEvent, profile: PreferenceProfile) -> float:
        if not event.category_ids:
            return 0.0
        total = 0.0
        for category_id in event.category_ids:
            affinity = profile.categories.get(category_id)
            if affinity is None:
                continue
            total += (affinity.avg_rating / self.config.max_rating) * (
                affinity.count / self.config.category_count_scale
            )
        return min(total, 1.0) / len(event.category_ids)

    def rating_component(self, event: CandidateEvent, profile: PreferenceProfile) -> float:
        diff = abs(_as_float(event.avg_rating) - profile.overall_avg_rating)
        return 1.0 - diff / self.config.max_rating

    def keyword_component(self, event: CandidateEvent, profile: PreferenceProfile) -> float:
        text = f"{event.title or ''} {event.description or ''}".lower()
        raw = 0.0
        for keyword in profile.positive_keywords:
            if keyword in text:
                raw += self.config.keyword_step
        for keyword in profile.negative_keywords:
            if keyword in text:
                raw -= self.config.keyword_step
        return (_clamp(raw, -1.0, 1.0) + 1.0) / 2.0

    def score(self, event: CandidateEvent, profile: PreferenceProfile) -> float:
        cfg = self.config
        value = (
            self.category_component(event, profile) * cfg.category_weight
            + self.rating_component(event, profile) * cfg.rating_weight
            + self.keyword_component(event, profile) * cfg.keyword_weight
        )
        return _clamp(value, 0.0, 1.0)

    def score_candidates(
        self,
        candidates: Iterable[CandidateEvent],
        profile: PreferenceProfile,
    ) -> list[ScoredCandidate]:
        scored: list[ScoredCandidate] = []
        for event in candidates:
            value = self.score(event, profile)
            if self.config.score_jitter > 0:
                value = _clamp(value + self._rng.random() * self.config.score_jitter, 0.0, 1.0)
            scored.append(ScoredCandidate(event=event, score=value, reason=reason_for(value)))
        return scored

    def recommend(
        self,
        candidates: Iterable[CandidateEvent],
        reviews: Sequence[ReviewSignal],
        calendar: Sequence[CalendarSignal] = (),
        *,
        limit: int | None = None,
    ) -> list[ScoredCandidate]:
        profile = self.build_profile(reviews, calendar)
        return rank(self.score_candidates(candidates, profile), limit=limit)


def candidate_from_row(
    *,
    event_id: int,
    title: str,
    description: str | None,
    avg_rating: float | int | str | None,
    category_ids: Iterable[int] = (),
) -> CandidateEvent:
    return CandidateEvent(
        id=int(event_id),
        title=title or "",
        description=description,
        avg_rating=_as_float(avg_rating),
        category_ids=frozenset(int(c) for c in category_ids),
    )
