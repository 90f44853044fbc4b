from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import models
from .logging_utils import log_event, log_warning


POSITIVE_WORDS = (
    "great",
    "amazing",
    "excellent",
    "good",
    "love",
    "best",
    "awesome",
    "enjoyed",
    "recommend",
    "fantastic",
    "wonderful",
)
NEGATIVE_WORDS = ("bad", "terrible", "awful", "poor", "hate", "worst", "disappointed", "waste", "horrible", "avoid")

_POSITIVE_PATTERN = re.compile(r"\b(?:" + "|".join(POSITIVE_WORDS) + r")\b", re.IGNORECASE)
_NEGATIVE_PATTERN = re.compile(r"\b(?:" + "|".join(NEGATIVE_WORDS) + r")\b", re.IGNORECASE)


@dataclass(frozen=True)
class SentimentResult:
    score: float
    category: str


NEUTRAL = SentimentResult(score=0.5, category="neutral")


def analyze_sentiment(text: str | None) -> SentimentResult:
    if not text or not text.strip():
        return NEUTRAL
    positives = len(_POSITIVE_PATTERN.findall(text))
    negatives = len(_NEGATIVE_PATTERN.findall(text))
    denominator = positives + negatives + 1
    if positives > negatives:
        return SentimentResult(score=0.5 + 0.5 * positives / denominator, category="positive")
    if negatives > positives:
        return SentimentResult(score=0.5 - 0.5 * negatives / denominator, category="negative")
    return NEUTRAL


class _RatedReview(Protocol):
    rating: int
    sentiment_category: str | None


@dataclass
class ReviewSummary:
    review_count: int
    average_rating: float
    sentiment_breakdown: dict[str, int]
    rating_distribution: dict[int, int]
    summary: str


def _summary_text(count: int, average: float, breakdown: dict[str, int]) -> str:
    if count == 0:
        return "No reviews yet."
    dominant = max(("positive", "neutral", "negative"), key=lambda key: breakdown.get(key, 0))
    if breakdown.get(dominant, 0) == 0:
        tone = "have not been tagged yet"
    elif breakdown[dominant] * 2 > count:
        tone = f"are mostly {dominant}"
    else:
        tone = "are mixed"
    noun = "review" if count == 1 else "reviews"
    return f"{count} {noun} with an average rating of {average:.2f} out of 5; opinions {tone}."


def summarize_reviews(reviews: Iterable[_RatedReview]) -> ReviewSummary:
    rows = list(reviews)
    breakdown = {"positive": 0, "neutral": 0, "negative": 0}
    distribution = {star: 0 for star in range(1, 6)}
    for review in rows:
        if review.sentiment_category in breakdown:
            breakdown[review.sentiment_category] += 1
        if review.rating in distribution:
            distribution[review.rating] += 1
    average = round(sum(r.rating for r in rows) / len(rows), 2) if rows else 0.0
    return ReviewSummary(
        review_count=len(rows),
        average_rating=average,
        sentiment_breakdown=breakdown,
        rating_distribution=distribution,
        summary=_summary_text(len(rows), average, breakdown),
    )


def apply_sentiment(review: models.Review) -> SentimentResult:
    result = analyze_sentiment(review.content)
    review.sentiment_score = result.score
    review.sentiment_category = result.category
    return result


@dataclass
class BackfillTally:
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    failed_ids: list[int] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {"total": self.total, "succeeded": self.succeeded, "failed": self.failed, "failed_ids": self.failed_ids}


def backfill_review_sentiment(db: Session, *, batch_size: int = 200) -> BackfillTally:
    """Tag every review that has no sentiment yet, one savepoint per review."""
    tally = BackfillTally()
    pending = (
        db.query(models.Review)
        .filter((models.Review.sentiment_category.is_(None)) | (models.Review.sentiment_score.is_(None)))
        .order_by(models.Review.id.asc())
        .limit(batch_size)
        .all()
    )
    for review in pending:
        tally.total += 1
        try:
            with db.begin_nested():
                apply_sentiment(review)
            tally.succeeded += 1
        except SQLAlchemyError as exc:
            tally.failed += 1
            tally.failed_ids.append(int(review.id))
            log_warning("review_sentiment_failed", review_id=review.id, error=str(exc))
    db.commit()
    log_event("review_sentiment_backfilled", total=tally.total, succeeded=tally.succeeded, failed=tally.failed)
    return tally
