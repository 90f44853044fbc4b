from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from eventreview import models
from eventreview.sentiment import analyze_sentiment, backfill_review_sentiment, summarize_reviews


def test_positive_review_is_tagged_positive():
    result = analyze_sentiment("Great speakers and an amazing venue, would recommend!")
    assert result.category == "positive"
    assert result.score == pytest.approx(0.5 + 0.5 * 3 / 4)


def test_negative_review_is_tagged_negative():
    result = analyze_sentiment("Terrible sound. The worst queue I have seen.")
    assert result.category == "negative"
    assert result.score == pytest.approx(0.5 - 0.5 * 2 / 3)


def test_balanced_or_empty_text_is_neutral():
    assert analyze_sentiment("Good food, bad parking").category == "neutral"
    assert analyze_sentiment("").score == 0.5
    assert analyze_sentiment(None).category == "neutral"
    assert analyze_sentiment("   ").category == "neutral"


def test_lexicon_matches_whole_words_only():
    # "goodbye" and "badge" must not count as lexicon hits.
    assert analyze_sentiment("We said goodbye at the badge desk").category == "neutral"


def test_summary_counts_and_tone():
    reviews = [
        SimpleNamespace(rating=5, sentiment_category="positive"),
        SimpleNamespace(rating=4, sentiment_category="positive"),
        SimpleNamespace(rating=2, sentiment_category="negative"),
    ]
    summary = summarize_reviews(reviews)

    assert summary.review_count == 3
    assert summary.average_rating == pytest.approx(3.67)
    assert summary.sentiment_breakdown == {"positive": 2, "neutral": 0, "negative": 1}
    assert summary.rating_distribution == {1: 0, 2: 1, 3: 0, 4: 1, 5: 1}
    assert summary.summary == "3 reviews with an average rating of 3.67 out of 5; opinions are mostly positive."


def test_summary_for_no_reviews():
    summary = summarize_reviews([])
    assert summary.review_count == 0
    assert summary.average_rating == 0.0
    assert summary.summary == "No reviews yet."


def test_summary_mixed_and_untagged():
    mixed = summarize_reviews(
        [
            SimpleNamespace(rating=5, sentiment_category="positive"),
            SimpleNamespace(rating=1, sentiment_category="negative"),
        ]
    )
    assert mixed.summary.endswith("opinions are mixed.")

    untagged = summarize_reviews([SimpleNamespace(rating=4, sentiment_category=None)])
    assert untagged.summary == "1 review with an average rating of 4.00 out of 5; opinions have not been tagged yet."


def test_backfill_tags_untagged_reviews(helpers):
    db = helpers["db"]
    helpers["register_user"]("organizer")
    helpers["register_user"]("reader")
    organizer = helpers["user_by_username"]("organizer")
    reader = helpers["user_by_username"]("reader")

    event = models.Event(
        title="Backfill Night",
        start_time=datetime.now(timezone.utc) - timedelta(days=2),
        organizer_id=organizer.id,
        status="completed",
    )
    db.add(event)
    db.flush()
    db.add_all(
        [
            models.Review(user_id=reader.id, event_id=event.id, rating=5, content="Excellent and fantastic"),
            models.Review(
                user_id=organizer.id,
                event_id=event.id,
                rating=3,
                content="Fine",
                sentiment_score=0.5,
                sentiment_category="neutral",
            ),
        ]
    )
    db.commit()

    tally = backfill_review_sentiment(db)

    assert tally.as_dict() == {"total": 1, "succeeded": 1, "failed": 0, "failed_ids": []}
    tagged = db.query(models.Review).filter(models.Review.user_id == reader.id).one()
    assert tagged.sentiment_category == "positive"
    assert backfill_review_sentiment(db).total == 0
