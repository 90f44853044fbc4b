import random

import pytest

from eventreview.recommender import (
    REASON_DIFFERENT,
    REASON_HIGH,
    REASON_INTERESTING,
    REASON_SIMILAR,
    CalendarSignal,
    CandidateEvent,
    CategoryAffinity,
    PreferenceProfile,
    Recommender,
    RecommenderConfig,
    ReviewSignal,
    ScoredCandidate,
    candidate_from_row,
    popularity_score,
    rank,
    reason_for,
)


def _candidate(event_id: int, *, avg_rating=0.0, categories=(), title="Plain title", description=None):
    return CandidateEvent(
        id=event_id,
        title=title,
        description=description,
        avg_rating=avg_rating,
        category_ids=frozenset(categories),
    )


def _profile(categories=None, overall=0.0, positive=(), negative=()):
    return PreferenceProfile(
        categories=categories or {},
        overall_avg_rating=overall,
        positive_keywords=frozenset(positive),
        negative_keywords=frozenset(negative),
    )


def test_strong_category_match_scores_highly():
    recommender = Recommender()
    profile = _profile({1: CategoryAffinity(count=10, cumulative_rating=50.0, avg_rating=5.0)}, overall=4.5)
    event = _candidate(7, avg_rating=4.5, categories=[1])

    assert recommender.category_component(event, profile) == pytest.approx(1.0)
    assert recommender.rating_component(event, profile) == pytest.approx(1.0)
    assert recommender.keyword_component(event, profile) == pytest.approx(0.5)

    scored = recommender.score_candidates([event], profile)[0]
    assert scored.score == pytest.approx(0.85)
    assert scored.reason == REASON_HIGH


def test_cold_start_prefers_lower_rated_events():
    recommender = Recommender()
    profile = recommender.build_profile([], [])

    assert profile.is_cold_start
    assert profile.overall_avg_rating == 0
    assert profile.positive_keywords == frozenset()
    assert profile.negative_keywords == frozenset()

    top_rated = recommender.score_candidates([_candidate(1, avg_rating=5)], profile)[0]
    assert top_rated.score == pytest.approx(0.15)
    assert top_rated.reason == REASON_DIFFERENT

    unrated = recommender.score_candidates([_candidate(2, avg_rating=0)], profile)[0]
    assert unrated.score == pytest.approx(0.45)
    assert unrated.score > top_rated.score


def test_reason_thresholds_are_exclusive():
    assert reason_for(0.81) == REASON_HIGH
    assert reason_for(0.8) == REASON_SIMILAR
    assert reason_for(0.6) == REASON_INTERESTING
    assert reason_for(0.4) == REASON_DIFFERENT
    assert reason_for(0.0) == REASON_DIFFERENT


def test_reason_text():
    assert reason_for(0.85) == "highly matches your interests"
    assert reason_for(0.8) == "similar to events you've enjoyed"
    assert reason_for(0.5) == "you might find this interesting"
    assert reason_for(0.15) == "offers something different from your usual preferences"


def test_event_without_categories_has_no_category_component():
    recommender = Recommender()
    profile = _profile({1: CategoryAffinity(count=50, cumulative_rating=250.0, avg_rating=5.0)}, overall=3.0)
    assert recommender.category_component(_candidate(1, avg_rating=3.0), profile) == 0.0


def test_category_component_is_capped_then_averaged_over_event_categories():
    recommender = Recommender()
    profile = _profile(
        {
            1: CategoryAffinity(count=20, cumulative_rating=100.0, avg_rating=5.0),
            2: CategoryAffinity(count=20, cumulative_rating=100.0, avg_rating=5.0),
        }
    )
    # Two strong matches sum past 1.0, get capped, then divided by the two categories.
    assert recommender.category_component(_candidate(1, categories=[1, 2]), profile) == pytest.approx(0.5)
    # One unknown category still counts in the divisor.
    assert recommender.category_component(_candidate(2, categories=[1, 99]), profile) == pytest.approx(0.5)


def test_profile_mixes_reviews_and_calendar_interest():
    recommender = Recommender()
    reviews = [
        ReviewSignal(event_id=1, rating=5, category_ids=frozenset({1}), review_text="An AMAZING night"),
        ReviewSignal(event_id=2, rating=1, category_ids=frozenset({1, 2}), review_text="Poor sound, bad venue"),
    ]
    calendar = [CalendarSignal(event_id=3, category_ids=frozenset({2, 3}))]

    profile = recommender.build_profile(reviews, calendar)

    assert profile.overall_avg_rating == pytest.approx(3.0)
    assert profile.categories[1] == CategoryAffinity(count=2, cumulative_rating=6.0, avg_rating=3.0)
    assert profile.categories[2].count == 2
    assert profile.categories[2].avg_rating == pytest.approx(2.0)
    assert profile.categories[3].avg_rating == pytest.approx(3.0)
    assert profile.positive_keywords == frozenset({"amazing"})
    assert profile.negative_keywords == frozenset({"poor", "bad"})
    assert not profile.is_cold_start


def test_calendar_only_profile_keeps_overall_rating_at_zero():
    profile = Recommender().build_profile([], [CalendarSignal(event_id=1, category_ids=frozenset({4}))])
    assert profile.overall_avg_rating == 0
    assert profile.categories[4].avg_rating == pytest.approx(3.0)
    assert not profile.is_cold_start


def test_keyword_component_rewards_liked_and_penalises_disliked_words():
    recommender = Recommender()
    profile = _profile(positive={"great", "love"}, negative={"awful"})

    liked = _candidate(1, title="A great show", description="People love it")
    disliked = _candidate(2, title="Awful acoustics")

    assert recommender.keyword_component(liked, profile) == pytest.approx(0.6)
    assert recommender.keyword_component(disliked, profile) == pytest.approx(0.45)
    assert recommender.keyword_component(_candidate(3), profile) == pytest.approx(0.5)


def test_scores_stay_within_unit_interval():
    recommender = Recommender(RecommenderConfig(keyword_step=1.0))
    strong = _profile(
        {1: CategoryAffinity(count=100, cumulative_rating=500.0, avg_rating=5.0)},
        overall=5.0,
        positive={"great", "best", "love"},
    )
    weak = _profile(overall=5.0, negative={"bad", "worst", "hate"})

    best = _candidate(1, avg_rating=5, categories=[1], title="great best love")
    worst = _candidate(2, avg_rating=0, title="bad worst hate")

    for profile in (strong, weak):
        for event in (best, worst):
            assert 0.0 <= recommender.score(event, profile) <= 1.0


def test_missing_avg_rating_is_treated_as_zero():
    recommender = Recommender()
    profile = _profile(overall=2.5)
    event = candidate_from_row(event_id="5", title=None, description=None, avg_rating=None)

    assert event.id == 5
    assert event.avg_rating == 0.0
    assert recommender.rating_component(event, profile) == pytest.approx(0.5)


def test_rank_is_stable_for_equal_scores():
    events = [_candidate(i) for i in range(1, 5)]
    scored = [
        ScoredCandidate(event=events[0], score=0.5, reason=reason_for(0.5)),
        ScoredCandidate(event=events[1], score=0.7, reason=reason_for(0.7)),
        ScoredCandidate(event=events[2], score=0.5, reason=reason_for(0.5)),
        ScoredCandidate(event=events[3], score=0.5, reason=reason_for(0.5)),
    ]
    assert [item.event_id for item in rank(scored)] == [2, 1, 3, 4]


def test_recommend_truncates_to_limit():
    recommender = Recommender()
    profile_reviews = [ReviewSignal(event_id=100, rating=4, category_ids=frozenset({1}))]
    candidates = [_candidate(i, avg_rating=(i % 5) + 0.5, categories=[1] if i % 2 else []) for i in range(1, 31)]

    ranked = recommender.recommend(candidates, profile_reviews, limit=20)

    assert len(ranked) == 20
    all_scores = sorted((item.score for item in recommender.recommend(candidates, profile_reviews)), reverse=True)
    assert [item.score for item in ranked] == all_scores[:20]


def test_jitter_is_opt_in_and_bounded():
    profile = _profile(overall=3.0)
    event = _candidate(1, avg_rating=3.0)

    plain = Recommender().score_candidates([event], profile)[0].score
    jittered = Recommender(RecommenderConfig(score_jitter=0.1), rng=random.Random(42)).score_candidates(
        [event], profile
    )[0]

    assert plain == pytest.approx(0.45)
    assert plain <= jittered.score <= plain + 0.1
    assert jittered.reason == reason_for(jittered.score)


def test_popularity_score_weights():
    assert popularity_score(4.0, 3, 5) == pytest.approx(2.0 + 0.9 + 1.0)
    assert popularity_score(None, 0, 0) == 0.0
