import pytest

from eventreview import models
from eventreview.config import settings
from eventreview.recommender import REASON_DIFFERENT


def test_generate_without_candidates(helpers):
    client = helpers["client"]
    token = helpers["register_user"]("alice")

    resp = client.post("/api/recommendations/generate", headers=helpers["auth_header"](token))
    assert resp.status_code == 200
    body = resp.json()
    assert body["message"] == "No new events available for recommendations"
    assert body["data"] == []
    assert body["count"] == 0


def test_generate_then_list_top_and_category(helpers):
    client = helpers["client"]
    host_token = helpers["register_user"]("host")
    alice_token = helpers["register_user"]("alice")
    headers = helpers["auth_header"](alice_token)
    music = helpers["create_category"]("Music")
    gig = helpers["create_event"](host_token, "Rooftop Gig", days=2, category_ids=[music])
    talk = helpers["create_event"](host_token, "Garden Talk", days=3)

    generated = client.post("/api/recommendations/generate", headers=headers)
    assert generated.status_code == 200
    items = generated.json()["data"]
    assert {item["event_id"] for item in items} == {gig["id"], talk["id"]}
    # Cold start with unrated events: rating proximity is 1.0 for both.
    assert all(item["score"] == pytest.approx(0.45) for item in items)
    assert all(item["reason"] == "you might find this interesting" for item in items)
    assert generated.json()["message"] == "Generated 2 recommendations"

    listing = client.get("/api/recommendations", headers=headers).json()["data"]
    assert listing["total"] == 2
    assert [r["event_id"] for r in listing["items"]] == [gig["id"], talk["id"]]
    assert listing["items"][0]["event"]["title"] == "Rooftop Gig"

    top = client.get("/api/recommendations/top", params={"limit": 1}, headers=headers).json()["data"]
    assert [r["event_id"] for r in top] == [gig["id"]]

    by_category = client.get(f"/api/recommendations/category/{music}", headers=headers).json()["data"]
    assert [r["event_id"] for r in by_category["items"]] == [gig["id"]]
    assert client.get("/api/recommendations/category/999999", headers=headers).status_code == 404

    again = client.post("/api/recommendations/generate", headers=headers)
    assert again.status_code == 200
    assert helpers["db"].query(models.Recommendation).count() == 2


def test_saved_events_are_not_recommended(helpers):
    client = helpers["client"]
    host_token = helpers["register_user"]("host")
    alice_token = helpers["register_user"]("alice")
    headers = helpers["auth_header"](alice_token)
    saved = helpers["create_event"](host_token, "Saved", days=2)
    fresh = helpers["create_event"](host_token, "Fresh", days=4)
    client.post("/api/calendar", json={"event_id": saved["id"]}, headers=headers)

    items = client.post("/api/recommendations/generate", headers=headers).json()["data"]
    assert [item["event_id"] for item in items] == [fresh["id"]]


def test_feedback_validation_and_ownership(helpers):
    client = helpers["client"]
    host_token = helpers["register_user"]("host")
    alice_token = helpers["register_user"]("alice")
    bob_token = helpers["register_user"]("bob")
    helpers["create_event"](host_token, "Street Food", days=2)
    client.post("/api/recommendations/generate", headers=helpers["auth_header"](alice_token))
    rec_id = helpers["db"].query(models.Recommendation).one().id
    url = f"/api/recommendations/{rec_id}/feedback"

    invalid = client.post(url, json={"feedback": "meh"}, headers=helpers["auth_header"](alice_token))
    assert invalid.status_code == 400

    not_owner = client.post(url, json={"feedback": "relevant"}, headers=helpers["auth_header"](bob_token))
    assert not_owner.status_code == 404

    ok = client.post(url, json={"feedback": "not_relevant"}, headers=helpers["auth_header"](alice_token))
    assert ok.status_code == 200
    stored = helpers["db"].query(models.RecommendationFeedback).one()
    assert stored.feedback == "not_relevant"
    assert stored.recommendation_id == rec_id


def test_delete_recommendation(helpers):
    client = helpers["client"]
    host_token = helpers["register_user"]("host")
    alice_token = helpers["register_user"]("alice")
    bob_token = helpers["register_user"]("bob")
    helpers["create_event"](host_token, "Karaoke", days=2)
    client.post("/api/recommendations/generate", headers=helpers["auth_header"](alice_token))
    rec_id = helpers["db"].query(models.Recommendation).one().id

    assert client.delete(f"/api/recommendations/{rec_id}", headers=helpers["auth_header"](bob_token)).status_code == 404
    assert client.delete(f"/api/recommendations/{rec_id}", headers=helpers["auth_header"](alice_token)).status_code == 200
    assert client.get("/api/recommendations", headers=helpers["auth_header"](alice_token)).json()["data"]["total"] == 0


def test_popular_events(helpers):
    client = helpers["client"]
    host_token = helpers["register_user"]("host")
    headers = helpers["auth_header"](helpers["register_user"]("alice"))
    art = helpers["create_category"]("Art")
    quiet = helpers["create_event"](host_token, "Quiet", days=2)
    busy = helpers["create_event"](host_token, "Busy", days=3, category_ids=[art])
    for name in ("fan1", "fan2"):
        client.post("/api/calendar", json={"event_id": busy["id"]}, headers=helpers["auth_header"](helpers["register_user"](name)))

    popular = client.get("/api/recommendations/popular", headers=headers).json()["data"]
    assert [p["event_id"] for p in popular] == [busy["id"], quiet["id"]]
    assert popular[0]["calendar_count"] == 2
    assert popular[0]["popularity_score"] == pytest.approx(0.6)

    only_art = client.get("/api/recommendations/popular", params={"category_id": art}, headers=headers).json()["data"]
    assert [p["event_id"] for p in only_art] == [busy["id"]]
    assert client.get("/api/recommendations/popular", params={"category_id": 999999}, headers=headers).status_code == 404


def test_recommendations_require_auth(client):
    assert client.get("/api/recommendations").status_code == 401
    assert client.post("/api/recommendations/generate").status_code == 401


def test_admin_generate_inline_and_queued(helpers):
    client = helpers["client"]
    host_token = helpers["register_user"]("host")
    helpers["register_user"]("alice")
    helpers["create_event"](host_token, "Town Hall", days=2)
    admin_headers = helpers["auth_header"](helpers["make_admin"]())

    assert client.post(
        "/api/admin/recommendations/generate", headers=helpers["auth_header"](host_token)
    ).status_code == 403

    old_queue = settings.task_queue_enabled
    try:
        settings.task_queue_enabled = False
        inline = client.post("/api/admin/recommendations/generate", headers=admin_headers).json()["data"]
        assert inline["status"] == "succeeded"
        assert inline["result"]["users"] == 3
        assert inline["result"]["rows_persisted"] == 3

        settings.task_queue_enabled = True
        queued = client.post("/api/admin/recommendations/generate", headers=admin_headers).json()["data"]
        assert queued["status"] == "queued"
        assert queued["job_id"] is not None
        duplicate = client.post("/api/admin/recommendations/generate", headers=admin_headers).json()["data"]
        assert duplicate["job_id"] == queued["job_id"]
    finally:
        settings.task_queue_enabled = old_queue


def test_cold_start_reason_for_highly_rated_event(helpers):
    client = helpers["client"]
    host_token = helpers["register_user"]("host")
    alice_token = helpers["register_user"]("alice")
    event = helpers["create_event"](host_token, "Acclaimed Play", days=2)
    db = helpers["db"]
    db.query(models.Event).filter(models.Event.id == event["id"]).update({"avg_rating": 5.0})
    db.commit()

    items = client.post("/api/recommendations/generate", headers=helpers["auth_header"](alice_token)).json()["data"]
    assert items[0]["reason"] == REASON_DIFFERENT
    assert items[0]["score"] == pytest.approx(0.15)
