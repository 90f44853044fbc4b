from datetime import datetime, timedelta, timezone


def test_postgres_end_to_end_flow(helpers):
    client = helpers["client"]

    admin_token = helpers["make_admin"]()
    category = client.post(
        "/api/categories",
        json={"name": "Tech", "description": "Talks and meetups"},
        headers=helpers["auth_header"](admin_token),
    )
    assert category.status_code == 201
    category_id = category.json()["data"]["id"]

    host_token = helpers["register_user"]("host")
    created = client.post(
        "/api/events",
        json={
            "title": "Integration Event",
            "description": "Great talks",
            "start_time": (datetime.now(timezone.utc) + timedelta(days=2)).isoformat(),
            "location": "Hall A",
            "category_ids": [category_id],
        },
        headers=helpers["auth_header"](host_token),
    )
    assert created.status_code == 201
    event_id = created.json()["data"]["id"]

    guest_token = helpers["register_user"]("guest")
    guest = helpers["auth_header"](guest_token)

    recommended = client.post("/api/recommendations/generate", headers=guest)
    assert recommended.status_code == 200
    assert [r["event_id"] for r in recommended.json()["data"]] == [event_id]

    added = client.post("/api/calendar", json={"event_id": event_id}, headers=guest)
    assert added.status_code == 201

    reviewed = client.post(
        f"/api/events/{event_id}/reviews",
        json={"rating": 4, "content": "Great speakers"},
        headers=guest,
    )
    assert reviewed.status_code == 201
    assert reviewed.json()["data"]["sentiment_category"] == "positive"

    detail = client.get(f"/api/events/{event_id}", headers=guest).json()["data"]
    assert detail["avg_rating"] == 4.0
    assert detail["in_calendar"] is True

    notes = client.get("/api/notifications", headers=helpers["auth_header"](host_token)).json()["data"]
    assert notes["total"] == 1

    popular = client.get("/api/recommendations/popular", headers=guest).json()["data"]
    assert popular[0]["event_id"] == event_id
    assert popular[0]["calendar_count"] == 1
