from datetime import datetime, timedelta, timezone

from eventreview import models
from eventreview.notifications import send_event_reminders


def test_add_to_calendar_with_default_reminder(helpers):
    client = helpers["client"]
    host_token = helpers["register_user"]("host")
    guest_token = helpers["register_user"]("guest")
    event = helpers["create_event"](host_token, "Hackathon")
    headers = helpers["auth_header"](guest_token)

    added = client.post("/api/calendar", json={"event_id": event["id"]}, headers=headers)
    assert added.status_code == 201
    entry = added.json()["data"]
    assert entry["reminder_settings"] == {"remind": True, "time": 60, "method": "email"}
    assert entry["is_synced"] is False
    assert entry["event"]["title"] == "Hackathon"

    duplicate = client.post("/api/calendar", json={"event_id": event["id"]}, headers=headers)
    assert duplicate.status_code == 400
    assert client.post("/api/calendar", json={"event_id": 999999}, headers=headers).status_code == 404

    listing = client.get("/api/calendar", headers=headers).json()
    assert listing["count"] == 1


def test_reminder_and_sync_updates_are_owner_only(helpers):
    client = helpers["client"]
    host_token = helpers["register_user"]("host")
    guest_token = helpers["register_user"]("guest")
    other_token = helpers["register_user"]("other")
    event = helpers["create_event"](host_token, "Yoga in the Park")
    entry = client.post(
        "/api/calendar",
        json={"event_id": event["id"], "reminder_settings": {"remind": True, "time": 30, "method": "notification"}},
        headers=helpers["auth_header"](guest_token),
    ).json()["data"]
    assert entry["reminder_settings"]["time"] == 30

    reminder_url = f"/api/calendar/{entry['id']}/reminder"
    body = {"reminder_settings": {"remind": False, "time": 15, "method": "email"}}
    assert client.put(reminder_url, json=body, headers=helpers["auth_header"](other_token)).status_code == 404

    updated = client.put(reminder_url, json=body, headers=helpers["auth_header"](guest_token))
    assert updated.status_code == 200
    assert updated.json()["data"]["reminder_settings"] == {"remind": False, "time": 15, "method": "email"}

    bad_method = {"reminder_settings": {"remind": True, "time": 15, "method": "pigeon"}}
    assert client.put(reminder_url, json=bad_method, headers=helpers["auth_header"](guest_token)).status_code == 422

    synced = client.put(
        f"/api/calendar/{entry['id']}/sync",
        json={"is_synced": True},
        headers=helpers["auth_header"](guest_token),
    )
    assert synced.json()["data"]["is_synced"] is True

    delete_url = f"/api/calendar/{entry['id']}"
    assert client.delete(delete_url, headers=helpers["auth_header"](other_token)).status_code == 404
    assert client.delete(delete_url, headers=helpers["auth_header"](guest_token)).status_code == 200
    assert client.get("/api/calendar", headers=helpers["auth_header"](guest_token)).json()["data"] == []


def test_upcoming_window(helpers):
    client = helpers["client"]
    host_token = helpers["register_user"]("host")
    guest_token = helpers["register_user"]("guest")
    headers = helpers["auth_header"](guest_token)
    soon = helpers["create_event"](host_token, "Soon", days=2)
    later = helpers["create_event"](host_token, "Later", days=20)
    for event in (soon, later):
        client.post("/api/calendar", json={"event_id": event["id"]}, headers=headers)

    week = client.get("/api/calendar/upcoming", headers=headers).json()["data"]
    assert [e["event_id"] for e in week] == [soon["id"]]

    month = client.get("/api/calendar/upcoming", params={"days": 30}, headers=headers).json()["data"]
    assert [e["event_id"] for e in month] == [soon["id"], later["id"]]


def test_calendar_export_is_ics(helpers):
    client = helpers["client"]
    host_token = helpers["register_user"]("host")
    guest_token = helpers["register_user"]("guest")
    headers = helpers["auth_header"](guest_token)
    event = helpers["create_event"](host_token, "Pub Quiz, Round 2", location="The Anchor")
    client.post("/api/calendar", json={"event_id": event["id"]}, headers=headers)

    resp = client.get("/api/calendar/export", headers=headers)
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/calendar")
    body = resp.text
    assert body.startswith("BEGIN:VCALENDAR")
    assert f"UID:event-{event['id']}@eventreview" in body
    assert "SUMMARY:Pub Quiz\\, Round 2" in body
    assert "LOCATION:The Anchor" in body
    assert body.rstrip().endswith("END:VCALENDAR")


def test_event_reminders_are_sent_once(helpers):
    client = helpers["client"]
    host_token = helpers["register_user"]("host")
    guest_token = helpers["register_user"]("guest")
    event = helpers["create_event"](host_token, "Morning Run", days=1)
    client.post(
        "/api/calendar",
        json={"event_id": event["id"], "reminder_settings": {"remind": True, "time": 60, "method": "notification"}},
        headers=helpers["auth_header"](guest_token),
    )

    db = helpers["db"]
    starts = datetime.now(timezone.utc) + timedelta(days=1)
    not_yet = send_event_reminders(db, now=starts - timedelta(hours=3))
    assert not_yet["notified"] == 0

    due = send_event_reminders(db, now=starts - timedelta(minutes=30))
    assert due == {"checked": 1, "notified": 1, "emails": 0}
    again = send_event_reminders(db, now=starts - timedelta(minutes=20))
    assert again["notified"] == 0

    reminders = db.query(models.Notification).filter(models.Notification.type == "reminder").all()
    assert len(reminders) == 1
    assert "Morning Run" in reminders[0].content
