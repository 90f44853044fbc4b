import os
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ.setdefault("SECRET_KEY", "test-secret")
os.environ.setdefault("EMAIL_ENABLED", "false")
os.environ.setdefault("BACKGROUND_CLEANUP_ENABLED", "false")

from eventreview import auth, models
from eventreview import api as api_module
from eventreview.api import app
from eventreview.database import Base, engine, get_db, SessionLocal


@pytest.fixture(scope="session", autouse=True)
def _ensure_schema():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def db_session():
    db = SessionLocal()
    try:
        for table in reversed(Base.metadata.sorted_tables):
            db.execute(table.delete())
        db.commit()
        yield db
    finally:
        db.close()


@pytest.fixture()
def client(db_session):
    def _override_get_db():
        yield db_session

    api_module._RATE_LIMIT_STORE.clear()
    app.dependency_overrides[get_db] = _override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def helpers(client, db_session):
    def register_user(username: str, email: str | None = None, password: str = "password123") -> str:
        resp = client.post(
            "/register",
            json={"username": username, "email": email or f"{username}@example.com", "password": password},
        )
        assert resp.status_code == 200, resp.text
        return resp.json()["access_token"]

    def login(email: str, password: str = "password123") -> str:
        resp = client.post("/login", json={"email": email, "password": password})
        assert resp.status_code == 200, resp.text
        return resp.json()["access_token"]

    def user_by_username(username: str) -> models.User:
        return db_session.query(models.User).filter(models.User.username == username).one()

    def make_admin(username: str = "admin", password: str = "admin12345") -> str:
        admin = models.User(
            username=username,
            email=f"{username}@example.com",
            password_hash=auth.get_password_hash(password),
            role=models.UserRole.admin,
        )
        db_session.add(admin)
        db_session.commit()
        return login(admin.email, password)

    def create_category(name: str, description: str | None = None) -> int:
        category = models.Category(name=name, description=description)
        db_session.add(category)
        db_session.commit()
        return category.id

    def future_time(days: int = 1) -> str:
        return (datetime.now(timezone.utc) + timedelta(days=days)).isoformat()

    def create_event(token: str, title: str = "Community Meetup", **overrides) -> dict:
        payload = {
            "title": title,
            "description": "An evening of talks and networking",
            "start_time": future_time(overrides.pop("days", 3)),
            "location": "Main Hall",
            "category_ids": [],
        }
        payload.update(overrides)
        resp = client.post("/api/events", json=payload, headers=auth_header(token))
        assert resp.status_code == 201, resp.text
        return resp.json()["data"]

    def auth_header(token: str) -> dict:
        return {"Authorization": f"Bearer {token}"}

    return {
        "client": client,
        "db": db_session,
        "register_user": register_user,
        "login": login,
        "user_by_username": user_by_username,
        "make_admin": make_admin,
        "create_category": create_category,
        "create_event": create_event,
        "future_time": future_time,
        "auth_header": auth_header,
    }
