import os
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ.setdefault("SECRET_KEY", "test-secret")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

from eventhive import auth, models  # noqa: E402
from eventhive import api as api_module  # noqa: E402
from eventhive.api import app  # noqa: E402
from eventhive.database import Base, engine, get_db, SessionLocal  # noqa: E402
from eventhive.realtime import get_notifier  # noqa: E402


class RecordingNotifier:
    """Stands in for the Socket.IO notifier and remembers what would have been pushed."""

    def __init__(self):
        self.calls = []

    async def attendee_update(self, event_id, attendee_count, status=None, registration_id=None):
        self.calls.append(
            ("attendee_update", {"event_id": event_id, "attendee_count": attendee_count, "status": status,
                                 "registration_id": registration_id})
        )

    async def new_event(self, event, created_by=None):
        self.calls.append(("new_event", {"event": event, "created_by": created_by}))

    async def registration_notification(self, event_id, user_id, registered_by=None):
        self.calls.append(
            ("registration_notification", {"event_id": event_id, "user_id": user_id, "registered_by": registered_by})
        )

    def of(self, name):
        return [payload for kind, payload in self.calls if kind == name]


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
def notifier():
    return RecordingNotifier()


@pytest.fixture()
def client(db_session, notifier):
    def _override_get_db():
        yield db_session

    api_module._RATE_LIMIT_STORE.clear()
    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_notifier] = lambda: notifier
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def helpers(client, db_session, notifier):
    def register_user(username: str, email: str, password: str = "password123", role: str = "student") -> str:
        resp = client.post(
            "/api/auth/register",
            json={"username": username, "email": email, "password": password, "role": role},
        )
        assert resp.status_code == 201, resp.text
        return resp.json()["data"]["token"]

    def login(email: str, password: str = "password123") -> str:
        resp = client.post("/api/auth/login", json={"email": email, "password": password})
        assert resp.status_code == 200, resp.text
        return resp.json()["data"]["token"]

    def make_user(
        username: str,
        email: str,
        password: str = "password123",
        role: models.UserRole = models.UserRole.admin,
    ) -> models.User:
        user = models.User(
            username=username,
            email=email,
            password_hash=auth.get_password_hash(password),
            role=role,
        )
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user

    def future_time(days: int = 1) -> str:
        return (datetime.now(timezone.utc) + timedelta(days=days)).isoformat()

    def auth_header(token: str) -> dict:
        return {"Authorization": f"Bearer {token}"}

    def create_event(token: str, **overrides) -> dict:
        payload = {
            "title": "Campus Meetup",
            "description": "Desc",
            "date": future_time(days=2),
            "location": "Main Hall",
            "max_attendees": 10,
        }
        payload.update(overrides)
        resp = client.post("/api/events", json=payload, headers=auth_header(token))
        assert resp.status_code == 201, resp.text
        return resp.json()["data"]["event"]

    def register_for(token: str, event_id: int) -> dict:
        resp = client.post("/api/registrations", json={"event_id": event_id}, headers=auth_header(token))
        assert resp.status_code == 201, resp.text
        return resp.json()["data"]["registration"]

    return {
        "client": client,
        "db": db_session,
        "notifier": notifier,
        "register_user": register_user,
        "login": login,
        "make_user": make_user,
        "future_time": future_time,
        "auth_header": auth_header,
        "create_event": create_event,
        "register_for": register_for,
    }
