import os
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from alembic import command
from alembic.config import Config
from fastapi.testclient import TestClient
from sqlalchemy import text


if os.environ.get("RUN_INTEGRATION_TESTS") != "1":
    pytest.skip(
        "Integration tests are disabled. Set RUN_INTEGRATION_TESTS=1 to enable.",
        allow_module_level=True,
    )

if not os.environ.get("DATABASE_URL"):
    pytest.skip("DATABASE_URL must be set for integration tests.", allow_module_level=True)

os.environ.setdefault("SECRET_KEY", "integration-test-secret")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

from eventhive import auth, models  # noqa: E402
from eventhive import api as api_module  # noqa: E402
from eventhive.api import app  # noqa: E402
from eventhive.database import Base, SessionLocal, engine, get_db  # noqa: E402
from eventhive.realtime import get_notifier  # noqa: E402


class _SilentNotifier:
    async def attendee_update(self, *args, **kwargs):
        return None

    async def new_event(self, *args, **kwargs):
        return None

    async def registration_notification(self, *args, **kwargs):
        return None


def _run_migrations() -> None:
    backend_root = Path(__file__).resolve().parents[1]
    alembic_ini = backend_root / "alembic.ini"
    config = Config(str(alembic_ini))
    config.set_main_option("script_location", str(backend_root / "alembic"))
    command.upgrade(config, "head")


@pytest.fixture(scope="session", autouse=True)
def _ensure_schema():
    _run_migrations()
    yield
    Base.metadata.drop_all(bind=engine)
    with engine.begin() as connection:
        connection.execute(text("DROP TABLE IF EXISTS alembic_version"))


@pytest.fixture()
def db_session():
    db = SessionLocal()
    try:
        tables = [t.name for t in Base.metadata.sorted_tables]
        if tables:
            db.execute(text(f"TRUNCATE TABLE {', '.join(tables)} RESTART IDENTITY CASCADE"))
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
    app.dependency_overrides[get_notifier] = _SilentNotifier
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def helpers(client, db_session):
    def register_user(username: str, email: str, role: str = "student") -> str:
        resp = client.post(
            "/api/auth/register",
            json={"username": username, "email": email, "password": "password123", "role": role},
        )
        assert resp.status_code == 201, resp.text
        return resp.json()["data"]["token"]

    def make_admin(username: str = "root", email: str = "root@campus.edu") -> str:
        admin = models.User(
            username=username,
            email=email,
            password_hash=auth.get_password_hash("password123"),
            role=models.UserRole.admin,
        )
        db_session.add(admin)
        db_session.commit()
        db_session.refresh(admin)
        return auth.create_access_token(admin)

    def future_time(days: int = 1) -> str:
        return (datetime.now(timezone.utc) + timedelta(days=days)).isoformat()

    def auth_header(token: str) -> dict:
        return {"Authorization": f"Bearer {token}"}

    return {
        "client": client,
        "db": db_session,
        "register_user": register_user,
        "make_admin": make_admin,
        "future_time": future_time,
        "auth_header": auth_header,
    }
