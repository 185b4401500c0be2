"""Pytest configuration and fixtures."""

import os
import sys
from pathlib import Path

# Inject sys.path for reliable pytest imports
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))  # => .../apps/api
sys.path.insert(0, str(Path(__file__).resolve().parents[2] / "reaper"))  # => .../apps/reaper

# Module-level engines and logging read these at import time
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("PAYMATCH_JSON_LOGS", "false")
os.environ.setdefault("UNSUBSCRIBE_TOKEN_SECRET", "test-unsubscribe-secret")
os.environ.setdefault("APP_URL", "https://app.paymatch.test")

import time
import uuid
from types import SimpleNamespace
from typing import Any, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
import redis
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from paymatch_api.db.models import Base, Organization, OrganizationUser, UserProfile
from paymatch_api.db.redis_client import get_redis
from paymatch_api.db.session import get_db
from paymatch_api.email.email_service import EmailSendResult
from paymatch_api.main import app


class FakeRedis:
    """In-memory subset of redis.Redis (strings with TTL) on a controllable clock.

    Set ``fail = True`` to make every command raise redis.ConnectionError.
    """

    def __init__(self):
        self._data: dict[str, str] = {}
        self._expires: dict[str, float] = {}
        self._offset = 0.0
        self.fail = False

    # ── clock ────────────────────────────────────────────────────────────────

    def now(self) -> float:
        return time.time() + self._offset

    def advance(self, seconds: float) -> None:
        self._offset += seconds

    def _check(self) -> None:
        if self.fail:
            raise redis.ConnectionError("redis unavailable")

    def _purge(self, key: str) -> None:
        expires = self._expires.get(key)
        if expires is not None and expires <= self.now():
            self._data.pop(key, None)
            self._expires.pop(key, None)

    # ── commands ─────────────────────────────────────────────────────────────

    def ping(self) -> bool:
        self._check()
        return True

    def get(self, key: str) -> Optional[str]:
        self._check()
        self._purge(key)
        return self._data.get(key)

    def set(self, key: str, value: Any, ex: Optional[int] = None, nx: bool = False) -> Optional[bool]:
        self._check()
        self._purge(key)
        if nx and key in self._data:
            return None
        self._data[key] = str(value)
        if ex is not None:
            self._expires[key] = self.now() + ex
        else:
            self._expires.pop(key, None)
        return True

    def setex(self, key: str, seconds: int, value: Any) -> bool:
        return self.set(key, value, ex=seconds)

    def incr(self, key: str) -> int:
        self._check()
        self._purge(key)
        value = int(self._data.get(key, "0")) + 1
        self._data[key] = str(value)
        return value

    def expire(self, key: str, seconds: int) -> bool:
        self._check()
        self._purge(key)
        if key not in self._data:
            return False
        self._expires[key] = self.now() + seconds
        return True

    def ttl(self, key: str) -> int:
        self._check()
        self._purge(key)
        if key not in self._data:
            return -2
        if key not in self._expires:
            return -1
        return int(self._expires[key] - self.now())

    def delete(self, *keys: str) -> int:
        self._check()
        removed = 0
        for key in keys:
            self._purge(key)
            if self._data.pop(key, None) is not None:
                removed += 1
            self._expires.pop(key, None)
        return removed

    def exists(self, key: str) -> int:
        self._check()
        self._purge(key)
        return int(key in self._data)

    def close(self) -> None:
        pass


@pytest.fixture(scope="function")
def db_session() -> Session:
    """Fresh in-memory SQLite session per test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)

    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = SessionLocal()

    try:
        yield session
        session.rollback()
    finally:
        session.close()
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture
def session_factory(db_session: Session):
    """sessionmaker bound to the test engine (for the retention loop)."""
    return sessionmaker(autocommit=False, autoflush=False, bind=db_session.get_bind())


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def email_service() -> MagicMock:
    """EmailService double whose send() succeeds."""
    service = MagicMock()
    service.send = AsyncMock(return_value=EmailSendResult(success=True, message_id="msg_test"))
    return service


def make_supabase_user(
    user_id: Optional[str] = None,
    email: str = "anna@example.ch",
    confirmed: bool = True,
) -> SimpleNamespace:
    return SimpleNamespace(
        id=user_id or str(uuid.uuid4()),
        email=email,
        email_confirmed_at="2026-01-01T00:00:00Z" if confirmed else None,
    )


def make_supabase_client(user: Optional[SimpleNamespace] = None) -> MagicMock:
    """Supabase client double: get_user() resolves ``user`` (or rejects when None)."""
    client = MagicMock()
    if user is None:
        client.auth.get_user.side_effect = Exception("invalid JWT")
    else:
        client.auth.get_user.return_value = SimpleNamespace(user=user)
    client.auth.admin.list_users.return_value = [user] if user is not None else []
    return client


def create_member(
    db: Session,
    user_id: Optional[str] = None,
    email: str = "anna@example.ch",
    onboarding_completed: bool = False,
    **org_fields: Any,
) -> tuple[UserProfile, Organization]:
    """Profile + organization + active owner membership."""
    user_id = user_id or str(uuid.uuid4())
    org = Organization(name="Muster GmbH", onboarding_completed=onboarding_completed, **org_fields)
    db.add(org)
    db.flush()
    profile = UserProfile(id=user_id, email=email, first_name="Anna", last_name="Muster")
    db.add(profile)
    db.add(OrganizationUser(user_id=user_id, organization_id=org.id, role="owner", status="active"))
    db.commit()
    return profile, org


@pytest.fixture
def test_client(db_session: Session, fake_redis: FakeRedis):
    """TestClient with db_session and fake Redis dependency overrides."""

    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Don't close - db_session fixture handles it

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = lambda: fake_redis
    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()
