# tests/conftest.py
import os
import sys
import asyncio
import json
from datetime import datetime, timedelta
from urllib.parse import urlencode

# Settings are cached on first import, so the environment is prepared first.
os.environ.setdefault("REDIS_URL", "redis://127.0.0.1:6390/0")
os.environ.setdefault("RATE_LIMIT_PER_MINUTE", "1000")
os.environ.setdefault("TOKEN_RATE_LIMIT_PER_MINUTE", "1000")
os.environ.setdefault("NOTIFY_RETRY_DELAY_SECONDS", "0")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

sys.path.append(os.path.abspath("."))

from fastapi_limiter import FastAPILimiter

from safetrack import auth, models
from safetrack.database import Base, engine_options, get_db
from safetrack.emergency_contacts import get_notifier
from safetrack.errors import NotificationError
from safetrack.lifecycle import EmergencyContactManager
from safetrack.notifier import Notifier
from main import app


# DB (SQLite in-memory for tests)
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    poolclass=StaticPool,
    **engine_options(SQLALCHEMY_DATABASE_URL),
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="session", autouse=True)
def prepare_database():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def db_session():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        # every test starts from empty tables
        with engine.begin() as conn:
            for table in reversed(Base.metadata.sorted_tables):
                conn.execute(table.delete())


@pytest.fixture(autouse=True)
def reset_user_cache():
    auth._cache_client = None
    yield
    auth._cache_client = None


# One event loop for the WHOLE pytest session
@pytest.fixture(scope="session")
def session_loop():
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    yield loop
    loop.close()


# Run FastAPI startup/shutdown once per session (same loop)
# This ensures FastAPILimiter.init() is called correctly.
@pytest.fixture(scope="session", autouse=True)
def app_lifespan(session_loop):
    # startup once
    session_loop.run_until_complete(app.router.startup())
    yield
    # shutdown once
    session_loop.run_until_complete(app.router.shutdown())

    # cleanup limiter redis (prevents "event loop is closed" on next tests/run)
    r = getattr(FastAPILimiter, "redis", None)
    if r is not None:
        session_loop.run_until_complete(r.aclose())


class RecordingNotifier(Notifier):
    """Notifier that remembers every message instead of sending it."""

    def __init__(self):
        self.sent: list[tuple[str, str, dict]] = []
        self.failing: set[str] = set()

    def _record(self, event, contact, **extra):
        if contact.id in self.failing or event in self.failing:
            raise NotificationError("simulated delivery failure")
        self.sent.append((event, contact.id, extra))

    def notify_verification_requested(self, contact, token):
        self._record("verification_requested", contact, token=token)

    def notify_verified(self, contact):
        self._record("verified", contact)

    def notify_declined(self, contact):
        self._record("declined", contact)

    def notify_removed(self, contact):
        self._record("removed", contact)

    def notify_alert(self, kind, contact, payload):
        self._record("alert", contact, kind=kind, payload=payload)

    def events(self, event: str) -> list[tuple[str, str, dict]]:
        return [item for item in self.sent if item[0] == event]

    def last_token(self, contact_id: str) -> str:
        tokens = [
            extra["token"]
            for event, cid, extra in self.sent
            if event == "verification_requested" and cid == contact_id
        ]
        return tokens[-1]


class FakeClock:
    """Manually advanced clock returning naive UTC timestamps."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture()
def notifier():
    return RecordingNotifier()


@pytest.fixture()
def clock():
    return FakeClock(datetime(2026, 3, 1, 12, 0, 0))


@pytest.fixture()
def manager(db_session, notifier, clock):
    return EmergencyContactManager(db_session, notifier, clock=clock)


@pytest.fixture()
def make_user(db_session):
    """Insert a verified user without hashing a password."""

    counter = {"n": 0}

    def _make(email=None, role="user", username=None):
        counter["n"] += 1
        user = models.User(
            email=email or f"user{counter['n']}@example.com",
            username=username,
            hashed_password="not-a-real-hash",
            is_verified=True,
            role=role,
        )
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user

    return _make


# Simple ASGI response/client
class SimpleResponse:
    def __init__(
        self, status_code: int, body: bytes, headers: list[tuple[bytes, bytes]]
    ):
        self.status_code = status_code
        self._body = body
        self.headers = {k.decode(): v.decode() for k, v in headers}

    def json(self):
        return json.loads(self._body.decode())


class SimpleClient:
    """
    Important:
    - uses ONE shared session loop (passed from fixture)
    - does NOT call asyncio.run()
    - does NOT close the loop
    """

    def __init__(self, app, loop):
        self.app = app
        self.loop = loop

    def close(self):
        # do not close the loop here (session fixture closes it)
        pass

    def request(
        self,
        method: str,
        path: str,
        json_body=None,
        data=None,
        headers=None,
    ):
        headers = dict(headers or {})
        body_bytes = b""

        if json_body is not None:
            body_bytes = json.dumps(json_body).encode()
            headers.setdefault("content-type", "application/json")

        elif data is not None:
            if isinstance(data, dict):
                body_bytes = urlencode(data, doseq=True).encode()
            elif isinstance(data, bytes):
                body_bytes = data
            else:
                body_bytes = str(data).encode()
            headers.setdefault("content-type", "application/x-www-form-urlencoded")

        path, _, query = path.partition("?")
        raw_headers = [(k.lower().encode(), v.encode()) for k, v in headers.items()]
        scope = {
            "type": "http",
            "method": method.upper(),
            "path": path,
            "headers": raw_headers,
            "query_string": query.encode(),
            "client": ("testclient", 5000),
        }

        async def receive():
            nonlocal body_bytes
            chunk, body_bytes = body_bytes, b""
            return {"type": "http.request", "body": chunk, "more_body": False}

        response_body = bytearray()
        response_status = 500
        response_headers: list[tuple[bytes, bytes]] = []

        async def send(message):
            nonlocal response_status, response_headers
            if message["type"] == "http.response.start":
                response_status = message["status"]
                response_headers = message.get("headers", [])
            elif message["type"] == "http.response.body":
                response_body.extend(message.get("body", b""))

        # ensure the loop is the current one
        asyncio.set_event_loop(self.loop)
        self.loop.run_until_complete(self.app(scope, receive, send))
        return SimpleResponse(response_status, bytes(response_body), response_headers)

    def get(self, path: str, headers=None):
        return self.request("GET", path, headers=headers)

    def post(self, path: str, json=None, data=None, headers=None):
        return self.request("POST", path, json_body=json, data=data, headers=headers)

    def patch(self, path: str, json=None, headers=None):
        return self.request("PATCH", path, json_body=json, headers=headers)

    def delete(self, path: str, headers=None):
        return self.request("DELETE", path, headers=headers)


# Client fixture: override DB and notifier dependencies per test
@pytest.fixture()
def client(db_session, notifier, session_loop):
    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_notifier] = lambda: notifier

    c = SimpleClient(app, loop=session_loop)
    try:
        yield c
    finally:
        app.dependency_overrides.clear()
        c.close()
