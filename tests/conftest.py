import itertools
import os
import tempfile
from pathlib import Path

_DB_DIR = Path(tempfile.mkdtemp(prefix="bondmate-tests-"))
os.environ["DB_URL"] = f"sqlite+aiosqlite:///{_DB_DIR / 'test.db'}"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["SWEEP_ENABLED"] = "false"

import pytest
from jose import jwt

from bondmate.core.config import settings
from bondmate.db.models import Base, PushSubscription, User
from bondmate.db.session import SessionLocal, engine
from bondmate.services.notifications import NotificationDispatcher, RetryPolicy, configure_dispatcher
from bondmate.utils import redis_pool
from bondmate.utils.messaging.realtime import hub


# ==================== Pytest Markers ====================
def pytest_configure(config):
    config.addinivalue_line("markers", "integration: tests that exercise the database and HTTP layer")


# ==================== Fakes ====================
class FakePushTransport:
    """Push transport that replays scripted outcomes (exceptions are raised)."""

    def __init__(self):
        self.outcomes = []
        self.sent = []

    async def send(self, subscription, message):
        self.sent.append((subscription, message))
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return f"msg-{len(self.sent)}"


class FakeRedis:
    def __init__(self):
        self.store = {}

    async def set(self, key, value, nx=False, ex=None):
        if nx and key in self.store:
            return None
        self.store[key] = value
        return True

    async def get(self, key):
        return self.store.get(key)

    async def setex(self, key, ttl, value):
        self.store[key] = value
        return True

    async def delete(self, *keys):
        return sum(1 for key in keys if self.store.pop(key, None) is not None)

    async def eval(self, script, numkeys, key, token, *args):
        if self.store.get(key) == token:
            del self.store[key]
            return 1
        return 0


# ==================== Database ====================
@pytest.fixture(autouse=True)
async def database():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    # pooled aiosqlite connections are bound to this test's event loop
    await engine.dispose()


@pytest.fixture
async def db(database):
    async with SessionLocal() as session:
        yield session


@pytest.fixture
def make_user(db):
    counter = itertools.count(1)

    async def _make(name: str | None = None, **kwargs) -> User:
        n = next(counter)
        user = User(
            name=name or f"User {n}",
            email=kwargs.pop("email", f"user{n}@example.com"),
            partners=[],
            ex_partners=[],
            pending_requests=[],
            **kwargs,
        )
        db.add(user)
        await db.commit()
        return user

    return _make


@pytest.fixture
async def users(make_user):
    """Three unpartnered users: A, B and C."""
    return (
        await make_user("Alice"),
        await make_user("Bob"),
        await make_user("Carol"),
    )


@pytest.fixture
def pair_up(db):
    """Pair two users through the request flow; returns the Partner row."""
    from bondmate.services.partner_requests import accept_partner_request, send_partner_request

    async def _pair(sender: User, recipient: User):
        request = await send_partner_request(db, sender.id, recipient.id)
        return await accept_partner_request(db, request.id, recipient.id)

    return _pair


@pytest.fixture
def break_up(db):
    """End the pair's relationship: ``initiator`` asks, ``accepter`` agrees."""
    from bondmate.services.breakup import accept_breakup, initiate_breakup

    async def _break(initiator: User, accepter: User, reason: str | None = None):
        breakup = await initiate_breakup(db, initiator.id, reason)
        return await accept_breakup(db, breakup.id, accepter.id)

    return _break


# ==================== Notifications ====================
@pytest.fixture
def push_transport():
    return FakePushTransport()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture(autouse=True)
async def dispatcher(database, push_transport, sleeps):
    async def fake_sleep(seconds):
        sleeps.append(seconds)

    instance = NotificationDispatcher(
        session_factory=SessionLocal,
        transport=push_transport,
        policy=RetryPolicy(),
        sleep=fake_sleep,
    )
    configure_dispatcher(instance)
    yield instance
    await instance.drain()
    await instance.shutdown()
    configure_dispatcher(None)


@pytest.fixture
async def subscribe(db):
    async def _subscribe(user: User, subscription: dict | None = None) -> PushSubscription:
        row = PushSubscription(
            user_id=user.id,
            subscription_json=subscription or {
                "endpoint": f"https://push.example.com/{user.id}",
                "keys": {"p256dh": "p256dh-key", "auth": "auth-key"},
            },
        )
        db.add(row)
        await db.commit()
        return row

    return _subscribe


# ==================== Realtime / Redis ====================
@pytest.fixture(autouse=True)
def realtime_events(monkeypatch):
    events = []
    monkeypatch.setattr(hub, "emit", lambda user_id, event, payload: events.append((user_id, event, payload)))
    return events


@pytest.fixture(autouse=True)
def fake_redis(monkeypatch):
    fake = FakeRedis()

    async def _get_redis():
        return fake

    monkeypatch.setattr(redis_pool, "get_redis", _get_redis)
    return fake


# ==================== HTTP ====================
@pytest.fixture
def auth_headers():
    def _headers(user: User) -> dict:
        token = jwt.encode({"sub": str(user.id)}, settings.SECRET_KEY, algorithm=settings.ALGORITHM)
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture
async def client(database):
    from httpx import ASGITransport, AsyncClient

    from bondmate.main import app

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
        yield http
