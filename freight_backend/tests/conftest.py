"""
Centralized Test Configuration.
"""

import math
from datetime import datetime, timedelta

import pytest
from httpx import AsyncClient, ASGITransport
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.pool import NullPool

from freight_backend.app.main import app
from freight_backend.app.core.config import Settings
from freight_backend.app.core.jwt import create_access_token
from freight_backend.app.db.session import Base, build_engine, build_session_factory
from freight_backend.app.models.dispatch_enums import VehicleClass
from freight_backend.app.schemas.broadcast import BroadcastCreate, GeoPoint
from freight_backend.app.services.dispatch_core import DispatchCore
from freight_backend.app.services.notification_channels import ChannelError, DeliveryResult, NotificationChannel

# Mumbai -> Pune
PICKUP = (19.0760, 72.8777)
DROP = (18.5204, 73.8567)


class FakeClock:
    """Clock that only moves when a test says so."""

    def __init__(self, start: datetime = None):
        self.current = start or datetime(2026, 3, 2, 8, 0, 0)

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


# Mock Redis for reliability in CI/CD
class MockRedis:
    def __init__(self):
        self.published = []
        self.streams = {}
        self.geo = {}
        self.receivers = 1
        self.fail = False

    def _check(self):
        if self.fail:
            raise RedisConnectionError("mock redis is down")

    async def ping(self):
        return not self.fail

    async def publish(self, channel, message):
        self._check()
        self.published.append((channel, message))
        return self.receivers

    async def xadd(self, name, fields, maxlen=None, approximate=True):
        self._check()
        entries = self.streams.setdefault(name, [])
        entries.append(fields)
        if maxlen is not None:
            del entries[:-maxlen]
        return f"{len(entries)}-0"

    async def geoadd(self, name, values):
        self._check()
        lng, lat, member = values
        self.geo.setdefault(name, {})[member] = (lat, lng)
        return 1

    async def geosearch(self, name, longitude=None, latitude=None, radius=None, unit="m", sort=None, **kwargs):
        self._check()
        hits = []
        for member, (lat, lng) in self.geo.get(name, {}).items():
            distance = _haversine_km(latitude, longitude, lat, lng)
            if distance <= radius:
                hits.append((distance, member))
        hits.sort(reverse=sort == "DESC")
        return [member for _, member in hits]

    async def zrem(self, name, *members):
        self._check()
        removed = 0
        for member in members:
            if self.geo.get(name, {}).pop(member, None) is not None:
                removed += 1
        return removed

    def channel_messages(self, prefix):
        return [message for channel, message in self.published if channel.startswith(prefix)]


def _haversine_km(lat1, lng1, lat2, lng2):
    dlat = math.radians(lat2 - lat1)
    dlng = math.radians(lng2 - lng1)
    a = math.sin(dlat / 2) ** 2 + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(dlng / 2) ** 2
    return 6371.0 * 2 * math.asin(math.sqrt(a))


class RecordingChannel(NotificationChannel):
    """
    Scripted channel. Each send pops the next outcome: "ok" (delivered),
    "miss" (not delivered) or "error" (transport fault); "ok" once exhausted.
    """

    def __init__(self, name, outcomes=None):
        self.name = name
        self.outcomes = list(outcomes or [])
        self.sent = []

    async def send(self, target_id, payload, priority):
        self.sent.append((target_id, payload, priority))
        outcome = self.outcomes.pop(0) if self.outcomes else "ok"
        if outcome == "error":
            raise ChannelError(f"{self.name} transport down")
        if outcome == "miss":
            return DeliveryResult(delivered=False, channel=self.name, error="no connected device")
        return DeliveryResult(delivered=True, channel=self.name)

    def offers_to(self, driver_id):
        return [
            payload for target, payload, _ in self.sent
            if target == driver_id and payload.get("type") == "ASSIGNMENT_OFFER"
        ]

    def of_type(self, notification_type):
        return [(target, payload) for target, payload, _ in self.sent if payload.get("type") == notification_type]


def make_settings(**overrides) -> Settings:
    values = dict(
        enable_background_tasks=False,
        response_timeout_seconds=60.0,
        delivery_backoff_seconds=[0.0, 0.0, 0.0],
        subscriber_retry_delay_seconds=0.0,
        sms_gateway_url=None,
        max_retarget=3,
    )
    values.update(overrides)
    return Settings(**values)


def broadcast_request(trucks_needed=3, ttl_minutes=None, vehicle_class=VehicleClass.CONTAINER, **kwargs) -> BroadcastCreate:
    return BroadcastCreate(
        pickup=GeoPoint(lat=PICKUP[0], lng=PICKUP[1], address="JNPT Gate 2"),
        drop=GeoPoint(lat=DROP[0], lng=DROP[1], address="Chakan MIDC"),
        vehicle_class=vehicle_class,
        trucks_needed=trucks_needed,
        goods_type="Steel coils",
        weight="18 t",
        ttl_minutes=ttl_minutes,
        **kwargs,
    )


def auth_headers(user_id: int, role: str) -> dict:
    token = create_access_token(data={"sub": str(user_id), "user_id": user_id, "role": role})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
async def session_factory(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'dispatch.db'}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield build_session_factory(engine)

    await engine.dispose()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def mock_redis():
    return MockRedis()


@pytest.fixture
def push_channel():
    return RecordingChannel("push")


@pytest.fixture
def sms_channel():
    return RecordingChannel("sms")


@pytest.fixture
def settings_overrides():
    """Override per test with @pytest.mark.parametrize("settings_overrides", [{...}])."""
    return {}


@pytest.fixture
def settings(settings_overrides):
    return make_settings(**settings_overrides)


@pytest.fixture
def make_request():
    return broadcast_request


@pytest.fixture
def auth():
    return auth_headers


@pytest.fixture
async def core(session_factory, clock, settings, mock_redis, push_channel, sms_channel):
    dispatch_core = DispatchCore(
        session_factory,
        clock=clock,
        settings=settings,
        redis=mock_redis,
        channels={"push": push_channel, "sms": sms_channel},
    )
    await dispatch_core.start()
    yield dispatch_core
    await dispatch_core.shutdown()


@pytest.fixture
async def client(core):
    """Async client for testing, bound to the per-test dispatch core."""
    app.state.dispatch_core = core
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    del app.state.dispatch_core


@pytest.fixture
def create_broadcast(core):
    async def _create(customer_id=1, **kwargs):
        return await core.registry.create(broadcast_request(**kwargs), customer_id=customer_id)
    return _create
