"""
Test Configuration and Fixtures

Every test gets its own SQLite database (aiosqlite) and its own fakeredis
server, seeded with the demo catalog (no pre-sold seats). Timeouts default
to a minute so nothing expires by accident; tests that exercise expiry
build one with short timeouts through the ``harness_factory`` fixture.
"""

import asyncio
from dataclasses import dataclass
from typing import List, Optional

import fakeredis
import pytest
import pytest_asyncio
from fakeredis import aioredis

from skybooker.catalog import FlightCatalog
from skybooker.clock import Clock, TimerService
from skybooker.config import Settings
from skybooker.database import create_tables, make_engine, make_sessionmaker
from skybooker.domain import Phase
from skybooker.engine import BookingEngine
from skybooker.gateway import PaymentGateway
from skybooker.inventory import SeatInventory
from skybooker.payments import PaymentAttemptTracker
from skybooker.store import SessionStore

from .helpers import RecordingPublisher, ScriptedGateway


def make_settings(tmp_path, **overrides) -> Settings:
    values = dict(
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path}/skybooker_test.db",
        SEAT_HOLD_TIMEOUT_SECONDS=60,
        REVIEW_TIMEOUT_SECONDS=60,
        PAYMENT_VALIDATION_TIMEOUT_SECONDS=60,
        HOLD_GRACE_SECONDS=30,
        TIMEOUT_RETRY_SECONDS=0.05,
        PAYMENT_LATENCY_SECONDS=0,
        GATEWAY_CALL_TIMEOUT_SECONDS=5,
        COMPENSATION_BACKOFF_SECONDS=0.01,
        DEMO_OCCUPANCY_RATE=0.0,
        LOG_LEVEL="DEBUG",
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


@dataclass
class Harness:
    settings: Settings
    engine: BookingEngine
    catalog: FlightCatalog
    inventory: SeatInventory
    store: SessionStore
    tracker: PaymentAttemptTracker
    timers: TimerService
    redis: aioredis.FakeRedis
    events: RecordingPublisher
    db_engine: object

    async def phase_of(self, session_id: str) -> Phase:
        return (await self.engine.get_session(session_id)).phase

    async def wait_for_phase(self, session_id: str, phase: Phase, timeout: float = 3.0) -> None:
        loop = asyncio.get_running_loop()
        end = loop.time() + timeout
        while await self.phase_of(session_id) is not phase:
            if loop.time() > end:
                raise AssertionError(f"session {session_id} never reached {phase.value}")
            await asyncio.sleep(0.02)

    async def assert_holds_match(self, session_id: str) -> None:
        booking = await self.store.load(session_id)
        held = await self.inventory.held_by(booking.flight_id, session_id)
        assert sorted(held) == sorted(booking.held_seats)

    async def close(self) -> None:
        await self.engine.shutdown()
        await self.redis.aclose()
        await self.db_engine.dispose()


async def build_harness(
    tmp_path,
    gateway: Optional[PaymentGateway] = None,
    clock: Optional[Clock] = None,
    server: Optional[fakeredis.FakeServer] = None,
    **overrides,
) -> Harness:
    settings = make_settings(tmp_path, **overrides)
    db_engine = make_engine(settings.DATABASE_URL)
    await create_tables(db_engine)
    sessionmaker = make_sessionmaker(db_engine)
    catalog = FlightCatalog(sessionmaker, settings)
    await catalog.seed_demo_data()
    await catalog.load()

    redis_client = aioredis.FakeRedis(server=server or fakeredis.FakeServer(), decode_responses=True)
    events = RecordingPublisher()
    inventory = SeatInventory(redis_client, catalog, events)
    clock = clock or Clock()
    tracker = PaymentAttemptTracker(
        gateway or ScriptedGateway([True]),
        clock,
        max_attempts=settings.MAX_PAYMENT_ATTEMPTS,
        code_length=settings.PAYMENT_CODE_LENGTH,
        call_timeout=settings.GATEWAY_CALL_TIMEOUT_SECONDS,
    )
    timers = TimerService(clock, retry_delay=settings.TIMEOUT_RETRY_SECONDS)
    store = SessionStore(sessionmaker)
    engine = BookingEngine(
        catalog=catalog,
        inventory=inventory,
        store=store,
        tracker=tracker,
        timers=timers,
        clock=clock,
        settings=settings,
    )
    return Harness(
        settings=settings,
        engine=engine,
        catalog=catalog,
        inventory=inventory,
        store=store,
        tracker=tracker,
        timers=timers,
        redis=redis_client,
        events=events,
        db_engine=db_engine,
    )


@pytest_asyncio.fixture
async def harness(tmp_path):
    h = await build_harness(tmp_path)
    yield h
    await h.close()


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest_asyncio.fixture
async def harness_factory(tmp_path):
    """Build harnesses with custom timeouts, gateways or clocks; all are closed after the test."""
    built: List[Harness] = []

    async def factory(**kwargs) -> Harness:
        h = await build_harness(tmp_path, **kwargs)
        built.append(h)
        return h

    yield factory
    for h in built:
        await h.close()
