import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from mongomock_motor import AsyncMongoMockClient

from chatsync.config import Settings
from chatsync.context import assemble_context
from chatsync.schemas.user import CurrentUser
from chatsync.services.identity import StaticIdentityProvider
from chatsync.utils.kv_store import MemoryKeyValueStore
from chatsync.utils.realtime_bus import LocalBus


FIXED_NOW = datetime(2024, 3, 4, 15, 7, tzinfo=timezone.utc)


class FakeClock:

    def __init__(self, now: datetime = FIXED_NOW) -> None:
        self.current = now

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


class ImmediateTransactions:
    """Runs the operation without a session; the mock store has no transactions."""

    async def run(self, operation):
        return await operation(None)


class RecordingNotifier:

    enabled = True

    def __init__(self) -> None:
        self.sent = []

    async def notify(self, recipient, title, body, payload=None):
        self.sent.append({"recipient": recipient, "title": title, "body": body, "payload": payload})


async def drain(rounds: int = 20) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


ALICE = CurrentUser(id="u1", email="a@x.com", name="Alice")
BOB = CurrentUser(email="b@x.com")


def make_context(user, db, bus, clock, kv=None, notifier=None):
    return assemble_context(
        Settings(),
        StaticIdentityProvider(user),
        db,
        ImmediateTransactions(),
        bus,
        kv or MemoryKeyValueStore(),
        notifier or RecordingNotifier(),
        clock=clock,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db():
    return AsyncMongoMockClient()["chatsync_test"]


@pytest.fixture
def bus():
    return LocalBus()


@pytest.fixture
def alice(db, bus, clock):
    return make_context(ALICE, db, bus, clock)


@pytest.fixture
def bob(db, bus, clock):
    return make_context(BOB, db, bus, clock)
