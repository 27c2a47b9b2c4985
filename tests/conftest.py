"""Shared test fixtures — temp databases, a hand-driven clock, fixed randomness."""

from __future__ import annotations

import os
import random
import tempfile
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from opsloop.context import OpsContext
from opsloop.store.repository import OpsStore

# A Wednesday, clear of the scheduled trigger windows.
START = datetime(2026, 3, 4, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, now: datetime) -> None:
        self.now = now


class FixedRandom(random.Random):
    """random() always returns the same draw; everything else is seeded."""

    def __init__(self, draw: float = 0.99) -> None:
        super().__init__(42)
        self.draw = draw

    def random(self) -> float:
        return self.draw


@pytest.fixture
def db_path():
    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)
    yield path
    os.unlink(path)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def rng():
    return FixedRandom()


@pytest_asyncio.fixture
async def store(db_path):
    s = OpsStore(db_path)
    await s.initialize()
    return s


@pytest_asyncio.fixture
async def ctx(db_path, clock, rng):
    c = OpsContext(db_path=db_path, clock=clock, rng=rng)
    await c.ensure_ready()
    return c


@pytest.fixture
def make_rng():
    """Factory for FixedRandom with a chosen draw."""
    return FixedRandom
