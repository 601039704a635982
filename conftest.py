"""Shared fixtures: fake time and a fresh reference store."""
import asyncio
import random

import pytest

from changefeed_verify.config import Settings
from changefeed_verify.store import FaultInjector, VersionedStore


class FakeClock:
    """Monotonic clock that only moves when something sleeps on it."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    s = VersionedStore("sqlite://")
    yield s
    s.close()


@pytest.fixture
def faulty_store():
    s = VersionedStore("sqlite://", faults=FaultInjector(0.2, random.Random(1234)))
    yield s
    s.close()


@pytest.fixture
def config():
    """Fast settings: short waits, bounded retries."""
    return Settings(
        TEST_DURATION=5.0,
        FIRST_DELAY_MAX=0.1,
        SECOND_DELAY_MAX=1.0,
        SEED=42,
        CHUNK_SIZE=7,
        FEED_BATCHES_PER_CHUNK=3,
        RETRY_MIN_WAIT=0.001,
        RETRY_MAX_WAIT=0.01,
        RETRY_MAX_ATTEMPTS=None,
    )
