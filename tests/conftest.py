from __future__ import annotations

import asyncio

import pytest
import pytest_asyncio

from garage_monitor.common.config import MonitorSettings
from garage_monitor.services.entity.store import EntityStore
from garage_monitor.services.orchestration.engine import OrchestrationEngine
from garage_monitor.storage.local_db import LocalDatabase


async def settle(rounds: int = 50) -> None:
    """Let every runnable task advance until it blocks again."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class ManualTimers:
    """Replaces the engine's sleep: a timer only fires when the test calls fire()."""

    def __init__(self) -> None:
        self.requested: list[float] = []
        self._waiters: list[asyncio.Future] = []

    async def sleep(self, seconds: float) -> None:
        self.requested.append(seconds)
        future = asyncio.get_running_loop().create_future()
        self._waiters.append(future)
        await future

    @property
    def pending(self) -> int:
        return sum(1 for waiter in self._waiters if not waiter.done())

    async def wait_pending(self, count: int = 1) -> None:
        for _ in range(500):
            if self.pending >= count:
                return
            await asyncio.sleep(0)
        raise AssertionError(f"expected {count} pending timer(s), found {self.pending}")

    async def fire(self) -> None:
        await self.wait_pending()
        while self._waiters:
            waiter = self._waiters.pop(0)
            if not waiter.done():
                waiter.set_result(None)
                break
        await settle()


class FakeNotifier:
    """Stands in for the SMS activity."""

    def __init__(self, result: dict | None = None, error: Exception | None = None) -> None:
        self.calls = 0
        self.result = result
        self.error = error

    async def __call__(self) -> dict:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.result if self.result is not None else {"sid": f"SM{self.calls}"}


@pytest.fixture
def settings(tmp_path) -> MonitorSettings:
    return MonitorSettings(
        db_path=tmp_path / "monitor.db",
        timer_delay_minutes=2,
        max_retries=10,
        twilio_account_sid="AC123",
        twilio_account_token="token",
        twilio_from_number="+15550001111",
        twilio_to_number="+15552223333",
        function_key="",
    )


@pytest.fixture
def db(settings: MonitorSettings) -> LocalDatabase:
    return LocalDatabase(settings.db_path)


@pytest.fixture
def timers() -> ManualTimers:
    return ManualTimers()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest_asyncio.fixture
async def entities(db: LocalDatabase):
    store = EntityStore(db)
    yield store
    await store.close()


@pytest_asyncio.fixture
async def engine(db: LocalDatabase, entities: EntityStore, timers: ManualTimers):
    host = OrchestrationEngine(db, entities, sleep=timers.sleep)
    yield host
    await host.shutdown()
