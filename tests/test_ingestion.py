from __future__ import annotations

import pytest
import pytest_asyncio

from garage_monitor.services.ingestion import IngestionOutcome, IngestionService
from garage_monitor.services.orchestration.history import RuntimeStatus
from garage_monitor.services.orchestration.workflow import register_door_monitor

ALL_STATUSES = [status.value for status in RuntimeStatus]


@pytest_asyncio.fixture
async def ingestion(settings, entities, engine, notifier) -> IngestionService:
    register_door_monitor(engine, settings, notifier)
    return IngestionService(settings, entities, engine)


def _instance_count(db) -> int:
    return len(db.get_instances_by_status(ALL_STATUSES))


@pytest.mark.asyncio
async def test_first_open_report_starts_monitor(ingestion, entities, settings, db, timers) -> None:
    result = await ingestion.handle("open")

    assert result.outcome == IngestionOutcome.STARTED
    assert result.instance_id
    assert await entities.read(settings.entity_id) == "open"
    assert _instance_count(db) == 1

    # Waits the configured delay before checking anything
    await timers.wait_pending()
    assert timers.requested[0] == pytest.approx(settings.timer_delay_minutes * 60, abs=5)


@pytest.mark.asyncio
async def test_repeated_report_is_a_no_op(ingestion, entities, settings, db, monkeypatch) -> None:
    await ingestion.handle("open")

    signals: list[tuple] = []
    monkeypatch.setattr(entities, "signal", lambda *args: signals.append(args))

    result = await ingestion.handle("open")

    assert result.outcome == IngestionOutcome.ALREADY_SET
    assert result.message == "Door status is already open."
    assert signals == []
    assert _instance_count(db) == 1


@pytest.mark.asyncio
async def test_closed_report_updates_without_starting(ingestion, entities, settings, db) -> None:
    await entities.update(settings.entity_id, "open")

    result = await ingestion.handle("closed")

    assert result.outcome == IngestionOutcome.UPDATED
    assert result.instance_id is None
    assert await entities.read(settings.entity_id) == "closed"
    assert _instance_count(db) == 0


@pytest.mark.asyncio
async def test_first_closed_report_on_fresh_store(ingestion, entities, settings, db) -> None:
    result = await ingestion.handle("closed")

    assert result.outcome == IngestionOutcome.UPDATED
    assert await entities.read(settings.entity_id) == "closed"
    assert _instance_count(db) == 0


@pytest.mark.asyncio
async def test_reopening_starts_a_second_monitor(ingestion, db) -> None:
    first = await ingestion.handle("open")
    await ingestion.handle("closed")
    second = await ingestion.handle("open")

    assert second.outcome == IngestionOutcome.STARTED
    assert second.instance_id != first.instance_id
    assert _instance_count(db) == 2


@pytest.mark.asyncio
async def test_open_report_notifies_after_first_timer(ingestion, engine, notifier, timers) -> None:
    started = await ingestion.handle("open")

    await timers.fire()
    await timers.wait_pending()

    assert notifier.calls == 1
    status = engine.get_instance_status(started.instance_id)
    assert status.custom_status["retry_count"] == 1


@pytest.mark.asyncio
async def test_closed_report_stops_running_monitor(ingestion, engine, notifier, timers, db) -> None:
    started = await ingestion.handle("open")
    await timers.fire()
    await timers.wait_pending()

    closed = await ingestion.handle("closed")
    assert closed.outcome == IngestionOutcome.UPDATED

    await timers.fire()
    status = await engine.wait_for_completion(started.instance_id, timeout=5)

    assert status.output["outcome"] == "door_closed"
    assert notifier.calls == 1
    assert _instance_count(db) == 1
