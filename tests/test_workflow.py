from __future__ import annotations

from contextlib import asynccontextmanager

import pytest

from garage_monitor.common.config import MonitorSettings
from garage_monitor.common.exceptions import LockingViolation
from garage_monitor.services.orchestration.engine import OrchestrationEngine
from garage_monitor.services.orchestration.history import RuntimeStatus
from garage_monitor.services.orchestration.workflow import (
    ORCHESTRATOR_NAME,
    register_door_monitor,
)

from .conftest import FakeNotifier, ManualTimers


def _no_delay(settings: MonitorSettings, **changes) -> MonitorSettings:
    return settings.model_copy(update={"timer_delay_minutes": 0, **changes})


@pytest.mark.asyncio
async def test_door_left_open_gets_initial_plus_ten_retries(engine, entities, settings, notifier) -> None:
    settings = _no_delay(settings)
    register_door_monitor(engine, settings, notifier)
    await entities.update(settings.entity_id, "open")

    instance_id = await engine.start_instance(ORCHESTRATOR_NAME, {"delay_minutes": 0})
    status = await engine.wait_for_completion(instance_id, timeout=5)

    assert status.runtime_status == RuntimeStatus.COMPLETED
    assert status.output == {
        "outcome": "max_retries_reached",
        "retry_count": 11,
        "notifications_sent": 11,
    }
    assert notifier.calls == 11
    assert status.custom_status["phase"] == "done"


@pytest.mark.asyncio
async def test_closed_door_finishes_without_notifying(engine, entities, settings, notifier) -> None:
    settings = _no_delay(settings)
    register_door_monitor(engine, settings, notifier)
    await entities.update(settings.entity_id, "Closed")

    instance_id = await engine.start_instance(ORCHESTRATOR_NAME)
    status = await engine.wait_for_completion(instance_id, timeout=5)

    assert status.output["outcome"] == "door_closed"
    assert status.output["retry_count"] == 0
    assert notifier.calls == 0


@pytest.mark.asyncio
async def test_closing_the_door_stops_notifications(
    engine: OrchestrationEngine, entities, settings, notifier, timers: ManualTimers
) -> None:
    register_door_monitor(engine, settings, notifier)
    await entities.update(settings.entity_id, "open")

    instance_id = await engine.start_instance(ORCHESTRATOR_NAME, {"delay_minutes": 2})
    await timers.fire()
    assert notifier.calls == 1
    assert timers.requested[0] == pytest.approx(120, abs=5)

    await timers.wait_pending()
    await entities.update(settings.entity_id, "closed")
    await timers.fire()

    status = await engine.wait_for_completion(instance_id, timeout=5)
    assert status.output == {
        "outcome": "door_closed",
        "retry_count": 1,
        "notifications_sent": 1,
    }
    assert notifier.calls == 1


@pytest.mark.asyncio
async def test_lock_is_released_before_notifying(engine, entities, settings) -> None:
    settings = _no_delay(settings, max_retries=0)
    held_during_notify: list[bool] = []

    async def notify() -> dict:
        held_during_notify.append(entities.is_locked(settings.entity_id))
        return {"sid": "SM1"}

    register_door_monitor(engine, settings, notify)
    await entities.update(settings.entity_id, "open")

    instance_id = await engine.start_instance(ORCHESTRATOR_NAME, {"delay_minutes": 0})
    await engine.wait_for_completion(instance_id, timeout=5)

    assert held_during_notify == [False]


@pytest.mark.asyncio
async def test_locking_violation_is_logged_and_counted(engine, entities, settings, notifier, monkeypatch) -> None:
    settings = _no_delay(settings, max_retries=2)
    register_door_monitor(engine, settings, notifier)
    await entities.update(settings.entity_id, "open")

    real_section = entities.critical_section
    attempts = {"n": 0}

    @asynccontextmanager
    async def flaky(entity_id, owner):
        attempts["n"] += 1
        if attempts["n"] == 1:
            raise LockingViolation("simulated contention", entity=str(entity_id), owner=owner)
        async with real_section(entity_id, owner) as handle:
            yield handle

    monkeypatch.setattr(entities, "critical_section", flaky)

    instance_id = await engine.start_instance(ORCHESTRATOR_NAME, {"delay_minutes": 0})
    status = await engine.wait_for_completion(instance_id, timeout=5)

    assert status.runtime_status == RuntimeStatus.COMPLETED
    assert status.output["retry_count"] == 3
    assert notifier.calls == 2


@pytest.mark.asyncio
async def test_raising_activity_never_fails_the_workflow(engine, entities, settings) -> None:
    settings = _no_delay(settings, max_retries=3)
    notifier = FakeNotifier(error=RuntimeError("twilio exploded"))
    register_door_monitor(engine, settings, notifier)
    await entities.update(settings.entity_id, "open")

    instance_id = await engine.start_instance(ORCHESTRATOR_NAME, {"delay_minutes": 0})
    status = await engine.wait_for_completion(instance_id, timeout=5)

    assert status.runtime_status == RuntimeStatus.COMPLETED
    assert status.output == {
        "outcome": "max_retries_reached",
        "retry_count": 4,
        "notifications_sent": 0,
    }
    assert notifier.calls == 4


@pytest.mark.asyncio
async def test_failed_delivery_moves_on_to_next_retry(
    engine: OrchestrationEngine, entities, settings, timers: ManualTimers
) -> None:
    notifier = FakeNotifier(result={"error": "500: Internal Server Error"})
    register_door_monitor(engine, settings, notifier)
    await entities.update(settings.entity_id, "open")

    instance_id = await engine.start_instance(ORCHESTRATOR_NAME, {"delay_minutes": 2})
    await timers.fire()
    await timers.wait_pending()

    status = engine.get_instance_status(instance_id)
    assert status.runtime_status == RuntimeStatus.RUNNING
    assert status.custom_status == {
        "phase": "waiting_timer",
        "retry_count": 1,
        "delay_minutes": 2,
    }
    assert notifier.calls == 1
