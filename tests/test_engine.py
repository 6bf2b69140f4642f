from __future__ import annotations

import pytest

from garage_monitor.common.exceptions import ActivityFailed, InstanceNotFound, OrchestratorNotRegistered
from garage_monitor.services.entity.store import EntityStore
from garage_monitor.services.orchestration.engine import OrchestrationEngine
from garage_monitor.services.orchestration.history import EventType, RuntimeStatus
from garage_monitor.services.orchestration.workflow import (
    ORCHESTRATOR_NAME,
    register_door_monitor,
)
from garage_monitor.storage.local_db import utc_now_iso

from .conftest import FakeNotifier, ManualTimers


@pytest.mark.asyncio
async def test_start_unknown_orchestrator_raises(engine: OrchestrationEngine) -> None:
    with pytest.raises(OrchestratorNotRegistered):
        await engine.start_instance("NoSuchWorkflow")


@pytest.mark.asyncio
async def test_orchestrator_return_value_becomes_output(engine: OrchestrationEngine, db) -> None:
    async def echo(ctx) -> dict:
        return {"echo": ctx.get_input()}

    engine.register_orchestrator("Echo", echo)
    instance_id = await engine.start_instance("Echo", {"x": 1})
    status = await engine.wait_for_completion(instance_id, timeout=5)

    assert status.runtime_status == RuntimeStatus.COMPLETED
    assert status.output == {"echo": {"x": 1}}
    events = [row["event_type"] for row in db.get_history(instance_id)]
    assert events == [EventType.EXECUTION_STARTED.value, EventType.EXECUTION_COMPLETED.value]


@pytest.mark.asyncio
async def test_raising_orchestrator_is_marked_failed(engine: OrchestrationEngine) -> None:
    async def broken(ctx) -> None:
        raise ValueError("bad input")

    engine.register_orchestrator("Broken", broken)
    instance_id = await engine.start_instance("Broken")
    status = await engine.wait_for_completion(instance_id, timeout=5)

    assert status.runtime_status == RuntimeStatus.FAILED
    assert status.output == {"error": "bad input"}


@pytest.mark.asyncio
async def test_activity_failure_is_recorded(engine: OrchestrationEngine, db) -> None:
    async def explode(_input) -> None:
        raise RuntimeError("provider down")

    async def caller(ctx) -> str:
        try:
            await ctx.call_activity("Explode")
        except ActivityFailed as e:
            return e.message
        return "no error"

    engine.register_activity("Explode", explode)
    engine.register_orchestrator("Caller", caller)

    instance_id = await engine.start_instance("Caller")
    status = await engine.wait_for_completion(instance_id, timeout=5)

    assert "provider down" in status.output
    activity_rows = [
        row for row in db.get_history(instance_id)
        if row["event_type"] == EventType.ACTIVITY_COMPLETED.value
    ]
    assert len(activity_rows) == 1
    assert activity_rows[0]["payload"]["failed"] is True


@pytest.mark.asyncio
async def test_terminate_instance(engine: OrchestrationEngine, entities, settings, notifier, timers: ManualTimers) -> None:
    register_door_monitor(engine, settings, notifier)
    await entities.update(settings.entity_id, "open")

    instance_id = await engine.start_instance(ORCHESTRATOR_NAME, {"delay_minutes": 2})
    await timers.wait_pending()

    assert await engine.terminate_instance(instance_id, "owner is home")
    assert not engine.is_running(instance_id)

    status = engine.get_instance_status(instance_id)
    assert status.runtime_status == RuntimeStatus.TERMINATED
    assert status.output == {"reason": "owner is home"}
    assert notifier.calls == 0

    # Already finished
    assert await engine.terminate_instance(instance_id, "again") is False

    with pytest.raises(InstanceNotFound):
        await engine.terminate_instance("does-not-exist")


@pytest.mark.asyncio
async def test_resume_after_restart_does_not_resend(db, entities, settings, notifier, timers: ManualTimers) -> None:
    first = OrchestrationEngine(db, entities, sleep=timers.sleep)
    register_door_monitor(first, settings, notifier)
    await entities.update(settings.entity_id, "open")

    instance_id = await first.start_instance(ORCHESTRATOR_NAME, {"delay_minutes": 2})
    await timers.fire()
    await timers.wait_pending()
    assert notifier.calls == 1

    # Process dies while the second timer is pending
    await first.shutdown()
    assert db.get_instance(instance_id)["status"] == RuntimeStatus.RUNNING.value

    restarted_timers = ManualTimers()
    restarted_notifier = FakeNotifier()
    store = EntityStore(db)
    second = OrchestrationEngine(db, store, sleep=restarted_timers.sleep)
    register_door_monitor(second, settings, restarted_notifier)

    try:
        assert await second.resume_pending() == 1
        await restarted_timers.wait_pending()
        # Only the remainder of the recorded timer is waited
        assert restarted_timers.requested[0] <= 120

        await store.update(settings.entity_id, "closed")
        await restarted_timers.fire()

        status = await second.wait_for_completion(instance_id, timeout=5)
        assert status.output == {
            "outcome": "door_closed",
            "retry_count": 1,
            "notifications_sent": 1,
        }
        assert restarted_notifier.calls == 0
    finally:
        await second.shutdown()
        await store.close()


@pytest.mark.asyncio
async def test_resume_marks_unregistered_orchestrator_failed(engine: OrchestrationEngine, db) -> None:
    db.insert_instance("orphan", "RetiredWorkflow", RuntimeStatus.RUNNING.value, None, utc_now_iso())

    assert await engine.resume_pending() == 0

    status = engine.get_instance_status("orphan")
    assert status.runtime_status == RuntimeStatus.FAILED
    assert "RetiredWorkflow" in status.output["error"]


@pytest.mark.asyncio
async def test_resume_after_completion_was_recorded(engine: OrchestrationEngine, db) -> None:
    async def echo(ctx) -> str:
        return "done"

    engine.register_orchestrator("Echo", echo)
    instance_id = await engine.start_instance("Echo")
    await engine.wait_for_completion(instance_id, timeout=5)

    # Process died between writing ExecutionCompleted and updating the row
    db.update_instance(instance_id, status=RuntimeStatus.RUNNING.value)

    assert await engine.resume_pending() == 1
    status = await engine.wait_for_completion(instance_id, timeout=5)

    assert status.runtime_status == RuntimeStatus.COMPLETED
    assert status.output == "done"
    completed = [
        row for row in db.get_history(instance_id)
        if row["event_type"] == EventType.EXECUTION_COMPLETED.value
    ]
    assert len(completed) == 1


@pytest.mark.asyncio
async def test_diverging_history_fails_the_instance(engine: OrchestrationEngine, entities, settings, notifier, db) -> None:
    register_door_monitor(engine, settings, notifier)
    await entities.update(settings.entity_id, "open")

    now = utc_now_iso()
    input_data = {"delay_minutes": 2}
    db.insert_instance("diverged", ORCHESTRATOR_NAME, RuntimeStatus.RUNNING.value, input_data, now)
    db.append_history("diverged", 0, EventType.EXECUTION_STARTED.value,
                      {"name": ORCHESTRATOR_NAME, "input": input_data}, now)
    db.append_history("diverged", 1, EventType.TIMER_CREATED.value, {"fire_at": now}, now)
    db.append_history("diverged", 2, EventType.TIMER_FIRED.value, {"fire_at": now}, now)
    # Step 3 should be the lock acquisition
    db.append_history("diverged", 3, EventType.ACTIVITY_COMPLETED.value,
                      {"name": "SendTextMessage", "result": {"sid": "SM1"}}, now)

    assert await engine.resume_pending() == 1
    status = await engine.wait_for_completion("diverged", timeout=5)

    assert status.runtime_status == RuntimeStatus.FAILED
    assert "step 3" in status.output["error"]
    assert notifier.calls == 0
