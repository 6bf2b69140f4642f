"""
Orchestration Engine

A small durable-execution host. Each orchestration instance runs as an
asyncio task; its progress is an append-only step log in SQLite, so an
instance interrupted by a restart is resumed by replaying that log and
continuing from the first unrecorded step.

Host interface:
- start_instance(name, input) -> instance_id
- get_instance_status(instance_id)
- terminate_instance(instance_id, reason)
- resume_pending() on startup, shutdown() on exit
"""

import asyncio
import dataclasses
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable
from uuid import uuid4

from pydantic import BaseModel

from ...common.exceptions import InstanceNotFound, OrchestratorNotRegistered
from ...common.logging_setup import get_service_logger
from ...storage.local_db import LocalDatabase
from ..entity.store import EntityStore
from .context import OrchestrationContext
from .history import EventType, HistoryEvent, RuntimeStatus

logger = get_service_logger("orchestration")

Orchestrator = Callable[[OrchestrationContext], Awaitable[Any]]
Activity = Callable[[Any], Awaitable[Any]]


class InstanceStatus(BaseModel):
    """Status of one orchestration instance."""
    instance_id: str
    name: str
    runtime_status: RuntimeStatus
    input: Any = None
    output: Any = None
    custom_status: Any = None
    created_at: datetime
    last_updated_at: datetime


def _to_jsonable(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    return value


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class OrchestrationEngine:
    """
    Durable orchestration host.

    Args:
        db: Step log and instance table
        entities: Entity store the orchestrators lock and call
        clock: Returns the current UTC time (replaceable in tests)
        sleep: Coroutine used to wait for timers (replaceable in tests)
    """

    def __init__(
        self,
        db: LocalDatabase,
        entities: EntityStore,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ):
        self.db = db
        self.entities = entities
        self._clock = clock or _utc_now
        self._sleep = sleep or asyncio.sleep

        self._orchestrators: dict[str, Orchestrator] = {}
        self._activities: dict[str, Activity] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_orchestrator(self, name: str, fn: Orchestrator) -> None:
        self._orchestrators[name] = fn

    def register_activity(self, name: str, fn: Activity) -> None:
        self._activities[name] = fn

    def get_activity(self, name: str) -> Activity | None:
        return self._activities.get(name)

    # ------------------------------------------------------------------
    # Time
    # ------------------------------------------------------------------

    def now(self) -> datetime:
        return self._clock()

    async def sleep_until(self, fire_at: datetime) -> None:
        """Wait until fire_at; returns immediately if it already passed"""
        remaining = (fire_at - self._clock()).total_seconds()
        if remaining > 0:
            await self._sleep(remaining)

    # ------------------------------------------------------------------
    # Host interface
    # ------------------------------------------------------------------

    async def start_instance(
        self,
        name: str,
        input_data: Any = None,
        instance_id: str | None = None,
    ) -> str:
        """
        Create and schedule a new orchestration instance.

        Returns:
            The new instance id

        Raises:
            OrchestratorNotRegistered: if no orchestrator has that name
        """
        if name not in self._orchestrators:
            raise OrchestratorNotRegistered(name)

        instance_id = instance_id or uuid4().hex
        input_data = _to_jsonable(input_data)
        created_at = self.now().isoformat()

        self.db.insert_instance(
            instance_id, name, RuntimeStatus.PENDING.value, input_data, created_at
        )
        self.db.append_history(
            instance_id,
            0,
            EventType.EXECUTION_STARTED.value,
            {"name": name, "input": input_data},
            created_at,
        )

        self._spawn(instance_id, name, input_data)
        logger.info(
            f"Started orchestration '{name}' with ID = '{instance_id}'",
            extra={"instance_id": instance_id},
        )
        return instance_id

    def get_instance_status(self, instance_id: str) -> InstanceStatus | None:
        row = self.db.get_instance(instance_id)
        if row is None:
            return None
        return InstanceStatus(
            instance_id=row["instance_id"],
            name=row["name"],
            runtime_status=RuntimeStatus(row["status"]),
            input=row["input"],
            output=row["output"],
            custom_status=row["custom_status"],
            created_at=row["created_at"],
            last_updated_at=row["updated_at"],
        )

    async def terminate_instance(self, instance_id: str, reason: str = "") -> bool:
        """
        Stop a running instance.

        Returns:
            True if the instance was terminated, False if it had already finished

        Raises:
            InstanceNotFound: for unknown ids
        """
        row = self.db.get_instance(instance_id)
        if row is None:
            raise InstanceNotFound(instance_id)
        if RuntimeStatus(row["status"]).is_terminal:
            return False

        task = self._tasks.pop(instance_id, None)
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        history = self.db.get_history(instance_id)
        next_seq = history[-1]["seq"] + 1 if history else 0
        self.db.append_history(
            instance_id,
            next_seq,
            EventType.EXECUTION_TERMINATED.value,
            {"reason": reason},
            self.now().isoformat(),
        )
        self.db.update_instance(
            instance_id,
            status=RuntimeStatus.TERMINATED.value,
            output={"reason": reason},
        )
        logger.warning(
            f"Terminated orchestration '{instance_id}': {reason or 'no reason given'}",
            extra={"instance_id": instance_id},
        )
        return True

    async def wait_for_completion(self, instance_id: str, timeout: float | None = None) -> InstanceStatus:
        """Wait for a locally running instance to finish and return its final status"""
        task = self._tasks.get(instance_id)
        if task is not None:
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout)
            except asyncio.CancelledError:
                # Terminated while we waited
                if not task.cancelled():
                    raise
        status = self.get_instance_status(instance_id)
        if status is None:
            raise InstanceNotFound(instance_id)
        return status

    def is_running(self, instance_id: str) -> bool:
        task = self._tasks.get(instance_id)
        return task is not None and not task.done()

    async def resume_pending(self) -> int:
        """
        Resume every instance left Pending or Running by a previous process.

        Returns:
            Number of instances resumed
        """
        rows = self.db.get_instances_by_status(
            [RuntimeStatus.PENDING.value, RuntimeStatus.RUNNING.value]
        )
        resumed = 0
        for row in rows:
            instance_id = row["instance_id"]
            if instance_id in self._tasks:
                continue
            if row["name"] not in self._orchestrators:
                logger.error(
                    f"Cannot resume '{instance_id}': orchestrator '{row['name']}' is not registered",
                    extra={"instance_id": instance_id},
                )
                self.db.update_instance(
                    instance_id,
                    status=RuntimeStatus.FAILED.value,
                    output={"error": str(OrchestratorNotRegistered(row["name"]))},
                )
                continue
            self._spawn(instance_id, row["name"], row["input"])
            resumed += 1

        if resumed:
            logger.info(f"Resumed {resumed} orchestration instance(s)")
        return resumed

    async def shutdown(self) -> None:
        """Cancel live instances. They stay Running in the database and resume on next start."""
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _spawn(self, instance_id: str, name: str, input_data: Any) -> None:
        self._tasks[instance_id] = asyncio.create_task(
            self._run(instance_id, name, input_data),
            name=f"orchestration-{instance_id}",
        )

    async def _run(self, instance_id: str, name: str, input_data: Any) -> None:
        fn = self._orchestrators[name]
        ctx: OrchestrationContext | None = None
        try:
            history = [HistoryEvent.from_row(row) for row in self.db.get_history(instance_id)]
            ctx = OrchestrationContext(instance_id, name, input_data, history, self)
            self.db.update_instance(instance_id, status=RuntimeStatus.RUNNING.value)

            output = _to_jsonable(await fn(ctx))
            ctx.record_completion({"output": output})
            self.db.update_instance(
                instance_id,
                status=RuntimeStatus.COMPLETED.value,
                output=output,
            )
            logger.info(
                f"Orchestration '{instance_id}' completed",
                extra={"instance_id": instance_id},
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                f"Orchestration '{instance_id}' failed: {e}",
                exc_info=True,
                extra={"instance_id": instance_id},
            )
            if ctx is not None:
                ctx.record_failure({"failed": True, "error": str(e)})
            self.db.update_instance(
                instance_id,
                status=RuntimeStatus.FAILED.value,
                output={"error": str(e)},
            )
        finally:
            current = self._tasks.get(instance_id)
            if current is asyncio.current_task():
                self._tasks.pop(instance_id, None)
