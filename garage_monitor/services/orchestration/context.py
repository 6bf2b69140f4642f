"""
Orchestration Context

The handle an orchestrator function uses to talk to the host. Orchestrator
code must stay deterministic: it reads time only through
current_utc_datetime and performs side effects only through the awaited
primitives below, each of which is recorded in the step log and replayed
from it after a restart.
"""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import TYPE_CHECKING, Any

from ...common.config import EntityId
from ...common.exceptions import (
    ActivityFailed,
    EntityOperationError,
    LockingViolation,
    NonDeterminismError,
    OrchestrationError,
    OrchestratorNotRegistered,
)
from .history import EventType, HistoryEvent

if TYPE_CHECKING:
    from .engine import OrchestrationEngine


class OrchestrationContext:
    """Replay-aware primitives for one orchestration instance"""

    def __init__(
        self,
        instance_id: str,
        name: str,
        input_data: Any,
        history: list[HistoryEvent],
        engine: "OrchestrationEngine",
    ):
        if not history or history[0].event_type != EventType.EXECUTION_STARTED:
            raise OrchestrationError(f"instance '{instance_id}' has no ExecutionStarted event")

        self.instance_id = instance_id
        self.name = name
        self._input = input_data
        self._engine = engine
        self._history = {event.seq: event for event in history}
        self._replay_until = max(self._history)
        self._seq = 0
        self._current_time = history[0].timestamp
        self._held: set[EntityId] = set()

    # ------------------------------------------------------------------
    # Deterministic state
    # ------------------------------------------------------------------

    def get_input(self) -> Any:
        return self._input

    @property
    def current_utc_datetime(self) -> datetime:
        """Timestamp of the most recently processed step"""
        return self._current_time

    @property
    def is_replaying(self) -> bool:
        """True while the orchestrator is re-walking steps it already recorded"""
        return self._seq < self._replay_until

    def set_custom_status(self, value: Any) -> None:
        if not self.is_replaying:
            self._engine.db.update_instance(self.instance_id, custom_status=value)

    # ------------------------------------------------------------------
    # Step log
    # ------------------------------------------------------------------

    def _next_seq(self) -> int:
        self._seq += 1
        return self._seq

    def _recorded(self, seq: int, expected: EventType) -> HistoryEvent | None:
        event = self._history.get(seq)
        if event is None:
            return None
        if event.event_type != expected:
            raise NonDeterminismError(seq, expected.value, event.event_type.value)
        self._current_time = event.timestamp
        return event

    def _record(self, seq: int, event_type: EventType, payload: dict[str, Any]) -> HistoryEvent:
        event = HistoryEvent(
            seq=seq,
            event_type=event_type,
            timestamp=self._engine.now(),
            payload=payload,
        )
        self._engine.db.append_history(
            self.instance_id,
            seq,
            event_type.value,
            payload,
            event.timestamp.isoformat(),
        )
        self._history[seq] = event
        self._current_time = event.timestamp
        return event

    def record_completion(self, payload: dict[str, Any]) -> None:
        """Append the ExecutionCompleted event after the orchestrator returned or failed"""
        seq = self._next_seq()
        # Already recorded by a run that stopped before updating the instance row
        if self._recorded(seq, EventType.EXECUTION_COMPLETED) is None:
            self._record(seq, EventType.EXECUTION_COMPLETED, payload)

    def record_failure(self, payload: dict[str, Any]) -> None:
        """Close the step log of a failed run, appending after anything already recorded"""
        recorded = self._history.get(self._seq + 1)
        if recorded is not None and recorded.event_type == EventType.EXECUTION_COMPLETED:
            return
        self._record(max(self._history) + 1, EventType.EXECUTION_COMPLETED, payload)

    def _find_release(self, acquired_seq: int) -> HistoryEvent | None:
        for event in self._history.values():
            if (
                event.event_type == EventType.LOCK_RELEASED
                and event.payload.get("acquired_seq") == acquired_seq
            ):
                return event
        return None

    # ------------------------------------------------------------------
    # Primitives
    # ------------------------------------------------------------------

    async def create_timer(self, fire_at: datetime) -> None:
        """Suspend until fire_at. Survives restarts: only the remaining time is waited."""
        seq = self._next_seq()
        created = self._recorded(seq, EventType.TIMER_CREATED)
        if created is None:
            self._record(seq, EventType.TIMER_CREATED, {"fire_at": fire_at.isoformat()})
        else:
            fire_at = datetime.fromisoformat(created.payload["fire_at"])

        seq = self._next_seq()
        if self._recorded(seq, EventType.TIMER_FIRED) is None:
            await self._engine.sleep_until(fire_at)
            self._record(seq, EventType.TIMER_FIRED, {"fire_at": fire_at.isoformat()})

    @asynccontextmanager
    async def lock(self, entity_id: EntityId):
        """
        Hold the entity's critical section for the block.

        A section that completed before a restart is replayed without
        touching the store; one that was interrupted is acquired again.
        """
        if entity_id in self._held:
            raise LockingViolation(
                f"{self.instance_id} already holds the lock on {entity_id}",
                entity=str(entity_id),
                owner=self.instance_id,
            )

        seq = self._next_seq()
        acquired = self._recorded(seq, EventType.LOCK_ACQUIRED)

        if acquired is not None and self._find_release(seq) is not None:
            self._held.add(entity_id)
            try:
                yield
            except Exception:
                self._record_release(seq, entity_id)
                raise
            else:
                self._record_release(seq, entity_id)
            finally:
                self._held.discard(entity_id)
            return

        async with self._engine.entities.critical_section(entity_id, self.instance_id):
            if acquired is None:
                self._record(seq, EventType.LOCK_ACQUIRED, {"entity": str(entity_id)})
            self._held.add(entity_id)
            # Cancellation leaves no release record, so a resumed run re-acquires
            try:
                yield
            except Exception:
                self._record_release(seq, entity_id)
                raise
            else:
                self._record_release(seq, entity_id)
            finally:
                self._held.discard(entity_id)

    def _record_release(self, acquired_seq: int, entity_id: EntityId) -> None:
        seq = self._next_seq()
        if self._recorded(seq, EventType.LOCK_RELEASED) is None:
            self._record(seq, EventType.LOCK_RELEASED, {
                "entity": str(entity_id),
                "acquired_seq": acquired_seq,
            })

    async def call_entity(self, entity_id: EntityId, operation: str, value: Any = None) -> Any:
        """Run an entity operation, inside this instance's critical section if it holds one"""
        seq = self._next_seq()
        recorded = self._recorded(seq, EventType.ENTITY_CALLED)
        if recorded is not None:
            if "error" in recorded.payload:
                raise EntityOperationError(str(entity_id), operation)
            return recorded.payload.get("result")

        try:
            result = await self._engine.entities.call(
                entity_id, operation, value, owner=self.instance_id
            )
        except EntityOperationError as e:
            self._record(seq, EventType.ENTITY_CALLED, {
                "entity": str(entity_id),
                "operation": operation,
                "error": e.message,
            })
            raise

        self._record(seq, EventType.ENTITY_CALLED, {
            "entity": str(entity_id),
            "operation": operation,
            "result": result,
        })
        return result

    async def call_activity(self, name: str, input_data: Any = None) -> Any:
        """
        Run a registered activity once and record its result.

        Raises:
            ActivityFailed: if the activity raised (also on replay)
        """
        seq = self._next_seq()
        recorded = self._recorded(seq, EventType.ACTIVITY_COMPLETED)
        if recorded is not None:
            if recorded.payload.get("failed"):
                raise ActivityFailed(name, recorded.payload.get("error", ""))
            return recorded.payload.get("result")

        activity = self._engine.get_activity(name)
        if activity is None:
            raise OrchestratorNotRegistered(name)

        try:
            result = await activity(input_data)
        except Exception as e:
            self._record(seq, EventType.ACTIVITY_COMPLETED, {
                "name": name,
                "failed": True,
                "error": str(e),
            })
            raise ActivityFailed(name, str(e)) from e

        self._record(seq, EventType.ACTIVITY_COMPLETED, {"name": name, "result": result})
        return result
