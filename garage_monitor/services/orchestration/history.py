"""
Orchestration History Types

Each orchestration instance owns an append-only step log. Every awaited
primitive (timer, lock, entity call, activity call) records its outcome
here the first time it runs; on resume the log is replayed instead of
re-running the side effects.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class EventType(str, Enum):
    """Step log event types"""
    EXECUTION_STARTED = "ExecutionStarted"
    TIMER_CREATED = "TimerCreated"
    TIMER_FIRED = "TimerFired"
    LOCK_ACQUIRED = "LockAcquired"
    LOCK_RELEASED = "LockReleased"
    ENTITY_CALLED = "EntityCalled"
    ACTIVITY_COMPLETED = "ActivityCompleted"
    EXECUTION_COMPLETED = "ExecutionCompleted"
    EXECUTION_TERMINATED = "ExecutionTerminated"


class RuntimeStatus(str, Enum):
    """Instance lifecycle states"""
    PENDING = "Pending"
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"
    TERMINATED = "Terminated"

    @property
    def is_terminal(self) -> bool:
        return self in (RuntimeStatus.COMPLETED, RuntimeStatus.FAILED, RuntimeStatus.TERMINATED)


@dataclass
class HistoryEvent:
    """One recorded step"""
    seq: int
    event_type: EventType
    timestamp: datetime
    payload: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: dict) -> "HistoryEvent":
        return cls(
            seq=row["seq"],
            event_type=EventType(row["event_type"]),
            timestamp=datetime.fromisoformat(row["timestamp"]),
            payload=row.get("payload") or {},
        )
