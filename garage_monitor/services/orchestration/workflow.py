"""
Door Monitor Workflow

While the garage door stays open, wait a fixed delay, re-check the door
status under the entity lock and send a text message, up to max_retries
repeats:

    WAITING_TIMER -> CHECKING_STATE -> NOTIFYING -> WAITING_TIMER ...
                                    -> DONE

One instance owns the whole retry loop. The loop ends when the entity reads
"closed" or when retry_count exceeds max_retries; the outcome is returned as
a MonitorResult, never raised.
"""

from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any, Awaitable, Callable

from ...common.config import CLOSED_STATE, EntityId, MonitorSettings
from ...common.exceptions import LockingViolation, NonDeterminismError
from ...common.logging_setup import get_service_logger
from .context import OrchestrationContext
from .engine import OrchestrationEngine

logger = get_service_logger("orchestration.door_monitor")

ORCHESTRATOR_NAME = "DoorMonitor"
SEND_TEXT_MESSAGE = "SendTextMessage"


class Phase(str, Enum):
    """Workflow states"""
    WAITING_TIMER = "waiting_timer"
    CHECKING_STATE = "checking_state"
    NOTIFYING = "notifying"
    DONE = "done"


class Outcome(str, Enum):
    DOOR_CLOSED = "door_closed"
    MAX_RETRIES_REACHED = "max_retries_reached"


@dataclass
class MonitorResult:
    """Terminal state of one monitoring instance"""
    outcome: Outcome
    retry_count: int
    notifications_sent: int


def is_closed(state: str | None) -> bool:
    return state is not None and state.lower() == CLOSED_STATE


def build_door_monitor(
    entity_id: EntityId,
    max_retries: int,
    default_delay_minutes: float,
) -> Callable[[OrchestrationContext], Awaitable[MonitorResult]]:
    """
    Build the orchestrator function for one sensor entity.

    The input may carry {"delay_minutes": float}; otherwise
    default_delay_minutes is used.
    """

    async def door_monitor(ctx: OrchestrationContext) -> MonitorResult:
        input_data: dict[str, Any] = ctx.get_input() or {}
        delay_minutes = input_data.get("delay_minutes", default_delay_minutes)
        delay = timedelta(minutes=delay_minutes)

        retry_count = 0
        notifications_sent = 0

        def log(level: str, message: str) -> None:
            if not ctx.is_replaying:
                getattr(logger, level)(message, extra={"instance_id": ctx.instance_id})

        def enter(phase: Phase) -> None:
            ctx.set_custom_status({
                "phase": phase.value,
                "retry_count": retry_count,
                "delay_minutes": delay_minutes,
            })

        while True:
            enter(Phase.WAITING_TIMER)
            fire_at = ctx.current_utc_datetime + delay
            log("info", f"Setting timer to expire at {fire_at.isoformat()}")
            await ctx.create_timer(fire_at)
            log("info", "Timer fired")

            try:
                # Decide under the lock, notify after releasing it
                enter(Phase.CHECKING_STATE)
                async with ctx.lock(entity_id):
                    log("debug", "Entity lock acquired")
                    current_state = await ctx.call_entity(entity_id, "read")
                    log("info", f"Current state is {current_state}")

                if is_closed(current_state):
                    log("info", "Door is already closed. Skipping text message")
                    enter(Phase.DONE)
                    return MonitorResult(Outcome.DOOR_CLOSED, retry_count, notifications_sent)

                enter(Phase.NOTIFYING)
                try:
                    result = await ctx.call_activity(SEND_TEXT_MESSAGE)
                    if result and result.get("error"):
                        log("warning", f"Text message not delivered: {result['error']}")
                    else:
                        notifications_sent += 1
                except NonDeterminismError:
                    raise
                except Exception as e:
                    log("error", f"Text message activity failed: {e}")
            except NonDeterminismError:
                # Corrupted step log; the engine marks the instance failed
                raise
            except LockingViolation as e:
                log("error", f"Failed to lock/call the entity: {e}")
            except Exception as e:
                log("error", f"Unexpected exception occurred: {e}")

            retry_count += 1
            if retry_count > max_retries:
                log("info", "Reached max retry count, but the door is still open. Will stop checking now")
                enter(Phase.DONE)
                return MonitorResult(Outcome.MAX_RETRIES_REACHED, retry_count, notifications_sent)

            log("info", "Door is still open. Scheduling another check")

    return door_monitor


def register_door_monitor(
    engine: OrchestrationEngine,
    settings: MonitorSettings,
    send_text_message: Callable[[], Awaitable[dict]],
) -> None:
    """Register the door monitor orchestrator and its SMS activity on an engine"""

    async def send_text_message_activity(_input: Any = None) -> dict:
        return await send_text_message()

    engine.register_orchestrator(
        ORCHESTRATOR_NAME,
        build_door_monitor(
            settings.entity_id,
            settings.max_retries,
            settings.timer_delay_minutes,
        ),
    )
    engine.register_activity(SEND_TEXT_MESSAGE, send_text_message_activity)
