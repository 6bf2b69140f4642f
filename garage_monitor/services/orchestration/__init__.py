"""
Orchestration

Durable workflow host (engine.py, context.py, history.py) and the door
monitor workflow it runs (workflow.py).
"""

from .context import OrchestrationContext
from .engine import OrchestrationEngine, InstanceStatus
from .history import EventType, HistoryEvent, RuntimeStatus
from .workflow import (
    ORCHESTRATOR_NAME,
    SEND_TEXT_MESSAGE,
    MonitorResult,
    Outcome,
    Phase,
    build_door_monitor,
    register_door_monitor,
)

__all__ = [
    "OrchestrationContext",
    "OrchestrationEngine",
    "InstanceStatus",
    "EventType",
    "HistoryEvent",
    "RuntimeStatus",
    "ORCHESTRATOR_NAME",
    "SEND_TEXT_MESSAGE",
    "MonitorResult",
    "Outcome",
    "Phase",
    "build_door_monitor",
    "register_door_monitor",
]
