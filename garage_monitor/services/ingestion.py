"""
State Report Ingestion

Decides what a reported door state means:
- same as the current snapshot -> nothing to do
- "closed"                    -> update the entity only
- anything else ("open")      -> update the entity and start a monitor

The snapshot read is unguarded, so two reports racing each other may both
see the old value; the running workflow re-checks under the lock.
"""

from dataclasses import dataclass
from enum import Enum

from ..common.config import MonitorSettings
from ..common.logging_setup import get_service_logger
from .entity.store import EntityStore
from .orchestration.engine import OrchestrationEngine
from .orchestration.workflow import ORCHESTRATOR_NAME, is_closed

logger = get_service_logger("ingestion")


class IngestionOutcome(str, Enum):
    ALREADY_SET = "already_set"
    UPDATED = "updated"
    STARTED = "started"


@dataclass
class IngestionResult:
    outcome: IngestionOutcome
    state: str
    message: str
    instance_id: str | None = None


class IngestionService:
    """Handles one state report at a time against the configured sensor entity"""

    def __init__(
        self,
        settings: MonitorSettings,
        entities: EntityStore,
        engine: OrchestrationEngine,
    ):
        self.settings = settings
        self.entities = entities
        self.engine = engine

    async def handle(self, new_state: str) -> IngestionResult:
        entity_id = self.settings.entity_id
        logger.info(f"Received request to update status to {new_state}")

        current_state = await self.entities.read(entity_id)
        if current_state is not None and current_state == new_state:
            logger.info(
                f"Door status is already {current_state}. Will not start a new orchestrator instance"
            )
            return IngestionResult(
                outcome=IngestionOutcome.ALREADY_SET,
                state=current_state,
                message=f"Door status is already {current_state}.",
            )

        self.entities.signal(entity_id, "update", new_state)
        logger.info(f"Updated status to {new_state}")

        if is_closed(new_state):
            return IngestionResult(
                outcome=IngestionOutcome.UPDATED,
                state=new_state,
                message=f"Door status updated to {new_state}.",
            )

        instance_id = await self.engine.start_instance(
            ORCHESTRATOR_NAME,
            {"delay_minutes": self.settings.timer_delay_minutes},
        )
        return IngestionResult(
            outcome=IngestionOutcome.STARTED,
            state=new_state,
            message=f"Started monitoring with ID = '{instance_id}'.",
            instance_id=instance_id,
        )
