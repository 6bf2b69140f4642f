"""
Sensor Entity

The door status entity holds a single string ("open", "closed", or unset).
Every operation returns the entity's state after it ran.
"""

from ...common.exceptions import EntityOperationError

OPERATIONS = ("read", "update")


def door_status_entity(entity: str, operation: str, state: str | None, value: str | None) -> str | None:
    """
    Apply one operation to the door status.

    Args:
        entity: Entity key, for error messages
        operation: "read" or "update"
        state: Current committed state (None if never written)
        value: Operation input

    Returns:
        State after the operation

    Raises:
        EntityOperationError: for unknown operations
    """
    if operation == "update":
        return value
    if operation == "read":
        return state
    raise EntityOperationError(entity, operation)
