"""
Entity Service

Serialized, durable key-value actors. The garage door status is the only
entity kind the monitor uses.
"""

from .sensor import door_status_entity, OPERATIONS
from .store import EntityStore, LockedEntity

__all__ = ["EntityStore", "LockedEntity", "door_status_entity", "OPERATIONS"]
