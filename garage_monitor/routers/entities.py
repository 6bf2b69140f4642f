"""
Entities Router

Read-only view of entity state (unguarded snapshot).
"""

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from ..common.config import EntityId
from ..dependencies.services import get_entities, verify_function_key
from ..services.entity.store import EntityStore

router = APIRouter(dependencies=[Depends(verify_function_key)])


class EntityStateResponse(BaseModel):
    """Entity state response."""
    kind: str
    name: str
    state: str


@router.get("/{kind}/{name}", response_model=EntityStateResponse)
async def read_entity(
    kind: str,
    name: str,
    entities: EntityStore = Depends(get_entities),
):
    """Get the last committed state of an entity."""
    state = await entities.read(EntityId(kind, name))
    if state is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Entity {kind}/{name} has no state",
        )
    return EntityStateResponse(kind=kind, name=name, state=state)
