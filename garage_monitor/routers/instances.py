"""
Instances Router

Operator access to monitoring orchestrations:
- Status polling
- Terminate (safety valve for a runaway monitor)
"""

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ..common.exceptions import InstanceNotFound
from ..dependencies.services import get_engine, verify_function_key
from ..services.orchestration.engine import InstanceStatus, OrchestrationEngine

router = APIRouter(dependencies=[Depends(verify_function_key)])


@router.get("/{instance_id}", response_model=InstanceStatus, name="get_instance_status")
async def get_instance_status(
    instance_id: str,
    engine: OrchestrationEngine = Depends(get_engine),
):
    """Get runtime status, custom status and output of an instance."""
    instance = engine.get_instance_status(instance_id)
    if instance is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Instance '{instance_id}' not found",
        )
    return instance


@router.post(
    "/{instance_id}/terminate",
    status_code=status.HTTP_202_ACCEPTED,
    name="terminate_instance",
)
async def terminate_instance(
    instance_id: str,
    reason: str = Query("", description="Why the instance is being stopped"),
    engine: OrchestrationEngine = Depends(get_engine),
):
    """
    Terminate a running instance.

    Returns 409 if the instance already finished.
    """
    try:
        terminated = await engine.terminate_instance(instance_id, reason)
    except InstanceNotFound:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Instance '{instance_id}' not found",
        )

    if not terminated:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Instance '{instance_id}' has already finished",
        )

    return {"id": instance_id, "status": "terminated", "reason": reason}
