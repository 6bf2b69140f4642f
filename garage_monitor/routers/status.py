"""
Status Router

Receives door state reports from the sensor:
- Updates the door status entity
- Starts a monitoring orchestration when the door opens
"""

from typing import Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ..dependencies.services import get_ingestion, verify_function_key
from ..services.ingestion import IngestionOutcome, IngestionService

router = APIRouter()


# ============================================
# SCHEMAS
# ============================================

class StateReport(BaseModel):
    """State report body (alternative to the state query parameter)."""
    state: str


class AlreadySetResponse(BaseModel):
    """Returned when the door is already in the reported state."""
    status: str
    state: str
    message: str


class CheckStatusResponse(BaseModel):
    """Management links for a newly started monitoring instance."""
    id: str
    statusQueryGetUri: str
    terminatePostUri: str


# ============================================
# ENDPOINTS
# ============================================

@router.post(
    "",
    dependencies=[Depends(verify_function_key)],
    responses={
        status.HTTP_200_OK: {"model": AlreadySetResponse},
        status.HTTP_202_ACCEPTED: {"model": CheckStatusResponse},
        status.HTTP_204_NO_CONTENT: {"description": "Door status updated"},
    },
)
async def report_status(
    request: Request,
    state: Optional[str] = Query(None, description="Reported door state, e.g. open or closed"),
    report: Optional[StateReport] = Body(None),
    ingestion: IngestionService = Depends(get_ingestion),
):
    """
    Report the current door state.

    - Same state as stored: 200, nothing else happens
    - "closed": 204, entity updated
    - anything else: 202 with links to poll or terminate the new monitor
    """
    new_state = state if state is not None else (report.state if report else None)
    if new_state is None or not new_state.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing 'state' parameter",
        )
    new_state = new_state.strip()

    result = await ingestion.handle(new_state)

    if result.outcome == IngestionOutcome.ALREADY_SET:
        return AlreadySetResponse(
            status=result.outcome.value,
            state=result.state,
            message=result.message,
        )

    if result.outcome == IngestionOutcome.UPDATED:
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    status_uri = str(request.url_for("get_instance_status", instance_id=result.instance_id))
    terminate_uri = str(request.url_for("terminate_instance", instance_id=result.instance_id))
    payload = CheckStatusResponse(
        id=result.instance_id,
        statusQueryGetUri=status_uri,
        terminatePostUri=terminate_uri,
    )
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content=payload.model_dump(),
        headers={"Location": status_uri},
    )
