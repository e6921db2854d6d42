"""API endpoints for the caller's glucose session."""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from cgm_link.api.dependencies import get_session
from cgm_link.pipeline.alerts import classify_range
from cgm_link.pipeline.session import GlucoseSession


router = APIRouter(tags=["session"])


class AlertSettingsUpdate(BaseModel):
    """Partial update of the target range and alert thresholds."""

    target_low: Optional[int] = Field(None, ge=1)
    target_high: Optional[int] = Field(None, ge=1)
    alert_low: Optional[int] = Field(None, ge=1)
    alert_high: Optional[int] = Field(None, ge=1)


@router.get("/current")
async def get_current(session: GlucoseSession = Depends(get_session)) -> Dict[str, Any]:
    """
    Get the latest reading and the polling state.

    Returns:
        Dict[str, Any]: Latest reading (or null), its range status and session state
    """
    reading = session.get_current_reading()
    data: Dict[str, Any] = {
        "reading": reading.model_dump(mode="json") if reading else None,
        "range": classify_range(reading.value, session.alert_settings).value if reading else None,
        "state": session.state.value,
        "connection_state": session.connection_state.value,
    }
    return {"status": "success", "data": data}


@router.get("/history")
async def get_history(
    hours: float = Query(24, gt=0),
    session: GlucoseSession = Depends(get_session),
) -> Dict[str, Any]:
    readings = session.get_history(hours)
    return {
        "status": "success",
        "data": [reading.model_dump(mode="json") for reading in readings],
        "count": len(readings),
    }


@router.get("/settings")
async def get_settings(session: GlucoseSession = Depends(get_session)) -> Dict[str, Any]:
    return {"status": "success", "data": session.alert_settings.model_dump(mode="json")}


@router.patch("/settings")
async def update_settings(
    update: AlertSettingsUpdate,
    session: GlucoseSession = Depends(get_session),
) -> Dict[str, Any]:
    """
    Apply a partial settings update.

    Only the fields present in the body are changed; the result must keep
    each low threshold below its high counterpart.
    """
    try:
        settings = session.update_alert_settings(**update.model_dump(exclude_unset=True, exclude_none=True))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"status": "success", "data": settings.model_dump(mode="json")}
