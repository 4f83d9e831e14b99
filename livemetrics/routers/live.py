from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel

from ..logging_utils import get_logger
from ..machine import LiveMetrics

router = APIRouter(prefix="/dashboard/metrics", tags=["live-metrics"])
logger = get_logger("routes")


class LiveErrorPayload(BaseModel):
    kind: str
    message: str


class LiveMetricsResponse(BaseModel):
    data: Optional[Dict[str, Any]] = None
    connected: bool
    error: Optional[LiveErrorPayload] = None
    state: str


def get_live_metrics(request: Request) -> LiveMetrics:
    live = getattr(request.app.state, "live_metrics", None)
    if live is None or live.closed:
        logger.warning("Live metrics requested but the client is not running")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Live metrics client is not running")
    return live


@router.get("/live", response_model=LiveMetricsResponse, summary="Latest live metrics snapshot and connection status")
async def live_metrics(live: LiveMetrics = Depends(get_live_metrics)) -> LiveMetricsResponse:
    return LiveMetricsResponse.model_validate(live.handle.to_public_dict())


@router.post("/reconnect", status_code=status.HTTP_202_ACCEPTED, summary="Restart the metrics stream connection")
async def reconnect(live: LiveMetrics = Depends(get_live_metrics)) -> dict:
    logger.info("Reconnect requested via API state=%s", live.state.value)
    live.handle.reconnect()
    return {"status": "reconnecting"}
