"""Pipeline stage readiness.

GET /v1/pipeline/stages - loading/ready/error flags per stage
"""

from fastapi import APIRouter

from offer_metrics.schemas import StageStateOut, StagesResponse
from offer_metrics.services.metrics_service import get_metrics_service

router = APIRouter()


@router.get("/stages", response_model=StagesResponse)
async def pipeline_stages() -> StagesResponse:
    service = get_metrics_service()
    return StagesResponse(stages=[StageStateOut.from_model(s) for s in service.stage_states()])
