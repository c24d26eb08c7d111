from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from app.services.analysis import AnalysisService, get_analysis_service
from app.services.auth import require_owner_id


router = APIRouter()

logger = logging.getLogger("carefi-analysis.v1")


@router.post("/analysis/start")
async def analysis_start(
    owner_id: str = Depends(require_owner_id),
    service: AnalysisService = Depends(get_analysis_service),
):
    logger.info("analysis_start_requested user_id=%s", owner_id)
    summary = await service.start_analysis(owner_id)
    return {"success": True, "data": summary.model_dump(mode="json", exclude_none=True)}


@router.get("/analysis/latest")
async def analysis_latest(
    owner_id: str = Depends(require_owner_id),
    service: AnalysisService = Depends(get_analysis_service),
):
    summary = await service.get_latest(owner_id)
    if summary is None:
        logger.info("analysis_latest_empty user_id=%s", owner_id)
        return {"success": True, "data": None}
    return {"success": True, "data": summary.model_dump(mode="json", exclude_none=True)}


@router.get("/analysis/{analysis_id}")
async def analysis_status(
    analysis_id: str,
    owner_id: str = Depends(require_owner_id),
    service: AnalysisService = Depends(get_analysis_service),
):
    record = await service.get_status(owner_id, analysis_id)
    return {
        "success": True,
        "data": {
            "id": record.id,
            "status": record.status.value,
            "created_at": record.created_at.isoformat(),
            "completed_at": record.completed_at.isoformat() if record.completed_at else None,
        },
    }
