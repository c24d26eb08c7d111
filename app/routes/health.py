from __future__ import annotations

import os

from fastapi import APIRouter

from app import settings
from app.services.rate_limit import ANALYSIS_RATE_LIMITER

router = APIRouter()


def _get_commit_sha() -> str | None:
    for key in (
        "RAILWAY_GIT_COMMIT_SHA",
        "GITHUB_SHA",
        "VERCEL_GIT_COMMIT_SHA",
        "COMMIT_SHA",
        "GIT_SHA",
    ):
        value = os.getenv(key)
        if value:
            return value
    return None


@router.get("/healthz")
def healthz():
    return {
        "ok": True,
        "service": settings.SERVICE_NAME,
        "commit_sha": _get_commit_sha(),
        "environment": os.getenv("ENVIRONMENT"),
        "vision_model": settings.OPENAI_VISION_MODEL,
        "rate_limiter_backend": ANALYSIS_RATE_LIMITER.backend_kind,
    }
