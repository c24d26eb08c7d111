from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager, suppress
import logging
import os
import re
from typing import Optional
from urllib.parse import urlparse

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app import settings
from app.routes.health import router as health_router
from app.routes.v1 import router as v1_router
from app.services.errors import AnalysisError
from app.services.rate_limit import ANALYSIS_RATE_LIMITER, run_eviction_loop

logger = logging.getLogger("carefi-analysis.main")


def _parse_cors_origins(raw: Optional[str]) -> list[str]:
    if not raw:
        return ["*"]
    parts = [p.strip() for p in raw.split(",")]
    return [p for p in parts if p]


def _build_allow_origin_regex(origins: list[str]) -> Optional[str]:
    patterns: list[str] = []
    for origin in origins:
        try:
            parsed = urlparse(origin)
        except Exception:
            continue

        if not parsed.scheme or not parsed.hostname:
            continue

        host = parsed.hostname
        if not host.endswith(".vercel.app"):
            continue

        base = host[: -len(".vercel.app")]
        if not base:
            continue

        # Preview deployments of the same frontend project:
        # https://<project>-<hash>.vercel.app, https://<project>-git-<branch>.vercel.app
        patterns.append(rf"{re.escape(parsed.scheme)}://{re.escape(base)}(-.*)?\.vercel\.app")

    if not patterns:
        return None

    return rf"^(?:{'|'.join(patterns)})$"


def _setup_logging() -> None:
    level = (os.getenv("LOG_LEVEL") or "INFO").upper()
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


async def _analysis_error_handler(request: Request, exc: AnalysisError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("request_failed path=%s code=%s err=%s", request.url.path, exc.code, exc)
    else:
        logger.info("request_rejected path=%s code=%s", request.url.path, exc.code)

    error: dict = {"code": exc.code, "message": exc.user_message}
    if exc.details:
        error["details"] = exc.details
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": error},
        headers=exc.headers or None,
    )


@asynccontextmanager
async def _lifespan(app: FastAPI):
    await ANALYSIS_RATE_LIMITER.initialize()
    sweeper = asyncio.create_task(
        run_eviction_loop(ANALYSIS_RATE_LIMITER, interval_s=settings.RATE_LIMIT_SWEEP_INTERVAL_S)
    )
    try:
        yield
    finally:
        sweeper.cancel()
        with suppress(asyncio.CancelledError):
            await sweeper
        await ANALYSIS_RATE_LIMITER.close()


def create_app() -> FastAPI:
    _setup_logging()
    app = FastAPI(title="CareFi Analysis", version="0.1.0", lifespan=_lifespan)

    origins = _parse_cors_origins(os.getenv("CORS_ORIGINS"))
    allow_all = "*" in origins
    allow_origin_regex = None if allow_all else _build_allow_origin_regex(origins)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if allow_all else origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
        allow_origin_regex=allow_origin_regex,
        max_age=86400,
    )

    app.add_exception_handler(AnalysisError, _analysis_error_handler)
    app.include_router(health_router)
    app.include_router(v1_router, prefix="/v1")

    return app


app = create_app()
