"""Analysis orchestration.

One call to ``AnalysisService.start_analysis`` drives a single
``skin_analyses`` record through its lifecycle::

    uploading -> screening -> detecting -> generating -> complete
         \\___________\\___________\\___________\\______-> error

Every status change is written before the next step starts so readers can
follow progress. Failures are stored on the record (``error_reason``) and
re-raised as one of the public ``AnalysisError`` types.
"""

from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any, Callable, Optional, Protocol, Sequence

from app import settings
from app.services.errors import (
    AnalysisError,
    InternalError,
    NotFoundError,
    PersistenceError,
    RateLimitedError,
    ServiceUnavailableError,
    SignedAccessError,
    UnauthorizedError,
    VisionAnalysisError,
)
from app.services.images import (
    ImageRepository,
    SignedUrlIssuer,
    SupabaseImageRepository,
    SupabaseSignedUrlIssuer,
    get_signed_image_urls,
)
from app.services.rate_limit import ANALYSIS_RATE_LIMITER, RateLimiter
from app.services.summary import AnalysisSummary, map_record_to_summary, map_vision_to_summary
from app.services.supabase_client import get_supabase
from app.services.vision import VisionAnalysis, VisionClient
from app.store.analysis_store import AnalysisRecord, AnalysisStatus, AnalysisStore, SupabaseAnalysisStore

logger = logging.getLogger("carefi-analysis.analysis")

MAX_ERROR_REASON_CHARS = 2000


class VisionAnalyzer(Protocol):
    @property
    def model(self) -> str: ...

    async def analyze(self, image_urls: Sequence[str]) -> VisionAnalysis: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_public_error(exc: Exception) -> AnalysisError:
    if isinstance(exc, AnalysisError):
        return exc
    if isinstance(exc, (SignedAccessError, VisionAnalysisError)):
        return ServiceUnavailableError(str(exc))
    if isinstance(exc, PersistenceError):
        return InternalError(str(exc))
    return InternalError(f"{type(exc).__name__}: {exc}")


class AnalysisService:
    def __init__(
        self,
        *,
        store: AnalysisStore,
        images: ImageRepository,
        signer: SignedUrlIssuer,
        vision: VisionAnalyzer,
        rate_limiter: Optional[RateLimiter] = None,
        bucket: str = settings.SUPABASE_PHOTOS_BUCKET,
        signed_url_ttl_s: int = settings.SIGNED_URL_TTL_S,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._images = images
        self._signer = signer
        self._vision = vision
        self._rate_limiter = rate_limiter
        self._bucket = bucket
        self._signed_url_ttl_s = signed_url_ttl_s
        self._clock = clock

    async def start_analysis(self, owner_id: str) -> AnalysisSummary:
        owner_id = (owner_id or "").strip()
        if not owner_id:
            raise UnauthorizedError("missing owner id")

        if self._rate_limiter is not None:
            decision = await self._rate_limiter.check_and_consume(owner_id)
            if not decision.allowed:
                logger.warning("rate_limited user_id=%s retry_after_s=%.1f", owner_id, decision.retry_after_s)
                raise RateLimitedError(
                    decision.retry_after_s,
                    limit=self._rate_limiter.capacity,
                    window_s=self._rate_limiter.window_s,
                )

        logger.info("analysis_start user_id=%s", owner_id)
        try:
            record = await self._store.create(owner_id)
        except Exception as exc:
            logger.error("analysis_create_failed user_id=%s err=%s", owner_id, exc)
            raise InternalError(
                f"Failed to create analysis record: {exc}",
                user_message="Could not start analysis. Please try again.",
            ) from exc
        logger.info("analysis_status id=%s status=%s", record.id, record.status.value)

        try:
            return await self._run(record)
        except AnalysisError as exc:
            await self._fail(record, exc)
            raise
        except Exception as exc:
            await self._fail(record, exc)
            raise to_public_error(exc) from exc

    async def _run(self, record: AnalysisRecord) -> AnalysisSummary:
        await self._advance(record, AnalysisStatus.SCREENING)
        signed = await get_signed_image_urls(
            self._images,
            self._signer,
            record.owner_id,
            bucket=self._bucket,
            expires_in_s=self._signed_url_ttl_s,
        )

        await self._advance(record, AnalysisStatus.DETECTING)
        vision = await self._vision.analyze(signed.urls)

        await self._advance(record, AnalysisStatus.GENERATING)
        await self._advance(
            record,
            AnalysisStatus.COMPLETE,
            detected_traits=list(vision.traits),
            confidence_score=vision.confidence,
            image_ids=list(signed.image_ids),
            skin_type=vision.skin_type,
            primary_concern=vision.primary_concern,
            notes=list(vision.notes),
            model_version=vision.model_version,
        )
        logger.info("analysis_complete id=%s user_id=%s", record.id, record.owner_id)

        return map_vision_to_summary(record.owner_id, vision, record.completed_at or self._clock())

    async def _advance(self, record: AnalysisRecord, target: AnalysisStatus, **fields: Any) -> None:
        snapshot = record.model_copy(deep=True)
        for name, value in fields.items():
            setattr(record, name, value)
        record.transition(target, now=self._clock())
        try:
            await self._store.save(record)
        except Exception:
            # Keep the in-memory record in step with what was last persisted.
            for name in type(record).model_fields:
                setattr(record, name, getattr(snapshot, name))
            raise
        logger.info("analysis_status id=%s status=%s", record.id, target.value)

    async def _fail(self, record: AnalysisRecord, exc: Exception) -> None:
        if record.status.is_terminal:
            logger.error("analysis_failed_after_terminal id=%s status=%s err=%s", record.id, record.status.value, exc)
            return
        reason = f"{type(exc).__name__}: {exc}"[:MAX_ERROR_REASON_CHARS]
        logger.warning(
            "analysis_failed id=%s user_id=%s at_status=%s reason=%s",
            record.id,
            record.owner_id,
            record.status.value,
            reason,
        )
        try:
            await self._advance(record, AnalysisStatus.ERROR, error_reason=reason)
        except Exception as write_exc:
            logger.error("analysis_error_write_failed id=%s err=%s", record.id, write_exc)
            raise InternalError(f"Failed to record analysis failure: {write_exc}") from write_exc

    async def get_latest(self, owner_id: str) -> Optional[AnalysisSummary]:
        owner_id = (owner_id or "").strip()
        if not owner_id:
            raise UnauthorizedError("missing owner id")
        try:
            record = await self._store.latest_completed(owner_id)
        except PersistenceError as exc:
            logger.error("analysis_latest_failed user_id=%s err=%s", owner_id, exc)
            raise InternalError(str(exc), user_message="Failed to fetch analysis") from exc
        if record is None:
            return None
        return map_record_to_summary(record, default_model_version=self._vision.model)

    async def get_status(self, owner_id: str, analysis_id: str) -> AnalysisRecord:
        owner_id = (owner_id or "").strip()
        if not owner_id:
            raise UnauthorizedError("missing owner id")
        try:
            record = await self._store.get(owner_id, analysis_id)
        except PersistenceError as exc:
            raise InternalError(str(exc), user_message="Failed to fetch analysis") from exc
        if record is None:
            raise NotFoundError(f"analysis {analysis_id} not found for user {owner_id}")
        return record


_SERVICE: Optional[AnalysisService] = None


def get_analysis_service() -> AnalysisService:
    global _SERVICE
    if _SERVICE is None:
        _SERVICE = AnalysisService(
            store=SupabaseAnalysisStore(client_provider=get_supabase),
            images=SupabaseImageRepository(client_provider=get_supabase),
            signer=SupabaseSignedUrlIssuer(client_provider=get_supabase),
            vision=VisionClient(),
            rate_limiter=ANALYSIS_RATE_LIMITER,
        )
    return _SERVICE
