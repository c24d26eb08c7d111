"""Resolve a user's three analysis photos and mint short-lived read URLs.

The upload pipeline writes one ``uploaded_images`` row per photo. Analysis
needs the newest non-deleted photo for each required angle, and the vision
provider only ever sees signed URLs that expire a few minutes later.
"""

from __future__ import annotations

from datetime import datetime
import logging
from typing import Awaitable, Callable, Literal, Optional, Protocol, Sequence
from urllib.parse import unquote, urlparse

from pydantic import BaseModel, ConfigDict
from supabase import AsyncClient

from app import settings
from app.services.errors import MissingImagesError, PersistenceError, SignedAccessError

logger = logging.getLogger("carefi-analysis.images")

IMAGES_TABLE = "uploaded_images"

ImageAngle = Literal["front", "left_45", "right_45"]
REQUIRED_ANGLES: tuple[ImageAngle, ...] = ("front", "left_45", "right_45")


class ImageRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    user_id: str
    angle: ImageAngle
    storage_url: str
    created_at: datetime
    deleted_at: Optional[datetime] = None


class SignedImageUrls(BaseModel):
    rows: list[ImageRecord]
    urls: list[str]
    image_ids: list[str]


class ImageRepository(Protocol):
    async def latest_for_angle(self, owner_id: str, angle: ImageAngle) -> Optional[ImageRecord]: ...


class SignedUrlIssuer(Protocol):
    async def issue(self, storage_path: str, *, expires_in_s: int) -> str: ...


class SupabaseImageRepository(ImageRepository):
    def __init__(self, *, client_provider: Callable[[], Awaitable[AsyncClient]], table: str = IMAGES_TABLE) -> None:
        self._client_provider = client_provider
        self._table = table

    async def latest_for_angle(self, owner_id: str, angle: ImageAngle) -> Optional[ImageRecord]:
        client = await self._client_provider()
        try:
            res = await (
                client.table(self._table)
                .select("*")
                .eq("user_id", owner_id)
                .eq("angle", angle)
                .is_("deleted_at", "null")
                .order("created_at", desc=True)
                .limit(1)
                .execute()
            )
        except Exception as exc:
            raise PersistenceError(f"image lookup failed angle={angle}: {exc}") from exc
        rows = res.data or []
        return ImageRecord.model_validate(rows[0]) if rows else None


class SupabaseSignedUrlIssuer(SignedUrlIssuer):
    def __init__(
        self,
        *,
        client_provider: Callable[[], Awaitable[AsyncClient]],
        bucket: str = settings.SUPABASE_PHOTOS_BUCKET,
    ) -> None:
        self._client_provider = client_provider
        self._bucket = bucket

    @property
    def bucket(self) -> str:
        return self._bucket

    async def issue(self, storage_path: str, *, expires_in_s: int) -> str:
        try:
            client = await self._client_provider()
            data = await client.storage.from_(self._bucket).create_signed_url(storage_path, expires_in_s)
        except Exception as exc:
            logger.error("signed_url_failed path=%s err=%s", storage_path, exc)
            raise SignedAccessError(f"Failed to create signed URL: {exc}") from exc

        signed = None
        if isinstance(data, dict):
            signed = data.get("signedURL") or data.get("signedUrl") or data.get("signed_url")
        if not signed:
            raise SignedAccessError("Failed to create signed URL: empty response")
        return str(signed)


def extract_storage_path(storage_url: str, bucket: str) -> str:
    """Return the object path that follows ``bucket`` in a storage URL.

    ``https://x.supabase.co/storage/v1/object/public/user-photos/u1/front.jpg``
    becomes ``u1/front.jpg``. A value that is already a relative object path
    is returned unchanged.
    """
    raw = (storage_url or "").strip()
    if not raw:
        raise SignedAccessError("Invalid storage URL format: empty")

    parsed = urlparse(raw)
    if not parsed.scheme and not parsed.netloc:
        path = raw.lstrip("/")
        if path.startswith(f"{bucket}/"):
            path = path[len(bucket) + 1 :]
        if not path:
            raise SignedAccessError(f"Invalid storage URL format: {raw[:80]}")
        return path

    parts = [unquote(p) for p in parsed.path.split("/")]
    if bucket not in parts:
        raise SignedAccessError(f"Invalid storage URL format: {raw[:80]}")
    storage_path = "/".join(parts[parts.index(bucket) + 1 :]).strip("/")
    if not storage_path:
        raise SignedAccessError(f"Invalid storage URL format: {raw[:80]}")
    return storage_path


async def locate_images(
    repository: ImageRepository,
    owner_id: str,
    angles: Sequence[ImageAngle] = REQUIRED_ANGLES,
) -> list[ImageRecord]:
    rows: list[ImageRecord] = []
    missing: list[str] = []
    for angle in angles:
        row = await repository.latest_for_angle(owner_id, angle)
        if row is None or row.user_id != owner_id or row.deleted_at is not None:
            missing.append(angle)
            continue
        rows.append(row)

    if missing:
        raise MissingImagesError(missing)
    return rows


async def get_signed_image_urls(
    repository: ImageRepository,
    issuer: SignedUrlIssuer,
    owner_id: str,
    *,
    bucket: str = settings.SUPABASE_PHOTOS_BUCKET,
    expires_in_s: int = settings.SIGNED_URL_TTL_S,
) -> SignedImageUrls:
    rows = await locate_images(repository, owner_id)
    logger.info(
        "images_located user_id=%s angles=%s image_ids=%s",
        owner_id,
        [r.angle for r in rows],
        [r.id for r in rows],
    )

    urls: list[str] = []
    for row in rows:
        storage_path = extract_storage_path(row.storage_url, bucket)
        logger.debug("signing angle=%s path=%s expires_in_s=%s", row.angle, storage_path, expires_in_s)
        urls.append(await issuer.issue(storage_path, expires_in_s=expires_in_s))

    return SignedImageUrls(rows=rows, urls=urls, image_ids=[r.id for r in rows])
