from __future__ import annotations

from pathlib import Path
import sys
import unittest

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))
sys.path.insert(0, str(Path(__file__).resolve().parent))

from app.services.errors import MissingImagesError, SignedAccessError
from app.services.images import (
    SupabaseSignedUrlIssuer,
    extract_storage_path,
    get_signed_image_urls,
    locate_images,
)
from fakes import BUCKET, FakeImageRepository, FakeSignedUrlIssuer, image_row


class TestExtractStoragePath(unittest.TestCase):
    def test_public_object_url(self) -> None:
        url = f"https://proj.supabase.co/storage/v1/object/public/{BUCKET}/u1/front_image.jpg"
        self.assertEqual(extract_storage_path(url, BUCKET), "u1/front_image.jpg")

    def test_encoded_segments_are_decoded(self) -> None:
        url = f"https://proj.supabase.co/storage/v1/object/public/{BUCKET}/u1/left%2045.jpg"
        self.assertEqual(extract_storage_path(url, BUCKET), "u1/left 45.jpg")

    def test_relative_path_is_accepted(self) -> None:
        self.assertEqual(extract_storage_path("u1/front.jpg", BUCKET), "u1/front.jpg")
        self.assertEqual(extract_storage_path(f"{BUCKET}/u1/front.jpg", BUCKET), "u1/front.jpg")

    def test_malformed_urls(self) -> None:
        for bad in (
            "",
            "https://proj.supabase.co/storage/v1/object/public/other-bucket/u1/front.jpg",
            f"https://proj.supabase.co/storage/v1/object/public/{BUCKET}/",
        ):
            with self.subTest(url=bad):
                with self.assertRaises(SignedAccessError):
                    extract_storage_path(bad, BUCKET)


class TestLocateImages(unittest.IsolatedAsyncioTestCase):
    async def test_returns_newest_per_angle_in_order(self) -> None:
        repo = FakeImageRepository(
            [
                image_row("u1", "right_45"),
                image_row("u1", "front", image_id="front_old", age_minutes=60),
                image_row("u1", "front", image_id="front_new", age_minutes=1),
                image_row("u1", "left_45"),
                image_row("u2", "front", image_id="someone_else"),
            ]
        )
        rows = await locate_images(repo, "u1")
        self.assertEqual([r.angle for r in rows], ["front", "left_45", "right_45"])
        self.assertEqual(rows[0].id, "front_new")

    async def test_missing_angles_are_all_named(self) -> None:
        repo = FakeImageRepository([image_row("u1", "front")])
        with self.assertRaises(MissingImagesError) as ctx:
            await locate_images(repo, "u1")
        self.assertEqual(ctx.exception.missing_angles, ["left_45", "right_45"])
        self.assertIn("left_45", str(ctx.exception))
        self.assertIn("three", ctx.exception.user_message)

    async def test_deleted_rows_do_not_count(self) -> None:
        deleted = image_row("u1", "left_45").model_copy(update={"deleted_at": image_row("u1", "front").created_at})
        repo = FakeImageRepository([image_row("u1", "front"), deleted, image_row("u1", "right_45")])
        with self.assertRaises(MissingImagesError) as ctx:
            await locate_images(repo, "u1")
        self.assertEqual(ctx.exception.missing_angles, ["left_45"])


class TestSignedImageUrls(unittest.IsolatedAsyncioTestCase):
    async def test_fresh_url_per_image(self) -> None:
        repo = FakeImageRepository([image_row("u1", a) for a in ("front", "left_45", "right_45")])
        issuer = FakeSignedUrlIssuer()
        result = await get_signed_image_urls(repo, issuer, "u1", bucket=BUCKET, expires_in_s=360)

        self.assertEqual(result.image_ids, ["img_front", "img_left_45", "img_right_45"])
        self.assertEqual(len(result.urls), 3)
        self.assertEqual(issuer.issued[0], ("u1/front.jpg", 360))

        again = await get_signed_image_urls(repo, issuer, "u1", bucket=BUCKET, expires_in_s=360)
        self.assertEqual(len(issuer.issued), 6)
        self.assertNotEqual(result.urls, again.urls)

    async def test_missing_images_skip_signing(self) -> None:
        repo = FakeImageRepository([image_row("u1", "front"), image_row("u1", "right_45")])
        issuer = FakeSignedUrlIssuer()
        with self.assertRaises(MissingImagesError):
            await get_signed_image_urls(repo, issuer, "u1", bucket=BUCKET)
        self.assertEqual(issuer.issued, [])


class _FakeBucket:
    def __init__(self, response=None, error: Exception | None = None) -> None:
        self.response = response
        self.error = error
        self.calls: list[tuple[str, int]] = []

    async def create_signed_url(self, path: str, expires_in: int):
        self.calls.append((path, expires_in))
        if self.error is not None:
            raise self.error
        return self.response


class _FakeStorage:
    def __init__(self, bucket: _FakeBucket) -> None:
        self.bucket = bucket
        self.names: list[str] = []

    def from_(self, name: str) -> _FakeBucket:
        self.names.append(name)
        return self.bucket


class _FakeClient:
    def __init__(self, bucket: _FakeBucket) -> None:
        self.storage = _FakeStorage(bucket)


class TestSupabaseSignedUrlIssuer(unittest.IsolatedAsyncioTestCase):
    def _issuer(self, bucket: _FakeBucket) -> tuple[SupabaseSignedUrlIssuer, _FakeClient]:
        client = _FakeClient(bucket)

        async def provider():
            return client

        return SupabaseSignedUrlIssuer(client_provider=provider, bucket=BUCKET), client

    async def test_returns_signed_url(self) -> None:
        bucket = _FakeBucket({"signedURL": "https://proj.supabase.co/storage/v1/object/sign/x?token=1"})
        issuer, client = self._issuer(bucket)
        url = await issuer.issue("u1/front.jpg", expires_in_s=360)
        self.assertTrue(url.endswith("token=1"))
        self.assertEqual(bucket.calls, [("u1/front.jpg", 360)])
        self.assertEqual(client.storage.names, [BUCKET])

    async def test_storage_errors_become_signed_access_errors(self) -> None:
        issuer, _ = self._issuer(_FakeBucket(error=RuntimeError("object not found")))
        with self.assertRaises(SignedAccessError):
            await issuer.issue("u1/front.jpg", expires_in_s=360)

    async def test_empty_response(self) -> None:
        issuer, _ = self._issuer(_FakeBucket({"signedURL": None}))
        with self.assertRaises(SignedAccessError):
            await issuer.issue("u1/front.jpg", expires_in_s=360)
