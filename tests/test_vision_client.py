from __future__ import annotations

import json
from pathlib import Path
import random
import sys
import unittest

import httpx

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))
sys.path.insert(0, str(Path(__file__).resolve().parent))

from app.services.errors import (
    MalformedVisionResponse,
    SchemaViolation,
    VisionInputError,
    VisionUnavailableError,
)
from app.services.vision import (
    TRAIT_CATEGORIES,
    VisionClient,
    build_request_payload,
    compute_retry_delay,
    parse_vision_content,
    validate_vision_payload,
)
from fakes import completion_response, vision_payload

URLS = [
    "https://signed.example.com/u1/front.jpg?token=a",
    "https://signed.example.com/u1/left_45.jpg?token=b",
    "https://signed.example.com/u1/right_45.jpg?token=c",
]


class _Provider:
    def __init__(self, responses: list[httpx.Response]) -> None:
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responses.pop(0)


def _client(provider: _Provider, sleeps: list[float]) -> VisionClient:
    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return VisionClient(
        api_key="sk-test",
        base_url="https://llm.example.com/v1",
        model="gpt-4o-mini",
        transport=httpx.MockTransport(provider),
        sleep=fake_sleep,
        rng=random.Random(7),
    )


class TestRetryDelay(unittest.TestCase):
    def test_exponential_without_jitter(self) -> None:
        self.assertEqual(compute_retry_delay(1), 1.0)
        self.assertEqual(compute_retry_delay(2), 2.0)
        self.assertEqual(compute_retry_delay(3), 4.0)

    def test_jitter_and_cap(self) -> None:
        self.assertAlmostEqual(compute_retry_delay(2, jitter=0.25), 2.5)
        self.assertEqual(compute_retry_delay(5, jitter=0.29), 10.0)
        self.assertEqual(compute_retry_delay(1, base_s=8.0, max_s=10.0, jitter=0.29), 10.0)


class TestVisionSchema(unittest.TestCase):
    def test_valid_payload_defaults_notes(self) -> None:
        payload = vision_payload()
        payload.pop("notes")
        result = validate_vision_payload(payload)
        self.assertEqual(result.notes, [])
        self.assertEqual(result.skin_type, "Oily")
        self.assertEqual(result.traits[0].severity, "high")

    def test_missing_required_fields_are_rejected(self) -> None:
        for field in ("skinType", "confidence", "primaryConcern", "traits", "modelVersion"):
            payload = vision_payload()
            payload.pop(field)
            with self.subTest(field=field):
                with self.assertRaises(SchemaViolation) as ctx:
                    validate_vision_payload(payload)
                self.assertTrue(any(v.startswith(field) for v in ctx.exception.violations))

    def test_out_of_range_and_empty_values_are_rejected(self) -> None:
        cases = [
            {"confidence": 150},
            {"confidence": -1},
            {"traits": []},
            {"skinType": "SuperOily"},
            {"primaryConcern": ""},
            {"traits": [{"id": "acne", "name": "Acne", "severity": "extreme", "description": "x"}]},
            {"traits": [{"id": "acne", "severity": "low", "description": "x"}]},
        ]
        for override in cases:
            with self.subTest(override=override):
                with self.assertRaises(SchemaViolation):
                    validate_vision_payload(vision_payload(**override))

    def test_snake_case_keys_do_not_replace_wire_keys(self) -> None:
        payload = vision_payload()
        payload["skin_type"] = payload.pop("skinType")
        payload["primary_concern"] = payload.pop("primaryConcern")
        payload["model_version"] = payload.pop("modelVersion")
        with self.assertRaises(SchemaViolation) as ctx:
            validate_vision_payload(payload)
        for field in ("skinType", "primaryConcern", "modelVersion"):
            self.assertTrue(any(v.startswith(field) for v in ctx.exception.violations), field)

    def test_unknown_trait_id_is_accepted(self) -> None:
        result = validate_vision_payload(
            vision_payload(traits=[{"id": "freckles", "name": "Freckles", "severity": "low", "description": "Light"}])
        )
        self.assertEqual(result.traits[0].id, "freckles")

    def test_parse_rejects_prose_and_non_objects(self) -> None:
        with self.assertRaises(MalformedVisionResponse):
            parse_vision_content('Here is the result: {"skinType": "Oily"}')
        with self.assertRaises(SchemaViolation):
            parse_vision_content("[1, 2, 3]")


class TestRequestPayload(unittest.TestCase):
    def test_payload_shape(self) -> None:
        payload = build_request_payload(URLS, model="gpt-4o-mini")
        self.assertEqual(payload["model"], "gpt-4o-mini")
        self.assertEqual(payload["temperature"], 0.3)
        self.assertEqual(payload["response_format"], {"type": "json_object"})
        content = payload["messages"][0]["content"]
        self.assertEqual(content[0]["type"], "text")
        for key, _ in TRAIT_CATEGORIES:
            self.assertIn(key, content[0]["text"])
        images = content[1:]
        self.assertEqual([c["image_url"]["url"] for c in images], URLS)
        self.assertTrue(all(c["image_url"]["detail"] == "high" for c in images))


class TestVisionClient(unittest.IsolatedAsyncioTestCase):
    async def test_success_on_first_attempt(self) -> None:
        provider = _Provider([completion_response(vision_payload())])
        sleeps: list[float] = []
        result = await _client(provider, sleeps).analyze(URLS)

        self.assertEqual(result.skin_type, "Oily")
        self.assertEqual(result.confidence, 85)
        self.assertEqual(len(provider.requests), 1)
        self.assertEqual(sleeps, [])
        request = provider.requests[0]
        self.assertEqual(str(request.url), "https://llm.example.com/v1/chat/completions")
        self.assertEqual(request.headers["Authorization"], "Bearer sk-test")
        body = json.loads(request.content)
        self.assertEqual(len(body["messages"][0]["content"]), 4)

    async def test_retries_server_errors_then_succeeds(self) -> None:
        provider = _Provider(
            [
                httpx.Response(503, text="overloaded"),
                httpx.Response(429, text="slow down"),
                completion_response(vision_payload()),
            ]
        )
        sleeps: list[float] = []
        result = await _client(provider, sleeps).analyze(URLS)

        self.assertEqual(result.model_version, "m1")
        self.assertEqual(len(provider.requests), 3)
        self.assertEqual(len(sleeps), 2)
        self.assertTrue(1.0 <= sleeps[0] < 1.3)
        self.assertTrue(2.0 <= sleeps[1] < 2.6)

    async def test_gives_up_after_three_attempts(self) -> None:
        provider = _Provider([httpx.Response(500), httpx.Response(502), httpx.Response(503), httpx.Response(503)])
        sleeps: list[float] = []
        with self.assertRaises(VisionUnavailableError):
            await _client(provider, sleeps).analyze(URLS)
        self.assertEqual(len(provider.requests), 3)
        self.assertEqual(len(sleeps), 2)

    async def test_malformed_json_is_not_retried(self) -> None:
        provider = _Provider([completion_response("not json at all"), completion_response(vision_payload())])
        sleeps: list[float] = []
        with self.assertRaises(MalformedVisionResponse):
            await _client(provider, sleeps).analyze(URLS)
        self.assertEqual(len(provider.requests), 1)
        self.assertEqual(sleeps, [])

    async def test_schema_violation_is_not_retried(self) -> None:
        provider = _Provider(
            [completion_response(vision_payload(skinType="SuperOily")), completion_response(vision_payload())]
        )
        sleeps: list[float] = []
        with self.assertRaises(SchemaViolation) as ctx:
            await _client(provider, sleeps).analyze(URLS)
        self.assertEqual(len(provider.requests), 1)
        self.assertTrue(any("skinType" in v for v in ctx.exception.violations))

    async def test_empty_content_is_malformed(self) -> None:
        provider = _Provider([completion_response("")])
        with self.assertRaises(MalformedVisionResponse):
            await _client(provider, []).analyze(URLS)
        self.assertEqual(len(provider.requests), 1)

    async def test_client_errors_are_not_retried(self) -> None:
        provider = _Provider([httpx.Response(400, json={"error": "bad image"}), completion_response(vision_payload())])
        with self.assertRaises(VisionUnavailableError):
            await _client(provider, []).analyze(URLS)
        self.assertEqual(len(provider.requests), 1)

    async def test_wrong_url_count_makes_no_request(self) -> None:
        provider = _Provider([completion_response(vision_payload())])
        for urls in (URLS[:2], URLS + URLS[:1], []):
            with self.subTest(count=len(urls)):
                with self.assertRaises(VisionInputError):
                    await _client(provider, []).analyze(urls)
        self.assertEqual(provider.requests, [])

    async def test_invalid_url_makes_no_request(self) -> None:
        provider = _Provider([completion_response(vision_payload())])
        with self.assertRaises(VisionInputError):
            await _client(provider, []).analyze([URLS[0], "not-a-url", URLS[2]])
        self.assertEqual(provider.requests, [])

    async def test_missing_api_key(self) -> None:
        provider = _Provider([completion_response(vision_payload())])
        client = VisionClient(api_key=None, transport=httpx.MockTransport(provider))
        with self.assertRaises(VisionUnavailableError):
            await client.analyze(URLS)
        self.assertEqual(provider.requests, [])
