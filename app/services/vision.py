from __future__ import annotations

import asyncio
import json
import logging
import random
from typing import Any, Awaitable, Callable, Literal, Optional, Sequence
from urllib.parse import urlparse

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from tenacity import AsyncRetrying, RetryCallState, RetryError, retry_if_exception, stop_after_attempt

from app import settings
from app.services.errors import (
    MalformedVisionResponse,
    SchemaViolation,
    TransientServiceFailure,
    VisionAnalysisError,
    VisionInputError,
    VisionUnavailableError,
)
from app.store.analysis_store import SkinTrait

logger = logging.getLogger("carefi-analysis.vision")

REQUIRED_IMAGE_COUNT = 3
JITTER_RATIO = 0.3
MAX_TOKENS = 1500
TEMPERATURE = 0.3

SkinType = Literal["Dry", "Oily", "Combination", "Normal", "Sensitive"]

TRAIT_CATEGORIES: tuple[tuple[str, str], ...] = (
    ("acne", "active breakouts, comedones or acne-prone areas"),
    ("dryness", "dry patches, flaking or a dehydrated look"),
    ("oiliness", "excess sebum, shine or oil-enlarged pores"),
    ("sensitivity", "redness, reactivity or signs of inflammation"),
    ("hyperpigmentation", "dark spots, melasma or uneven tone"),
    ("fine-lines", "early wrinkles, expression lines or other signs of ageing"),
    ("redness", "diffuse redness, rosacea or irritation"),
    ("large-pores", "visibly enlarged pores"),
)


class VisionAnalysis(BaseModel):
    model_config = ConfigDict(extra="ignore")

    skin_type: SkinType = Field(alias="skinType")
    confidence: float = Field(ge=0, le=100, strict=True)
    primary_concern: str = Field(alias="primaryConcern", min_length=1)
    traits: list[SkinTrait] = Field(min_length=1)
    notes: list[str] = Field(default_factory=list)
    model_version: str = Field(alias="modelVersion", min_length=1)


def build_vision_prompt(model: str) -> str:
    categories = "\n".join(f"   - {key}: {desc}" for key, desc in TRAIT_CATEGORIES)
    return (
        "You are a dermatology assistant. You are given three photos of the same face "
        "(front, left 45 degrees, right 45 degrees). Assess the skin using all three together.\n\n"
        "Determine:\n"
        "1. The overall skin type: Dry, Oily, Combination, Normal or Sensitive.\n"
        "2. Your confidence in the assessment on a 0-100 scale.\n"
        "3. The primary concern (the most prominent issue).\n"
        "4. Which of these traits are present, using exactly these ids:\n"
        f"{categories}\n\n"
        "Rate each present trait with one severity:\n"
        "- low: minimal, barely noticeable\n"
        "- moderate: clearly visible in some areas\n"
        "- high: prominent, widespread or severe\n\n"
        "Return ONLY a JSON object with this exact shape (no markdown, no extra text):\n"
        "{\n"
        '  "skinType": "Dry" | "Oily" | "Combination" | "Normal" | "Sensitive",\n'
        '  "confidence": <number 0-100>,\n'
        '  "primaryConcern": "<string>",\n'
        '  "traits": [\n'
        '    {"id": "<trait id>", "name": "<Human Name>", "severity": "low" | "moderate" | "high", '
        '"description": "<short plain-language description>"}\n'
        "  ],\n"
        '  "notes": ["<observation or recommendation>"],\n'
        f'  "modelVersion": "{model}"\n'
        "}\n\n"
        "Rules:\n"
        "- Only list traits that are actually visible (at least low severity).\n"
        "- Keep descriptions short and free of medical jargon.\n"
        "- Give 2-4 actionable skincare notes.\n"
    )


def build_request_payload(image_urls: Sequence[str], *, model: str) -> dict[str, Any]:
    content: list[dict[str, Any]] = [{"type": "text", "text": build_vision_prompt(model)}]
    for url in image_urls:
        content.append({"type": "image_url", "image_url": {"url": url, "detail": "high"}})
    return {
        "model": model,
        "messages": [{"role": "user", "content": content}],
        "max_tokens": MAX_TOKENS,
        "temperature": TEMPERATURE,
        "response_format": {"type": "json_object"},
    }


def compute_retry_delay(retry_number: int, *, base_s: float = 1.0, max_s: float = 10.0, jitter: float = 0.0) -> float:
    """Delay before retry ``retry_number`` (1 = first retry), capped at ``max_s``."""
    return min(max_s, base_s * (2 ** (retry_number - 1)) * (1.0 + jitter))


def _validate_urls(image_urls: Sequence[str]) -> list[str]:
    urls = list(image_urls)
    if len(urls) != REQUIRED_IMAGE_COUNT:
        raise VisionInputError(f"Expected exactly {REQUIRED_IMAGE_COUNT} image URLs, received {len(urls)}")
    for url in urls:
        parsed = urlparse(url if isinstance(url, str) else "")
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise VisionInputError(f"Invalid image URL: {str(url)[:50]}...")
    return urls


def parse_vision_content(text: str) -> dict[str, Any]:
    try:
        obj = json.loads(text)
    except Exception as exc:
        raise MalformedVisionResponse(f"Vision response is not valid JSON: {exc}") from exc
    if not isinstance(obj, dict):
        raise SchemaViolation([f"root: expected an object, got {type(obj).__name__}"])
    return obj


def validate_vision_payload(obj: dict[str, Any]) -> VisionAnalysis:
    try:
        return VisionAnalysis.model_validate(obj)
    except ValidationError as exc:
        violations = [
            f"{'.'.join(str(p) for p in err.get('loc') or ()) or 'root'}: {err.get('msg')}"
            for err in exc.errors()
        ]
        raise SchemaViolation(violations) from exc


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, VisionAnalysisError) and exc.retryable


class VisionClient:
    def __init__(
        self,
        *,
        api_key: Optional[str] = settings.OPENAI_API_KEY,
        base_url: str = settings.OPENAI_API_BASE,
        model: str = settings.OPENAI_VISION_MODEL,
        timeout_s: float = settings.VISION_TIMEOUT_S,
        max_attempts: int = settings.VISION_MAX_ATTEMPTS,
        retry_base_s: float = settings.VISION_RETRY_BASE_S,
        retry_max_s: float = settings.VISION_RETRY_MAX_S,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._api_key = api_key
        base = base_url.rstrip("/")
        self._endpoint = base if base.endswith("/chat/completions") else f"{base}/chat/completions"
        self._model = model
        self._timeout_s = timeout_s
        self._max_attempts = max(1, max_attempts)
        self._retry_base_s = retry_base_s
        self._retry_max_s = retry_max_s
        self._transport = transport
        self._sleep = sleep
        self._rng = rng or random.Random()

    @property
    def model(self) -> str:
        return self._model

    def _wait(self, retry_state: RetryCallState) -> float:
        return compute_retry_delay(
            retry_state.attempt_number,
            base_s=self._retry_base_s,
            max_s=self._retry_max_s,
            jitter=self._rng.random() * JITTER_RATIO,
        )

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(
            "vision_retry attempt=%s/%s delay_s=%.2f status=%s",
            retry_state.attempt_number + 1,
            self._max_attempts,
            delay,
            getattr(exc, "status_code", None),
        )

    async def analyze(self, image_urls: Sequence[str]) -> VisionAnalysis:
        urls = _validate_urls(image_urls)
        if not self._api_key:
            raise VisionUnavailableError("OPENAI_API_KEY is not configured")

        payload = build_request_payload(urls, model=self._model)
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=self._wait,
            retry=retry_if_exception(_is_retryable),
            before_sleep=self._log_retry,
            sleep=self._sleep,
            reraise=False,
        )

        result: Optional[VisionAnalysis] = None
        try:
            async with httpx.AsyncClient(timeout=self._timeout_s, transport=self._transport) as client:
                async for attempt in retrying:
                    with attempt:
                        logger.info(
                            "vision_call attempt=%s/%s model=%s",
                            attempt.retry_state.attempt_number,
                            self._max_attempts,
                            self._model,
                        )
                        content = await self._complete(client, payload)
                        result = validate_vision_payload(parse_vision_content(content))
        except RetryError as exc:
            last = exc.last_attempt.exception()
            raise VisionUnavailableError(
                f"Vision API failed after {self._max_attempts} attempts: {last}"
            ) from last

        if result is None:
            raise VisionUnavailableError("Vision API returned no result")
        logger.info(
            "vision_complete skin_type=%s confidence=%s traits=%s",
            result.skin_type,
            result.confidence,
            len(result.traits),
        )
        return result

    async def _complete(self, client: httpx.AsyncClient, payload: dict[str, Any]) -> str:
        headers = {"Content-Type": "application/json", "Authorization": f"Bearer {self._api_key}"}
        try:
            res = await client.post(self._endpoint, headers=headers, json=payload)
        except httpx.HTTPError as exc:
            raise VisionUnavailableError(f"Vision request failed: {exc!r}") from exc

        if res.status_code == 429 or 500 <= res.status_code < 600:
            raise TransientServiceFailure(res.status_code, res.text)
        if res.status_code >= 400:
            raise VisionUnavailableError(
                f"Vision provider rejected request status={res.status_code} body={res.text[:300]}"
            )

        try:
            data = res.json()
        except Exception as exc:
            raise MalformedVisionResponse("Vision provider returned a non-JSON envelope") from exc

        choices = data.get("choices") if isinstance(data, dict) else None
        first = choices[0] if isinstance(choices, list) and choices else None
        message = first.get("message") if isinstance(first, dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str) or not content.strip():
            raise MalformedVisionResponse("Vision provider returned empty response")
        logger.info("vision_response chars=%s", len(content))
        return content
