from __future__ import annotations

import math
from typing import Any, Optional, Sequence


GENERIC_RETRY_MESSAGE = "An unexpected error occurred. Please try again."
SERVICE_UNAVAILABLE_MESSAGE = (
    "Our skin analysis service is temporarily unavailable. Please try again in a few moments."
)
MISSING_IMAGES_MESSAGE = (
    "Please upload all three required images (front, left 45°, right 45°) before starting analysis."
)


def describe_window(window_s: float) -> str:
    """``3600`` -> ``"hour"``, ``7200`` -> ``"2 hours"``, ``90`` -> ``"90 seconds"``."""
    seconds = max(1, int(round(window_s)))
    for unit_s, unit in ((86400, "day"), (3600, "hour"), (60, "minute")):
        if seconds % unit_s == 0:
            count = seconds // unit_s
            return unit if count == 1 else f"{count} {unit}s"
    return "second" if seconds == 1 else f"{seconds} seconds"


class AnalysisError(Exception):
    """Error that is safe to show to the caller.

    ``str(exc)`` is the operator-facing diagnostic. Only ``user_message`` and
    ``details`` are rendered into responses.
    """

    code = "internal_error"
    status_code = 500
    default_user_message = GENERIC_RETRY_MESSAGE

    def __init__(
        self,
        message: str = "",
        *,
        user_message: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message or self.default_user_message)
        self.user_message = user_message or self.default_user_message
        self.details = details

    @property
    def headers(self) -> dict[str, str]:
        return {}


class UnauthorizedError(AnalysisError):
    code = "unauthorized"
    status_code = 401
    default_user_message = "You must be logged in to start an analysis"


class MissingImagesError(AnalysisError):
    code = "missing_images"
    status_code = 400
    default_user_message = MISSING_IMAGES_MESSAGE

    def __init__(self, missing_angles: Sequence[str]) -> None:
        self.missing_angles = list(missing_angles)
        super().__init__(f"Missing required image for angle: {', '.join(self.missing_angles)}")


class RateLimitedError(AnalysisError):
    code = "rate_limit_exceeded"
    status_code = 429
    default_user_message = "You have exceeded the analysis rate limit"

    def __init__(self, retry_after_s: float, *, limit: int, window_s: float) -> None:
        self.retry_after_seconds = max(1, math.ceil(retry_after_s))
        minutes = max(1, math.ceil(self.retry_after_seconds / 60))
        super().__init__(
            f"rate limit exceeded retry_after_s={self.retry_after_seconds}",
            details={
                "limit": f"{limit} analyses per {describe_window(window_s)}",
                "retryAfter": self.retry_after_seconds,
                "retryAfterHuman": f"{minutes} minutes",
            },
        )

    @property
    def headers(self) -> dict[str, str]:
        return {"Retry-After": str(self.retry_after_seconds)}


class ServiceUnavailableError(AnalysisError):
    code = "service_unavailable"
    status_code = 503
    default_user_message = SERVICE_UNAVAILABLE_MESSAGE


class InternalError(AnalysisError):
    code = "internal_error"
    status_code = 500


class NotFoundError(AnalysisError):
    code = "not_found"
    status_code = 404
    default_user_message = "Analysis not found"


# Internal conditions. These never reach the caller as-is; the orchestrator
# maps them onto the public errors above.


class SignedAccessError(Exception):
    pass


class PersistenceError(Exception):
    pass


class InvalidTransitionError(Exception):
    pass


class VisionAnalysisError(Exception):
    retryable = False


class VisionInputError(VisionAnalysisError):
    pass


class MalformedVisionResponse(VisionAnalysisError):
    pass


class SchemaViolation(VisionAnalysisError):
    def __init__(self, violations: Sequence[str]) -> None:
        self.violations = list(violations)
        super().__init__("Vision response does not match expected schema: " + "; ".join(self.violations))


class TransientServiceFailure(VisionAnalysisError):
    retryable = True

    def __init__(self, status_code: int, body: str = "") -> None:
        self.status_code = status_code
        super().__init__(f"Vision provider returned status={status_code} body={body[:300]}")


class VisionUnavailableError(VisionAnalysisError):
    pass
