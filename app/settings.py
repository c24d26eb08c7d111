from __future__ import annotations

import os


def _env_str(name: str, default: str = "") -> str:
    return (os.getenv(name) or "").strip() or default


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except Exception:
        return default


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except Exception:
        return default


SERVICE_NAME = "carefi-analysis"

# Supabase (auth, Postgres, storage).
SUPABASE_URL = _env_str("SUPABASE_URL").rstrip("/")
SUPABASE_SERVICE_ROLE_KEY = _env_str("SUPABASE_SERVICE_ROLE_KEY") or None
SUPABASE_PHOTOS_BUCKET = _env_str("SUPABASE_PHOTOS_BUCKET", "user-photos")
SIGNED_URL_TTL_S = _env_int("SIGNED_URL_TTL_S", 360)
# Set once migrations/001_skin_analyses_result_fields.sql has been applied.
ANALYSES_EXTENDED_COLUMNS = (os.getenv("ANALYSES_EXTENDED_COLUMNS") or "").strip().lower() in {"1", "true", "yes", "y"}

# OpenAI-compatible vision endpoint.
OPENAI_API_KEY = _env_str("OPENAI_API_KEY") or None
OPENAI_API_BASE = _env_str("OPENAI_API_BASE", "https://api.openai.com/v1").rstrip("/")
OPENAI_VISION_MODEL = _env_str("OPENAI_VISION_MODEL", "gpt-4o-mini")
VISION_TIMEOUT_S = _env_float("VISION_TIMEOUT_S", 60.0)
VISION_MAX_ATTEMPTS = _env_int("VISION_MAX_ATTEMPTS", 3)
VISION_RETRY_BASE_S = _env_float("VISION_RETRY_BASE_S", 1.0)
VISION_RETRY_MAX_S = _env_float("VISION_RETRY_MAX_S", 10.0)

# Per-user analysis quota: 3 analyses per hour.
RATE_LIMIT_CAPACITY = _env_int("RATE_LIMIT_CAPACITY", 3)
RATE_LIMIT_WINDOW_S = _env_float("RATE_LIMIT_WINDOW_S", 3600.0)
RATE_LIMIT_SWEEP_INTERVAL_S = _env_float("RATE_LIMIT_SWEEP_INTERVAL_S", 600.0)
