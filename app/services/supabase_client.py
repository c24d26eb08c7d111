"""Shared async Supabase client (service role)."""

from __future__ import annotations

import asyncio
from typing import Optional

from supabase import AsyncClient, acreate_client

from app import settings

_client: Optional[AsyncClient] = None
_lock = asyncio.Lock()


async def get_supabase() -> AsyncClient:
    """Get or create the Supabase client using the service role key."""
    global _client
    if _client is not None:
        return _client
    async with _lock:
        if _client is None:
            if not settings.SUPABASE_URL or not settings.SUPABASE_SERVICE_ROLE_KEY:
                raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
            _client = await acreate_client(settings.SUPABASE_URL, settings.SUPABASE_SERVICE_ROLE_KEY)
    return _client
