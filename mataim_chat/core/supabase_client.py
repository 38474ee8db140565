import asyncio
import logging

from supabase import AsyncClient, acreate_client

from mataim_chat.core.config import get_settings


logger = logging.getLogger(__name__)

# Realtime channels only work on the async client, so it is created lazily
# on the running loop instead of at import time.
_supabase: AsyncClient | None = None
_lock = asyncio.Lock()


async def get_supabase() -> AsyncClient:
    global _supabase

    if _supabase is not None:
        return _supabase

    async with _lock:
        if _supabase is None:
            settings = get_settings()
            if not settings.supabase_url or not settings.supabase_key:
                raise RuntimeError("PUBLIC_SUPABASE_URL and SECRET_API_KEY must be set")
            _supabase = await acreate_client(settings.supabase_url, settings.supabase_key)
            logger.info(f"supabase_client_created url={settings.supabase_url}")

    return _supabase


async def close_supabase() -> None:
    global _supabase

    if _supabase is None:
        return
    try:
        await _supabase.remove_all_channels()
    except Exception:
        logger.exception("supabase_close_failed")
    _supabase = None
