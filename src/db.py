from __future__ import annotations

import functools

from supabase import Client, create_client

from src.config import settings


@functools.lru_cache()
def get_supabase() -> Client:
    """Build the Supabase client on first use so importing the app needs no credentials."""
    if not settings.supabase_url or not settings.supabase_service_role_key:
        raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be configured")
    return create_client(settings.supabase_url, settings.supabase_service_role_key)
