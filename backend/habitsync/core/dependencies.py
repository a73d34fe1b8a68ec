"""
Dependency construction for shared clients and resources
"""
from fastapi import Request
from supabase import create_client, Client

from habitsync.core.config import settings
from habitsync.services.sync.registry import SyncEngineRegistry


def get_supabase_client() -> Client:
    """Get Supabase client instance"""
    return create_client(settings.SUPABASE_URL, settings.SUPABASE_KEY)


def get_engine_registry(request: Request) -> SyncEngineRegistry:
    """Get the per-user engine registry owned by the running application"""
    engines = getattr(request.app.state, "engines", None)
    if engines is None:
        raise RuntimeError("Sync engines are not initialised")
    return engines
