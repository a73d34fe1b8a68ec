"""
Health Routes - Liveness with connectivity and open sessions
"""
from fastapi import APIRouter, Depends

from habitsync.core.dependencies import get_engine_registry
from habitsync.services.sync import SyncEngineRegistry

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(engines: SyncEngineRegistry = Depends(get_engine_registry)):
    """Report that the server is up and whether the remote service is reachable"""
    return {
        "status": "ok",
        "online": engines.is_online,
        "sessions": len(engines)
    }
