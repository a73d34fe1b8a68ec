"""
Sync Routes - Queue and connectivity indicators for one user session
"""
from fastapi import APIRouter, Depends, HTTPException, Query

from habitsync.core.dependencies import get_engine_registry
from habitsync.services.sync import SyncEngineRegistry

router = APIRouter(prefix="/sync", tags=["sync"])


@router.get("/status")
async def get_sync_status(
    user_id: str = Query(..., min_length=1),
    engines: SyncEngineRegistry = Depends(get_engine_registry)
):
    """Connection status and number of pending changes"""
    engine = await engines.get(user_id)
    return engine.get_status().model_dump(mode="json")


@router.post("")
async def sync_now(
    user_id: str = Query(..., min_length=1),
    engines: SyncEngineRegistry = Depends(get_engine_registry)
):
    """Drain the user's pending-change queue"""
    try:
        engine = await engines.get(user_id)
        result = await engine.sync_pending_changes()
        return {"status": "success", "result": result.model_dump(mode="json")}
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/refresh/{user_id}")
async def force_sync(user_id: str, engines: SyncEngineRegistry = Depends(get_engine_registry)):
    """Drain the queue, then refresh the user's cache from the server"""
    try:
        engine = await engines.get(user_id)
        result = await engine.force_sync(user_id)
        return {"status": "success", "result": result.model_dump(mode="json")}
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))
