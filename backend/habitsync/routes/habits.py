"""
Habit Routes - Endpoints for habit management
"""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import PlainTextResponse, Response

from habitsync.core.dependencies import get_engine_registry
from habitsync.core.exceptions import (
    HabitNotFoundError,
    InvalidHabitDataError,
    PersistentSyncError
)
from habitsync.models.habit import (
    CreateHabitRequest,
    UpdateHabitRequest,
    ToggleCompletionRequest
)
from habitsync.services.habits import (
    calculate_dashboard_stats,
    export_habits_to_csv,
    export_habits_to_json
)
from habitsync.services.sync import SyncEngineRegistry
from habitsync.services.sync.state import is_temp_id

router = APIRouter(prefix="/habits", tags=["habits"])


@router.get("/{user_id}")
async def get_habits(user_id: str, engines: SyncEngineRegistry = Depends(get_engine_registry)):
    """Get all habits with completions and derived statistics"""
    try:
        engine = await engines.get(user_id)
        habits = await engine.get_habits_with_completions(user_id)
        return {
            "status": "success",
            "online": engine.get_connection_status(),
            "habits": [h.model_dump(mode="json") for h in habits]
        }
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/{user_id}/stats")
async def get_dashboard_stats(user_id: str, engines: SyncEngineRegistry = Depends(get_engine_registry)):
    """Get aggregate statistics across a user's habits"""
    try:
        engine = await engines.get(user_id)
        habits = await engine.get_habits_with_completions(user_id)
        return {"status": "success", "stats": calculate_dashboard_stats(habits).model_dump()}
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/{user_id}/export")
async def export_habits(
    user_id: str,
    format: str = Query("csv", pattern="^(csv|json)$"),
    engines: SyncEngineRegistry = Depends(get_engine_registry)
):
    """Export habits as CSV or JSON"""
    try:
        engine = await engines.get(user_id)
        habits = await engine.get_habits_with_completions(user_id)
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))

    if format == "json":
        return Response(content=export_habits_to_json(habits), media_type="application/json")
    return PlainTextResponse(content=export_habits_to_csv(habits), media_type="text/csv")


@router.post("")
async def create_habit(request: CreateHabitRequest, engines: SyncEngineRegistry = Depends(get_engine_registry)):
    """Create a habit; queued for sync while offline"""
    try:
        engine = await engines.get(request.user_id)
        habit = await engine.create_habit(request)
        return {
            "status": "success",
            "pending": is_temp_id(habit.id),
            "data": habit.model_dump(mode="json")
        }
    except InvalidHabitDataError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except PersistentSyncError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Unexpected error: {str(e)}")


@router.patch("/{habit_id}")
async def update_habit(
    habit_id: str,
    request: UpdateHabitRequest,
    user_id: str = Query(..., min_length=1),
    engines: SyncEngineRegistry = Depends(get_engine_registry)
):
    """Apply a partial update to a habit"""
    try:
        engine = await engines.get(user_id)
        await engine.update_habit(habit_id, user_id, request)
        return {"status": "success", "habit_id": engine.resolve_id(habit_id)}
    except InvalidHabitDataError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except HabitNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except PersistentSyncError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Unexpected error: {str(e)}")


@router.delete("/{habit_id}")
async def delete_habit(
    habit_id: str,
    user_id: str = Query(..., min_length=1),
    engines: SyncEngineRegistry = Depends(get_engine_registry)
):
    """Delete a habit and its completions"""
    try:
        engine = await engines.get(user_id)
        await engine.delete_habit(habit_id, user_id)
        return {"status": "success", "habit_id": habit_id}
    except PersistentSyncError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Unexpected error: {str(e)}")


@router.post("/{habit_id}/toggle")
async def toggle_completion(
    habit_id: str,
    request: ToggleCompletionRequest,
    engines: SyncEngineRegistry = Depends(get_engine_registry)
):
    """Complete or un-complete a habit for a date (default today)"""
    try:
        engine = await engines.get(request.user_id)
        completed = await engine.toggle_habit_completion(habit_id, request.user_id, request.completed_on)
        habit: Optional[dict] = None
        try:
            habit = (await engine.get_habit(habit_id, request.user_id)).model_dump(mode="json")
        except HabitNotFoundError:
            pass
        return {"status": "success", "completed": completed, "habit": habit}
    except PersistentSyncError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Unexpected error: {str(e)}")
