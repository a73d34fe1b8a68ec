"""
Pydantic models for the application
"""
from habitsync.models.habit import (
    Habit,
    HabitCompletion,
    HabitWithCompletions,
    CreateHabitRequest,
    UpdateHabitRequest,
    ToggleCompletionRequest,
    DashboardStats
)
from habitsync.models.sync import (
    MutationKind,
    MutationStatus,
    PendingMutation,
    ApiResponse,
    SyncFailure,
    SyncResult,
    SyncStatus
)

__all__ = [
    "Habit",
    "HabitCompletion",
    "HabitWithCompletions",
    "CreateHabitRequest",
    "UpdateHabitRequest",
    "ToggleCompletionRequest",
    "DashboardStats",
    "MutationKind",
    "MutationStatus",
    "PendingMutation",
    "ApiResponse",
    "SyncFailure",
    "SyncResult",
    "SyncStatus"
]
