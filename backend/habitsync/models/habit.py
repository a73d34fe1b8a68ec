"""
Pydantic models for habits and completions
"""
from datetime import date, datetime
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator
from typing import List, Optional, Any

from habitsync.core.constants import (
    FREQUENCY_MAX,
    TITLE_MIN_LENGTH,
    TITLE_MAX_LENGTH
)
from habitsync.core.exceptions import InvalidFrequencyError


def _validate_time_format(v: Optional[str]) -> Optional[str]:
    """Validate time format is HH:MM if provided"""
    if v is None:
        return v
    try:
        datetime.strptime(v, "%H:%M")
        return v
    except ValueError:
        raise ValueError(f"Invalid time format '{v}'. Use HH:MM (24-hour format)")


def _validate_title(v: Optional[str]) -> Optional[str]:
    """Reject titles that are blank once whitespace is stripped"""
    if v is None:
        return v
    stripped = v.strip()
    if not stripped:
        raise ValueError("Habit title must not be empty")
    return stripped


def _validate_frequency(v: Any) -> int:
    """Frequency must be an integer bitmask in 0-127"""
    # Imported here to avoid a circular import through habitsync.services
    from habitsync.services.habits.frequency import validate_frequency

    try:
        return validate_frequency(v)
    except InvalidFrequencyError as e:
        raise ValueError(str(e))


def _reject_null(v: Any, field_name: str) -> Any:
    if v is None:
        raise ValueError(f"{field_name} cannot be null")
    return v


class Habit(BaseModel):
    """A habit row as stored by the remote service"""
    model_config = ConfigDict(extra="allow")

    id: str
    user_id: str
    title: str
    description: Optional[str] = None
    frequency: int = FREQUENCY_MAX
    start_date: date
    color: Optional[str] = None
    icon: Optional[str] = None
    reminder_time: Optional[str] = None
    is_active: bool = True
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @field_validator('id', 'user_id', mode='before')
    @classmethod
    def coerce_identifier(cls, v: Any) -> Any:
        """Server ids may arrive as integers or UUIDs"""
        return str(v) if v is not None else v

    @field_validator('is_active', mode='before')
    @classmethod
    def default_active(cls, v: Any) -> Any:
        """A missing is_active column means the habit is active"""
        return True if v is None else v


class HabitCompletion(BaseModel):
    """A single completion event"""
    model_config = ConfigDict(extra="allow")

    id: str
    habit_id: str
    user_id: Optional[str] = None
    completed_at: str = Field(..., description="ISO date or timestamp; the date part is the key")
    created_at: Optional[str] = None

    @field_validator('id', 'habit_id', 'user_id', mode='before')
    @classmethod
    def coerce_identifier(cls, v: Any) -> Any:
        return str(v) if v is not None else v

    @field_validator('completed_at', mode='before')
    @classmethod
    def coerce_completed_at(cls, v: Any) -> Any:
        if isinstance(v, (date, datetime)):
            return v.isoformat()
        return v

    @property
    def completed_on(self) -> date:
        """Calendar date of the completion"""
        return date.fromisoformat(self.completed_at[:10])


class HabitWithCompletions(Habit):
    """A habit enriched with its completions and derived statistics"""
    completions: List[HabitCompletion] = Field(default_factory=list)
    current_streak: int = 0
    longest_streak: int = 0
    completion_rate: int = 0
    last_completed: Optional[str] = None
    is_due_today: bool = False
    is_completed_today: bool = False


class CreateHabitRequest(BaseModel):
    """Request model for creating a new habit"""
    user_id: str = Field(..., min_length=1, description="Owner id")
    title: str = Field(..., min_length=TITLE_MIN_LENGTH, max_length=TITLE_MAX_LENGTH, description="Habit title")
    description: Optional[str] = None
    frequency: int = Field(FREQUENCY_MAX, description="Weekday bitmask (Monday=1 ... Sunday=64)")
    start_date: Optional[date] = Field(None, description="First day the habit can be due; defaults to today")
    color: Optional[str] = None
    icon: Optional[str] = None
    reminder_time: Optional[str] = Field(None, description="Reminder time in HH:MM format (24-hour)")
    is_active: bool = True

    @field_validator('title')
    @classmethod
    def validate_title(cls, v: str) -> str:
        return _validate_title(v)

    @field_validator('frequency', mode='before')
    @classmethod
    def validate_frequency(cls, v: Any) -> int:
        return _validate_frequency(v)

    @field_validator('reminder_time')
    @classmethod
    def validate_time_format(cls, v: Optional[str]) -> Optional[str]:
        return _validate_time_format(v)


class UpdateHabitRequest(BaseModel):
    """Request model for a partial habit update"""
    title: Optional[str] = Field(None, min_length=TITLE_MIN_LENGTH, max_length=TITLE_MAX_LENGTH)
    description: Optional[str] = None
    frequency: Optional[int] = None
    start_date: Optional[date] = None
    color: Optional[str] = None
    icon: Optional[str] = None
    reminder_time: Optional[str] = None
    is_active: Optional[bool] = None

    @field_validator('title', 'frequency', 'start_date', 'is_active', mode='before')
    @classmethod
    def reject_null(cls, v: Any, info: ValidationInfo) -> Any:
        """These columns are NOT NULL; only an omitted field leaves them unchanged"""
        return _reject_null(v, info.field_name)

    @field_validator('title')
    @classmethod
    def validate_title(cls, v: Optional[str]) -> Optional[str]:
        return _validate_title(v)

    @field_validator('frequency', mode='before')
    @classmethod
    def validate_frequency(cls, v: Any) -> int:
        return _validate_frequency(v)

    @field_validator('reminder_time')
    @classmethod
    def validate_time_format(cls, v: Optional[str]) -> Optional[str]:
        return _validate_time_format(v)

    def to_updates(self) -> dict:
        """Only the fields the caller actually set, JSON-ready"""
        return self.model_dump(mode="json", exclude_unset=True)


class ToggleCompletionRequest(BaseModel):
    """Request model for toggling a completion"""
    user_id: str = Field(..., min_length=1)
    completed_on: Optional[date] = Field(None, description="Calendar date to toggle; defaults to today")


class DashboardStats(BaseModel):
    """Aggregate numbers across a user's habits"""
    total_habits: int = 0
    completed_today: int = 0
    active_streaks: int = 0
    total_completions: int = 0
    completion_rate: int = 0
