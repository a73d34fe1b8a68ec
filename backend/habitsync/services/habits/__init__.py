"""
Habits module - Recurrence codec, derived statistics and exports
"""
from . import frequency
from . import calculator
from . import export

from .frequency import (
    DAILY,
    WEEKDAYS,
    WEEKEND,
    days_from_mask,
    weekdays_from_mask,
    mask_from_days,
    is_day_in_mask,
    validate_frequency,
    describe_frequency
)

from .calculator import (
    is_due_on_date,
    is_completed_on_date,
    calculate_streak,
    calculate_completion_rate,
    enrich_habit_with_completions,
    calculate_dashboard_stats
)

from .export import export_habits_to_csv, export_habits_to_json

__all__ = [
    # Modules
    'frequency',
    'calculator',
    'export',

    # Frequency codec
    'DAILY',
    'WEEKDAYS',
    'WEEKEND',
    'days_from_mask',
    'weekdays_from_mask',
    'mask_from_days',
    'is_day_in_mask',
    'validate_frequency',
    'describe_frequency',

    # Calculator
    'is_due_on_date',
    'is_completed_on_date',
    'calculate_streak',
    'calculate_completion_rate',
    'enrich_habit_with_completions',
    'calculate_dashboard_stats',

    # Export
    'export_habits_to_csv',
    'export_habits_to_json'
]
