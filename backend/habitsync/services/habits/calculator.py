"""
Due/Streak Calculator - Derived presentation fields for habits
Pure functions of (habit, completions, today); nothing here reads the clock

Streaks and rates are always evaluated against the habit's current frequency
mask, including completions recorded while an older mask was in effect.
"""
from datetime import date, timedelta
from typing import Iterable, List, NamedTuple, Optional, Set
import logging

from habitsync.models.habit import (
    Habit,
    HabitCompletion,
    HabitWithCompletions,
    DashboardStats
)
from .frequency import ALL_DAYS, is_day_in_mask

logger = logging.getLogger(__name__)

ONE_DAY = timedelta(days=1)

DERIVED_FIELDS = {
    "completions",
    "current_streak",
    "longest_streak",
    "completion_rate",
    "last_completed",
    "is_due_today",
    "is_completed_today",
}


class StreakInfo(NamedTuple):
    current_streak: int
    longest_streak: int


def round_percentage(numerator: int, denominator: int) -> int:
    """Integer percentage rounded half-up; 0 for an empty denominator"""
    if denominator <= 0:
        return 0
    return (numerator * 200 + denominator) // (2 * denominator)


def completion_date(completion: HabitCompletion) -> date:
    """
    Calendar date of a completion

    Raises:
        ValueError: If completed_at does not start with an ISO date
    """
    return completion.completed_on


def _completed_dates(habit: Habit, completions: Iterable[HabitCompletion]) -> Set[date]:
    """Distinct completion dates for this habit; duplicates collapse"""
    dates = set()
    for completion in completions:
        if completion.habit_id != habit.id:
            continue
        try:
            dates.add(completion_date(completion))
        except ValueError:
            logger.warning(f"Skipping completion {completion.id} with unreadable date {completion.completed_at!r}")
    return dates


def _can_ever_be_due(habit: Habit) -> bool:
    return habit.is_active and (habit.frequency & ALL_DAYS) != 0


def is_due_on_date(habit: Habit, on: date) -> bool:
    """
    Whether the habit should be performed on a date

    Args:
        habit: The habit
        on: Calendar date to check

    Returns:
        False before start_date or for inactive habits, otherwise whether the
        weekday is in the frequency mask
    """
    if on < habit.start_date:
        return False
    if not habit.is_active:
        return False
    return is_day_in_mask(habit.frequency, on.isoweekday())


def is_completed_on_date(habit: Habit, completions: Iterable[HabitCompletion], on: date) -> bool:
    """True if any completion of this habit falls on the date"""
    return on in _completed_dates(habit, completions)


def _current_streak(habit: Habit, done: Set[date], today: date) -> int:
    day = today
    # Today is still open: an unfinished due day does not break the streak yet
    if is_due_on_date(habit, today) and today not in done:
        day = today - ONE_DAY

    streak = 0
    while day >= habit.start_date:
        if is_due_on_date(habit, day):
            if day not in done:
                break
            streak += 1
        day -= ONE_DAY
    return streak


def _longest_streak(habit: Habit, done: Set[date], today: date) -> int:
    longest = 0
    run = 0
    day = habit.start_date
    while day <= today:
        if is_due_on_date(habit, day):
            if day in done:
                run += 1
                longest = max(longest, run)
            elif day != today:
                run = 0
        day += ONE_DAY
    return longest


def calculate_streak(habit: Habit, completions: Iterable[HabitCompletion], today: date) -> StreakInfo:
    """
    Current and longest streak of completed due days

    Non-due days are skipped without breaking a streak. Completions on days the
    habit is not due neither extend nor break it.

    Args:
        habit: The habit
        completions: Completion events (other habits' events are ignored)
        today: Reference date

    Returns:
        StreakInfo(current_streak, longest_streak); longest is never below current
    """
    if not _can_ever_be_due(habit):
        return StreakInfo(0, 0)

    done = _completed_dates(habit, completions)
    if not done:
        return StreakInfo(0, 0)

    current = _current_streak(habit, done, today)
    longest = max(_longest_streak(habit, done, today), current)
    return StreakInfo(current, longest)


def calculate_completion_rate(habit: Habit, completions: Iterable[HabitCompletion], today: date) -> int:
    """
    Percentage of due days since start_date (inclusive of today) that were completed

    Returns:
        Integer percentage, 0 when no due day has elapsed yet
    """
    if not _can_ever_be_due(habit):
        return 0

    done = _completed_dates(habit, completions)
    total_due = 0
    completed_due = 0
    day = habit.start_date
    while day <= today:
        if is_due_on_date(habit, day):
            total_due += 1
            if day in done:
                completed_due += 1
        day += ONE_DAY

    return round_percentage(completed_due, total_due)


def _sort_key(completion: HabitCompletion) -> str:
    return completion.completed_at


def enrich_habit_with_completions(
    habit: Habit,
    completions: Iterable[HabitCompletion],
    today: date
) -> HabitWithCompletions:
    """
    Combine a habit with its completions and every derived field

    Args:
        habit: The habit
        completions: Completions for any habits; only this habit's are kept
        today: Reference date

    Returns:
        HabitWithCompletions with completions sorted newest first
    """
    own = sorted(
        (c for c in completions if c.habit_id == habit.id),
        key=_sort_key,
        reverse=True
    )
    done = _completed_dates(habit, own)
    streak = calculate_streak(habit, own, today)
    last_completed: Optional[str] = max(done).isoformat() if done else None

    return HabitWithCompletions(
        **habit.model_dump(exclude=DERIVED_FIELDS),
        completions=own,
        current_streak=streak.current_streak,
        longest_streak=streak.longest_streak,
        completion_rate=calculate_completion_rate(habit, own, today),
        last_completed=last_completed,
        is_due_today=is_due_on_date(habit, today),
        is_completed_today=today in done,
    )


def calculate_dashboard_stats(habits: List[HabitWithCompletions]) -> DashboardStats:
    """
    Aggregate numbers across enriched habits

    completion_rate is the mean of the per-habit rates, rounded half-up.
    """
    if not habits:
        return DashboardStats()

    return DashboardStats(
        total_habits=len(habits),
        completed_today=sum(1 for h in habits if h.is_completed_today),
        active_streaks=sum(1 for h in habits if h.current_streak > 0),
        total_completions=sum(len(h.completions) for h in habits),
        completion_rate=round_percentage(sum(h.completion_rate for h in habits), len(habits) * 100),
    )
