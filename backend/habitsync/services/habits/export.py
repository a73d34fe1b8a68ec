"""
Habit export - CSV and JSON renderings of enriched habits
"""
import csv
import io
import json
from typing import List

from habitsync.core.constants import EXPORT_CSV_HEADERS
from habitsync.models.habit import HabitWithCompletions
from .frequency import days_from_mask, describe_frequency


def export_habits_to_csv(habits: List[HabitWithCompletions]) -> str:
    """
    Render habits as CSV with every cell quoted

    Args:
        habits: Enriched habits

    Returns:
        CSV text, header row first, rows separated by newlines
    """
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow(EXPORT_CSV_HEADERS)
    for habit in habits:
        writer.writerow([
            habit.title,
            habit.description or "",
            ", ".join(days_from_mask(habit.frequency)),
            describe_frequency(habit.frequency),
            habit.start_date.isoformat(),
            str(habit.current_streak),
            str(habit.longest_streak),
            f"{habit.completion_rate}%",
            str(len(habit.completions)),
            habit.last_completed or "",
        ])
    return buffer.getvalue().rstrip("\n")


def export_habits_to_json(habits: List[HabitWithCompletions]) -> str:
    """Render habits as indented JSON"""
    return json.dumps([habit.model_dump(mode="json") for habit in habits], indent=2)
