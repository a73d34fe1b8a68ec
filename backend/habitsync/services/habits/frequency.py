"""
Frequency Codec - Weekly recurrence encoded as a weekday bitmask

One bit per weekday, Monday first. Weekday indices follow the ISO
convention used by date.isoweekday(): Monday=1 ... Sunday=7.
"""
from typing import Iterable, List, Union

from habitsync.core.constants import FREQUENCY_MIN, FREQUENCY_MAX
from habitsync.core.exceptions import InvalidFrequencyError

MONDAY = 1
TUESDAY = 2
WEDNESDAY = 4
THURSDAY = 8
FRIDAY = 16
SATURDAY = 32
SUNDAY = 64

DAILY = MONDAY | TUESDAY | WEDNESDAY | THURSDAY | FRIDAY | SATURDAY | SUNDAY  # 127
ALL_DAYS = DAILY
WEEKDAYS = MONDAY | TUESDAY | WEDNESDAY | THURSDAY | FRIDAY  # 31
WEEKEND = SATURDAY | SUNDAY  # 96

DAY_NAMES = ["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"]
FULL_DAY_NAMES = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]

_NAME_TO_WEEKDAY = {name.lower(): i for i, name in enumerate(DAY_NAMES, start=1)}
_NAME_TO_WEEKDAY.update({name: i for i, name in enumerate(FULL_DAY_NAMES, start=1)})


def weekday_bit(weekday: int) -> int:
    """Bit for an ISO weekday (1-7)"""
    return 1 << (weekday - 1)


def days_from_mask(mask: int) -> List[str]:
    """
    Weekday names present in a mask, Monday first

    Bits outside the 0-127 range are ignored.
    """
    mask &= ALL_DAYS
    return [name for i, name in enumerate(DAY_NAMES) if mask & (1 << i)]


def weekdays_from_mask(mask: int) -> List[int]:
    """ISO weekday indices present in a mask, Monday first"""
    mask &= ALL_DAYS
    return [i + 1 for i in range(7) if mask & (1 << i)]


def _to_weekday(day: Union[int, str]) -> int:
    if isinstance(day, bool):
        raise InvalidFrequencyError(f"Invalid weekday: {day!r}")
    if isinstance(day, int):
        if 1 <= day <= 7:
            return day
        raise InvalidFrequencyError(f"Invalid weekday index {day}. Use 1 (Monday) to 7 (Sunday)")
    if isinstance(day, str):
        weekday = _NAME_TO_WEEKDAY.get(day.strip().lower())
        if weekday is not None:
            return weekday
    raise InvalidFrequencyError(f"Invalid weekday: {day!r}")


def mask_from_days(days: Iterable[Union[int, str]]) -> int:
    """
    Build a mask from weekday indices (1-7) or names ('Mon', 'monday')

    An empty iterable yields 0, a habit that is never due.

    Raises:
        InvalidFrequencyError: If a day cannot be interpreted
    """
    mask = 0
    for day in days:
        mask |= weekday_bit(_to_weekday(day))
    return mask


def is_day_in_mask(mask: int, weekday: int) -> bool:
    """True if the ISO weekday (Monday=1 ... Sunday=7) is set in the mask"""
    if not 1 <= weekday <= 7:
        return False
    return (mask & weekday_bit(weekday)) != 0


def validate_frequency(value) -> int:
    """
    Check that a value is a usable frequency mask

    Returns:
        The mask unchanged

    Raises:
        InvalidFrequencyError: If value is not an int in 0-127
    """
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidFrequencyError(f"Frequency must be an integer, got {value!r}")
    if not FREQUENCY_MIN <= value <= FREQUENCY_MAX:
        raise InvalidFrequencyError(
            f"Frequency {value} out of range ({FREQUENCY_MIN}-{FREQUENCY_MAX})"
        )
    return value


def describe_frequency(mask: int) -> str:
    """Human-readable summary of a mask"""
    mask &= ALL_DAYS
    if mask == DAILY:
        return "Every day"
    if mask == WEEKDAYS:
        return "Weekdays"
    if mask == WEEKEND:
        return "Weekends"
    if mask == 0:
        return "Never"
    return ", ".join(days_from_mask(mask))
