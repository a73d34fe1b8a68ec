"""
Timezone Utilities - Centralized timezone handling
"""
from datetime import date, datetime
import pytz

from habitsync.core.config import settings


def get_app_tz():
    """
    Get the configured application timezone

    Returns:
        pytz timezone for settings.APP_TIMEZONE
    """
    return pytz.timezone(settings.APP_TIMEZONE)


def get_local_now() -> datetime:
    """
    Get current datetime in the application timezone

    Returns:
        Timezone-aware datetime object
    """
    return datetime.now(get_app_tz())


def get_local_today_date() -> date:
    """
    Get today's date in the application timezone

    Returns:
        date object for today
    """
    return get_local_now().date()


def get_utc_timestamp() -> str:
    """
    Get the current UTC time as an ISO-8601 string

    Returns:
        Timestamp string such as '2024-01-01T12:00:00+00:00'
    """
    return datetime.now(pytz.utc).isoformat()
