"""
Custom Exceptions - Application-specific error types
"""


class HabitSyncException(Exception):
    """Base exception for all habit sync errors"""
    pass


class HabitNotFoundError(HabitSyncException):
    """Raised when a habit cannot be found"""
    pass


class InvalidHabitDataError(HabitSyncException):
    """Raised when habit data validation fails"""
    pass


class InvalidFrequencyError(InvalidHabitDataError):
    """Raised when a frequency bitmask or weekday is out of range"""
    pass


class RemoteServiceError(HabitSyncException):
    """Raised when the remote service fails"""
    pass


class PersistentSyncError(RemoteServiceError):
    """Raised when the remote service rejects a change or retries are exhausted"""

    def __init__(self, message: str, mutation=None):
        super().__init__(message)
        self.mutation = mutation


class StorageError(HabitSyncException):
    """Raised when the local store cannot be read or written"""
    pass
