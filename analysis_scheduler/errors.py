"""
Exceptions raised by the analysis scheduler.

Every client wraps the errors of the library it talks to (SQLAlchemy,
requests, kombu) into one of these, so callers only need to know about
this module.
"""


class SchedulerError(Exception):
    """Base class for all scheduler errors."""
    pass


class ConfigError(SchedulerError):
    """Raised when the scheduler configuration is invalid."""
    pass


class StoreError(SchedulerError):
    """Raised when the schedule store cannot be read or written."""
    pass


class ExecutionCreateError(SchedulerError):
    """Raised when the API does not create a new analysis execution."""

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code


class DispatchError(SchedulerError):
    """Raised when a trigger message cannot be published to the queue."""
    pass
