"""
Error taxonomy for the job engine.

Operation-level errors are raised to the caller so the UI layer can render
them. None of them is allowed to stop the engine itself.
"""


class SchedulerError(Exception):
    """Base class for all job engine errors."""
    pass


class ValidationError(SchedulerError, ValueError):
    """Raised (or reported) when a job definition is malformed."""
    pass


class NotFoundError(SchedulerError):
    """Raised when a job or run id is unknown."""
    pass


class AlreadyRunningError(SchedulerError):
    """Raised when a run is requested for a job that already has one in flight."""
    pass


class NotRunningError(SchedulerError):
    """Raised when a stop is requested for a job with no in-flight run."""
    pass


class SpawnError(SchedulerError):
    """Raised when a job's process cannot be launched."""

    def __init__(self, message: str, run=None):
        super().__init__(message)
        self.run = run
