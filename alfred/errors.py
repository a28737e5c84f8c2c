"""
Exception types raised by alfred.

Validation errors surface at job creation time and are never persisted.
Everything the daemon hits at runtime is logged rather than raised to the
user.
"""


class AlfredError(Exception):
    """Base error for alfred."""


class ValidationError(AlfredError):
    """Raised when user input for a job is rejected."""


class InvalidScheduleError(ValidationError):
    """Raised for a cron expression that cannot be parsed."""


class InvalidTimeError(ValidationError):
    """Raised for a one-off time that cannot be parsed."""


class DuplicateJobError(ValidationError):
    """Raised when a job with the same id already exists."""


class JobNotFoundError(AlfredError):
    """Raised when a job id does not exist."""


class RunNotFoundError(AlfredError):
    """Raised when a run id does not exist."""


class ConfigError(AlfredError):
    """Raised when the config file is malformed or holds invalid values."""


class ProcessHostError(AlfredError):
    """Raised when tmux cannot create a window or accept a command."""


class NotInitializedError(AlfredError):
    """Raised when the database has not been created with `alfred init`."""
