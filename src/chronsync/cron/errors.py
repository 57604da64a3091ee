"""Exception types for the scheduling engine."""


class ChronsyncError(Exception):
    """Base class for all chronsync errors."""


class ConfigError(ChronsyncError):
    """Raised when the configuration file is missing, malformed or invalid."""


class ScheduleParseError(ChronsyncError, ValueError):
    """Raised when a cron expression cannot be parsed.

    Attributes:
        expression: The offending expression text.
        task_name: Name of the task that declared it, when known.
    """

    def __init__(
        self,
        message: str,
        expression: str | None = None,
        task_name: str | None = None,
    ) -> None:
        super().__init__(message)
        self.expression = expression
        self.task_name = task_name

    def __str__(self) -> str:
        message = super().__str__()
        if self.task_name:
            return f"task '{self.task_name}': {message}"
        return message


class SchedulingError(ChronsyncError):
    """Raised when no fire time exists within the lookahead window."""


class SpawnError(ChronsyncError):
    """Raised when an external command cannot be started."""
