"""Error definitions for rekey.

Only setup errors abort a run. Failures while remediating a single object
are turned into a RenameOutcome and never raised past the task.
"""


class RekeyError(Exception):
    """Base class for rekey errors.

    Attributes:
        code: Short machine-readable error code.
        message: Human-readable error description.
    """

    code = "RekeyError"

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message


class ConfigError(RekeyError):
    """The configuration is invalid."""

    code = "ConfigError"


class StoreSetupError(RekeyError):
    """The object store could not be reached or configured at startup."""

    code = "StoreSetupError"

    def __init__(self, bucket: str = "", reason: str = "") -> None:
        message = f"Cannot access bucket '{bucket}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.bucket = bucket
        self.reason = reason


class LookupLoadError(RekeyError):
    """The lookup table input could not be read."""

    code = "LookupLoadError"


class SchedulerError(RekeyError):
    """The task scheduler was used incorrectly."""

    code = "SchedulerError"


class QueueFullError(SchedulerError):
    """The waiting queue of a TaskQueue is at capacity."""

    code = "QueueFull"

    def __init__(self, capacity: int = 0) -> None:
        super().__init__(f"Waiting queue is full ({capacity} tasks)")
        self.capacity = capacity
