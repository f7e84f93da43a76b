"""Errors raised by the reconciler core."""


class FlinkReconcilerError(Exception):
    """Base reconciler error."""
    pass


class ValidationError(FlinkReconcilerError):
    """A spec change was rejected by a resource validator."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class JobControllerError(FlinkReconcilerError):
    """A call against the Flink cluster failed."""
    pass


class JobControllerTimeoutError(JobControllerError):
    """A call against the Flink cluster did not answer in time."""
    pass


class InvariantViolationError(FlinkReconcilerError):
    """Desired and observed state disagree in a way that must never happen."""
    pass


def check_argument(condition: bool, message: str):
    """Fail loudly when a precondition does not hold."""
    if not condition:
        raise InvariantViolationError(message)


def check_not_null(value, message: str):
    """Return ``value``, failing loudly when it is missing."""
    if value is None:
        raise InvariantViolationError(message)
    return value
