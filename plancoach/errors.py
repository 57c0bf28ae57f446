from typing import Optional


class CoachError(Exception):
    """Base class for errors raised by the coaching core."""


class StoreWriteFailure(CoachError):
    """A storage write (or the read it depends on) failed."""

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        self.operation = operation
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(f"{operation} failed{detail}")


class UpstreamServiceFailure(CoachError):
    """The completion service kept failing after retries."""


class InvalidTransition(CoachError):
    def __init__(self, flow: str, current: str, target: str):
        self.flow = flow
        self.current = current
        self.target = target
        super().__init__(f"{flow}: cannot move from '{current}' to '{target}'")
