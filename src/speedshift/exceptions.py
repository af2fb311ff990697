"""Error taxonomy for the speed-transform pipeline."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from speedshift.storage import DeleteResult


class SpeedShiftError(Exception):
    """Base class for all pipeline errors."""

    code = "SPEEDSHIFT_ERROR"


class InvalidSpeed(SpeedShiftError):
    """Requested speed factor is outside the supported domain."""

    code = "INVALID_SPEED"

    def __init__(self, speed, minimum: float, maximum: float):
        self.speed = speed
        self.minimum = minimum
        self.maximum = maximum
        super().__init__(f"Speed must be between {minimum} and {maximum} (got {speed})")


class InvalidName(SpeedShiftError):
    """Name escapes the storage namespace or is otherwise malformed."""

    code = "INVALID_NAME"

    def __init__(self, name, reason: str = "Invalid filename"):
        self.name = name
        self.reason = reason
        super().__init__(f"{reason}: {name!r}")


class NotFound(SpeedShiftError):
    """Requested file is not in the storage namespace."""

    code = "NOT_FOUND"

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"File not found: {name}")


class ExecutionError(SpeedShiftError):
    """The encoding engine failed. ``diagnostic`` is its output verbatim."""

    code = "PROCESSING_FAILED"

    def __init__(self, diagnostic: str, returncode: int | None = None):
        self.diagnostic = diagnostic
        self.returncode = returncode
        super().__init__(diagnostic)


class PartialDeleteFailure(SpeedShiftError):
    """Some members of a deletion cascade were removed, others were not."""

    code = "PARTIAL_DELETE"

    def __init__(self, result: "DeleteResult"):
        self.result = result
        failed = ", ".join(err.file for err in result.errors)
        super().__init__(f"Failed to delete: {failed}")
