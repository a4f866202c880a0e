"""Error taxonomy for the meeting analysis engine.

Every failure the engine surfaces is one of a small set of kinds. Raw
exception text from the analysis capability never leaves the engine;
callers see an ErrorInfo built from the kind, a fixed message, and the
stage name where one applies.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel


class ErrorKind(str, Enum):
    """Caller-visible error categories."""

    INTEGRITY = "integrity"
    CAPABILITY = "capability"
    VALIDATION = "validation"
    INVALID_TRANSITION = "invalid_transition"
    CANCELLED = "cancelled"
    NOT_FOUND = "not_found"


_PUBLIC_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.INTEGRITY: "Transcript input is malformed",
    ErrorKind.CAPABILITY: "Analysis capability failed",
    ErrorKind.VALIDATION: "Analysis output violated an entity invariant",
    ErrorKind.INVALID_TRANSITION: "Transition is not allowed from the current state",
    ErrorKind.CANCELLED: "Analysis was cancelled",
    ErrorKind.NOT_FOUND: "Entity not found",
}


class ErrorInfo(BaseModel):
    """Sanitized error description stored on results and returned by the API."""

    kind: ErrorKind
    message: str
    stage: str | None = None


class AnalysisError(Exception):
    """Base class for all engine errors."""

    kind: ErrorKind = ErrorKind.CAPABILITY

    def __init__(self, message: str, *, stage: str | None = None) -> None:
        self.stage = stage
        self.attempts = 0
        super().__init__(message)

    def to_info(self) -> ErrorInfo:
        """Map to the public form. The detailed message is kept for logs only."""
        return ErrorInfo(
            kind=self.kind,
            message=_PUBLIC_MESSAGES[self.kind],
            stage=self.stage,
        )


class IntegrityError(AnalysisError):
    """Malformed or overlapping input segments. Aborts before any AI spend."""

    kind = ErrorKind.INTEGRITY


class CapabilityError(AnalysisError):
    """Timeout, unavailability, or unusable output from the analysis capability."""

    kind = ErrorKind.CAPABILITY


class ValidationError(CapabilityError):
    """Stage output violates an entity invariant (e.g. mindmap depth < 2)."""

    kind = ErrorKind.VALIDATION


class InvalidTransitionError(AnalysisError):
    """Illegal state-machine transition. No state is changed."""

    kind = ErrorKind.INVALID_TRANSITION

    def __init__(self, entity: str, from_state: str, action: str) -> None:
        self.entity = entity
        self.from_state = from_state
        self.action = action
        super().__init__(f"Cannot {action} {entity} in state '{from_state}'")


class NotFoundError(AnalysisError):
    """Meeting or task does not exist."""

    kind = ErrorKind.NOT_FOUND


def cancelled_info() -> ErrorInfo:
    """ErrorInfo recorded on a meeting whose analysis was cancelled."""
    return ErrorInfo(kind=ErrorKind.CANCELLED, message=_PUBLIC_MESSAGES[ErrorKind.CANCELLED])


def unexpected_info() -> ErrorInfo:
    """ErrorInfo for a failure outside the engine's own error types.

    Recorded under the capability kind; the raw exception only goes to
    the logs.
    """
    return ErrorInfo(kind=ErrorKind.CAPABILITY, message=_PUBLIC_MESSAGES[ErrorKind.CAPABILITY])
