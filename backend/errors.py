"""Error taxonomy for the call-triage pipeline."""

from __future__ import annotations

from typing import Optional


class TriageError(Exception):
    """Base class for pipeline errors."""

    def __init__(self, message: str, recoverable: bool = False):
        super().__init__(message)
        self.recoverable = recoverable


class MissingInputError(TriageError):
    """Caller error: no residentId, or no transcript/summary to work with."""


class ClassificationError(TriageError):
    """LLM transport or quota failure."""


class AllModelsExhaustedError(ClassificationError):
    """Every model in the fallback chain was rate limited."""

    def __init__(self, message: str, last_error: Optional[BaseException] = None):
        super().__init__(message, recoverable=True)
        self.last_error = last_error


class MalformedResponseError(TriageError):
    """The LLM answered, but not with a valid CallAnalysis document."""


class DispatchError(TriageError):
    """The chat API could not deliver an alert."""

    def __init__(self, message: str, recipient: Optional[str] = None):
        super().__init__(message, recoverable=True)
        self.recipient = recipient


class PersistenceError(TriageError):
    """A database write failed; the current event is abandoned."""


class InvalidPayloadError(TriageError):
    """The webhook body is not a recognizable Vapi server message."""


class NotFoundError(MissingInputError):
    """The referenced resident or call log does not exist."""


class OutboundCallError(TriageError):
    """The voice platform refused or failed to start a call."""
