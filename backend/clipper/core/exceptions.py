"""Exception hierarchy for the task pipeline.

Collaborator errors are terminal for the task attempt that raised them and are
recorded on the task via :func:`describe_error`.  Infrastructure errors
(datastore unreachable etc.) are deliberately *not* part of this hierarchy:
they surface as the driver's own exceptions and are handled by the scheduler
loop's backoff.
"""

from __future__ import annotations

ERROR_MESSAGE_LIMIT = 2000


class PipelineError(Exception):
    """Base class for all pipeline errors."""


class ValidationError(PipelineError):
    """Malformed task creation input, rejected before persistence."""


class ConfigurationError(PipelineError):
    """A setting the component needs is missing or unusable."""


class TaskNotFoundError(PipelineError):
    """No task exists with the requested id."""


class StaleTaskError(PipelineError):
    """A conditional status transition lost an optimistic-concurrency race."""


class InvalidStateError(PipelineError):
    """The task is not in a state that allows the requested operation."""


class MissingInputError(PipelineError):
    """A required input for the task could not be located."""


class CollaboratorError(PipelineError):
    """Failure reported by an external collaborator."""


class TranscriptionError(CollaboratorError):
    pass


class TranscriptionTimeoutError(TranscriptionError):
    pass


class MediaToolError(CollaboratorError):
    pass


class HighlightParseError(CollaboratorError):
    pass


class HighlightServiceError(CollaboratorError):
    """The highlight LLM could not be reached or gave no answer."""


class StorageError(CollaboratorError):
    pass


def describe_error(exc: BaseException) -> str:
    """Render ``exc`` as the classified message stored in ``Task.error``."""
    message = str(exc).strip() or "no details"
    return f"{type(exc).__name__}: {message}"[:ERROR_MESSAGE_LIMIT]
