"""Error taxonomy for background task processing.

Every error raised by a pipeline stage carries a ``retriable`` flag. The
dispatcher passes that flag straight to ``TaskStore.fail`` so permanent
problems (missing entity, content too short, bad configuration) are not
retried while network hiccups are.
"""

from __future__ import annotations


class TaskError(Exception):
    """Base class for errors raised while processing a task."""

    retriable: bool = False

    def __init__(self, message: str, retriable: bool | None = None):
        super().__init__(message)
        if retriable is not None:
            self.retriable = retriable


class ValidationError(TaskError):
    """Missing or invalid input. Never retried."""


class EntityNotFoundError(TaskError):
    """The link or note referenced by a task no longer exists."""

    def __init__(self, entity_type: str, entity_id: str):
        super().__init__(f"{entity_type.capitalize()} not found: {entity_id}")
        self.entity_type = entity_type
        self.entity_id = entity_id


class ContentTooShortError(TaskError):
    """Input text is below the minimum length for a stage."""


class TransientError(TaskError):
    """Timeouts, connection errors and provider outages."""

    retriable = True


class ConfigurationError(TaskError):
    """Missing credentials or connection info. Fails fast."""
