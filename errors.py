#!/usr/bin/env python3
"""Common error types shared across modules.

Provides the processing error taxonomy in one place to avoid circular imports.
Item-level failures (one upsert, one summarization) are caught and recorded by
their callers; aggregate failures propagate to the HTTP layer.
"""

from typing import Dict, Any, Optional


class ProcessingError(Exception):
    """Base class for all pipeline errors.

    Attributes:
        details: Optional payload for diagnostics.
    """

    def __init__(self, message: str = "", details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.details = details or {}


class NotFoundError(ProcessingError):
    """A referenced row (event, service) does not exist."""


class ValidationError(ProcessingError):
    """Malformed input, e.g. an empty guid or description."""


class UpstreamError(ProcessingError):
    """Feed source or LLM unreachable, timed out or returned a non-2xx status."""


class ContentFilterError(UpstreamError):
    """Raised when Azure OpenAI content filtering blocks a response."""

    def __init__(self, message: str = "Content filtered by Azure OpenAI", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)


class ParseError(ProcessingError):
    """Feed or LLM response could not be parsed into the expected shape."""


class DatastoreError(ProcessingError):
    """The datastore failed to answer a query."""


class PersistError(DatastoreError):
    """The datastore rejected a write."""


class SummarizationError(ProcessingError):
    """Wraps any failure summarizing a single event.

    Attributes:
        event_id: Identifier of the event being summarized (may be None).
        cause: The underlying taxonomy error.
    """

    def __init__(self, event_id: Any, cause: ProcessingError):
        super().__init__(f"Failed to summarize event {event_id}: {type(cause).__name__}: {cause}", getattr(cause, "details", None))
        self.event_id = event_id
        self.cause = cause

    @property
    def kind(self) -> str:
        return type(self.cause).__name__


def describe_error(error: BaseException) -> str:
    """Render an exception as 'ClassName: message' for outcome records and logs."""
    message = str(error)
    return f"{type(error).__name__}: {message}" if message else type(error).__name__


__all__ = [
    "ProcessingError",
    "NotFoundError",
    "ValidationError",
    "UpstreamError",
    "ContentFilterError",
    "ParseError",
    "DatastoreError",
    "PersistError",
    "SummarizationError",
    "describe_error",
]
