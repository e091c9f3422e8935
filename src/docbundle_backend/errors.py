"""
Error taxonomy for the document pipeline.

Request-level errors carry the HTTP status they map to; the API layer turns
them into ``{"success": false, "message": ...}`` responses. Per-document
errors (fetch, render, single-document compression) are absorbed by the
pipeline and never reach the client as a failed request on their own.
"""


class PipelineError(Exception):
    """Base exception for all pipeline errors."""

    status_code = 500

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class NotFoundError(PipelineError):
    """Raised when a submission or referenced document does not exist."""

    status_code = 404


class ValidationError(PipelineError):
    """Raised for empty or invalid input, before any I/O is performed."""

    status_code = 400


class FetchError(PipelineError):
    """Raised when the bytes behind a content reference cannot be retrieved."""

    def __init__(self, message: str, reference: str = "", retryable: bool = False) -> None:
        super().__init__(message)
        self.reference = reference
        self.retryable = retryable


class RenderFailure(PipelineError):
    """Raised when source content is malformed (corrupt PDF, undecodable image)."""


class CompressionFailure(PipelineError):
    """Raised when a compression pass produces no output, or when no document compressed."""


class ArchiveFailure(PipelineError):
    """Raised when the zip archive cannot be written."""


class SerializationFailure(PipelineError):
    """Raised when the composite PDF cannot be serialized."""
