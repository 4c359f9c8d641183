"""
Exception hierarchy for the image batch service.

Transform failures are raised to the worker pool so the queue retry pipeline
can act on them; tracker and webhook failures carry enough context to be
logged and retried.
"""

from typing import Any, Optional


class ImageBatchError(Exception):
    """Base exception for all service errors."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class TransformError(ImageBatchError):
    """Raised when one item cannot be fetched, transcoded or persisted."""

    def __init__(self, message: str, url: Optional[str] = None, details: Optional[dict[str, Any]] = None) -> None:
        details = details or {}
        if url:
            details["url"] = url
        super().__init__(message, details)


class FetchError(TransformError):
    """Source content could not be downloaded."""


class TranscodeError(TransformError):
    """Source bytes could not be decoded or re-encoded."""


class StorageError(TransformError):
    """Output bytes could not be persisted."""


class TrackerError(ImageBatchError):
    """Raised when the tracker store rejects or cannot apply an update."""


class WebhookDeliveryError(ImageBatchError):
    """Raised when a notification is not acknowledged with a 2xx response."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if status_code is not None:
            details["status_code"] = status_code
        self.status_code = status_code
        super().__init__(message, details)
