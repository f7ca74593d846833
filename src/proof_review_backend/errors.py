"""
Exception taxonomy for the proof review workflow.

Validation and transition errors are raised locally before any remote call.
Transport, cancellation and analysis errors are raised by the object store
and the print-file analyzer and are caught at the upload pipeline boundary,
where they are attached to the outcome of the file that produced them.
"""

from __future__ import annotations

from typing import Optional


class ProofReviewError(Exception):
    """Base exception for proof review errors."""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        super().__init__(message)
        self.message = message
        self.original_error = original_error


class FileValidationError(ProofReviewError):
    """Raised when a file is rejected before any network call. Never retried."""


class TransportError(ProofReviewError):
    """Raised when the object store or proof store cannot be reached or rejects a request."""

    def __init__(
        self,
        message: str,
        original_error: Optional[Exception] = None,
        status_code: Optional[int] = None,
        attempt: Optional[int] = None,
    ):
        super().__init__(message, original_error)
        self.status_code = status_code
        self.attempt = attempt


class UploadCancelled(ProofReviewError):
    """Raised when an in-flight upload is aborted through its cancellation token."""


class AnalysisError(ProofReviewError):
    """Raised when a print file cannot be inspected (as opposed to having no cut contour)."""

    def __init__(self, message: str, filename: str = "", original_error: Optional[Exception] = None):
        super().__init__(message, original_error)
        self.filename = filename


class TransitionRejected(ProofReviewError):
    """Raised when a lifecycle move violates a precondition. No store call is made."""


class NotFoundError(ProofReviewError):
    """Raised when an order, proof or upload does not exist."""
