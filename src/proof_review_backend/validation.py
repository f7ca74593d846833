"""
Pre-upload validation of design files.

Checks run before any network call: a size ceiling that depends on who is
uploading (admins upload proofs, customers upload revisions) and an
allow-list of design file types. MIME types reported by browsers are
unreliable for Illustrator and EPS files, so the extension is accepted as a
fallback.
"""

from __future__ import annotations

from typing import Optional

from .errors import FileValidationError
from .models import FileValidation
from .utils import split_extension

MB = 1024 * 1024
ADMIN_PROOF_MAX_BYTES = 10 * MB
CUSTOMER_REVISION_MAX_BYTES = 25 * MB

ALLOWED_EXTENSIONS = frozenset({"ai", "svg", "eps", "png", "jpg", "jpeg", "psd", "pdf"})

ALLOWED_MIME_TYPES = frozenset(
    {
        "image/jpeg",
        "image/jpg",
        "image/png",
        "image/svg+xml",
        "application/postscript",
        "application/illustrator",
        "image/vnd.adobe.photoshop",
        "application/pdf",
    }
)

PDF_MIME_TYPES = frozenset({"application/pdf", "application/x-pdf"})
DESIGN_EXTENSIONS = frozenset({"ai", "eps", "psd"})

TYPE_ERROR = "File must be a design file (.ai, .eps, .psd, .svg), an image (.png, .jpg, .jpeg) or a PDF"


def _format_ceiling(max_bytes: int) -> str:
    if max_bytes % MB == 0:
        return f"{max_bytes // MB}MB"
    return f"{max_bytes} bytes"


def validate_file(
    filename: Optional[str],
    size: int,
    content_type: Optional[str] = None,
    max_bytes: int = ADMIN_PROOF_MAX_BYTES,
) -> FileValidation:
    """
    Check a file against the size ceiling and the design-file allow-list.

    Args:
        filename: Name of the file as submitted (used for the extension fallback)
        size: Size of the file in bytes
        content_type: MIME type reported by the client, if any
        max_bytes: Size ceiling for this call site

    Returns:
        FileValidation with ``valid`` and, when invalid, a human-readable ``error``
    """
    if not filename:
        return FileValidation(valid=False, error="File must have a filename")

    if size <= 0:
        return FileValidation(valid=False, error="File is empty")

    if size > max_bytes:
        return FileValidation(valid=False, error=f"File size must be less than {_format_ceiling(max_bytes)}")

    _, extension = split_extension(filename)
    extension_allowed = extension in ALLOWED_EXTENSIONS
    mime = (content_type or "").split(";")[0].strip().lower()
    # octet-stream says nothing about the content; only the extension can vouch for it
    type_allowed = mime in ALLOWED_MIME_TYPES

    if not type_allowed and not extension_allowed:
        return FileValidation(valid=False, error=TYPE_ERROR)

    return FileValidation(valid=True)


def validate_admin_proof(filename: Optional[str], size: int, content_type: Optional[str] = None) -> FileValidation:
    return validate_file(filename, size, content_type, max_bytes=ADMIN_PROOF_MAX_BYTES)


def validate_customer_revision(filename: Optional[str], size: int, content_type: Optional[str] = None) -> FileValidation:
    return validate_file(filename, size, content_type, max_bytes=CUSTOMER_REVISION_MAX_BYTES)


def ensure_valid(
    filename: Optional[str],
    size: int,
    content_type: Optional[str] = None,
    max_bytes: int = ADMIN_PROOF_MAX_BYTES,
) -> None:
    """Raise FileValidationError instead of returning a result."""
    result = validate_file(filename, size, content_type, max_bytes)
    if not result.valid:
        raise FileValidationError(result.error or "Invalid file")


def is_pdf(filename: Optional[str], content_type: Optional[str] = None) -> bool:
    if (content_type or "").lower() in PDF_MIME_TYPES:
        return True
    return bool(filename) and split_extension(filename)[1] == "pdf"


def is_design_file(filename: Optional[str]) -> bool:
    """Design files (AI, EPS, PSD) need server-side conversion before they can be displayed."""
    return bool(filename) and split_extension(filename)[1] in DESIGN_EXTENSIONS
