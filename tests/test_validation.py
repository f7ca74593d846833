"""
Tests for file validation.
"""

import pytest

from proof_review_backend.errors import FileValidationError
from proof_review_backend.validation import (
    CUSTOMER_REVISION_MAX_BYTES,
    MB,
    TYPE_ERROR,
    ensure_valid,
    is_design_file,
    is_pdf,
    validate_admin_proof,
    validate_customer_revision,
    validate_file,
)


class TestSizeCeiling:
    """Tests for the per-call-site size ceilings."""

    def test_file_at_ceiling_is_accepted(self):
        result = validate_admin_proof("logo.png", 10 * MB, "image/png")
        assert result.valid
        assert result.error is None

    def test_file_over_ceiling_is_rejected(self):
        result = validate_admin_proof("huge.pdf", 12 * MB, "application/pdf")
        assert not result.valid
        assert result.error == "File size must be less than 10MB"

    def test_customer_revision_allows_larger_files(self):
        assert validate_customer_revision("revision.pdf", 20 * MB, "application/pdf").valid
        result = validate_customer_revision("revision.pdf", CUSTOMER_REVISION_MAX_BYTES + 1, "application/pdf")
        assert result.error == "File size must be less than 25MB"

    def test_empty_file_is_rejected(self):
        result = validate_file("logo.png", 0, "image/png")
        assert not result.valid
        assert result.error == "File is empty"


class TestTypeAllowList:
    """Tests for MIME type and extension checks."""

    @pytest.mark.parametrize("filename", ["art.ai", "art.eps", "art.psd", "art.svg", "art.PNG", "art.jpeg", "art.pdf"])
    def test_extension_alone_is_enough(self, filename):
        assert validate_file(filename, 1024, "application/octet-stream").valid

    def test_mime_type_alone_is_enough(self):
        assert validate_file("artwork", 1024, "application/pdf").valid

    def test_unknown_type_and_extension_rejected(self):
        result = validate_file("notes.txt", 1024, "text/plain")
        assert not result.valid
        assert result.error == TYPE_ERROR

    def test_missing_filename_rejected(self):
        result = validate_file("", 1024, "image/png")
        assert result.error == "File must have a filename"


class TestHelpers:
    """Tests for the raising wrapper and file classification."""

    def test_ensure_valid_raises(self):
        with pytest.raises(FileValidationError, match="10MB"):
            ensure_valid("huge.png", 11 * MB, "image/png")

    def test_ensure_valid_passes_silently(self):
        ensure_valid("logo.png", 2048, "image/png")

    def test_is_pdf_by_extension_or_mime(self):
        assert is_pdf("proof.PDF")
        assert is_pdf("proof", "application/pdf")
        assert not is_pdf("proof.png", "image/png")

    def test_design_files(self):
        assert is_design_file("logo.ai")
        assert is_design_file("logo.EPS")
        assert not is_design_file("logo.svg")
