"""Tests for structural document validation."""

import pytest

from taxdoc_pipeline.pipeline import validate_document, validation_errors
from taxdoc_pipeline.resilience import InvalidInputError
from taxdoc_pipeline.schemas import Document

from conftest import make_document

MB = 1024 * 1024
LIMIT = 50 * MB

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


class TestValidationErrors:
    """Tests for the list of structural problems."""

    def test_valid_text_document(self):
        assert validation_errors(make_document("Total: 10.00"), LIMIT) == []

    def test_valid_png(self):
        document = Document(content=PNG, mime_type="image/png", filename="scan.png")
        assert validation_errors(document, LIMIT) == []

    def test_empty_filename(self):
        document = make_document("Total: 10.00", filename="  ")
        assert validation_errors(document, LIMIT) == ["Filename is empty"]

    @pytest.mark.parametrize("filename", ["../etc/passwd", "dir\\file.txt", ".."])
    def test_path_like_filename(self, filename):
        errors = validation_errors(make_document("x", filename=filename), LIMIT)
        assert errors == [f"Filename is not a plain file name: {filename!r}"]

    def test_long_filename(self):
        errors = validation_errors(make_document("x", filename="a" * 300 + ".txt"), LIMIT)
        assert errors == ["Filename longer than 255 characters"]

    def test_empty_content(self):
        document = Document(content=b"", mime_type="application/pdf", filename="empty.pdf")
        assert validation_errors(document, LIMIT) == ["Document is empty"]

    def test_disallowed_mime_type(self):
        document = Document(content=b"MZ\x90\x00", mime_type="application/x-msdownload", filename="a.exe")
        assert validation_errors(document, LIMIT) == ["MIME type not allowed: application/x-msdownload"]

    def test_oversize(self):
        document = Document(content=b"%PDF" + b"0" * (2 * MB), mime_type="application/pdf", filename="big.pdf")
        assert validation_errors(document, MB) == ["Document is 2.0MB, limit is 1MB"]

    def test_magic_bytes_mismatch(self):
        document = Document(content=b"<html></html>", mime_type="application/pdf", filename="fake.pdf")
        assert validation_errors(document, LIMIT) == ["Content does not look like application/pdf"]

    def test_binary_in_text(self):
        document = Document(content=b"Total\x00\x01", mime_type="text/plain", filename="a.txt")
        assert validation_errors(document, LIMIT) == ["Text document contains binary data"]

    def test_collects_several_problems(self):
        document = Document(content=b"GIF00", mime_type="image/gif", filename="")
        assert validation_errors(document, LIMIT) == [
            "Filename is empty",
            "Content does not look like image/gif",
        ]


class TestValidateDocument:
    def test_valid_passes(self):
        validate_document(make_document("Total: 10.00"), LIMIT)

    def test_raises_with_all_errors(self):
        document = Document(content=b"", mime_type="text/plain", filename="")

        with pytest.raises(InvalidInputError) as exc_info:
            validate_document(document, LIMIT)

        error = exc_info.value
        assert error.errors == ["Filename is empty", "Document is empty"]
        assert error.recoverable is False
        assert "Filename is empty" in error.message
