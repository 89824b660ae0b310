"""
Tests for turning uploaded bytes into text.
"""

import sys

import pytest
from unittest.mock import MagicMock, patch

from nodes.text_loader import (
    MIN_LEGACY_DOC_CHARS,
    TextExtractionError,
    clean_legacy_doc_text,
    load_text,
)


class TestPlainText:

    def test_utf8_decoded(self):
        assert load_text("Lease Agreement – Travis County".encode("utf-8"), "lease.txt") == "Lease Agreement – Travis County"

    def test_no_extension(self):
        assert load_text(b"hello", "README") == "hello"


class TestLegacyDoc:

    def test_control_characters_removed(self):
        raw = b"Lease\x00\x01Agreement\x0b\x0c between   parties\x7f"
        assert clean_legacy_doc_text(raw) == "Lease Agreement between parties"

    def test_readable_doc_accepted(self):
        body = ("Lessor: Jane Doe. " * 10).encode("utf-8")
        text = load_text(b"\x00\x01" + body + b"\x02", "old.DOC")
        assert len(text) > MIN_LEGACY_DOC_CHARS
        assert text.startswith("Lessor: Jane Doe.")

    def test_unreadable_doc_rejected(self):
        with pytest.raises(TextExtractionError) as exc_info:
            load_text(b"\x00\x01\x02short", "old.doc")
        assert exc_info.value.filename == "old.doc"


class TestDoclingFormats:

    def test_pdf_converted_with_docling(self):
        converter = MagicMock()
        converter.convert.return_value.document.export_to_markdown.return_value = "# Lease Agreement"
        fake_converter_module = MagicMock(DocumentConverter=MagicMock(return_value=converter))
        fake_models_module = MagicMock()

        with patch.dict(sys.modules, {
            "docling": MagicMock(),
            "docling.document_converter": fake_converter_module,
            "docling.datamodel": MagicMock(),
            "docling.datamodel.base_models": fake_models_module,
        }):
            assert load_text(b"%PDF-1.7", "lease.pdf") == "# Lease Agreement"

        stream_kwargs = fake_models_module.DocumentStream.call_args.kwargs
        assert stream_kwargs["name"] == "lease.pdf"

    def test_conversion_failure_wrapped(self):
        converter = MagicMock()
        converter.convert.side_effect = RuntimeError("file is encrypted")
        fake_converter_module = MagicMock(DocumentConverter=MagicMock(return_value=converter))

        with patch.dict(sys.modules, {
            "docling": MagicMock(),
            "docling.document_converter": fake_converter_module,
            "docling.datamodel": MagicMock(),
            "docling.datamodel.base_models": MagicMock(),
        }):
            with pytest.raises(TextExtractionError, match="password protected"):
                load_text(b"%PDF-1.7", "locked.pdf")
