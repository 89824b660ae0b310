"""
Text Loader - Raw Upload to Plain Text

Turns uploaded bytes into the plain text the classifier and extractors work
on. The file extension selects the method:

- .pdf / .docx: converted with Docling (install the `pdf` extra)
- .doc: legacy binary Word; readable runs are salvaged from the bytes
- anything else: decoded as UTF-8
"""

import re
import logging
from io import BytesIO
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


# Control characters stripped from legacy .doc payloads
DOC_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F-\x9F]")

# Salvaged .doc text shorter than this is treated as unreadable
MIN_LEGACY_DOC_CHARS = 100

DOCLING_EXTENSIONS = {".pdf", ".docx"}


class TextExtractionError(Exception):
    """Raised when no usable text can be obtained from an upload."""

    def __init__(self, message: str, filename: Optional[str] = None):
        self.filename = filename
        super().__init__(message)


def clean_legacy_doc_text(data: bytes) -> str:
    """Salvage readable text from a binary .doc payload."""
    text = data.decode("utf-8", errors="replace").replace("\ufffd", " ")
    text = DOC_CONTROL_CHARS.sub(" ", text)
    return re.sub(r"\s+", " ", text).strip()


def convert_with_docling(data: bytes, filename: str) -> str:
    """
    Convert a PDF or DOCX payload to text with Docling.

    Raises:
        TextExtractionError: If Docling is not installed or conversion fails
    """
    try:
        from docling.document_converter import DocumentConverter
        from docling.datamodel.base_models import DocumentStream
    except ImportError as e:
        raise TextExtractionError(
            "PDF/DOCX conversion requires the 'pdf' extra (docling)", filename
        ) from e

    try:
        converter = DocumentConverter()
        result = converter.convert(DocumentStream(name=filename, stream=BytesIO(data)))
        return result.document.export_to_markdown()
    except Exception as e:
        error_str = str(e).lower()
        if "password" in error_str or "encrypted" in error_str:
            raise TextExtractionError(f"{filename} is password protected", filename) from e
        raise TextExtractionError(f"Failed to convert {filename}: {e}", filename) from e


def load_text(data: bytes, filename: str) -> str:
    """
    Extract plain text from an uploaded file.

    Raises:
        TextExtractionError: If the file yields no usable text
    """
    suffix = Path(filename or "").suffix.lower()

    if suffix in DOCLING_EXTENSIONS:
        text = convert_with_docling(data, filename)
    elif suffix == ".doc":
        text = clean_legacy_doc_text(data)
        if len(text) <= MIN_LEGACY_DOC_CHARS:
            raise TextExtractionError(
                "Unable to extract text from legacy .doc format. Please convert to .docx or .pdf",
                filename,
            )
    else:
        text = data.decode("utf-8", errors="replace")

    logger.info(f"Loaded {len(text)} characters from {filename}")
    return text
