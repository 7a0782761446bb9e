"""Text extraction for uploaded documents.

Handles:
- Plain text
- Markdown with YAML frontmatter
- PDF page text
"""
import io
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Tuple

import yaml
import structlog
from pypdf import PdfReader
from pypdf.errors import PdfReadError

from librarian.errors import UnsupportedDocumentType

logger = structlog.get_logger()


@dataclass
class ExtractedDocument:
    """Text pulled out of a stored document."""

    text: str
    mime_type: str
    metadata: Dict[str, Any] = field(default_factory=dict)


class TextExtractor:
    """Turns document bytes into text according to MIME type."""

    # Regex for YAML frontmatter (must be at start of file)
    FRONTMATTER_PATTERN = re.compile(
        r"^---\s*\n(.*?)\n---\s*\n", re.DOTALL | re.MULTILINE
    )

    def extract(self, data: bytes, mime_type: str) -> ExtractedDocument:
        """Extract text from document bytes.

        Raises:
            UnsupportedDocumentType: If the MIME type has no extractor
            ValueError: If the bytes can't be read as that type
        """
        if mime_type == "text/plain":
            document = ExtractedDocument(text=self._decode(data), mime_type=mime_type)
        elif mime_type == "text/markdown":
            frontmatter, body = self._parse_frontmatter(self._decode(data))
            document = ExtractedDocument(
                text=body,
                mime_type=mime_type,
                metadata={"frontmatter": frontmatter} if frontmatter else {},
            )
        elif mime_type == "application/pdf":
            document = self._extract_pdf(data)
        else:
            raise UnsupportedDocumentType(f"Unsupported document type: {mime_type}")

        logger.info(
            "text_extracted",
            mime_type=mime_type,
            content_length=len(document.text),
        )
        return document

    @staticmethod
    def _decode(data: bytes) -> str:
        try:
            return data.decode("utf-8-sig")
        except UnicodeDecodeError as e:
            logger.error("text_encoding_error", error=str(e))
            raise ValueError(f"Document is not valid UTF-8: {e}") from e

    def _parse_frontmatter(self, content: str) -> Tuple[Dict[str, Any], str]:
        """Split YAML frontmatter from markdown content.

        Returns:
            Tuple of (frontmatter_dict, content_without_frontmatter)
        """
        match = self.FRONTMATTER_PATTERN.match(content)
        if not match:
            return {}, content

        yaml_content = match.group(1)
        try:
            frontmatter = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            logger.warning(
                "frontmatter_parse_error",
                error=str(e),
                yaml_preview=yaml_content[:100],
            )
            frontmatter = None

        if not isinstance(frontmatter, dict):
            frontmatter = {}

        return frontmatter, content[match.end():]

    def _extract_pdf(self, data: bytes) -> ExtractedDocument:
        try:
            reader = PdfReader(io.BytesIO(data))
            pages = [page.extract_text() or "" for page in reader.pages]
        except PdfReadError as e:
            logger.error("pdf_read_error", error=str(e))
            raise ValueError(f"Unreadable PDF: {e}") from e

        return ExtractedDocument(
            text="\n".join(pages),
            mime_type="application/pdf",
            metadata={"page_count": len(pages)},
        )


def extract_text(data: bytes, mime_type: str) -> str:
    """Extract plain text from document bytes (convenience function)."""
    return TextExtractor().extract(data, mime_type).text
