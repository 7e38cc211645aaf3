import io
import hashlib
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import pdfplumber

from .errors import DocumentError

MIN_PDF_BYTES = 100
PDF_MAGIC = b"%PDF"
# Below this many characters (total or per page) the PDF is treated as scanned
MIN_TEXT_CHARS = 100


@dataclass(frozen=True)
class ParsedDocument:
    """Preprocessed input handed to the extraction stage."""
    text: Optional[str]
    is_scanned: bool
    page_count: int
    document_hash: str
    info: Dict[str, Any] = field(default_factory=dict)


def validate_pdf(data: bytes) -> None:
    """Raise DocumentError unless `data` looks like a PDF."""
    if not data or len(data) < MIN_PDF_BYTES:
        raise DocumentError("Invalid PDF file: File too small")
    if data[:4] != PDF_MAGIC:
        raise DocumentError("Invalid PDF file: Missing PDF header")


class BaseParser(ABC):
    @abstractmethod
    def parse(self, data: bytes) -> ParsedDocument:
        pass

    def get_document_hash(self, data: bytes) -> str:
        return hashlib.sha256(data).hexdigest()


class PDFParser(BaseParser):
    def parse(self, data: bytes) -> ParsedDocument:
        """
        Returns the document text, or text=None when the PDF is image based
        and the extraction service has to read it itself.
        """
        validate_pdf(data)
        document_hash = self.get_document_hash(data)

        logging.info(f"Parsing PDF ({len(data)} bytes, sha256={document_hash[:12]})")
        try:
            with pdfplumber.open(io.BytesIO(data)) as pdf:
                pages = [page.extract_text() or "" for page in pdf.pages]
                info = {
                    key.lower(): value
                    for key, value in (pdf.metadata or {}).items()
                    if key in ("Title", "Author", "Subject", "Creator", "Producer")
                }
        except DocumentError:
            raise
        except Exception as e:
            raise DocumentError(f"Failed to parse PDF: {e}") from e

        text = "\n".join(pages).strip()
        page_count = len(pages)
        avg_chars = len(text) / page_count if page_count else 0
        is_scanned = page_count > 0 and (len(text) < MIN_TEXT_CHARS or avg_chars < MIN_TEXT_CHARS)

        if is_scanned or len(text) < MIN_TEXT_CHARS:
            logging.info(f"PDF has {page_count} page(s) with little text; treating as scanned")
            return ParsedDocument(
                text=None,
                is_scanned=True,
                page_count=page_count,
                document_hash=document_hash,
                info=info,
            )

        return ParsedDocument(
            text=text,
            is_scanned=False,
            page_count=page_count,
            document_hash=document_hash,
            info=info,
        )
