
import io
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

import fitz  # PyMuPDF
import structlog
from pdfminer.high_level import extract_text as pdf_extract
from pdfminer.pdfdocument import PDFDocument
from pdfminer.pdfpage import PDFPage
from pdfminer.pdfparser import PDFParser
from pdfminer.pdftypes import resolve1
from pdfminer.utils import decode_text

from ..errors import ExtractionFailed, InvalidPdfFormat
from ..utils.text import PAGE_BREAK, full_clean

logger = structlog.get_logger(__name__)

PDF_MAGIC = b"%PDF"

# D:YYYYMMDDHHmmSSOHH'mm' - everything after the year is optional
_PDF_DATE = re.compile(
    r"^(?:D:)?(\d{4})(\d{2})?(\d{2})?(\d{2})?(\d{2})?(\d{2})?"
    r"(?:([Zz+\-])(?:(\d{2})'?(\d{2})?'?)?)?"
)


@dataclass
class ParsedPdf:
    text: str
    page_count: int
    # title / author / creation_date; keys are absent when the PDF does not carry them
    metadata: Dict[str, Any] = field(default_factory=dict)


def is_pdf(content: bytes) -> bool:
    return content[:4] == PDF_MAGIC


def parse_pdf_date(value: str) -> Optional[datetime]:
    m = _PDF_DATE.match(value.strip()) if value else None
    if not m:
        return None
    year, month, day, hour, minute, second, tz_sign, tz_h, tz_m = m.groups()
    tz = None
    if tz_sign in ("Z", "z"):
        tz = timezone.utc
    elif tz_sign:
        offset = timedelta(hours=int(tz_h or 0), minutes=int(tz_m or 0))
        tz = timezone(-offset if tz_sign == "-" else offset)
    try:
        return datetime(
            int(year), int(month or 1), int(day or 1),
            int(hour or 0), int(minute or 0), int(second or 0),
            tzinfo=tz,
        )
    except ValueError:
        return None


def _build_metadata(title: Optional[str], author: Optional[str], created: Optional[str]) -> Dict[str, Any]:
    metadata: Dict[str, Any] = {}
    if title and title.strip():
        metadata["title"] = title.strip()
    if author and author.strip():
        metadata["author"] = author.strip()
    creation_date = parse_pdf_date(created) if created else None
    if creation_date is not None:
        metadata["creation_date"] = creation_date
    return metadata


def _info_string(value: Any) -> Optional[str]:
    try:
        value = resolve1(value)
        if isinstance(value, bytes):
            return decode_text(value)
        if isinstance(value, str):
            return value
    except Exception:
        # metadata is best-effort; a broken info entry is just left out
        return None
    return None


def _pdfminer_info(content: bytes) -> Tuple[int, Dict[str, Any]]:
    document = PDFDocument(PDFParser(io.BytesIO(content)))
    page_count = sum(1 for _ in PDFPage.create_pages(document))
    info = document.info[0] if document.info else {}
    metadata = _build_metadata(
        _info_string(info.get("Title")),
        _info_string(info.get("Author")),
        _info_string(info.get("CreationDate")),
    )
    return page_count, metadata


def _extract_with_pdfminer(content: bytes) -> ParsedPdf:
    page_count, metadata = _pdfminer_info(content)
    # pdfminer terminates every page with a form feed
    text = pdf_extract(io.BytesIO(content))
    return ParsedPdf(text=text, page_count=page_count, metadata=metadata)


def _extract_with_pymupdf(content: bytes) -> ParsedPdf:
    with fitz.open(stream=content, filetype="pdf") as doc:
        # MuPDF repairs what it can; an empty repair result is still a failure
        if doc.page_count == 0:
            raise ExtractionFailed("PDF has no pages")
        text = PAGE_BREAK.join(page.get_text() for page in doc)
        info = doc.metadata or {}
        metadata = _build_metadata(info.get("title"), info.get("author"), info.get("creationDate"))
        return ParsedPdf(text=text, page_count=doc.page_count, metadata=metadata)


def extract_pdf(content: bytes, clean_text: bool = True, use_fallback: bool = True) -> ParsedPdf:
    """Decode a PDF into text, page count and metadata.

    pdfminer is tried first; PyMuPDF is the fallback when ``use_fallback`` is
    set. Pages are separated by form feeds in the returned text.

    Raises:
        InvalidPdfFormat: the buffer does not start with ``%PDF``.
        ExtractionFailed: every decoder tried raised; carries the last error.
    """
    if not is_pdf(content):
        raise InvalidPdfFormat("Invalid PDF file: Missing PDF signature")

    try:
        parsed = _extract_with_pdfminer(content)
    except Exception as primary_error:
        if not use_fallback:
            raise ExtractionFailed(f"pdfminer extraction failed: {primary_error}") from primary_error
        logger.warning("pdf_primary_decoder_failed", error=str(primary_error))
        try:
            parsed = _extract_with_pymupdf(content)
        except Exception as fallback_error:
            raise ExtractionFailed(f"Failed to parse PDF: {fallback_error}") from fallback_error

    if clean_text:
        parsed.text = full_clean(parsed.text)
    return parsed


def get_metadata(content: bytes) -> Tuple[int, Dict[str, Any]]:
    """Page count and metadata without extracting any text."""
    if not is_pdf(content):
        raise InvalidPdfFormat("Invalid PDF file")
    try:
        return _pdfminer_info(content)
    except Exception as e:
        raise ExtractionFailed(f"Failed to get metadata: {e}") from e


def validate_pdf(content: bytes) -> Tuple[bool, Optional[str]]:
    if not is_pdf(content):
        return False, "Invalid PDF signature"
    try:
        _pdfminer_info(content)
    except Exception as e:
        return False, str(e)
    return True, None
