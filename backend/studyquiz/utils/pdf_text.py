"""Plain-text extraction from uploaded PDF documents.

Text is pulled page by page with pdfplumber and flattened into a single
normalized string suitable for sentence splitting and LLM prompts.
"""

import io
import re
from typing import BinaryIO, Union

import pdfplumber

_HYPHEN_BREAK = re.compile(r"-\s*\r?\n\s*")
_NEWLINES = re.compile(r"(\r?\n)+")
_SPACES = re.compile(r"\s{2,}")


def extract_text(source: Union[bytes, BinaryIO]) -> str:
    """Return the normalized text of every page in `source`.

    Raises ValueError if the payload cannot be opened as a PDF.
    """
    stream = io.BytesIO(source) if isinstance(source, (bytes, bytearray)) else source
    parts = []
    try:
        with pdfplumber.open(stream) as pdf:
            for page in pdf.pages:
                parts.append(page.extract_text() or '')
    except Exception as e:
        raise ValueError(f"could not read PDF: {e}") from e
    return normalize_text('\n'.join(parts))


def normalize_text(raw: str) -> str:
    """Join hyphenated line breaks, turn newlines into spaces and collapse whitespace."""
    s = _HYPHEN_BREAK.sub('', raw)
    s = _NEWLINES.sub(' ', s)
    return _SPACES.sub(' ', s).strip()
