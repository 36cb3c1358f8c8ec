"""PDF text extraction for uploaded resumes."""

from __future__ import annotations

import io
import logging
from typing import List

from pypdf import PdfReader
from pypdf.errors import PyPdfError

from .exceptions import ExtractionError

logger = logging.getLogger(__name__)

LINKS_HEADER = "--- Extracted Links ---"


def _page_links(page) -> List[str]:
    links = []
    for annotation_ref in page.get("/Annots") or []:
        annotation = annotation_ref.get_object()
        if annotation.get("/Subtype") != "/Link":
            continue
        action = annotation.get("/A")
        uri = action.get_object().get("/URI") if action is not None else None
        if uri:
            links.append(str(uri))
    return links


def extract_text(data: bytes) -> str:
    """
    Extract page text and hyperlink targets from a PDF.

    Link URIs are appended after a ``--- Extracted Links ---`` marker, once
    each in order of first appearance, since resume links usually hide behind
    anchor text that the text layer does not contain.

    Raises:
        ExtractionError: The bytes are not a readable PDF, or hold no text
    """
    try:
        reader = PdfReader(io.BytesIO(data))
        pages_text = []
        links: List[str] = []
        for page in reader.pages:
            pages_text.append(page.extract_text() or "")
            links.extend(_page_links(page))
    except (PyPdfError, ValueError, KeyError) as exc:
        raise ExtractionError(f"Failed to parse PDF file: {exc}") from exc

    text = "\n".join(pages_text)
    if not text.strip():
        raise ExtractionError("No readable text found in PDF")

    unique_links = list(dict.fromkeys(links))
    logger.info(f"PDF text extraction successful. Found {len(unique_links)} links.")
    if unique_links:
        text += f"\n\n{LINKS_HEADER}\n" + "\n".join(unique_links) + "\n"
    return text
