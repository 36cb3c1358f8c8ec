"""
Helpers for turning user-supplied upload names into safe storage keys.
"""

from __future__ import annotations

import re
from pathlib import Path

# Anything other than alphanumerics, dots, underscores and hyphens
SANITIZE_PATTERN = re.compile(r"[^a-zA-Z0-9._-]+")

PDF_EXTENSIONS = (".pdf",)


def sanitize_label(label: str, fallback: str) -> str:
    """
    Generate a filesystem-safe label from user input.

    Example:
        >>> sanitize_label("My Resume!", "resume")
        'my-resume'
        >>> sanitize_label("@#$", "resume")
        'resume'
    """
    cleaned = SANITIZE_PATTERN.sub("-", label.strip())
    cleaned = cleaned.strip("-_.").lower()
    return cleaned or fallback


def sanitize_filename(filename: str) -> str:
    """Safe ``<stem>.pdf`` name for an uploaded file; the suffix is forced to ``.pdf``."""
    stem = sanitize_label(Path(filename).stem, "resume")
    return f"{stem}.pdf"


def is_pdf_upload(filename: str, content_type: str = "") -> bool:
    return Path(filename).suffix.lower() in PDF_EXTENSIONS or content_type == "application/pdf"


def storage_key(run_id: str, filename: str) -> str:
    """Storage key of a run's source document: ``runs/<run_id>/<safe filename>``."""
    return f"runs/{run_id}/{sanitize_filename(filename)}"
