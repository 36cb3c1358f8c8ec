"""
ATS keyword score.

A deliberately simple match metric: the most frequent words of the job
description are treated as keywords and the score is the share of them that
appear in the resume.
"""

from __future__ import annotations

import re
from collections import Counter
from typing import Any, Dict, List, Optional, Tuple

from .models import AtsScore

MAX_KEYWORDS = 20
MIN_WORD_LENGTH = 4

_PUNCTUATION = re.compile(r"[^\w\s]", re.ASCII)


def _tokens(text: str) -> List[str]:
    cleaned = _PUNCTUATION.sub("", text.lower())
    return [word for word in cleaned.split() if len(word) >= MIN_WORD_LENGTH]


def extract_keywords(job_description: str, limit: int = MAX_KEYWORDS) -> List[str]:
    """Most frequent job-description words, ties kept in order of first appearance."""
    return [word for word, _ in Counter(_tokens(job_description)).most_common(limit)]


def calculate_score(resume_text: Optional[str], job_description: Optional[str]) -> Tuple[int, List[str]]:
    """
    Score ``resume_text`` against ``job_description``.

    Returns:
        (score in 0..100, keywords not found in the resume)
    """
    if not resume_text or not job_description:
        return 0, []

    resume_tokens = set(_tokens(resume_text))
    keywords = extract_keywords(job_description)
    if not keywords:
        return 0, []

    missing = [keyword for keyword in keywords if keyword not in resume_tokens]
    matched = len(keywords) - len(missing)
    return round(matched / len(keywords) * 100), missing


def flatten_result(value: Any) -> str:
    """Join every string leaf of a structured result into one block of text."""
    parts: List[str] = []

    def walk(node: Any) -> None:
        if isinstance(node, str):
            if node.strip():
                parts.append(node)
        elif isinstance(node, dict):
            for item in node.values():
                walk(item)
        elif isinstance(node, (list, tuple)):
            for item in node:
                walk(item)

    walk(value)
    return "\n".join(parts)


def score_result(resume_text: str, final: Dict[str, Any], job_description: Optional[str]) -> AtsScore:
    pre, _ = calculate_score(resume_text, job_description)
    post, missing = calculate_score(flatten_result(final), job_description)
    return AtsScore(pre=pre, post=post, missing_keywords=missing)
