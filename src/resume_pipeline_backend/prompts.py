"""Prompt builders for the two phases. One prompt per chunk."""

from __future__ import annotations

from typing import Optional

from .schemas import ChunkSchema

JOB_DESCRIPTION_PROMPT_CHARS = 500

TEXT_START = "-----BEGIN_RESUME_TEXT-----"
TEXT_END = "-----END_RESUME_TEXT-----"

_OUTPUT_RULES = """- If a field is not present in the resume text, use an empty value ("" or []).
- Escape every string properly; no raw newlines or control characters inside JSON strings.
- Return ONLY the JSON object, with no commentary and no markdown fences."""


def build_parse_prompt(resume_text: str, schema: ChunkSchema) -> str:
    """Faithful extraction: structure the text without rewriting it."""
    return f"""You are an expert resume parser.
Read the resume text below and extract only the content described by the JSON schema,
structured exactly as the schema shows.
- Do NOT optimize, rewrite or improve anything; stay as close to the original wording as possible.
{_OUTPUT_RULES}

JSON SCHEMA ({schema.name}):
{schema.description}

{TEXT_START}
{resume_text}
{TEXT_END}

Return only the populated JSON object."""


def build_optimize_prompt(
    resume_text: str,
    instruction: str,
    schema: ChunkSchema,
    job_description: Optional[str] = None,
) -> str:
    """Rewrite pass: apply the user's instruction (and job description) to one chunk."""
    tailoring = ""
    if job_description:
        excerpt = job_description[:JOB_DESCRIPTION_PROMPT_CHARS]
        tailoring = f'- Tailor the content towards this job description: "{excerpt}"\n'

    return f"""You are an expert resume parser and optimizer.
Read the resume text below, apply the user's instruction, and return only the content
described by the JSON schema, structured exactly as the schema shows.
- User instruction: "{instruction}"
{tailoring}- For experience and projects, look for URLs (including the '--- Extracted Links ---' section).
  Put the single most relevant URL in 'primaryLinkUrl' and any others in 'links'.
- For the header, split the contact line into location, phone, email and LinkedIn URL.
- Be conservative: if the instruction does not call for a change, keep the original text.
{_OUTPUT_RULES}

JSON SCHEMA ({schema.name}):
{schema.description}

{TEXT_START}
{resume_text}
{TEXT_END}

Return only the populated JSON object."""
