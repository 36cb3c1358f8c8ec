"""
The fixed set of resume chunks.

Both phases send the same five chunks; each chunk owns a disjoint set of
top-level output keys, which is what makes merging order-independent.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple


@dataclass(frozen=True)
class ChunkSchema:
    name: str
    output_keys: Tuple[str, ...]
    description: str


HEADER = ChunkSchema(
    name="header",
    output_keys=("name", "contactInfo", "objective"),
    description="""{
    "name": "string (candidate's full name)",
    "contactInfo": {
      "location": "string (City, State)",
      "phone": "string",
      "email": "string",
      "linkedin": "string (full LinkedIn profile URL)"
    },
    "objective": "string (1-2 sentence career objective, if present)"
  }""",
)

EDUCATION = ChunkSchema(
    name="education",
    output_keys=("education",),
    description="""{
    "education": [
      {
        "school": "string (University Name, City, State)",
        "degree": "string (Degree, Major)",
        "details": ["string (e.g. Graduation Date: May 20XX)", "string (e.g. GPA: 3.X/4.0)"]
      }
    ]
  }""",
)

EXPERIENCE = ChunkSchema(
    name="experience",
    output_keys=("experience",),
    description="""{
    "experience": [
      {
        "company": "string (Company Name, City, State)",
        "role": "string (Job Title)",
        "date": "string (e.g. Month 20XX - Present)",
        "bullets": ["string (achievement)"],
        "primaryLinkUrl": "string (most relevant URL, or empty)",
        "links": [{"text": "string", "url": "string"}]
      }
    ]
  }""",
)

PROJECTS = ChunkSchema(
    name="projects",
    output_keys=("projects",),
    description="""{
    "projects": [
      {
        "name": "string (Project Name)",
        "description": "string (brief description or technologies)",
        "bullets": ["string (what was done)"],
        "primaryLinkUrl": "string (most relevant URL, or empty)",
        "links": [{"text": "string", "url": "string"}]
      }
    ]
  }""",
)

SKILLS_AND_EXTRAS = ChunkSchema(
    name="skillsAndExtras",
    output_keys=("skills", "certifications", "activities"),
    description="""{
    "skills": {
      "languages": "string (e.g. JavaScript, Python, Java)",
      "technologies": "string (e.g. React, SQL, AWS, Docker)"
    },
    "certifications": ["string"],
    "activities": ["string"]
  }""",
)

CHUNK_SCHEMAS: Tuple[ChunkSchema, ...] = (HEADER, EDUCATION, EXPERIENCE, PROJECTS, SKILLS_AND_EXTRAS)

TOTAL_CHUNKS = len(CHUNK_SCHEMAS)
