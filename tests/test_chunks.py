"""
Tests for the chunk orchestrator.
"""

import asyncio

import pytest

from resume_pipeline_backend.chunks import ChunkOrchestrator
from resume_pipeline_backend.exceptions import ContentBlockedError
from resume_pipeline_backend.prompts import build_parse_prompt
from resume_pipeline_backend.schemas import CHUNK_SCHEMAS

from conftest import ScriptedGenerator, chunk_output

RESUME_TEXT = "Jane Doe\nSenior Python Engineer"

ALL_KEYS = {key for schema in CHUNK_SCHEMAS for key in schema.output_keys}
PROJECT_KEYS = {"projects"}


def parse_prompt(schema):
    return build_parse_prompt(RESUME_TEXT, schema)


def run_chunks(generator, concurrency=3, on_chunk=None):
    async def scenario():
        orchestrator = ChunkOrchestrator(generator, concurrency=concurrency)
        return await orchestrator.run(parse_prompt, label="run-1", on_chunk=on_chunk)

    return asyncio.run(scenario())


class TestChunkOrchestrator:
    def test_failing_chunk_is_isolated(self):
        """One failing chunk leaves exactly the other four merged and one error recorded."""
        generator = ScriptedGenerator(responses={"projects": ContentBlockedError("blocked")})

        result = run_chunks(generator)

        assert set(result.merged) == ALL_KEYS - PROJECT_KEYS
        assert set(result.errors) == {"projects"}
        assert result.error_list == ["projects: blocked"]
        assert sorted(result.completed) == sorted(s.name for s in CHUNK_SCHEMAS if s.name != "projects")

    def test_merge_does_not_depend_on_completion_order(self):
        names = [schema.name for schema in CHUNK_SCHEMAS]
        forward = ScriptedGenerator(delays={name: 0.001 * i for i, name in enumerate(names)})
        backward = ScriptedGenerator(delays={name: 0.001 * (10 - i) for i, name in enumerate(names)})

        first = run_chunks(forward, concurrency=5)
        second = run_chunks(backward, concurrency=5)

        assert forward.completion_order != backward.completion_order
        assert first.merged == second.merged
        assert first.merged == {k: v for s in CHUNK_SCHEMAS for k, v in chunk_output(s.name).items()}

    def test_concurrency_ceiling(self):
        generator = ScriptedGenerator(default_delay=0.01)

        result = run_chunks(generator, concurrency=2)

        assert generator.max_in_flight == 2
        assert len(result.completed) == 5

    def test_only_declared_keys_are_merged(self):
        """A chunk cannot overwrite keys owned by another chunk."""
        rogue = dict(chunk_output("header"), education="injected")
        generator = ScriptedGenerator(responses={"header": rogue})

        result = run_chunks(generator)

        assert result.merged["education"] == "education:education"
        assert result.merged["name"] == "header:name"

    def test_non_object_output_is_a_chunk_error(self):
        generator = ScriptedGenerator(responses={"education": ["not", "an", "object"]})

        result = run_chunks(generator)

        assert "education" in result.errors
        assert "education" not in result.merged

    def test_progress_callback_per_chunk(self):
        calls = []

        async def on_chunk(name, error):
            calls.append((name, type(error).__name__ if error else None))

        generator = ScriptedGenerator(responses={"skillsAndExtras": RuntimeError("boom")})
        run_chunks(generator, on_chunk=on_chunk)

        assert len(calls) == 5
        assert ("skillsAndExtras", "RuntimeError") in calls
        assert sum(1 for _, error in calls if error is None) == 4

    def test_failing_progress_callback_does_not_lose_results(self):
        async def on_chunk(name, error):
            raise RuntimeError("database unavailable")

        result = run_chunks(ScriptedGenerator(), on_chunk=on_chunk)

        assert set(result.merged) == ALL_KEYS
        assert result.errors == {}

    def test_rejects_zero_concurrency(self):
        with pytest.raises(ValueError):
            ChunkOrchestrator(ScriptedGenerator(), concurrency=0)
