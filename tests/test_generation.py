"""
Tests for the Pydantic AI generation engine that run without a model endpoint.
"""

import pytest
from pydantic_ai import Agent
from pydantic_ai.models.test import TestModel as CannedModel

from assistant_core.clients.generation import PydanticAIEngine, build_prompt, to_model_history
from assistant_core.models import BoundResource
from tests.fakes import make_context, make_settings


class TestPromptBuilding:
    def test_history_alternates_requests_and_responses(self):
        history = to_model_history(make_context("c-1", 3))

        assert [type(m).__name__ for m in history] == [
            "ModelRequest",
            "ModelResponse",
            "ModelRequest",
        ]

    def test_resource_content_is_prepended(self):
        prompt = build_prompt(
            "what changed?", BoundResource(url="https://example.com/notes", content="v2 notes")
        )

        assert "https://example.com/notes" in prompt
        assert "v2 notes" in prompt
        assert prompt.endswith("User message: what changed?")

    def test_resource_without_content_is_ignored(self):
        assert build_prompt("hi", BoundResource(url="https://example.com")) == "hi"


class TestTitleGeneration:
    @pytest.mark.asyncio
    async def test_generate_title_uses_short_run(self):
        engine = PydanticAIEngine(make_settings(openai_api_key="sk-test"))
        engine._title_agent = Agent(CannedModel(custom_output_text="  Release notes  "))

        try:
            title = await engine.generate_title("what is new in the release?")
        finally:
            await engine.close()

        assert title == "Release notes"
