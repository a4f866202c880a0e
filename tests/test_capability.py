"""Tests for LLMCapability and LLMService with mocked instructor/litellm."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from src.meetflow.analysis.capability import (
    MODEL_REASONING,
    STAGE_SYSTEM_PROMPTS,
    LLMCapability,
    build_messages,
)
from src.meetflow.analysis.errors import CapabilityError
from src.meetflow.analysis.gateway import AnalysisGateway
from src.meetflow.analysis.schemas import StageKind
from src.meetflow.analysis.validation import (
    RESPONSE_MODELS,
    GeneratedSummary,
    parse_summary,
)
from src.meetflow.config import Settings
from src.meetflow.services.llm import LLMService, build_model_list


def _mock_client(response) -> MagicMock:
    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=response)
    return client


class TestLLMCapability:
    @pytest.mark.asyncio
    async def test_run_returns_dumped_response_model(self):
        response = GeneratedSummary(summary="Short meeting.", key_takeaways=["a"])
        client = _mock_client(response)

        with patch("instructor.from_litellm", return_value=client):
            out = await LLMCapability().run(StageKind.SUMMARIZATION, {"transcript": "A: hi"})

        assert out == {"summary": "Short meeting.", "key_takeaways": ["a"]}
        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["response_model"] is RESPONSE_MODELS[StageKind.SUMMARIZATION]
        assert kwargs["model"] == MODEL_REASONING
        assert kwargs["max_retries"] == 0

    @pytest.mark.asyncio
    async def test_router_reasoning_model_preferred(self):
        llm_service = MagicMock()
        llm_service.router.model_list = [
            {"model_name": "fast", "litellm_params": {"model": "openai/gpt-4o-mini"}},
            {"model_name": "reasoning", "litellm_params": {"model": "openai/gpt-4o"}},
        ]
        client = _mock_client(GeneratedSummary(summary="s"))

        with patch("instructor.from_litellm", return_value=client):
            await LLMCapability(llm_service=llm_service).run(StageKind.SUMMARIZATION, {})

        assert client.chat.completions.create.call_args.kwargs["model"] == "openai/gpt-4o"

    @pytest.mark.asyncio
    async def test_provider_error_becomes_capability_failure(self, fast_policy):
        client = MagicMock()
        client.chat.completions.create = AsyncMock(side_effect=RuntimeError("rate limited"))
        gateway = AnalysisGateway(LLMCapability(), fast_policy)

        with patch("instructor.from_litellm", return_value=client):
            with pytest.raises(CapabilityError) as exc_info:
                await gateway.invoke(StageKind.SUMMARIZATION, {}, parse=parse_summary)

        assert client.chat.completions.create.await_count == fast_policy.max_attempts
        assert "rate limited" not in exc_info.value.to_info().message


def test_build_messages_embeds_payload():
    messages = build_messages(StageKind.TASK_EXTRACTION, {"conclusion_blocks": [{"text": "é"}]})
    assert messages[0] == {
        "role": "system",
        "content": STAGE_SYSTEM_PROMPTS[StageKind.TASK_EXTRACTION],
    }
    assert json.loads(messages[1]["content"]) == {"conclusion_blocks": [{"text": "é"}]}


def test_every_stage_has_prompt_and_model():
    for stage in StageKind:
        assert stage in STAGE_SYSTEM_PROMPTS
        assert stage in RESPONSE_MODELS


class TestLLMService:
    def test_no_keys_means_no_router(self):
        service = LLMService(Settings(ANTHROPIC_API_KEY="", OPENAI_API_KEY=""))
        assert service.router is None
        assert service.available is False

    def test_model_list_only_for_configured_providers(self):
        models = build_model_list(Settings(ANTHROPIC_API_KEY="sk-ant", OPENAI_API_KEY=""))
        assert {m["model_name"] for m in models} == {"reasoning", "fast"}
        assert all(m["litellm_params"]["model"].startswith("anthropic/") for m in models)

    def test_router_built_with_keys(self):
        service = LLMService(Settings(ANTHROPIC_API_KEY="sk-ant", OPENAI_API_KEY="sk-oai"))
        assert service.available is True
        assert len(service.router.model_list) == 4
