"""LLMCapability -- production analysis capability via instructor + litellm.

Each stage maps to a structured-output response model from
analysis.validation; instructor validates the model output against it and
the gateway validates invariants again on the returned dict. Timeouts and
retries belong to the gateway, so calls here are single-shot.

Uses model='reasoning' since post-meeting analysis is not
latency-sensitive.
"""

from __future__ import annotations

import json
from typing import Any

import structlog

from src.meetflow.analysis.schemas import StageKind
from src.meetflow.analysis.validation import RESPONSE_MODELS

logger = structlog.get_logger(__name__)


MODEL_REASONING = "anthropic/claude-sonnet-4-20250514"

STAGE_SYSTEM_PROMPTS: dict[StageKind, str] = {
    StageKind.TASK_EXTRACTION: (
        "You extract action items from the concluding part of a meeting. "
        "Return only tasks that were agreed on, each with a one-line summary."
    ),
    StageKind.TOPIC_SEGMENTATION: (
        "You split a meeting transcript into its main topics. Assign every "
        "segment id you use to exactly the topic it belongs to."
    ),
    StageKind.MINDMAP_GENERATION: (
        "You turn one topic of a meeting into a mindmap: the topic as root "
        "and its sub-points as children."
    ),
    StageKind.SUMMARIZATION: (
        "You summarize a meeting and list its key takeaways, weighting "
        "points by their relevance to the attendees' roles and projects."
    ),
    StageKind.UNSOLVED_ISSUE_DETECTION: (
        "You find issues raised in a meeting that were left unresolved and "
        "suggest a way forward for each."
    ),
}

MAX_TOKENS: dict[StageKind, int] = {
    StageKind.TASK_EXTRACTION: 2048,
    StageKind.TOPIC_SEGMENTATION: 4096,
    StageKind.MINDMAP_GENERATION: 2048,
    StageKind.SUMMARIZATION: 4096,
    StageKind.UNSOLVED_ISSUE_DETECTION: 2048,
}


class LLMCapability:
    """Runs analysis stages as structured LLM extractions.

    Args:
        llm_service: Optional LLMService; its router decides the model.
        temperature: Sampling temperature for every stage.
    """

    def __init__(self, llm_service: object | None = None, temperature: float = 0.1) -> None:
        self._llm_service = llm_service
        self._temperature = temperature

    async def run(self, stage: StageKind, payload: dict[str, Any]) -> dict[str, Any]:
        import instructor
        import litellm

        client = instructor.from_litellm(litellm.acompletion)
        response = await client.chat.completions.create(
            model=self._resolve_model(),
            response_model=RESPONSE_MODELS[stage],
            messages=build_messages(stage, payload),
            max_tokens=MAX_TOKENS[stage],
            temperature=self._temperature,
            max_retries=0,
        )
        logger.debug("llm_stage_completed", stage=stage.value)
        return response.model_dump()

    def _resolve_model(self) -> str:
        """Prefer the router's 'reasoning' deployment, else MODEL_REASONING."""
        router = getattr(self._llm_service, "router", None)
        if router:
            for m in router.model_list:
                if m.get("model_name") == "reasoning":
                    return m["litellm_params"]["model"]
        return MODEL_REASONING


def build_messages(stage: StageKind, payload: dict[str, Any]) -> list[dict[str, str]]:
    """System prompt for the stage plus the payload as JSON."""
    return [
        {"role": "system", "content": STAGE_SYSTEM_PROMPTS[stage]},
        {
            "role": "user",
            "content": json.dumps(payload, ensure_ascii=False, indent=2),
        },
    ]
