"""Stage output contracts and invariant checks.

The response models below are both the structured-output schema handed to
the LLM capability and the parser applied to whatever any capability
returns. Parsers raise ValidationError on shape or invariant violations;
the gateway treats that exactly like a failed capability call.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

import pydantic
from pydantic import BaseModel, Field

from src.meetflow.analysis.errors import ValidationError
from src.meetflow.analysis.schemas import (
    AdviceItem,
    MindmapNode,
    OverviewReport,
    StageKind,
    TaskDraft,
)

MIN_MINDMAP_DEPTH = 2
DEFAULT_ADVICE_DISCLAIMER = (
    "AI-generated suggestion based on the meeting transcript; verify before acting."
)


# ── Response Models ──────────────────────────────────────────────────────────


class ExtractedTask(BaseModel):
    """Action item extracted from conclusion material."""

    summary: str = Field(description="One-line description of what needs to be done")
    details: str | None = Field(None, description="Supporting context, if any")


class ExtractedTasks(BaseModel):
    tasks: list[ExtractedTask] = Field(default_factory=list)


class SegmentedTopic(BaseModel):
    title: str = Field(description="Short topic title")
    segment_ids: list[str] = Field(description="Ids of transcript segments in this topic")


class SegmentedTopics(BaseModel):
    topics: list[SegmentedTopic]


class GeneratedMindmap(BaseModel):
    label: str
    children: list[GeneratedMindmap] = Field(default_factory=list)


class GeneratedSummary(BaseModel):
    summary: str = Field(description="Concise summary of the whole meeting")
    key_takeaways: list[str] = Field(default_factory=list)


class DetectedIssue(BaseModel):
    issue: str = Field(description="Problem raised but left unresolved")
    suggestion: str = Field(description="Suggested way forward")
    disclaimer: str | None = None


class DetectedIssues(BaseModel):
    issues: list[DetectedIssue] = Field(default_factory=list)


RESPONSE_MODELS: dict[StageKind, type[BaseModel]] = {
    StageKind.TASK_EXTRACTION: ExtractedTasks,
    StageKind.TOPIC_SEGMENTATION: SegmentedTopics,
    StageKind.MINDMAP_GENERATION: GeneratedMindmap,
    StageKind.SUMMARIZATION: GeneratedSummary,
    StageKind.UNSOLVED_ISSUE_DETECTION: DetectedIssues,
}


# ── Parsers ──────────────────────────────────────────────────────────────────


def _coerce(stage: StageKind, model: type[BaseModel], raw: Any, list_key: str | None = None):
    if isinstance(raw, BaseModel):
        raw = raw.model_dump()
    if list_key is not None and isinstance(raw, list):
        raw = {list_key: raw}
    try:
        return model.model_validate(raw)
    except pydantic.ValidationError as exc:
        raise ValidationError(
            f"{stage.value} output has wrong shape: {exc.error_count()} error(s)",
            stage=stage.value,
        ) from exc


def _require_text(stage: StageKind, value: str | None, what: str) -> str:
    text = (value or "").strip()
    if not text:
        raise ValidationError(f"{stage.value} produced an empty {what}", stage=stage.value)
    return text


def parse_tasks(raw: Any) -> list[TaskDraft]:
    """Task list; zero tasks is a valid answer."""
    stage = StageKind.TASK_EXTRACTION
    parsed = _coerce(stage, ExtractedTasks, raw, list_key="tasks")
    return [
        TaskDraft(
            summary=_require_text(stage, item.summary, "task summary"),
            details=(item.details or "").strip() or None,
        )
        for item in parsed.tasks
    ]


def parse_topics(raw: Any, known_segment_ids: Iterable[str]) -> list[tuple[str, list[str]]]:
    """Topic titles with segment ids in transcript order, duplicates removed.

    Raises:
        ValidationError: No topics, an empty title, or an unknown segment id.
    """
    stage = StageKind.TOPIC_SEGMENTATION
    parsed = _coerce(stage, SegmentedTopics, raw, list_key="topics")
    if not parsed.topics:
        raise ValidationError("topic-segmentation produced no topics", stage=stage.value)

    order = {seg_id: index for index, seg_id in enumerate(known_segment_ids)}
    topics: list[tuple[str, list[str]]] = []
    for topic in parsed.topics:
        title = _require_text(stage, topic.title, "topic title")
        unknown = [seg_id for seg_id in topic.segment_ids if seg_id not in order]
        if unknown:
            raise ValidationError(
                f"topic {title!r} references {len(unknown)} unknown segment(s)",
                stage=stage.value,
            )
        ids = sorted(set(topic.segment_ids), key=order.__getitem__)
        topics.append((title, ids))
    return topics


def parse_mindmap(raw: Any) -> MindmapNode:
    """Mindmap tree; root plus at least one child level, no blank labels."""
    stage = StageKind.MINDMAP_GENERATION
    if isinstance(raw, dict) and "mindmap" in raw and "label" not in raw:
        raw = raw["mindmap"]
    parsed = _coerce(stage, GeneratedMindmap, raw)
    node = MindmapNode.model_validate(parsed.model_dump())
    if node.depth() < MIN_MINDMAP_DEPTH:
        raise ValidationError(
            f"mindmap depth {node.depth()} is below {MIN_MINDMAP_DEPTH}", stage=stage.value
        )
    for label in node.labels():
        _require_text(stage, label, "mindmap label")
    return node


def parse_summary(raw: Any) -> OverviewReport:
    stage = StageKind.SUMMARIZATION
    parsed = _coerce(stage, GeneratedSummary, raw)
    return OverviewReport(
        summary=_require_text(stage, parsed.summary, "summary"),
        key_takeaways=[
            _require_text(stage, takeaway, "key takeaway") for takeaway in parsed.key_takeaways
        ],
    )


def parse_issues(raw: Any) -> list[AdviceItem]:
    stage = StageKind.UNSOLVED_ISSUE_DETECTION
    parsed = _coerce(stage, DetectedIssues, raw, list_key="issues")
    return [
        AdviceItem(
            issue=_require_text(stage, item.issue, "issue"),
            suggestion=_require_text(stage, item.suggestion, "suggestion"),
            disclaimer=(item.disclaimer or "").strip() or DEFAULT_ADVICE_DISCLAIMER,
        )
        for item in parsed.issues
    ]
