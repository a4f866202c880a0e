"""Stage orchestrator -- dependency-aware execution of the analysis stages.

Runs the five analysis stages for one meeting with maximum concurrency:

    task-extraction ────────────┐
    summarization ──────────────┤
    unsolved-issue-detection ───┼──> MeetingAnalysisResult
    topic-segmentation ─> mindmap-generation (per topic) ──┘

Each stage is isolated: a CapabilityError in one stage is recorded as
that stage's outcome and never reaches its siblings. Stages with no input
(no conclusion blocks, empty transcript, unmet dependency) are recorded
as skipped, which is distinct from failed.

Integrity errors from transcript assembly propagate before any capability
call. Cancellation propagates out of run() and discards everything the
stages produced so far.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from functools import partial
from typing import Any

import structlog

from src.meetflow.analysis.assembler import assemble_transcript
from src.meetflow.analysis.errors import CapabilityError
from src.meetflow.analysis.gateway import AnalysisGateway
from src.meetflow.analysis.intervals import extract_conclusions
from src.meetflow.analysis.schemas import (
    AdviceItem,
    ConclusionBlock,
    MeetingAnalysisResult,
    MeetingContext,
    MeetingStatus,
    MindmapNode,
    OverviewReport,
    StageKind,
    StageOutcome,
    StageStatus,
    Task,
    TaskDraft,
    TaskStatus,
    Topic,
    TranscriptSegment,
)
from src.meetflow.analysis.validation import (
    parse_issues,
    parse_mindmap,
    parse_summary,
    parse_tasks,
    parse_topics,
)
from src.meetflow.config import get_settings

logger = structlog.get_logger(__name__)

# Stage -> stages whose output it consumes
STAGE_DEPENDENCIES: dict[StageKind, tuple[StageKind, ...]] = {
    StageKind.MINDMAP_GENERATION: (StageKind.TOPIC_SEGMENTATION,),
}

MANDATORY_STAGES: frozenset[StageKind] = frozenset({StageKind.TASK_EXTRACTION})

AI_TASK_CREATOR = "analysis-engine"


@dataclass
class StageRun:
    """Outcome of one stage plus its parsed output (None unless success)."""

    outcome: StageOutcome
    value: Any = None

    @property
    def ok(self) -> bool:
        return self.outcome.status == StageStatus.SUCCESS


def _skipped(stage: StageKind, reason: str) -> StageRun:
    return StageRun(StageOutcome(stage=stage, status=StageStatus.SKIPPED, reason=reason))


def _failed(stage: StageKind, exc: CapabilityError) -> StageRun:
    return StageRun(
        StageOutcome(
            stage=stage,
            status=StageStatus.FAILED,
            error=exc.to_info(),
            attempts=exc.attempts,
        )
    )


def resolve_status(
    outcomes: Sequence[StageOutcome],
    mandatory: frozenset[StageKind] = MANDATORY_STAGES,
) -> MeetingStatus:
    """Meeting status implied by the stage outcomes.

    FAILED when a mandatory stage failed, or when every attempted
    (non-skipped) stage failed. Otherwise COMPLETED.
    """
    if any(o.stage in mandatory and o.status == StageStatus.FAILED for o in outcomes):
        return MeetingStatus.FAILED
    attempted = [o for o in outcomes if o.status != StageStatus.SKIPPED]
    if attempted and all(o.status == StageStatus.FAILED for o in attempted):
        return MeetingStatus.FAILED
    return MeetingStatus.COMPLETED


class StageOrchestrator:
    """Drives one meeting's transcript through all analysis stages.

    Args:
        gateway: AnalysisGateway used for every capability call.
        max_in_flight_per_meeting: Per-meeting admission bound; the
            gateway enforces the global bound.
    """

    def __init__(
        self,
        gateway: AnalysisGateway,
        max_in_flight_per_meeting: int | None = None,
    ) -> None:
        self._gateway = gateway
        self._max_in_flight = (
            max_in_flight_per_meeting or get_settings().MAX_IN_FLIGHT_PER_MEETING
        )

    async def run(self, context: MeetingContext) -> MeetingAnalysisResult:
        """Assemble, extract conclusions, run all stages, and aggregate.

        Raises:
            IntegrityError: Malformed input segments (before any AI call).
        """
        segments = assemble_transcript(
            context.meeting_id, context.raw_segments, context.transcript_text
        )
        segments, blocks = extract_conclusions(segments, context.intervals)

        limiter = asyncio.Semaphore(self._max_in_flight)
        invoke = partial(self._gateway.invoke, limiter=limiter)
        profiles = [p.model_dump(mode="json") for p in context.profiles]

        runners: dict[StageKind, Callable[[dict[StageKind, asyncio.Future]], Awaitable[StageRun]]] = {
            StageKind.TASK_EXTRACTION: lambda _: self._extract_tasks(invoke, blocks),
            StageKind.SUMMARIZATION: lambda _: self._summarize(invoke, segments, blocks, profiles),
            StageKind.UNSOLVED_ISSUE_DETECTION: lambda _: self._detect_issues(
                invoke, segments, profiles
            ),
            StageKind.TOPIC_SEGMENTATION: lambda _: self._segment_topics(invoke, segments),
            StageKind.MINDMAP_GENERATION: lambda futures: self._generate_mindmaps(
                invoke, segments, futures[StageKind.TOPIC_SEGMENTATION]
            ),
        }

        futures: dict[StageKind, asyncio.Future] = {}

        async def _run_stage(stage: StageKind) -> StageRun:
            for dependency in STAGE_DEPENDENCIES.get(stage, ()):
                await asyncio.shield(futures[dependency])
            run = await runners[stage](futures)
            logger.info(
                "stage_finished",
                meeting_id=context.meeting_id,
                stage=stage.value,
                status=run.outcome.status.value,
                reason=run.outcome.reason,
                attempts=run.outcome.attempts,
            )
            return run

        for stage in StageKind:
            futures[stage] = asyncio.ensure_future(_run_stage(stage))

        gathered = await asyncio.gather(*futures.values(), return_exceptions=True)

        runs: dict[StageKind, StageRun] = {}
        for stage, item in zip(futures, gathered):
            if isinstance(item, BaseException):
                raise item
            runs[stage] = item

        return self._aggregate(context.meeting_id, segments, blocks, runs)

    # ── Stages ───────────────────────────────────────────────────────────

    async def _extract_tasks(self, invoke, blocks: list[ConclusionBlock]) -> StageRun:
        stage = StageKind.TASK_EXTRACTION
        usable = [b for b in blocks if b.text.strip()]
        if not usable:
            return _skipped(stage, "no_conclusion_blocks")
        payload = {"conclusion_blocks": [_block_payload(b) for b in usable]}
        try:
            call = await invoke(stage, payload, parse=parse_tasks)
        except CapabilityError as exc:
            return _failed(stage, exc)
        return _succeeded(stage, call.value, call.attempts)

    async def _summarize(
        self,
        invoke,
        segments: list[TranscriptSegment],
        blocks: list[ConclusionBlock],
        profiles: list[dict],
    ) -> StageRun:
        stage = StageKind.SUMMARIZATION
        transcript = render_transcript(segments)
        if not transcript:
            return _skipped(stage, "empty_transcript")
        payload = {
            "transcript": transcript,
            "conclusion_blocks": [_block_payload(b) for b in blocks if b.text.strip()],
            "profiles": profiles,
        }
        try:
            call = await invoke(stage, payload, parse=parse_summary)
        except CapabilityError as exc:
            return _failed(stage, exc)
        return _succeeded(stage, call.value, call.attempts)

    async def _detect_issues(
        self, invoke, segments: list[TranscriptSegment], profiles: list[dict]
    ) -> StageRun:
        stage = StageKind.UNSOLVED_ISSUE_DETECTION
        transcript = render_transcript(segments)
        if not transcript:
            return _skipped(stage, "empty_transcript")
        try:
            call = await invoke(
                stage, {"transcript": transcript, "profiles": profiles}, parse=parse_issues
            )
        except CapabilityError as exc:
            return _failed(stage, exc)
        return _succeeded(stage, call.value, call.attempts)

    async def _segment_topics(self, invoke, segments: list[TranscriptSegment]) -> StageRun:
        stage = StageKind.TOPIC_SEGMENTATION
        if not render_transcript(segments):
            return _skipped(stage, "empty_transcript")
        payload = {
            "segments": [
                {
                    "id": s.id,
                    "speaker_id": s.speaker_id,
                    "start_time": s.start_time,
                    "end_time": s.end_time,
                    "text": s.text,
                }
                for s in segments
            ]
        }
        parse = partial(parse_topics, known_segment_ids=[s.id for s in segments])
        try:
            call = await invoke(stage, payload, parse=parse)
        except CapabilityError as exc:
            return _failed(stage, exc)
        return _succeeded(stage, call.value, call.attempts)

    async def _generate_mindmaps(
        self,
        invoke,
        segments: list[TranscriptSegment],
        topics_future: asyncio.Future,
    ) -> StageRun:
        """One mindmap per topic, generated concurrently.

        The stage is atomic: if any topic's mindmap fails after retries,
        the stage fails and no mindmaps are attached.
        """
        stage = StageKind.MINDMAP_GENERATION
        topics_run: StageRun = topics_future.result()
        if not topics_run.ok:
            return _skipped(stage, f"topic_segmentation_{topics_run.outcome.status.value}")

        by_id = {s.id: s for s in segments}
        topics: list[tuple[str, list[str]]] = topics_run.value

        async def _one(title: str, segment_ids: list[str]):
            dialogue = render_transcript([by_id[i] for i in segment_ids])
            return await invoke(
                stage, {"topic": title, "dialogue": dialogue}, parse=parse_mindmap
            )

        gathered = await asyncio.gather(
            *[_one(title, ids) for title, ids in topics], return_exceptions=True
        )

        mindmaps: list[MindmapNode] = []
        attempts = 0
        first_error: CapabilityError | None = None
        for item in gathered:
            if isinstance(item, CapabilityError):
                attempts += item.attempts
                first_error = first_error or item
            elif isinstance(item, BaseException):
                raise item
            else:
                attempts += item.attempts
                mindmaps.append(item.value)

        if first_error is not None:
            first_error.attempts = attempts
            return _failed(stage, first_error)
        return _succeeded(stage, mindmaps, attempts)

    # ── Aggregation ──────────────────────────────────────────────────────

    def _aggregate(
        self,
        meeting_id: str,
        segments: list[TranscriptSegment],
        blocks: list[ConclusionBlock],
        runs: dict[StageKind, StageRun],
    ) -> MeetingAnalysisResult:
        tasks_run = runs[StageKind.TASK_EXTRACTION]
        topics_run = runs[StageKind.TOPIC_SEGMENTATION]
        mindmap_run = runs[StageKind.MINDMAP_GENERATION]
        summary_run = runs[StageKind.SUMMARIZATION]
        issues_run = runs[StageKind.UNSOLVED_ISSUE_DETECTION]

        tasks: list[Task] = []
        if tasks_run.ok:
            drafts: list[TaskDraft] = tasks_run.value
            tasks = [
                Task(
                    meeting_id=meeting_id,
                    created_by=AI_TASK_CREATOR,
                    summary=draft.summary,
                    details=draft.details,
                    ai_suggested=True,
                    status=TaskStatus.PENDING,
                )
                for draft in drafts
            ]

        topics: list[Topic] = []
        if topics_run.ok:
            mindmaps: list[MindmapNode] = mindmap_run.value if mindmap_run.ok else []
            for index, (title, segment_ids) in enumerate(topics_run.value):
                topics.append(
                    Topic(
                        id=f"{meeting_id}-topic-{index:02d}",
                        meeting_id=meeting_id,
                        title=title,
                        segment_ids=segment_ids,
                        mindmap=mindmaps[index] if index < len(mindmaps) else None,
                    )
                )
            segments = _label_subjects(segments, topics)

        advice: list[AdviceItem] = issues_run.value if issues_run.ok else []
        overview: OverviewReport | None = None
        if summary_run.ok:
            overview = summary_run.value.model_copy(update={"ai_advice": advice})

        # Outcomes in declaration order so results compare deterministically
        outcomes = [runs[stage].outcome for stage in StageKind]
        result = MeetingAnalysisResult(
            meeting_id=meeting_id,
            segments=segments,
            conclusion_blocks=blocks,
            tasks=tasks,
            topics=topics,
            overview=overview,
            ai_advice=advice,
            stage_outcomes=outcomes,
            partial=any(o.status != StageStatus.SUCCESS for o in outcomes),
        )
        logger.info(
            "analysis_aggregated",
            meeting_id=meeting_id,
            tasks=len(tasks),
            topics=len(topics),
            failed=[s.value for s in result.failed_stages],
            skipped=[s.value for s in result.skipped_stages],
        )
        return result


# ── Module-Level Helpers ─────────────────────────────────────────────────────


def _succeeded(stage: StageKind, value: Any, attempts: int) -> StageRun:
    return StageRun(
        StageOutcome(stage=stage, status=StageStatus.SUCCESS, attempts=attempts), value
    )


def _block_payload(block: ConclusionBlock) -> dict[str, Any]:
    return {"start": block.interval.start, "end": block.interval.end, "text": block.text}


def render_transcript(segments: Sequence[TranscriptSegment]) -> str:
    """Speaker-attributed transcript, one line per non-empty segment."""
    return "\n".join(f"{s.speaker_id}: {s.text}" for s in segments if s.text.strip())


def _label_subjects(
    segments: list[TranscriptSegment], topics: list[Topic]
) -> list[TranscriptSegment]:
    """Copy topic titles onto their segments as main_subject.

    sub_subject is taken from the topic mindmap's first-level branch
    whose label appears in the segment text, if any.
    """
    topic_by_segment: dict[str, Topic] = {}
    for topic in topics:
        for seg_id in topic.segment_ids:
            topic_by_segment.setdefault(seg_id, topic)

    labelled: list[TranscriptSegment] = []
    for seg in segments:
        topic = topic_by_segment.get(seg.id)
        if topic is None:
            labelled.append(seg)
            continue
        sub_subject = None
        if topic.mindmap is not None:
            lowered = seg.text.lower()
            for branch in topic.mindmap.children:
                if branch.label.lower() in lowered:
                    sub_subject = branch.label
                    break
        labelled.append(
            seg.model_copy(update={"main_subject": topic.title, "sub_subject": sub_subject})
        )
    return labelled
