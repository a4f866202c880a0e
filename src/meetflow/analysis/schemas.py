"""Pydantic v2 schemas for the meeting analysis domain.

Defines the data contracts for transcript segments, conclusion intervals,
tasks and assignments, topics and mindmaps, overview reports, per-stage
outcomes, and the aggregate MeetingAnalysisResult. Every other module in
the analysis package imports from here.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator

from src.meetflow.analysis.errors import ErrorInfo


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Enums ────────────────────────────────────────────────────────────────────


class MeetingStatus(str, Enum):
    """Lifecycle status of a meeting from recording through archival."""

    ACTIVE = "active"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    ARCHIVED = "archived"


class StageKind(str, Enum):
    """Independently invocable analysis stages."""

    TASK_EXTRACTION = "task-extraction"
    TOPIC_SEGMENTATION = "topic-segmentation"
    MINDMAP_GENERATION = "mindmap-generation"
    SUMMARIZATION = "summarization"
    UNSOLVED_ISSUE_DETECTION = "unsolved-issue-detection"


class StageStatus(str, Enum):
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"


class TaskStatus(str, Enum):
    """Task approval lifecycle."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    ASSIGNED = "assigned"
    DONE = "done"


# ── Transcript Models ────────────────────────────────────────────────────────


class RawSegment(BaseModel):
    """A speaker-attributed time span as delivered by preprocessing.

    Text may be missing when the collaborator only supplies diarization
    boundaries; the assembler then aligns it from the plain transcript.
    """

    speaker_id: str
    start_time: float
    end_time: float
    text: str | None = None


class TranscriptSegment(BaseModel):
    """One ordered, validated transcript segment.

    Frozen: later stages produce updated copies (model_copy) for the
    subject labels and the conclusion flag rather than mutating shared
    instances.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    meeting_id: str
    speaker_id: str
    start_time: float
    end_time: float
    text: str = ""
    main_subject: str | None = None
    sub_subject: str | None = None
    is_conclusion: bool = False
    flagged_by_owner: bool = False


class ConclusionInterval(BaseModel):
    """A user-flagged (start, end) range in seconds."""

    model_config = ConfigDict(frozen=True)

    start: float
    end: float

    @model_validator(mode="after")
    def _check_order(self) -> ConclusionInterval:
        if self.start >= self.end:
            raise ValueError(f"interval start ({self.start}) must be before end ({self.end})")
        return self


class ConclusionBlock(BaseModel):
    """Concatenated text of all segments overlapping one merged interval."""

    model_config = ConfigDict(frozen=True)

    interval: ConclusionInterval
    segment_ids: tuple[str, ...]
    text: str


# ── Profile Context ──────────────────────────────────────────────────────────


class AttendeeProfile(BaseModel):
    """Read-only attendee context used to weight summaries and advice."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    name: str = ""
    role: str = ""
    projects: tuple[str, ...] = ()
    assigned_tasks: tuple[str, ...] = ()


class MeetingContext(BaseModel):
    """Everything the engine needs to analyze one meeting."""

    model_config = ConfigDict(frozen=True)

    meeting_id: str
    raw_segments: tuple[RawSegment, ...] = ()
    transcript_text: str | None = None
    intervals: tuple[ConclusionInterval, ...] = ()
    profiles: tuple[AttendeeProfile, ...] = ()


# ── Task Models ──────────────────────────────────────────────────────────────


class TaskDraft(BaseModel):
    """Task proposed by the task-extraction stage, before it gets an id."""

    summary: str
    details: str | None = None


class Task(BaseModel):
    """An action item routed through human approval."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    meeting_id: str
    created_by: str
    summary: str
    details: str | None = None
    ai_suggested: bool = False
    status: TaskStatus = TaskStatus.PENDING
    approved_by: str | None = None
    approved_at: datetime | None = None
    rejected_by: str | None = None
    rejected_at: datetime | None = None
    version: int = 0
    created_at: datetime = Field(default_factory=_utcnow)


class TaskAssignment(BaseModel):
    """One user's share of an assigned task."""

    task_id: str
    user_id: str
    assigned_at: datetime = Field(default_factory=_utcnow)
    completed_at: datetime | None = None


# ── Topic / Mindmap / Overview ───────────────────────────────────────────────


class MindmapNode(BaseModel):
    """Recursive mindmap node. A valid mindmap root has depth >= 2."""

    label: str
    children: list[MindmapNode] = Field(default_factory=list)

    def depth(self) -> int:
        if not self.children:
            return 1
        return 1 + max(child.depth() for child in self.children)

    def labels(self) -> list[str]:
        """All labels in depth-first order."""
        out = [self.label]
        for child in self.children:
            out.extend(child.labels())
        return out


class Topic(BaseModel):
    """A contiguous subject of discussion with its mindmap."""

    id: str
    meeting_id: str
    title: str
    segment_ids: list[str] = Field(default_factory=list)
    mindmap: MindmapNode | None = None


class AdviceItem(BaseModel):
    issue: str
    suggestion: str
    disclaimer: str = ""


class OverviewReport(BaseModel):
    """Meeting-level summary with takeaways and AI advice."""

    summary: str
    key_takeaways: list[str] = Field(default_factory=list)
    ai_advice: list[AdviceItem] = Field(default_factory=list)


# ── Stage Outcomes & Aggregate ───────────────────────────────────────────────


class StageOutcome(BaseModel):
    """Per-stage record kept for observability and status decisions."""

    stage: StageKind
    status: StageStatus
    reason: str | None = None
    error: ErrorInfo | None = None
    attempts: int = 0


class MeetingAnalysisResult(BaseModel):
    """The aggregate unit persisted and cached per meeting."""

    meeting_id: str
    segments: list[TranscriptSegment] = Field(default_factory=list)
    conclusion_blocks: list[ConclusionBlock] = Field(default_factory=list)
    tasks: list[Task] = Field(default_factory=list)
    topics: list[Topic] = Field(default_factory=list)
    overview: OverviewReport | None = None
    ai_advice: list[AdviceItem] = Field(default_factory=list)
    stage_outcomes: list[StageOutcome] = Field(default_factory=list)
    partial: bool = False
    generated_at: datetime = Field(default_factory=_utcnow)

    def outcome(self, stage: StageKind) -> StageOutcome | None:
        for outcome in self.stage_outcomes:
            if outcome.stage == stage:
                return outcome
        return None

    def stages_with(self, status: StageStatus) -> list[StageKind]:
        return [o.stage for o in self.stage_outcomes if o.status == status]

    @property
    def failed_stages(self) -> list[StageKind]:
        return self.stages_with(StageStatus.FAILED)

    @property
    def skipped_stages(self) -> list[StageKind]:
        return self.stages_with(StageStatus.SKIPPED)

    @property
    def succeeded_stages(self) -> list[StageKind]:
        return self.stages_with(StageStatus.SUCCESS)


# ── Meeting Models ───────────────────────────────────────────────────────────


class Meeting(BaseModel):
    """Aggregate root owning segments, tasks, topics and the overview."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    title: str = "Untitled Meeting"
    owner_id: str
    status: MeetingStatus = MeetingStatus.ACTIVE
    partial_results: bool = False
    last_error: ErrorInfo | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class AnalysisRun(BaseModel):
    """What analyze() reports back to the caller."""

    meeting_id: str
    status: MeetingStatus
    partial: bool = False
    stage_outcomes: list[StageOutcome] = Field(default_factory=list)
    result: MeetingAnalysisResult | None = None
    error: ErrorInfo | None = None


# ── Request/Create Models ────────────────────────────────────────────────────


class MeetingCreate(BaseModel):
    """Request schema for registering a recorded meeting and its inputs."""

    title: str = "Untitled Meeting"
    owner_id: str
    segments: list[RawSegment] = Field(default_factory=list)
    transcript_text: str | None = None
    intervals: list[ConclusionInterval] = Field(default_factory=list)
    profiles: list[AttendeeProfile] = Field(default_factory=list)


class TaskCreate(BaseModel):
    """Request schema for a human-created task (enters approved)."""

    summary: str
    details: str | None = None
    created_by: str


class TaskEdit(BaseModel):
    summary: str | None = None
    details: str | None = None


class SupervisorAction(BaseModel):
    supervisor_id: str


class AssignRequest(BaseModel):
    user_ids: list[str]


class CompleteRequest(BaseModel):
    user_id: str
