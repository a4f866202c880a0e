"""Shared test doubles and fixtures for the analysis engine.

Provides:
- InMemoryAnalysisRepository: MeetingStore + TaskStore test double with
  the same compare-and-set and version semantics as AnalysisRepository
- StubCapability: deterministic AnalysisCapability with canned stage
  outputs, scripted failures, delays, and call/concurrency counters
- fast_policy: GatewayPolicy with zero backoff for quick retry tests
- engine fixtures wiring gateway, orchestrator, task machine and
  lifecycle controller around the doubles
"""

from __future__ import annotations

import asyncio
import uuid
from collections import Counter
from collections.abc import Callable
from datetime import datetime, timezone
from types import SimpleNamespace
from typing import Any

import pytest

from src.meetflow.analysis.errors import (
    ErrorInfo,
    InvalidTransitionError,
    NotFoundError,
)
from src.meetflow.analysis.gateway import AnalysisGateway, GatewayPolicy
from src.meetflow.analysis.lifecycle import MeetingLifecycleController
from src.meetflow.analysis.orchestrator import StageOrchestrator
from src.meetflow.analysis.schemas import (
    ConclusionInterval,
    Meeting,
    MeetingAnalysisResult,
    MeetingContext,
    MeetingCreate,
    MeetingStatus,
    RawSegment,
    StageKind,
    Task,
    TaskAssignment,
    TaskStatus,
)
from src.meetflow.analysis.tasks import TaskApprovalMachine


# ── In-Memory Repository ────────────────────────────────────────────────────


class InMemoryAnalysisRepository:
    """In-memory test double for AnalysisRepository."""

    def __init__(self) -> None:
        self.meetings: dict[str, Meeting] = {}
        self.contexts: dict[str, MeetingContext] = {}
        self.results: dict[str, MeetingAnalysisResult] = {}
        self.tasks: dict[str, Task] = {}
        self.assignments: dict[tuple[str, str], TaskAssignment] = {}
        self.save_result_calls = 0

    async def create_meeting(self, data: MeetingCreate) -> Meeting:
        meeting = Meeting(title=data.title, owner_id=data.owner_id)
        self.meetings[meeting.id] = meeting
        self.contexts[meeting.id] = MeetingContext(
            meeting_id=meeting.id,
            raw_segments=tuple(data.segments),
            transcript_text=data.transcript_text,
            intervals=tuple(data.intervals),
            profiles=tuple(data.profiles),
        )
        return meeting

    async def get_meeting(self, meeting_id: str) -> Meeting | None:
        return self.meetings.get(meeting_id)

    async def update_meeting_status(
        self,
        meeting_id: str,
        status: MeetingStatus,
        *,
        expected: MeetingStatus | None = None,
        partial: bool | None = None,
        error: ErrorInfo | None = None,
    ) -> Meeting:
        meeting = self.meetings.get(meeting_id)
        if meeting is None:
            raise NotFoundError(f"Meeting not found: {meeting_id}")
        if expected is not None and meeting.status != expected:
            raise InvalidTransitionError("meeting", meeting.status.value, f"move to {status.value}")
        update: dict[str, Any] = {"status": status, "updated_at": datetime.now(timezone.utc)}
        if partial is not None:
            update["partial_results"] = partial
        if status == MeetingStatus.FAILED:
            update["last_error"] = error
        elif status == MeetingStatus.PROCESSING:
            update["last_error"] = None
        updated = meeting.model_copy(update=update)
        self.meetings[meeting_id] = updated
        return updated

    async def load_meeting_context(self, meeting_id: str) -> MeetingContext:
        return self.contexts.get(meeting_id, MeetingContext(meeting_id=meeting_id))

    async def add_interval(self, meeting_id: str, interval: ConclusionInterval) -> None:
        context = self.contexts.get(meeting_id, MeetingContext(meeting_id=meeting_id))
        self.contexts[meeting_id] = context.model_copy(
            update={"intervals": (*context.intervals, interval)}
        )

    async def save_result(self, meeting_id: str, result: MeetingAnalysisResult) -> None:
        self.save_result_calls += 1
        self.results[meeting_id] = result

    async def get_result(self, meeting_id: str) -> MeetingAnalysisResult | None:
        return self.results.get(meeting_id)

    async def save_task(self, task: Task, expected_version: int | None = None) -> Task:
        if expected_version is None:
            self.tasks[task.id] = task
            return task
        stored = self.tasks.get(task.id)
        if stored is None or stored.version != expected_version:
            raise InvalidTransitionError("task", f"version {expected_version} (stale)", "update")
        saved = task.model_copy(update={"version": expected_version + 1})
        self.tasks[task.id] = saved
        return saved

    async def get_task(self, task_id: str) -> Task | None:
        return self.tasks.get(task_id)

    async def list_tasks(self, meeting_id: str) -> list[Task]:
        return sorted(
            (t for t in self.tasks.values() if t.meeting_id == meeting_id),
            key=lambda t: t.created_at,
        )

    async def list_assignments(self, task_id: str) -> list[TaskAssignment]:
        return sorted(
            (a for (tid, _), a in self.assignments.items() if tid == task_id),
            key=lambda a: (a.assigned_at, a.user_id),
        )

    async def save_assignment(self, assignment: TaskAssignment) -> TaskAssignment:
        self.assignments[(assignment.task_id, assignment.user_id)] = assignment
        return assignment

    async def delete_pending_suggested(self, meeting_id: str) -> int:
        stale = [
            t.id
            for t in self.tasks.values()
            if t.meeting_id == meeting_id and t.ai_suggested and t.status == TaskStatus.PENDING
        ]
        for task_id in stale:
            del self.tasks[task_id]
        return len(stale)


# ── Stub Capability ─────────────────────────────────────────────────────────


def _topics_from_segments(payload: dict) -> dict:
    ids = [s["id"] for s in payload["segments"]]
    half = max(1, len(ids) // 2)
    topics = [{"title": "Budget", "segment_ids": ids[:half]}]
    if ids[half:]:
        topics.append({"title": "Hiring", "segment_ids": ids[half:]})
    return {"topics": topics}


def _mindmap_for_topic(payload: dict) -> dict:
    return {
        "label": payload["topic"],
        "children": [{"label": "budget"}, {"label": "timeline"}],
    }


DEFAULT_RESPONSES: dict[StageKind, Any] = {
    StageKind.TASK_EXTRACTION: {
        "tasks": [
            {"summary": "Send revised budget to finance", "details": "Before Friday"},
            {"summary": "Schedule hiring review"},
        ]
    },
    StageKind.TOPIC_SEGMENTATION: _topics_from_segments,
    StageKind.MINDMAP_GENERATION: _mindmap_for_topic,
    StageKind.SUMMARIZATION: {
        "summary": "The team agreed on the budget and the hiring review.",
        "key_takeaways": ["Budget approved"],
    },
    StageKind.UNSOLVED_ISSUE_DETECTION: {
        "issues": [{"issue": "Office move undecided", "suggestion": "Decide next week"}]
    },
}


class StubCapability:
    """Deterministic AnalysisCapability.

    Responses per stage are either a literal value or a callable taking
    the payload. failures[stage] = n makes the first n calls for that
    stage raise; set n very large for a permanently failing stage.
    """

    def __init__(
        self,
        responses: dict[StageKind, Any] | None = None,
        failures: dict[StageKind, int] | None = None,
        delays: dict[StageKind, float] | None = None,
        error: Callable[[], Exception] = lambda: ConnectionError("upstream unavailable"),
    ) -> None:
        self.responses = {**DEFAULT_RESPONSES, **(responses or {})}
        self.failures = dict(failures or {})
        self.delays = dict(delays or {})
        self.error = error
        self.calls: Counter[StageKind] = Counter()
        self.payloads: dict[StageKind, list[dict]] = {}
        self.started: list[StageKind] = []
        self.events: list[tuple[str, StageKind]] = []
        self.finished: list[StageKind] = []
        self.in_flight = 0
        self.max_in_flight = 0

    @property
    def total_calls(self) -> int:
        return sum(self.calls.values())

    async def run(self, stage: StageKind, payload: dict[str, Any]) -> Any:
        self.calls[stage] += 1
        self.payloads.setdefault(stage, []).append(payload)
        self.started.append(stage)
        self.events.append(("start", stage))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            delay = self.delays.get(stage, 0)
            await asyncio.sleep(delay)
            if self.failures.get(stage, 0) > 0:
                self.failures[stage] -= 1
                raise self.error()
            response = self.responses[stage]
            return response(payload) if callable(response) else response
        finally:
            self.in_flight -= 1
            self.finished.append(stage)
            self.events.append(("end", stage))


# ── Sample Input ────────────────────────────────────────────────────────────


def sample_meeting(**overrides: Any) -> MeetingCreate:
    """A short recorded meeting with one conclusion interval."""
    data: dict[str, Any] = {
        "title": "Weekly sync",
        "owner_id": "owner-1",
        "segments": [
            RawSegment(speaker_id="A", start_time=0, end_time=5, text="We need a budget."),
            RawSegment(speaker_id="B", start_time=4, end_time=9, text="Hiring is slow."),
            RawSegment(speaker_id="A", start_time=10, end_time=14, text="Budget goes to finance."),
            RawSegment(speaker_id="B", start_time=15, end_time=20, text="I will set a review."),
        ],
        "intervals": [ConclusionInterval(start=10, end=20)],
    }
    data.update(overrides)
    return MeetingCreate(**data)


# ── Fixtures ────────────────────────────────────────────────────────────────


@pytest.fixture
def fast_policy() -> GatewayPolicy:
    return GatewayPolicy(
        timeout_seconds=1.0,
        max_attempts=3,
        backoff_min_seconds=0,
        backoff_max_seconds=0,
        max_in_flight_global=16,
    )


@pytest.fixture
def repository() -> InMemoryAnalysisRepository:
    return InMemoryAnalysisRepository()


@pytest.fixture
def capability() -> StubCapability:
    return StubCapability()


@pytest.fixture
def gateway(capability, fast_policy) -> AnalysisGateway:
    return AnalysisGateway(capability, fast_policy)


@pytest.fixture
def orchestrator(gateway) -> StageOrchestrator:
    return StageOrchestrator(gateway, max_in_flight_per_meeting=4)


@pytest.fixture
def task_machine(repository) -> TaskApprovalMachine:
    return TaskApprovalMachine(store=repository)


@pytest.fixture
def controller(repository, orchestrator, task_machine) -> MeetingLifecycleController:
    return MeetingLifecycleController(
        store=repository, orchestrator=orchestrator, task_machine=task_machine
    )


def context_for(meeting_id: str | None = None, **overrides: Any) -> MeetingContext:
    """MeetingContext built from sample_meeting() for orchestrator tests."""
    data = sample_meeting(**overrides)
    return MeetingContext(
        meeting_id=meeting_id or str(uuid.uuid4()),
        raw_segments=tuple(data.segments),
        transcript_text=data.transcript_text,
        intervals=tuple(data.intervals),
        profiles=tuple(data.profiles),
    )


@pytest.fixture
def make_meeting() -> Callable[..., MeetingCreate]:
    return sample_meeting


@pytest.fixture
def make_context() -> Callable[..., MeetingContext]:
    return context_for


@pytest.fixture
def make_capability() -> type[StubCapability]:
    return StubCapability


@pytest.fixture
def make_engine(fast_policy):
    """Factory wiring a full engine around a given StubCapability."""

    def _make(
        capability: StubCapability | None = None,
        policy: GatewayPolicy | None = None,
        max_in_flight_per_meeting: int = 4,
    ) -> SimpleNamespace:
        capability = capability or StubCapability()
        repository = InMemoryAnalysisRepository()
        gateway = AnalysisGateway(capability, policy or fast_policy)
        orchestrator = StageOrchestrator(
            gateway, max_in_flight_per_meeting=max_in_flight_per_meeting
        )
        task_machine = TaskApprovalMachine(store=repository)
        controller = MeetingLifecycleController(
            store=repository, orchestrator=orchestrator, task_machine=task_machine
        )
        return SimpleNamespace(
            capability=capability,
            repository=repository,
            gateway=gateway,
            orchestrator=orchestrator,
            task_machine=task_machine,
            controller=controller,
        )

    return _make
