"""Meeting lifecycle controller -- top-level state machine per meeting.

    active ──stop──> processing ──> completed ──archive──> archived
                         │    ^                              ^
                         v    └──── retry ────┐               │
                       failed ────────────────┴──archive──────┘

Owns the whole analysis sequence for a meeting: load context, run the
stage orchestrator, register AI-suggested tasks, persist the result, and
record the final status. Re-entry is idempotent: a meeting already
processing or completed is never analyzed twice, so retried requests do
not cause duplicate AI spend or duplicate tasks.
"""

from __future__ import annotations

import asyncio
import weakref
from typing import Protocol

import structlog

from src.meetflow.analysis.errors import (
    ErrorInfo,
    InvalidTransitionError,
    IntegrityError,
    NotFoundError,
    cancelled_info,
    unexpected_info,
)
from src.meetflow.analysis.orchestrator import (
    MANDATORY_STAGES,
    StageOrchestrator,
    resolve_status,
)
from src.meetflow.analysis.schemas import (
    AnalysisRun,
    ConclusionInterval,
    Meeting,
    MeetingAnalysisResult,
    MeetingContext,
    MeetingStatus,
    StageStatus,
)
from src.meetflow.analysis.tasks import TaskApprovalMachine

logger = structlog.get_logger(__name__)


MEETING_TRANSITIONS: dict[MeetingStatus, set[MeetingStatus]] = {
    MeetingStatus.ACTIVE: {MeetingStatus.PROCESSING},
    MeetingStatus.PROCESSING: {MeetingStatus.COMPLETED, MeetingStatus.FAILED},
    MeetingStatus.COMPLETED: {MeetingStatus.ARCHIVED},
    MeetingStatus.FAILED: {MeetingStatus.PROCESSING, MeetingStatus.ARCHIVED},
    MeetingStatus.ARCHIVED: set(),
}


def validate_meeting_transition(meeting: Meeting, to_status: MeetingStatus, action: str) -> None:
    if to_status not in MEETING_TRANSITIONS.get(meeting.status, set()):
        raise InvalidTransitionError("meeting", meeting.status.value, action)


class MeetingStore(Protocol):
    """Persistence boundary used by the controller."""

    async def get_meeting(self, meeting_id: str) -> Meeting | None: ...

    async def update_meeting_status(
        self,
        meeting_id: str,
        status: MeetingStatus,
        *,
        expected: MeetingStatus | None = None,
        partial: bool | None = None,
        error: ErrorInfo | None = None,
    ) -> Meeting: ...

    async def load_meeting_context(self, meeting_id: str) -> MeetingContext: ...

    async def add_interval(self, meeting_id: str, interval: ConclusionInterval) -> None: ...

    async def save_result(self, meeting_id: str, result: MeetingAnalysisResult) -> None: ...

    async def get_result(self, meeting_id: str) -> MeetingAnalysisResult | None: ...


class MeetingLifecycleController:
    """Sequences assembly, extraction, orchestration and task registration.

    Args:
        store: Repository implementing MeetingStore.
        orchestrator: StageOrchestrator for the analysis stages.
        task_machine: TaskApprovalMachine that receives suggested tasks.
    """

    def __init__(
        self,
        store: MeetingStore,
        orchestrator: StageOrchestrator,
        task_machine: TaskApprovalMachine,
    ) -> None:
        self._store = store
        self._orchestrator = orchestrator
        self._tasks = task_machine
        self._guards: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )
        self._inflight: dict[str, asyncio.Future] = {}
        self._orchestrating: set[str] = set()
        self._cancel_requested: set[str] = set()

    def _guard(self, meeting_id: str) -> asyncio.Lock:
        # One lock per meeting, dropped once no caller holds it
        lock = self._guards.get(meeting_id)
        if lock is None:
            lock = asyncio.Lock()
            self._guards[meeting_id] = lock
        return lock

    async def _require(self, meeting_id: str) -> Meeting:
        meeting = await self._store.get_meeting(meeting_id)
        if meeting is None:
            raise NotFoundError(f"Meeting not found: {meeting_id}")
        return meeting

    async def _set_status(
        self,
        meeting: Meeting,
        status: MeetingStatus,
        action: str,
        *,
        partial: bool | None = None,
        error: ErrorInfo | None = None,
    ) -> Meeting:
        validate_meeting_transition(meeting, status, action)
        updated = await self._store.update_meeting_status(
            meeting.id, status, expected=meeting.status, partial=partial, error=error
        )
        logger.info(
            "meeting_status_changed",
            meeting_id=meeting.id,
            from_status=meeting.status.value,
            to_status=status.value,
            action=action,
        )
        return updated

    # ── Recording phase ──────────────────────────────────────────────────

    async def flag_conclusion(self, meeting_id: str, interval: ConclusionInterval) -> None:
        """Record a conclusion interval while the meeting is still recording."""
        meeting = await self._require(meeting_id)
        if meeting.status != MeetingStatus.ACTIVE:
            raise InvalidTransitionError("meeting", meeting.status.value, "flag conclusion")
        await self._store.add_interval(meeting_id, interval)
        logger.info(
            "conclusion_flagged", meeting_id=meeting_id, start=interval.start, end=interval.end
        )

    # ── Analysis ─────────────────────────────────────────────────────────

    async def analyze(self, meeting_id: str) -> AnalysisRun:
        """Run analysis for a meeting (the "stop recording" trigger).

        Idempotent: a processing meeting returns the in-flight run's
        outcome (or the processing status if it runs elsewhere), and a
        completed or archived meeting returns its stored result without
        invoking any stage.

        Raises:
            NotFoundError: Unknown meeting id.
        """
        async with self._guard(meeting_id):
            meeting = await self._require(meeting_id)

            if meeting.status in (MeetingStatus.COMPLETED, MeetingStatus.ARCHIVED):
                logger.info(
                    "analysis_reentry_noop", meeting_id=meeting_id, status=meeting.status.value
                )
                return await self._stored_run(meeting)

            if meeting.status == MeetingStatus.PROCESSING:
                inflight = self._inflight.get(meeting_id)
                if inflight is None:
                    return AnalysisRun(meeting_id=meeting_id, status=MeetingStatus.PROCESSING)
                logger.info("analysis_reentry_joined", meeting_id=meeting_id)
            else:
                meeting = await self._set_status(meeting, MeetingStatus.PROCESSING, "analyze")
                inflight = asyncio.ensure_future(self._execute(meeting))
                self._inflight[meeting_id] = inflight

        # Callers going away must not cancel the shared run
        return await asyncio.shield(inflight)

    async def _execute(self, meeting: Meeting) -> AnalysisRun:
        meeting_id = meeting.id
        self._orchestrating.add(meeting_id)
        try:
            try:
                context = await self._store.load_meeting_context(meeting_id)
                result = await self._orchestrator.run(context)
            except IntegrityError as exc:
                logger.warning("analysis_input_rejected", meeting_id=meeting_id, error=str(exc))
                return await self._fail(meeting, exc.to_info())
            except asyncio.CancelledError:
                if meeting_id not in self._cancel_requested:
                    raise
                logger.info("analysis_cancelled", meeting_id=meeting_id)
                return await self._fail(meeting, cancelled_info())
            finally:
                self._orchestrating.discard(meeting_id)

            return await self._commit(meeting, result)
        except Exception:
            logger.exception("analysis_unexpected_error", meeting_id=meeting_id)
            return await self._fail(meeting, unexpected_info())
        finally:
            self._inflight.pop(meeting_id, None)
            self._cancel_requested.discard(meeting_id)

    async def _commit(self, meeting: Meeting, result: MeetingAnalysisResult) -> AnalysisRun:
        status = resolve_status(result.stage_outcomes)
        if status == MeetingStatus.FAILED:
            failed = sorted(
                (o for o in result.stage_outcomes if o.status == StageStatus.FAILED),
                key=lambda o: o.stage not in MANDATORY_STAGES,
            )
            error = failed[0].error if failed else None
            run = await self._fail(meeting, error)
            return run.model_copy(update={"stage_outcomes": result.stage_outcomes})

        tasks = await self._tasks.register_suggested(meeting.id, result.tasks)
        result = result.model_copy(update={"tasks": tasks})
        await self._store.save_result(meeting.id, result)
        await self._set_status(
            meeting, MeetingStatus.COMPLETED, "complete", partial=result.partial
        )
        logger.info(
            "analysis_completed",
            meeting_id=meeting.id,
            partial=result.partial,
            tasks=len(tasks),
        )
        return AnalysisRun(
            meeting_id=meeting.id,
            status=MeetingStatus.COMPLETED,
            partial=result.partial,
            stage_outcomes=result.stage_outcomes,
            result=result,
        )

    async def _fail(self, meeting: Meeting, error: ErrorInfo | None) -> AnalysisRun:
        await self._set_status(meeting, MeetingStatus.FAILED, "fail", error=error)
        logger.warning(
            "analysis_failed",
            meeting_id=meeting.id,
            error_kind=error.kind.value if error else None,
            stage=error.stage if error else None,
        )
        return AnalysisRun(meeting_id=meeting.id, status=MeetingStatus.FAILED, error=error)

    async def _stored_run(self, meeting: Meeting) -> AnalysisRun:
        result = await self._store.get_result(meeting.id)
        return AnalysisRun(
            meeting_id=meeting.id,
            status=meeting.status,
            partial=result.partial if result else meeting.partial_results,
            stage_outcomes=result.stage_outcomes if result else [],
            result=result,
            error=meeting.last_error,
        )

    # ── Operator actions ─────────────────────────────────────────────────

    async def cancel(self, meeting_id: str) -> None:
        """Cooperatively cancel a running analysis.

        In-flight stage calls are cancelled at their pending capability
        call; completed stage outputs are discarded and nothing is saved.

        Raises:
            InvalidTransitionError: The meeting is not being analyzed by
                this controller, or its result is already being saved.
        """
        async with self._guard(meeting_id):
            meeting = await self._require(meeting_id)
            inflight = self._inflight.get(meeting_id)
            if (
                meeting.status != MeetingStatus.PROCESSING
                or inflight is None
                or meeting_id not in self._orchestrating
            ):
                raise InvalidTransitionError("meeting", meeting.status.value, "cancel")
            self._cancel_requested.add(meeting_id)
            inflight.cancel()
        logger.info("analysis_cancel_requested", meeting_id=meeting_id)

    async def archive(self, meeting_id: str) -> Meeting:
        """Soft-delete a terminal meeting; its results stay readable."""
        async with self._guard(meeting_id):
            meeting = await self._require(meeting_id)
            return await self._set_status(meeting, MeetingStatus.ARCHIVED, "archive")

    async def get_result(self, meeting_id: str) -> MeetingAnalysisResult | None:
        await self._require(meeting_id)
        return await self._store.get_result(meeting_id)
