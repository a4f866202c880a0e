"""Analysis repository -- async persistence for meetings, results and tasks.

Implements the persistence boundary of the engine (load_meeting_context /
save_result) plus the stores used by the lifecycle controller and the
task approval state machine. Uses the session_factory callable pattern:
every method opens its own session from the factory.

JSON columns use Pydantic model_dump(mode="json") for save and
model_validate() for load.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.meetflow.analysis.errors import ErrorInfo, InvalidTransitionError, NotFoundError
from src.meetflow.analysis.models import (
    AnalysisResultModel,
    MeetingModel,
    TaskAssignmentModel,
    TaskModel,
    TranscriptInputModel,
)
from src.meetflow.analysis.schemas import (
    AttendeeProfile,
    ConclusionInterval,
    Meeting,
    MeetingAnalysisResult,
    MeetingContext,
    MeetingCreate,
    MeetingStatus,
    RawSegment,
    Task,
    TaskAssignment,
    TaskStatus,
)

logger = structlog.get_logger(__name__)


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_meeting(model: MeetingModel) -> Meeting:
    """Convert MeetingModel to Meeting schema."""
    return Meeting(
        id=model.id,
        title=model.title,
        owner_id=model.owner_id,
        status=MeetingStatus(model.status),
        partial_results=bool(model.partial_results),
        last_error=ErrorInfo.model_validate(model.last_error) if model.last_error else None,
        created_at=model.created_at,
        updated_at=model.updated_at or model.created_at,
    )


def _model_to_context(meeting_id: str, model: TranscriptInputModel | None) -> MeetingContext:
    """Convert TranscriptInputModel to the engine's MeetingContext."""
    if model is None:
        return MeetingContext(meeting_id=meeting_id)
    return MeetingContext(
        meeting_id=meeting_id,
        raw_segments=tuple(RawSegment.model_validate(s) for s in (model.segments_data or [])),
        transcript_text=model.transcript_text,
        intervals=tuple(
            ConclusionInterval.model_validate(i) for i in (model.intervals_data or [])
        ),
        profiles=tuple(
            AttendeeProfile.model_validate(p) for p in (model.profiles_data or [])
        ),
    )


def _model_to_task(model: TaskModel) -> Task:
    """Convert TaskModel to Task schema."""
    return Task(
        id=model.id,
        meeting_id=model.meeting_id,
        created_by=model.created_by,
        summary=model.summary,
        details=model.details,
        ai_suggested=bool(model.ai_suggested),
        status=TaskStatus(model.status),
        approved_by=model.approved_by,
        approved_at=model.approved_at,
        rejected_by=model.rejected_by,
        rejected_at=model.rejected_at,
        version=model.version,
        created_at=model.created_at,
    )


def _task_columns(task: Task) -> dict:
    return {
        "summary": task.summary,
        "details": task.details,
        "status": task.status.value,
        "approved_by": task.approved_by,
        "approved_at": task.approved_at,
        "rejected_by": task.rejected_by,
        "rejected_at": task.rejected_at,
    }


def _model_to_assignment(model: TaskAssignmentModel) -> TaskAssignment:
    return TaskAssignment(
        task_id=model.task_id,
        user_id=model.user_id,
        assigned_at=model.assigned_at,
        completed_at=model.completed_at,
    )


# ── Repository ──────────────────────────────────────────────────────────────


class AnalysisRepository:
    """Async CRUD for the meeting aggregate and its child entities.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    # ── Meetings ─────────────────────────────────────────────────────────

    async def create_meeting(self, data: MeetingCreate) -> Meeting:
        """Create a meeting in ACTIVE together with its collaborator inputs."""
        meeting_id = str(uuid.uuid4())
        async for session in self._session_factory():
            model = MeetingModel(
                id=meeting_id,
                title=data.title,
                owner_id=data.owner_id,
                status=MeetingStatus.ACTIVE.value,
            )
            session.add(model)
            session.add(
                TranscriptInputModel(
                    meeting_id=meeting_id,
                    segments_data=[s.model_dump(mode="json") for s in data.segments],
                    transcript_text=data.transcript_text,
                    intervals_data=[i.model_dump(mode="json") for i in data.intervals],
                    profiles_data=[p.model_dump(mode="json") for p in data.profiles],
                )
            )
            await session.commit()
            await session.refresh(model)
            logger.info("meeting_created", meeting_id=meeting_id, segments=len(data.segments))
            return _model_to_meeting(model)

    async def get_meeting(self, meeting_id: str) -> Meeting | None:
        async for session in self._session_factory():
            model = await session.get(MeetingModel, meeting_id)
            return _model_to_meeting(model) if model is not None else None

    async def update_meeting_status(
        self,
        meeting_id: str,
        status: MeetingStatus,
        *,
        expected: MeetingStatus | None = None,
        partial: bool | None = None,
        error: ErrorInfo | None = None,
    ) -> Meeting:
        """Compare-and-set a meeting's status.

        Raises:
            NotFoundError: Meeting does not exist.
            InvalidTransitionError: Stored status differs from expected
                (another worker moved it first).
        """
        values: dict = {"status": status.value}
        if partial is not None:
            values["partial_results"] = partial
        if status == MeetingStatus.FAILED:
            values["last_error"] = error.model_dump(mode="json") if error else None
        elif status == MeetingStatus.PROCESSING:
            values["last_error"] = None

        async for session in self._session_factory():
            stmt = update(MeetingModel).where(MeetingModel.id == meeting_id)
            if expected is not None:
                stmt = stmt.where(MeetingModel.status == expected.value)
            result = await session.execute(stmt.values(**values))
            await session.commit()

            model = await session.get(MeetingModel, meeting_id, populate_existing=True)
            if model is None:
                raise NotFoundError(f"Meeting not found: {meeting_id}")
            if result.rowcount == 0:
                raise InvalidTransitionError("meeting", model.status, f"move to {status.value}")
            return _model_to_meeting(model)

    # ── Inputs ───────────────────────────────────────────────────────────

    async def load_meeting_context(self, meeting_id: str) -> MeetingContext:
        async for session in self._session_factory():
            model = await session.get(TranscriptInputModel, meeting_id)
            return _model_to_context(meeting_id, model)

    async def add_interval(self, meeting_id: str, interval: ConclusionInterval) -> None:
        async for session in self._session_factory():
            model = await session.get(TranscriptInputModel, meeting_id)
            if model is None:
                model = TranscriptInputModel(
                    meeting_id=meeting_id,
                    segments_data=[],
                    intervals_data=[],
                    profiles_data=[],
                )
                session.add(model)
            # Reassign so the JSON column is flagged dirty
            model.intervals_data = [*(model.intervals_data or []), interval.model_dump(mode="json")]
            await session.commit()

    # ── Results ──────────────────────────────────────────────────────────

    async def save_result(self, meeting_id: str, result: MeetingAnalysisResult) -> None:
        async for session in self._session_factory():
            model = await session.get(AnalysisResultModel, meeting_id)
            if model is None:
                model = AnalysisResultModel(meeting_id=meeting_id)
                session.add(model)
            model.result_data = result.model_dump(mode="json")
            model.partial = result.partial
            model.generated_at = result.generated_at
            await session.commit()
            logger.info("analysis_result_saved", meeting_id=meeting_id, partial=result.partial)

    async def get_result(self, meeting_id: str) -> MeetingAnalysisResult | None:
        async for session in self._session_factory():
            model = await session.get(AnalysisResultModel, meeting_id)
            if model is None:
                return None
            return MeetingAnalysisResult.model_validate(model.result_data)

    # ── Tasks ────────────────────────────────────────────────────────────

    async def save_task(self, task: Task, expected_version: int | None = None) -> Task:
        """Insert a new task, or update one with an optimistic version check.

        Raises:
            InvalidTransitionError: The stored version moved on since the
                task was read (lost update prevented).
        """
        async for session in self._session_factory():
            if expected_version is None:
                model = TaskModel(
                    id=task.id,
                    meeting_id=task.meeting_id,
                    created_by=task.created_by,
                    ai_suggested=task.ai_suggested,
                    version=task.version,
                    created_at=task.created_at,
                    **_task_columns(task),
                )
                session.add(model)
                await session.commit()
                await session.refresh(model)
                return _model_to_task(model)

            stmt = (
                update(TaskModel)
                .where(TaskModel.id == task.id, TaskModel.version == expected_version)
                .values(version=expected_version + 1, **_task_columns(task))
            )
            result = await session.execute(stmt)
            await session.commit()
            if result.rowcount == 0:
                raise InvalidTransitionError(
                    "task", f"version {expected_version} (stale)", "update"
                )
            model = await session.get(TaskModel, task.id, populate_existing=True)
            return _model_to_task(model)

    async def get_task(self, task_id: str) -> Task | None:
        async for session in self._session_factory():
            model = await session.get(TaskModel, task_id)
            return _model_to_task(model) if model is not None else None

    async def list_tasks(self, meeting_id: str) -> list[Task]:
        async for session in self._session_factory():
            stmt = (
                select(TaskModel)
                .where(TaskModel.meeting_id == meeting_id)
                .order_by(TaskModel.created_at)
            )
            result = await session.execute(stmt)
            return [_model_to_task(m) for m in result.scalars().all()]

    async def list_assignments(self, task_id: str) -> list[TaskAssignment]:
        async for session in self._session_factory():
            stmt = (
                select(TaskAssignmentModel)
                .where(TaskAssignmentModel.task_id == task_id)
                .order_by(TaskAssignmentModel.assigned_at, TaskAssignmentModel.user_id)
            )
            result = await session.execute(stmt)
            return [_model_to_assignment(m) for m in result.scalars().all()]

    async def save_assignment(self, assignment: TaskAssignment) -> TaskAssignment:
        async for session in self._session_factory():
            model = await session.merge(
                TaskAssignmentModel(
                    task_id=assignment.task_id,
                    user_id=assignment.user_id,
                    assigned_at=assignment.assigned_at,
                    completed_at=assignment.completed_at,
                )
            )
            await session.commit()
            return _model_to_assignment(model)

    async def delete_pending_suggested(self, meeting_id: str) -> int:
        """Delete AI-suggested tasks of a meeting that were never reviewed."""
        async for session in self._session_factory():
            stmt = delete(TaskModel).where(
                TaskModel.meeting_id == meeting_id,
                TaskModel.ai_suggested.is_(True),
                TaskModel.status == TaskStatus.PENDING.value,
            )
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount
