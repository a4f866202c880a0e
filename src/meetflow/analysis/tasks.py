"""Task approval state machine.

    pending ──approve──> approved ──assign──> assigned ──complete(all)──> done
       │                                        │  ^
       └──reject──> rejected                    └──┘ assign more / partial complete

AI-suggested tasks enter at pending; human-created tasks enter at
approved. rejected and done are terminal. summary/details may only be
edited while pending or approved.

Transitions for one task are serialized by a per-task asyncio.Lock, and
every write carries the version it was read at so the repository can
reject lost updates from other writers.
"""

from __future__ import annotations

import asyncio
import weakref
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Protocol

import structlog

from src.meetflow.analysis.errors import InvalidTransitionError, NotFoundError
from src.meetflow.analysis.schemas import Task, TaskAssignment, TaskCreate, TaskStatus

logger = structlog.get_logger(__name__)


VALID_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.PENDING: {TaskStatus.APPROVED, TaskStatus.REJECTED},
    TaskStatus.APPROVED: {TaskStatus.ASSIGNED},
    TaskStatus.ASSIGNED: {TaskStatus.ASSIGNED, TaskStatus.DONE},
    TaskStatus.REJECTED: set(),  # Terminal, kept for audit
    TaskStatus.DONE: set(),  # Terminal
}

EDITABLE_STATES: frozenset[TaskStatus] = frozenset({TaskStatus.PENDING, TaskStatus.APPROVED})


def validate_task_transition(task: Task, to_status: TaskStatus, action: str) -> None:
    """Raise InvalidTransitionError unless task.status -> to_status is allowed."""
    if to_status not in VALID_TRANSITIONS.get(task.status, set()):
        raise InvalidTransitionError("task", task.status.value, action)


class TaskStore(Protocol):
    """Persistence operations the state machine needs."""

    async def get_task(self, task_id: str) -> Task | None: ...

    async def save_task(self, task: Task, expected_version: int | None = None) -> Task: ...

    async def list_tasks(self, meeting_id: str) -> list[Task]: ...

    async def list_assignments(self, task_id: str) -> list[TaskAssignment]: ...

    async def save_assignment(self, assignment: TaskAssignment) -> TaskAssignment: ...

    async def delete_pending_suggested(self, meeting_id: str) -> int: ...


class TaskApprovalMachine:
    """Single writer for Task and TaskAssignment state.

    Args:
        store: Repository implementing TaskStore.
    """

    def __init__(self, store: TaskStore) -> None:
        self._store = store
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    @asynccontextmanager
    async def _exclusive(self, task_id: str) -> AsyncIterator[Task]:
        lock = self._locks.get(task_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[task_id] = lock
        async with lock:
            task = await self._store.get_task(task_id)
            if task is None:
                raise NotFoundError(f"Task not found: {task_id}")
            yield task

    async def _save(self, before: Task, after: Task, action: str) -> Task:
        saved = await self._store.save_task(after, expected_version=before.version)
        logger.info(
            "task_transition",
            task_id=saved.id,
            meeting_id=saved.meeting_id,
            action=action,
            from_status=before.status.value,
            to_status=saved.status.value,
        )
        return saved

    # ── Creation ─────────────────────────────────────────────────────────

    async def register_suggested(self, meeting_id: str, tasks: list[Task]) -> list[Task]:
        """Persist AI-suggested tasks in pending.

        Pending suggestions left for the same meeting by an earlier run
        that failed before its result was saved are replaced, so a retried
        analysis never duplicates them. Reviewed tasks are kept.
        """
        for task in tasks:
            if not task.ai_suggested or task.status != TaskStatus.PENDING:
                raise InvalidTransitionError("task", task.status.value, "register suggested")
            if task.meeting_id != meeting_id:
                raise ValueError(f"Task {task.id} belongs to meeting {task.meeting_id}")

        removed = await self._store.delete_pending_suggested(meeting_id)
        if removed:
            logger.info("stale_suggested_tasks_removed", meeting_id=meeting_id, count=removed)

        saved: list[Task] = []
        for task in tasks:
            saved.append(await self._store.save_task(task))
        logger.info(
            "suggested_tasks_registered",
            meeting_id=meeting_id,
            count=len(saved),
        )
        return saved

    async def create_human_task(self, meeting_id: str, data: TaskCreate) -> Task:
        """Human-created tasks bypass pending and start approved."""
        summary = data.summary.strip()
        if not summary:
            raise ValueError("Task summary must not be empty")
        task = Task(
            meeting_id=meeting_id,
            created_by=data.created_by,
            summary=summary,
            details=data.details,
            ai_suggested=False,
            status=TaskStatus.APPROVED,
            approved_by=data.created_by,
            approved_at=datetime.now(timezone.utc),
        )
        saved = await self._store.save_task(task)
        logger.info("human_task_created", task_id=saved.id, meeting_id=meeting_id)
        return saved

    # ── Transitions ──────────────────────────────────────────────────────

    async def approve(self, task_id: str, supervisor_id: str) -> Task:
        async with self._exclusive(task_id) as task:
            validate_task_transition(task, TaskStatus.APPROVED, "approve")
            updated = task.model_copy(
                update={
                    "status": TaskStatus.APPROVED,
                    "approved_by": supervisor_id,
                    "approved_at": datetime.now(timezone.utc),
                }
            )
            return await self._save(task, updated, "approve")

    async def reject(self, task_id: str, supervisor_id: str) -> Task:
        async with self._exclusive(task_id) as task:
            validate_task_transition(task, TaskStatus.REJECTED, "reject")
            updated = task.model_copy(
                update={
                    "status": TaskStatus.REJECTED,
                    "rejected_by": supervisor_id,
                    "rejected_at": datetime.now(timezone.utc),
                }
            )
            return await self._save(task, updated, "reject")

    async def assign(self, task_id: str, user_ids: list[str]) -> Task:
        """Assign users to an approved task, or add users to an assigned one.

        Users already assigned are ignored.

        Raises:
            ValueError: No user ids given.
            InvalidTransitionError: Task is not approved or assigned.
        """
        requested = list(dict.fromkeys(u for u in user_ids if u))
        if not requested:
            raise ValueError("assign requires at least one user id")

        async with self._exclusive(task_id) as task:
            validate_task_transition(task, TaskStatus.ASSIGNED, "assign")
            existing = {a.user_id for a in await self._store.list_assignments(task_id)}
            now = datetime.now(timezone.utc)
            for user_id in requested:
                if user_id not in existing:
                    await self._store.save_assignment(
                        TaskAssignment(task_id=task_id, user_id=user_id, assigned_at=now)
                    )
            updated = task.model_copy(update={"status": TaskStatus.ASSIGNED})
            return await self._save(task, updated, "assign")

    async def complete(self, task_id: str, user_id: str) -> Task:
        """Mark one user's assignment complete.

        The task moves to done only once every assignment is complete.

        Raises:
            NotFoundError: The user has no assignment on this task.
            InvalidTransitionError: Task is not assigned, or the user
                already completed.
        """
        async with self._exclusive(task_id) as task:
            if task.status != TaskStatus.ASSIGNED:
                raise InvalidTransitionError("task", task.status.value, "complete")

            assignments = await self._store.list_assignments(task_id)
            mine = next((a for a in assignments if a.user_id == user_id), None)
            if mine is None:
                raise NotFoundError(f"User {user_id} is not assigned to task {task_id}")
            if mine.completed_at is not None:
                raise InvalidTransitionError("assignment", "completed", "complete")

            await self._store.save_assignment(
                mine.model_copy(update={"completed_at": datetime.now(timezone.utc)})
            )
            remaining = [
                a for a in assignments if a.user_id != user_id and a.completed_at is None
            ]
            if remaining:
                logger.info(
                    "task_assignment_completed",
                    task_id=task_id,
                    user_id=user_id,
                    remaining=len(remaining),
                )
                return task

            validate_task_transition(task, TaskStatus.DONE, "complete")
            updated = task.model_copy(update={"status": TaskStatus.DONE})
            return await self._save(task, updated, "complete")

    async def edit(
        self, task_id: str, summary: str | None = None, details: str | None = None
    ) -> Task:
        """Edit summary/details while the task is pending or approved."""
        async with self._exclusive(task_id) as task:
            if task.status not in EDITABLE_STATES:
                raise InvalidTransitionError("task", task.status.value, "edit")
            changes: dict = {}
            if summary is not None:
                if not summary.strip():
                    raise ValueError("Task summary must not be empty")
                changes["summary"] = summary.strip()
            if details is not None:
                changes["details"] = details
            if not changes:
                return task
            return await self._save(task, task.model_copy(update=changes), "edit")

    # ── Reads ────────────────────────────────────────────────────────────

    async def get(self, task_id: str) -> Task:
        task = await self._store.get_task(task_id)
        if task is None:
            raise NotFoundError(f"Task not found: {task_id}")
        return task

    async def list_for_meeting(self, meeting_id: str) -> list[Task]:
        return await self._store.list_tasks(meeting_id)

    async def assignments(self, task_id: str) -> list[TaskAssignment]:
        await self.get(task_id)
        return await self._store.list_assignments(task_id)
