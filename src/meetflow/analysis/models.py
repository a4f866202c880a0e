"""Analysis persistence models.

Five SQLAlchemy models:
- MeetingModel: Aggregate root with lifecycle status
- TranscriptInputModel: Raw segments, plain transcript, conclusion
  intervals and attendee profiles as delivered by collaborators (JSON)
- AnalysisResultModel: The persisted MeetingAnalysisResult (JSON)
- TaskModel: Task approval state with optimistic version column
- TaskAssignmentModel: Per-user share of an assigned task

Child rows carry meeting_id without foreign key constraints
(application-level referential integrity via repository).
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Integer, String, Text, func, text
from sqlalchemy.types import JSON
from sqlalchemy.orm import Mapped, mapped_column

from src.meetflow.core.database import Base


class MeetingModel(Base):
    """Meeting aggregate root.

    Tracks lifecycle from ACTIVE through COMPLETED/FAILED to ARCHIVED.
    last_error holds the sanitized ErrorInfo of the latest failure.
    """

    __tablename__ = "meetings"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    owner_id: Mapped[str] = mapped_column(String(200), nullable=False)
    status: Mapped[str] = mapped_column(
        String(50),
        default="active",
        server_default=text("'active'"),
    )
    partial_results: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=text("false")
    )
    last_error: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


class TranscriptInputModel(Base):
    """Collaborator inputs for one meeting, stored as received.

    Assembly and validation happen at analysis time so malformed input
    surfaces as an integrity failure of the run, not of the upload.
    """

    __tablename__ = "transcript_inputs"

    meeting_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    segments_data: Mapped[list] = mapped_column(JSON, default=list)
    transcript_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    intervals_data: Mapped[list] = mapped_column(JSON, default=list)
    profiles_data: Mapped[list] = mapped_column(JSON, default=list)


class AnalysisResultModel(Base):
    """Persisted MeetingAnalysisResult, one per meeting."""

    __tablename__ = "analysis_results"

    meeting_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    result_data: Mapped[dict] = mapped_column(JSON, default=dict)
    partial: Mapped[bool] = mapped_column(Boolean, default=False)
    generated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class TaskModel(Base):
    """Task with approval state. version increments on every write."""

    __tablename__ = "tasks"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    meeting_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    created_by: Mapped[str] = mapped_column(String(200), nullable=False)
    summary: Mapped[str] = mapped_column(Text, nullable=False)
    details: Mapped[str | None] = mapped_column(Text, nullable=True)
    ai_suggested: Mapped[bool] = mapped_column(Boolean, default=False)
    status: Mapped[str] = mapped_column(String(50), default="pending")
    approved_by: Mapped[str | None] = mapped_column(String(200), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejected_by: Mapped[str | None] = mapped_column(String(200), nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class TaskAssignmentModel(Base):
    """Many-to-many task/user assignment with completion timestamp."""

    __tablename__ = "task_assignments"

    task_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(200), primary_key=True)
    assigned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
