"""SQLModel ORM tables for marking storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel

ACTIVE_SCHEME_ID = 1


class MarkingSchemeRow(SQLModel, table=True):
    __tablename__ = "marking_schemes"  # type: ignore[bad-override]

    scheme_id: int = Field(default=ACTIVE_SCHEME_ID, primary_key=True)
    paper_name: str
    exam_duration: str
    additional_instructions: str = Field(default="", sa_column=Column(Text, nullable=False))
    parts_json: str = Field(sa_column=Column(Text, nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class MarkingJobRow(SQLModel, table=True):
    __tablename__ = "marking_jobs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_marking_jobs_queue", "status", "queue_position"),)

    job_id: str = Field(primary_key=True)
    queue_position: int = Field(index=True, unique=True)
    label: str
    file_name: str
    status: str = Field(index=True)
    failure_class: str | None = Field(default=None, index=True)
    error_summary: str | None = Field(default=None, sa_column=Column(Text))
    parts_json: str = Field(sa_column=Column(Text, nullable=False))
    author_name: str | None = None
    group_name: str | None = None
    has_pages: bool = True
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class MarkingResultRow(SQLModel, table=True):
    __tablename__ = "marking_results"  # type: ignore[bad-override]

    job_id: str = Field(
        sa_column=Column(
            ForeignKey("marking_jobs.job_id", ondelete="CASCADE"),
            primary_key=True,
        ),
    )
    part_index: int = Field(primary_key=True)
    part_id: str
    score: float
    explanation: str = Field(sa_column=Column(Text, nullable=False))
    confidence: float
    total_tokens: int | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class MarkingJobEventRow(SQLModel, table=True):
    __tablename__ = "marking_job_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_marking_job_events_job_time", "job_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("marking_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
