"""Production jobs and the machine/tag bindings recorded for each job.

A job's [actual_start_time, actual_end_time] window is the segmentation
window for alarm and machine-state episodes.
"""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base, TimestampMixin


class Job(TimestampMixin, Base):
    __tablename__ = "jobs"

    __table_args__ = (
        Index("ix_jobs_line_start", "line_id", "actual_start_time"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    job_name: Mapped[str] = mapped_column(String(200))
    line_id: Mapped[int] = mapped_column(ForeignKey("lines.id", ondelete="CASCADE"))
    actual_start_time: Mapped[datetime | None] = mapped_column(default=None)
    actual_end_time: Mapped[datetime | None] = mapped_column(default=None)

    def __repr__(self) -> str:
        return f"<Job {self.id} '{self.job_name}' line={self.line_id}>"


class JobLineMachineTag(Base):
    """Denormalized snapshot of which machine tags belonged to a job."""

    __tablename__ = "job_line_machine_tags"

    __table_args__ = (
        Index("ix_jlmt_job_ref", "job_id", "ref"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    job_id: Mapped[int] = mapped_column(ForeignKey("jobs.id", ondelete="CASCADE"))
    line_id: Mapped[int] = mapped_column(ForeignKey("lines.id", ondelete="CASCADE"))
    line_name: Mapped[str] = mapped_column(String(100))
    machine_id: Mapped[int] = mapped_column(ForeignKey("machines.id", ondelete="CASCADE"))
    machine_name: Mapped[str] = mapped_column(String(100))
    tag_id: Mapped[int] = mapped_column(ForeignKey("tags.id", ondelete="CASCADE"))
    tag_name: Mapped[str] = mapped_column(String(100))
    ref: Mapped[str] = mapped_column(String(20))
