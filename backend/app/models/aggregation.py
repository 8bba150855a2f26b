"""Segmented episodes produced by the aggregation pipeline.

Rows are fully replaced on every recalculation of a job; only the
user-entered annotation columns are carried over.
"""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base, TimestampMixin


class AlarmAggregation(TimestampMixin, Base):
    __tablename__ = "alarm_aggregations"

    __table_args__ = (
        Index("ix_alarm_aggregations_job", "job_id"),
        Index("ix_alarm_aggregations_machine_start", "machine_id", "alarm_start_datetime"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    job_id: Mapped[int] = mapped_column(ForeignKey("jobs.id", ondelete="CASCADE"))
    machine_id: Mapped[int] = mapped_column()
    machine_name: Mapped[str] = mapped_column(String(100))
    tag_id: Mapped[int] = mapped_column()
    tag_name: Mapped[str] = mapped_column(String(100))
    line_id: Mapped[int] = mapped_column()
    line_name: Mapped[str] = mapped_column(String(100))
    alarm_code: Mapped[str] = mapped_column(String(100))
    alarm_start_datetime: Mapped[datetime] = mapped_column()
    alarm_end_datetime: Mapped[datetime] = mapped_column()
    duration: Mapped[float] = mapped_column()                  # minutes
    alarm_reason_id: Mapped[int | None] = mapped_column(default=None)
    alarm_reason_name: Mapped[str | None] = mapped_column(String(200), default=None)
    alarm_note: Mapped[str | None] = mapped_column(Text, default=None)
    processed: Mapped[bool] = mapped_column(Boolean, default=True)

    def __repr__(self) -> str:
        return (
            f"<AlarmAggregation job={self.job_id} machine={self.machine_id} "
            f"code={self.alarm_code} {self.alarm_start_datetime}..{self.alarm_end_datetime}>"
        )


class MachineStateAggregation(TimestampMixin, Base):
    __tablename__ = "machine_state_aggregations"

    __table_args__ = (
        Index("ix_machine_state_aggregations_job", "job_id"),
        Index("ix_machine_state_aggregations_machine_start", "machine_id", "state_start_time"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    job_id: Mapped[int] = mapped_column(ForeignKey("jobs.id", ondelete="CASCADE"))
    machine_id: Mapped[int] = mapped_column()
    machine_name: Mapped[str] = mapped_column(String(100))
    tag_id: Mapped[int] = mapped_column()
    tag_name: Mapped[str] = mapped_column(String(100))
    line_id: Mapped[int] = mapped_column()
    line_name: Mapped[str] = mapped_column(String(100))
    state_code: Mapped[int] = mapped_column()
    state_name: Mapped[str] = mapped_column(String(60))
    state_start_time: Mapped[datetime] = mapped_column()
    state_end_time: Mapped[datetime] = mapped_column()
    duration: Mapped[int] = mapped_column()                    # whole minutes
    user_note: Mapped[str | None] = mapped_column(Text, default=None)
    processed: Mapped[bool] = mapped_column(Boolean, default=True)
