"""Per-minute production counts for a job, rebuilt on recalculation."""
from __future__ import annotations

from datetime import datetime

from sqlalchemy import ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base


class OEETimeSeries(Base):
    __tablename__ = "oee_time_series"

    __table_args__ = (
        Index("ix_oee_time_series_job_minute", "job_id", "minute"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    job_id: Mapped[int] = mapped_column(ForeignKey("jobs.id", ondelete="CASCADE"))
    minute: Mapped[int] = mapped_column()
    timestamp: Mapped[datetime] = mapped_column()
    bottle_count: Mapped[int] = mapped_column(default=0)
    cumulative_count: Mapped[int] = mapped_column(default=0)
