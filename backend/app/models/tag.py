"""Sensor tags and their append-only value history."""
from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import BigInteger, ForeignKey, Index, String, func
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base, TimestampMixin


class TagRef(str, enum.Enum):
    machine_state = "mchnst"
    first_fault = "alarm"
    bottles_count = "bc"


class Tag(TimestampMixin, Base):
    __tablename__ = "tags"

    __table_args__ = (
        Index("ix_tags_taggable", "taggable_type", "taggable_id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(100))
    ref: Mapped[str | None] = mapped_column(String(20), default=None)
    taggable_type: Mapped[str] = mapped_column(String(20))   # line, machine
    taggable_id: Mapped[int] = mapped_column()
    current_value: Mapped[str | None] = mapped_column(String(100), default=None)

    @property
    def is_machine_state(self) -> bool:
        return self.ref == TagRef.machine_state.value

    def __repr__(self) -> str:
        return f"<Tag {self.id} '{self.name}' ref={self.ref}>"


class TagValue(Base):
    __tablename__ = "tag_values"

    __table_args__ = (
        Index("ix_tag_values_tag_created", "tag_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    tag_id: Mapped[int] = mapped_column(ForeignKey("tags.id", ondelete="CASCADE"))
    value: Mapped[str] = mapped_column(String(100))
    created_at: Mapped[datetime] = mapped_column(server_default=func.now())
