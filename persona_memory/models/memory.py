"""
Project memory persistence (Tier 2).

A finite scratchpad of tactical facts per project.
Types: fact, decision, blocker, preference, insight
"""

from datetime import datetime

from sqlalchemy import String, Text, Integer, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .base import TimestampedBase

MEMORY_TYPES = ("fact", "decision", "blocker", "preference", "insight")


class ProjectMemory(TimestampedBase):
    __tablename__ = "project_memory"
    __table_args__ = (
        UniqueConstraint("project_id", "key", name="uq_project_memory_key"),
    )

    project_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True
    )
    memory_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    key: Mapped[str] = mapped_column(String(255), nullable=False)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    importance: Mapped[int] = mapped_column(Integer, nullable=False, default=5, index=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=True)  # NULL = permanent
