"""
Base model with integer identity and timestamps. Every model inherits from this.
"""

from datetime import datetime, timezone

from sqlalchemy import Integer, DateTime
from sqlalchemy.orm import Mapped, mapped_column

from ..core.database import Base


def utcnow():
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class TimestampedBase(Base):
    """Abstract base with a monotonic integer id and creation/update times."""

    __abstract__ = True

    # Integer ids double as the ordering key for messages and episode cursors.
    id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True
    )
    # Python-side defaults keep sub-second ordering on backends whose now() is coarse.
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )
