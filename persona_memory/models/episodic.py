"""
Long-term memory (Tier 3): conversation episodes and semantic knowledge nodes.

Episodes partition a conversation's message stream; the newest episode's
end_message_id is the cursor for the next one. Knowledge nodes are deduplicated
facts that gain confidence each time they are mentioned again.
"""

from datetime import datetime

from sqlalchemy import (
    String, Text, Integer, Float, Boolean, JSON, DateTime, ForeignKey, UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import TimestampedBase, utcnow

NODE_TYPES = (
    "preference",
    "work_pattern",
    "blocker",
    "strength",
    "goal",
    "belief",
    "success_pattern",
)


class ConversationEpisode(TimestampedBase):
    __tablename__ = "conversation_episodes"

    conversation_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    project_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)

    # Episode boundaries (inclusive message ids)
    start_message_id: Mapped[int] = mapped_column(Integer, nullable=False)
    end_message_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    message_count: Mapped[int] = mapped_column(Integer, nullable=False)

    topic: Mapped[str] = mapped_column(String(500), nullable=True)
    summary: Mapped[str] = mapped_column(Text, nullable=False)
    key_points: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    decisions_made: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    # [{"decision": "...", "reasoning": "..."}]
    emotions_detected: Mapped[str] = mapped_column(String(100), nullable=True)
    user_state: Mapped[str] = mapped_column(String(50), nullable=True)
    # blocked, progressing, celebrating, planning, stuck


class KnowledgeNode(TimestampedBase):
    __tablename__ = "knowledge_nodes"

    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    # NULL → applies across all of the user's projects
    project_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=True, index=True
    )
    node_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    label: Mapped[str] = mapped_column(String(500), nullable=False)
    # Lowercased, whitespace-collapsed label used for dedup matching
    normalized_label: Mapped[str] = mapped_column(String(500), nullable=False, index=True)
    properties: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    source_episode_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("conversation_episodes.id", ondelete="SET NULL"), nullable=True
    )

    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    times_mentioned: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    last_reinforced_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)
    contradicted_by: Mapped[int] = mapped_column(
        Integer, ForeignKey("knowledge_nodes.id"), nullable=True
    )


class MemoryConfigOverride(TimestampedBase):
    """Per user/project overrides for the Tier 3 thresholds. NULL columns fall back to defaults."""

    __tablename__ = "memory_config"
    __table_args__ = (
        UniqueConstraint("user_id", "project_id", name="uq_memory_config_scope"),
    )

    user_id: Mapped[str] = mapped_column(String, nullable=False)
    project_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False
    )
    episode_message_threshold: Mapped[int] = mapped_column(Integer, nullable=True)
    fact_extraction_enabled: Mapped[bool] = mapped_column(Boolean, nullable=True)
    fact_confidence_threshold: Mapped[float] = mapped_column(Float, nullable=True)
    max_episodes_retrieved: Mapped[int] = mapped_column(Integer, nullable=True)
    max_facts_retrieved: Mapped[int] = mapped_column(Integer, nullable=True)
