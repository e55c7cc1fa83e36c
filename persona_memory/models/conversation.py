"""
Conversations and messages.

The rolling short-term summary and its cursor live on the conversation row.
Messages are append-only; their integer id is the ordering key every tier relies on.
"""

from datetime import datetime

from sqlalchemy import String, Text, Integer, Float, JSON, DateTime, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import TimestampedBase


class Conversation(TimestampedBase):
    __tablename__ = "conversations"

    project_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default="active")

    # Tier 1 summary state. The summary covers every message with id <= the cursor.
    summary: Mapped[str] = mapped_column(Text, nullable=True)
    last_summarized_message_id: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    message_count_at_summary: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_summary_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=True)

    messages: Mapped[list["ConversationMessage"]] = relationship(
        back_populates="conversation",
        cascade="all, delete-orphan",
        order_by="ConversationMessage.id",
    )


class ConversationMessage(TimestampedBase):
    __tablename__ = "conversation_messages"

    conversation_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    sender_id: Mapped[str] = mapped_column(String, nullable=True)
    sender_type: Mapped[str] = mapped_column(String, nullable=False)  # user, persona, system
    sender_name: Mapped[str] = mapped_column(String, nullable=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    intent: Mapped[str] = mapped_column(String, nullable=True)
    confidence: Mapped[float] = mapped_column(Float, nullable=True)
    metadata_: Mapped[dict] = mapped_column(
        "metadata", JSON, nullable=True, default=dict
    )
    # Stores: error details for fallback replies, model name, etc.

    conversation: Mapped["Conversation"] = relationship(back_populates="messages")

    @property
    def attribution(self) -> str:
        return self.sender_name or self.sender_type
