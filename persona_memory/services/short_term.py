"""
Short-term memory (Tier 1): recent turns verbatim plus one rolling summary.

The summary is a single text field. Each update replaces it with a fresh synthesis
of the old summary and the newly aged-out messages, then moves the cursor forward.
If the completion service fails, nothing moves and the next call retries.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import MemoryConfig
from ..core.errors import NotFoundError
from ..models.base import utcnow
from ..models.conversation import Conversation, ConversationMessage
from . import llm as default_llm
from . import realtime

logger = logging.getLogger(__name__)


@dataclass
class ShortTermContext:
    recent_messages: list[ConversationMessage] = field(default_factory=list)
    summary: Optional[str] = None
    token_estimate: int = 0


@dataclass
class ConversationSummaryState:
    conversation_id: int
    rolling_summary: str
    last_summarized_message_id: int
    message_count_at_last_summary: int
    last_summary_at: Optional[datetime] = None


class ShortTermMemory:
    def __init__(self, config: MemoryConfig, llm=default_llm):
        self.config = config
        self.llm = llm

    async def _get_conversation(self, db: AsyncSession, conversation_id: int) -> Conversation:
        convo = await db.get(Conversation, conversation_id)
        if convo is None:
            raise NotFoundError("Conversation", conversation_id)
        return convo

    async def _count_messages(self, db: AsyncSession, conversation_id: int) -> int:
        result = await db.execute(
            select(func.count(ConversationMessage.id))
            .where(ConversationMessage.conversation_id == conversation_id)
        )
        return result.scalar_one()

    async def get_context(
        self,
        db: AsyncSession,
        conversation_id: int,
        limit: Optional[int] = None,
    ) -> ShortTermContext:
        """Most recent messages (oldest first) plus the current rolling summary."""
        convo = await self._get_conversation(db, conversation_id)

        result = await db.execute(
            select(ConversationMessage)
            .where(ConversationMessage.conversation_id == conversation_id)
            .order_by(ConversationMessage.id.desc())
            .limit(limit or self.config.recent_message_limit)
        )
        messages = list(result.scalars().all())
        messages.reverse()  # Oldest first

        summary = convo.summary or None
        return ShortTermContext(
            recent_messages=messages,
            summary=summary,
            token_estimate=self.estimate_tokens(messages, summary),
        )

    async def get_summary_state(
        self, db: AsyncSession, conversation_id: int
    ) -> ConversationSummaryState:
        convo = await self._get_conversation(db, conversation_id)
        return ConversationSummaryState(
            conversation_id=convo.id,
            rolling_summary=convo.summary or "",
            last_summarized_message_id=convo.last_summarized_message_id or 0,
            message_count_at_last_summary=convo.message_count_at_summary or 0,
            last_summary_at=convo.last_summary_at,
        )

    async def update_summary_if_needed(
        self, db: AsyncSession, conversation_id: int
    ) -> Optional[str]:
        """
        Fold aged-out messages into the rolling summary once enough have piled up.
        Returns the new summary, or None when nothing changed.
        """
        convo = await self._get_conversation(db, conversation_id)
        total = await self._count_messages(db, conversation_id)

        since_summary = total - (convo.message_count_at_summary or 0)
        if since_summary < self.config.summary_message_threshold:
            return None

        return await self._create_summary(db, convo, total)

    async def _create_summary(
        self, db: AsyncSession, convo: Conversation, total: int
    ) -> Optional[str]:
        cursor = convo.last_summarized_message_id or 0

        result = await db.execute(
            select(ConversationMessage)
            .where(
                ConversationMessage.conversation_id == convo.id,
                ConversationMessage.id > cursor,
            )
            .order_by(ConversationMessage.id.asc())
        )
        pending = list(result.scalars().all())

        retain = self.config.summary_retain_recent
        to_summarize = pending[:-retain] if retain else pending
        if not to_summarize:
            return None

        message_text = "\n".join(
            f"{m.attribution}: {m.content}" for m in to_summarize
        )
        if convo.summary:
            prompt = (
                "You are summarizing a conversation. Here is the existing summary:\n\n"
                f"{convo.summary}\n\n"
                f"Here are new messages to incorporate:\n\n{message_text}\n\n"
                "Create an updated summary that captures key points, decisions, and context. "
                "Keep it concise (2-3 paragraphs max)."
            )
        else:
            prompt = (
                f"You are summarizing a conversation. Here are the messages:\n\n{message_text}\n\n"
                "Create a concise summary that captures key points, decisions, and context "
                "(2-3 paragraphs max)."
            )

        try:
            new_summary = await self.llm.chat_simple(
                prompt=prompt,
                system="You are a concise conversation summarizer. Output only the summary.",
                temperature=0.3,
                max_tokens=500,
            )
        except Exception as e:
            logger.warning("Failed to summarize conversation %s: %s", convo.id, e)
            return None

        new_summary = (new_summary or "").strip()
        if not new_summary:
            logger.warning("Empty summary for conversation %s, cursor left at %d", convo.id, cursor)
            return None

        new_cursor = to_summarize[-1].id
        kept = len(pending) - len(to_summarize)

        convo.summary = new_summary
        convo.last_summarized_message_id = max(cursor, new_cursor)
        convo.message_count_at_summary = total - kept
        convo.last_summary_at = utcnow()
        await db.flush()

        logger.info(
            "Summarized %d messages for conversation %s (cursor %d → %d)",
            len(to_summarize), convo.id, cursor, convo.last_summarized_message_id,
        )
        await realtime.summary_updated(convo.id, convo.last_summarized_message_id)
        return new_summary

    @staticmethod
    def format_for_prompt(context: ShortTermContext) -> str:
        prompt = ""

        if context.summary:
            prompt += f"## Previous Conversation Summary\n{context.summary}\n\n"

        if context.recent_messages:
            prompt += "## Recent Messages\n"
            for m in context.recent_messages:
                stamp = m.created_at.strftime("%Y-%m-%d %H:%M") if m.created_at else ""
                prompt += f"[{stamp}] {m.attribution}: {m.content}\n"

        return prompt

    @staticmethod
    def estimate_tokens(messages: list[ConversationMessage], summary: Optional[str]) -> int:
        """Rough estimate: 1 token ≈ 4 characters, +20 chars per message for formatting."""
        chars = len(summary) if summary else 0
        for m in messages:
            chars += len(m.content or "") + len(m.attribution or "") + 20
        return math.ceil(chars / 4)
