"""
Episodic & semantic memory (Tier 3).

Episodes: once enough messages pile up past the last episode, the unsummarized
range is summarized into one ConversationEpisode. The newest episode's
end_message_id is the only cursor. There is no in-flight lock, so callers must
serialize consolidation per conversation (see services.background).

Knowledge nodes: facts extracted from an episode are matched against active
nodes on (user, project-or-global, node_type, normalized label). A match is
reinforced instead of duplicated.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, JsonValue, ValidationError, field_validator
from sqlalchemy import select, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import MemoryConfig
from ..core.errors import NotFoundError
from ..models.base import utcnow, as_utc
from ..models.conversation import Conversation, ConversationMessage
from ..models.episodic import (
    ConversationEpisode,
    KnowledgeNode,
    MemoryConfigOverride,
    NODE_TYPES,
)
from . import llm as default_llm

logger = logging.getLogger(__name__)

BLOCKER_TYPES = {"blocker"}
STRENGTH_TYPES = {"strength", "success_pattern"}


# ── Structured completion payloads ───────────────────────────────────

class EpisodeDraft(BaseModel):
    """Episode summary as returned by the completion service."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    topic: str = ""
    summary: str = Field(min_length=1)
    key_points: list[str] = Field(default_factory=list, alias="keyPoints")
    decisions: list[dict[str, JsonValue]] = Field(default_factory=list)
    emotions: Optional[str] = None
    user_state: Optional[str] = Field(default=None, alias="userState")

    @field_validator("topic", "key_points", mode="before")
    @classmethod
    def _null_to_empty(cls, value, info):
        if value is None:
            return [] if info.field_name == "key_points" else ""
        return value

    @field_validator("decisions", mode="before")
    @classmethod
    def _wrap_bare_decisions(cls, value):
        if isinstance(value, list):
            return [{"decision": v} if isinstance(v, str) else v for v in value]
        return value

    @field_validator("emotions", mode="before")
    @classmethod
    def _join_emotions(cls, value):
        if isinstance(value, list):
            return ", ".join(str(v) for v in value)
        return value


class FactCandidate(BaseModel):
    """One candidate knowledge fact from the extraction call."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    node_type: str = Field(alias="nodeType")
    label: str = Field(min_length=1)
    properties: dict[str, JsonValue] = Field(default_factory=dict)
    confidence: float = 0.8
    # "user" facts apply across every project of the user
    scope: str = "project"

    @field_validator("node_type")
    @classmethod
    def _known_type(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in NODE_TYPES:
            raise ValueError(f"unknown node type {value!r}")
        return value

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value):
        if value is None:
            return 0.8
        try:
            number = float(value)
        except (TypeError, ValueError):
            raise ValueError("confidence must be a number")
        if not math.isfinite(number):
            raise ValueError("confidence must be finite")
        return min(max(number, 0.0), 1.0)

    @field_validator("scope", mode="before")
    @classmethod
    def _scope(cls, value):
        return "user" if str(value or "").lower() == "user" else "project"


def normalize_label(label: str) -> str:
    return " ".join(label.split()).lower()


def parse_fact_candidates(payload: Any) -> list[FactCandidate]:
    """Accepts {"facts": [...]}, {"nodes": [...]} or a bare list. Malformed items are dropped."""
    if isinstance(payload, dict):
        items = payload.get("facts") or payload.get("nodes") or []
    elif isinstance(payload, list):
        items = payload
    else:
        items = []

    candidates = []
    for item in items:
        try:
            candidates.append(FactCandidate.model_validate(item))
        except ValidationError as e:
            logger.debug("Skipping malformed fact %r: %s", item, e)
    return candidates


# ── Read models ──────────────────────────────────────────────────────

@dataclass
class MemoryContext:
    recent_episodes: list[ConversationEpisode] = field(default_factory=list)
    relevant_facts: list[KnowledgeNode] = field(default_factory=list)
    blockers: list[KnowledgeNode] = field(default_factory=list)
    strengths: list[KnowledgeNode] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.recent_episodes or self.relevant_facts)


@dataclass
class ConsolidationResult:
    episode: ConversationEpisode
    nodes: list[KnowledgeNode] = field(default_factory=list)
    created: int = 0
    reinforced: int = 0


# ── Prompts ──────────────────────────────────────────────────────────

EPISODE_PROMPT = """You are analyzing a conversation between a user and their AI productivity coach.
Summarize this conversation episode into a structured format.

Conversation:
{conversation}

Provide a JSON response with:
{{
  "topic": "Brief topic (max 50 chars)",
  "summary": "2-3 sentence narrative summary",
  "keyPoints": ["point1", "point2", "point3"],
  "decisions": [{{"decision": "what was decided", "reasoning": "why"}}],
  "emotions": "detected emotions (comma separated)",
  "userState": "blocked|progressing|celebrating|planning|stuck"
}}"""

FACTS_PROMPT = """You are extracting factual knowledge from a conversation between a user and their AI productivity coach.

Extract facts that should be remembered long-term. Focus on:
- User preferences and work patterns
- Challenges and blockers
- Strengths and success patterns
- Goals and motivations
- Beliefs about themselves

Conversation:
{conversation}

Provide a JSON object {{"facts": [...]}} where each fact is:
{{
  "nodeType": "preference|work_pattern|blocker|strength|goal|belief|success_pattern",
  "label": "Clear, concise fact statement",
  "properties": {{"context": "additional context if needed"}},
  "confidence": 0.8,
  "scope": "project|user"
}}

Use scope "user" only for facts that hold across all of the user's projects.
Only extract facts that are clearly stated or strongly implied. Be selective - quality over quantity."""


def _render_transcript(messages: list[ConversationMessage]) -> str:
    return "\n\n".join(f"{m.attribution}: {m.content}" for m in messages)


def _days_ago_label(created_at: datetime, now: datetime) -> str:
    days = (now - as_utc(created_at)).days
    if days <= 0:
        return "Earlier today"
    if days == 1:
        return "1 day ago"
    return f"{days} days ago"


class EpisodicSemanticMemory:
    def __init__(self, config: MemoryConfig, llm=default_llm):
        self.config = config
        self.llm = llm

    # ── Helpers ──────────────────────────────────────────────────────

    async def _get_conversation(self, db: AsyncSession, conversation_id: int) -> Conversation:
        convo = await db.get(Conversation, conversation_id)
        if convo is None:
            raise NotFoundError("Conversation", conversation_id)
        return convo

    async def effective_config(
        self, db: AsyncSession, user_id: str, project_id: int
    ) -> MemoryConfig:
        """Defaults, overlaid with the user's per-project overrides when present."""
        result = await db.execute(
            select(MemoryConfigOverride).where(
                MemoryConfigOverride.user_id == user_id,
                MemoryConfigOverride.project_id == project_id,
            )
        )
        override = result.scalar_one_or_none()
        if override is None:
            return self.config

        updates = {
            name: getattr(override, name)
            for name in (
                "episode_message_threshold",
                "fact_extraction_enabled",
                "fact_confidence_threshold",
                "max_episodes_retrieved",
                "max_facts_retrieved",
            )
            if getattr(override, name) is not None
        }
        return self.config.model_copy(update=updates)

    async def _episode_cursor(self, db: AsyncSession, conversation_id: int) -> int:
        result = await db.execute(
            select(func.max(ConversationEpisode.end_message_id))
            .where(ConversationEpisode.conversation_id == conversation_id)
        )
        return result.scalar_one_or_none() or 0

    # ── Episodes ─────────────────────────────────────────────────────

    async def count_unsummarized(self, db: AsyncSession, conversation_id: int) -> int:
        after = await self._episode_cursor(db, conversation_id)
        result = await db.execute(
            select(func.count(ConversationMessage.id)).where(
                ConversationMessage.conversation_id == conversation_id,
                ConversationMessage.id > after,
            )
        )
        return result.scalar_one()

    async def should_trigger_episode_summarization(
        self, db: AsyncSession, conversation_id: int
    ) -> bool:
        convo = await self._get_conversation(db, conversation_id)
        cfg = await self.effective_config(db, convo.user_id, convo.project_id)
        count = await self.count_unsummarized(db, conversation_id)
        return count >= cfg.episode_message_threshold

    async def create_episode_summary(
        self, db: AsyncSession, conversation_id: int
    ) -> Optional[ConversationEpisode]:
        """
        Summarize every message after the last episode into a new episode.
        Returns None when there is nothing new. Completion failures propagate
        so the caller's unit of work rolls back and the range is retried later.
        """
        convo = await self._get_conversation(db, conversation_id)
        after = await self._episode_cursor(db, conversation_id)

        result = await db.execute(
            select(ConversationMessage)
            .where(
                ConversationMessage.conversation_id == conversation_id,
                ConversationMessage.id > after,
            )
            .order_by(ConversationMessage.id.asc())
        )
        messages = list(result.scalars().all())

        if not messages:
            logger.info("No new messages to summarize for conversation %s", conversation_id)
            return None

        payload = await self.llm.chat_json(
            EPISODE_PROMPT.format(conversation=_render_transcript(messages))
        )
        draft = EpisodeDraft.model_validate(payload)

        episode = ConversationEpisode(
            conversation_id=conversation_id,
            project_id=convo.project_id,
            user_id=convo.user_id,
            start_message_id=messages[0].id,
            end_message_id=messages[-1].id,
            message_count=len(messages),
            topic=draft.topic[:500],
            summary=draft.summary,
            key_points=draft.key_points,
            decisions_made=draft.decisions,
            emotions_detected=(draft.emotions or "")[:100] or None,
            user_state=(draft.user_state or "")[:50] or None,
        )
        db.add(episode)
        await db.flush()

        logger.info(
            "Created episode %s for conversation %s (messages %d-%d)",
            episode.id, conversation_id, episode.start_message_id, episode.end_message_id,
        )
        return episode

    # ── Knowledge facts ──────────────────────────────────────────────

    async def _find_active_node(
        self,
        db: AsyncSession,
        user_id: str,
        project_id: Optional[int],
        node_type: str,
        normalized: str,
    ) -> Optional[KnowledgeNode]:
        scope = (
            or_(KnowledgeNode.project_id == project_id, KnowledgeNode.project_id.is_(None))
            if project_id is not None
            else KnowledgeNode.project_id.is_(None)
        )
        result = await db.execute(
            select(KnowledgeNode)
            .where(
                KnowledgeNode.user_id == user_id,
                scope,
                KnowledgeNode.node_type == node_type,
                KnowledgeNode.normalized_label == normalized,
                KnowledgeNode.is_active == True,  # noqa: E712
            )
            .order_by(KnowledgeNode.id.asc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    def _reinforce(self, node: KnowledgeNode) -> None:
        node.times_mentioned = (node.times_mentioned or 1) + 1
        node.last_reinforced_at = utcnow()
        node.confidence = round(min(node.confidence + self.config.reinforcement_step, 1.0), 4)

    async def extract_knowledge_facts(
        self, db: AsyncSession, conversation_id: int, episode_id: int
    ) -> list[KnowledgeNode]:
        """Extract facts from an episode's messages. Returns every node created or reinforced."""
        nodes, _, _ = await self._extract(db, conversation_id, episode_id)
        return nodes

    async def _extract(
        self, db: AsyncSession, conversation_id: int, episode_id: int
    ) -> tuple[list[KnowledgeNode], int, int]:
        episode = await db.get(ConversationEpisode, episode_id)
        if episode is None or episode.conversation_id != conversation_id:
            raise NotFoundError("Episode", episode_id)

        cfg = await self.effective_config(db, episode.user_id, episode.project_id)

        result = await db.execute(
            select(ConversationMessage)
            .where(
                ConversationMessage.conversation_id == conversation_id,
                ConversationMessage.id >= episode.start_message_id,
                ConversationMessage.id <= episode.end_message_id,
            )
            .order_by(ConversationMessage.id.asc())
        )
        messages = list(result.scalars().all())
        if not messages:
            return [], 0, 0

        payload = await self.llm.chat_json(
            FACTS_PROMPT.format(conversation=_render_transcript(messages))
        )
        candidates = parse_fact_candidates(payload)

        nodes: list[KnowledgeNode] = []
        created = reinforced = 0
        for fact in candidates:
            if fact.confidence < cfg.fact_confidence_threshold:
                logger.debug("Dropping low-confidence fact (%.2f): %s", fact.confidence, fact.label)
                continue

            normalized = normalize_label(fact.label)
            node = await self._find_active_node(
                db, episode.user_id, episode.project_id, fact.node_type, normalized
            )

            if node:
                self._reinforce(node)
                reinforced += 1
                logger.info("Reinforced existing fact: %s", node.label)
            else:
                node = KnowledgeNode(
                    user_id=episode.user_id,
                    project_id=None if fact.scope == "user" else episode.project_id,
                    node_type=fact.node_type,
                    label=fact.label.strip()[:500],
                    normalized_label=normalized[:500],
                    properties=fact.properties,
                    source_episode_id=episode.id,
                    confidence=fact.confidence,
                    times_mentioned=1,
                    last_reinforced_at=utcnow(),
                )
                db.add(node)
                created += 1
                logger.info("Created new fact: %s", node.label)

            # Flush per fact so a repeated label later in the batch matches this row
            await db.flush()
            if node not in nodes:
                nodes.append(node)

        return nodes, created, reinforced

    async def supersede_fact(
        self, db: AsyncSession, node_id: int, replacement_id: int
    ) -> KnowledgeNode:
        """Deactivate a fact that a newer one contradicts."""
        node = await db.get(KnowledgeNode, node_id)
        if node is None:
            raise NotFoundError("KnowledgeNode", node_id)
        replacement = await db.get(KnowledgeNode, replacement_id)
        if replacement is None:
            raise NotFoundError("KnowledgeNode", replacement_id)

        node.is_active = False
        node.contradicted_by = replacement.id
        await db.flush()
        return node

    # ── Background pass ──────────────────────────────────────────────

    async def consolidate(
        self, db: AsyncSession, conversation_id: int
    ) -> Optional[ConsolidationResult]:
        """
        Trigger check → episode → facts, as one unit of work in the caller's session.
        Any failure propagates; rolling back leaves the cursor where it was.
        """
        if not await self.should_trigger_episode_summarization(db, conversation_id):
            return None

        episode = await self.create_episode_summary(db, conversation_id)
        if episode is None:
            return None

        outcome = ConsolidationResult(episode=episode)
        cfg = await self.effective_config(db, episode.user_id, episode.project_id)
        if cfg.fact_extraction_enabled:
            outcome.nodes, outcome.created, outcome.reinforced = await self._extract(
                db, conversation_id, episode.id
            )
        return outcome

    # ── Retrieval ────────────────────────────────────────────────────

    async def get_memory_context(
        self,
        db: AsyncSession,
        user_id: str,
        project_id: int,
        query_text: Optional[str] = None,
    ) -> MemoryContext:
        """
        Recent episodes plus the strongest active facts.
        query_text is accepted for similarity retrieval later; ranking today is
        confidence then recency.
        """
        cfg = await self.effective_config(db, user_id, project_id)

        episodes_result = await db.execute(
            select(ConversationEpisode)
            .where(
                ConversationEpisode.user_id == user_id,
                ConversationEpisode.project_id == project_id,
            )
            .order_by(ConversationEpisode.created_at.desc(), ConversationEpisode.id.desc())
            .limit(cfg.max_episodes_retrieved)
        )
        facts_result = await db.execute(
            select(KnowledgeNode)
            .where(
                KnowledgeNode.user_id == user_id,
                or_(KnowledgeNode.project_id == project_id, KnowledgeNode.project_id.is_(None)),
                KnowledgeNode.is_active == True,  # noqa: E712
            )
            .order_by(
                KnowledgeNode.confidence.desc(),
                KnowledgeNode.last_reinforced_at.desc(),
                KnowledgeNode.id.desc(),
            )
            .limit(cfg.max_facts_retrieved)
        )
        facts = list(facts_result.scalars().all())

        return MemoryContext(
            recent_episodes=list(episodes_result.scalars().all()),
            relevant_facts=facts,
            blockers=[f for f in facts if f.node_type in BLOCKER_TYPES],
            strengths=[f for f in facts if f.node_type in STRENGTH_TYPES],
        )

    @staticmethod
    def format_memory_context_for_prompt(
        context: MemoryContext, now: Optional[datetime] = None
    ) -> str:
        if context.is_empty:
            return ""

        now = now or utcnow()
        prompt = "=== MEMORY CONTEXT ===\n\n"

        if context.recent_episodes:
            prompt += "Recent Conversation History:\n"
            for idx, episode in enumerate(context.recent_episodes, start=1):
                when = _days_ago_label(episode.created_at, now)
                prompt += f"\n{idx}. {when}: {episode.topic or 'Conversation'}\n"
                prompt += f"   {episode.summary}\n"
                if episode.key_points:
                    prompt += f"   Key points: {', '.join(episode.key_points)}\n"
            prompt += "\n"

        if context.blockers:
            prompt += "Known Challenges/Blockers:\n"
            for node in context.blockers:
                prompt += (
                    f"- {node.label} (confidence: {node.confidence * 100:.0f}%, "
                    f"mentioned {node.times_mentioned}x)\n"
                )
            prompt += "\n"

        if context.strengths:
            prompt += "Known Strengths/Success Patterns:\n"
            for node in context.strengths:
                prompt += (
                    f"- {node.label} (confidence: {node.confidence * 100:.0f}%, "
                    f"mentioned {node.times_mentioned}x)\n"
                )
            prompt += "\n"

        others = [
            f for f in context.relevant_facts
            if f.node_type not in BLOCKER_TYPES and f.node_type not in STRENGTH_TYPES
        ]
        if others:
            prompt += "Other Relevant Facts:\n"
            for node in others:
                prompt += f"- {node.label} ({node.node_type})\n"
            prompt += "\n"

        prompt += "=== END MEMORY CONTEXT ===\n\n"
        return prompt
