"""
Medium-term memory (Tier 2): a capacity-bounded tactical scratchpad per project.

Entries are upserted by (project_id, key). After every write that could grow
the set, the lowest-importance entries (oldest first among ties) are evicted
until at most `max_project_memories` live entries remain.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy import select, delete, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import MemoryConfig
from ..core.errors import MemoryValidationError, NotFoundError
from ..models.base import utcnow
from ..models.memory import ProjectMemory, MEMORY_TYPES

logger = logging.getLogger(__name__)

# Heading per category, in render order
_SECTIONS = (
    ("fact", "Facts"),
    ("decision", "Decisions Made"),
    ("blocker", "Current Blockers"),
    ("preference", "User Preferences"),
    ("insight", "Key Insights"),
)


@dataclass
class MemoryStats:
    total_memories: int = 0
    by_type: dict[str, int] = field(default_factory=dict)
    avg_importance: float = 0.0


def _validate_type(memory_type: str) -> None:
    if memory_type not in MEMORY_TYPES:
        raise MemoryValidationError(
            f"Invalid memory type: {memory_type}. Must be one of: {', '.join(MEMORY_TYPES)}"
        )


def _validate_importance(importance) -> None:
    if isinstance(importance, bool) or not isinstance(importance, int):
        raise MemoryValidationError("Importance must be an integer between 1 and 10")
    if importance < 1 or importance > 10:
        raise MemoryValidationError("Importance must be between 1 and 10")


class MediumTermMemoryStore:
    def __init__(self, config: MemoryConfig):
        self.config = config

    @staticmethod
    def _live(project_id: int):
        now = utcnow()
        return (
            ProjectMemory.project_id == project_id,
            or_(ProjectMemory.expires_at.is_(None), ProjectMemory.expires_at > now),
        )

    @staticmethod
    def _ranked(stmt):
        # id breaks ties between rows created in the same instant
        return stmt.order_by(
            ProjectMemory.importance.desc(),
            ProjectMemory.created_at.desc(),
            ProjectMemory.id.desc(),
        )

    async def get_memories(self, db: AsyncSession, project_id: int) -> list[ProjectMemory]:
        """Live entries, most important first, newest first among ties."""
        result = await db.execute(
            self._ranked(select(ProjectMemory).where(*self._live(project_id)))
        )
        return list(result.scalars().all())

    async def get_memories_by_type(
        self, db: AsyncSession, project_id: int, memory_type: str
    ) -> list[ProjectMemory]:
        _validate_type(memory_type)
        result = await db.execute(
            self._ranked(
                select(ProjectMemory).where(
                    *self._live(project_id),
                    ProjectMemory.memory_type == memory_type,
                )
            )
        )
        return list(result.scalars().all())

    async def set_memory(
        self,
        db: AsyncSession,
        project_id: int,
        memory_type: str,
        key: str,
        value: str,
        importance: int = 5,
        expires_at: Optional[datetime] = None,
    ) -> int:
        """Upsert a memory by project + key, then prune. Returns the entry id."""
        _validate_type(memory_type)
        _validate_importance(importance)
        if not key or not key.strip():
            raise MemoryValidationError("Memory key must be a non-empty string")

        result = await db.execute(
            select(ProjectMemory).where(
                ProjectMemory.project_id == project_id,
                ProjectMemory.key == key,
            )
        )
        entry = result.scalar_one_or_none()

        if entry:
            entry.memory_type = memory_type
            entry.value = value
            entry.importance = importance
            entry.expires_at = expires_at
            entry.updated_at = utcnow()
        else:
            entry = ProjectMemory(
                project_id=project_id,
                memory_type=memory_type,
                key=key,
                value=value,
                importance=importance,
                expires_at=expires_at,
            )
            db.add(entry)

        await db.flush()
        logger.debug("Saved memory: %s/%s = %s", project_id, key, value[:50])

        entry_id = entry.id
        await self.prune_if_needed(db, project_id)
        return entry_id

    async def remove_memory(self, db: AsyncSession, project_id: int, key: str) -> bool:
        result = await db.execute(
            delete(ProjectMemory).where(
                ProjectMemory.project_id == project_id,
                ProjectMemory.key == key,
            )
        )
        await db.flush()
        return result.rowcount > 0

    async def update_importance(
        self, db: AsyncSession, project_id: int, key: str, new_importance: int
    ) -> ProjectMemory:
        _validate_importance(new_importance)

        result = await db.execute(
            select(ProjectMemory).where(
                ProjectMemory.project_id == project_id,
                ProjectMemory.key == key,
            )
        )
        entry = result.scalar_one_or_none()
        if entry is None:
            raise NotFoundError("Memory", key)

        entry.importance = new_importance
        entry.updated_at = utcnow()
        await db.flush()
        return entry

    async def prune_if_needed(self, db: AsyncSession, project_id: int) -> int:
        """Drop the tail of the ranked live set beyond capacity. Returns how many went."""
        memories = await self.get_memories(db, project_id)
        excess = len(memories) - self.config.max_project_memories
        if excess <= 0:
            return 0

        for m in memories[-excess:]:
            await db.delete(m)
        await db.flush()

        logger.info("Pruned %d low-importance memories from project %s", excess, project_id)
        return excess

    async def cleanup_expired(self, db: AsyncSession) -> int:
        """Global sweep of expired entries, regardless of project capacity."""
        result = await db.execute(
            delete(ProjectMemory).where(
                ProjectMemory.expires_at.is_not(None),
                ProjectMemory.expires_at < utcnow(),
            )
            .execution_options(synchronize_session="fetch")
        )
        await db.flush()
        if result.rowcount:
            logger.info("Removed %d expired project memories", result.rowcount)
        return result.rowcount

    async def get_stats(self, db: AsyncSession, project_id: int) -> MemoryStats:
        result = await db.execute(
            select(
                ProjectMemory.memory_type,
                func.count(ProjectMemory.id),
                func.sum(ProjectMemory.importance),
            )
            .where(*self._live(project_id))
            .group_by(ProjectMemory.memory_type)
        )
        stats = MemoryStats(by_type={t: 0 for t in MEMORY_TYPES})
        importance_sum = 0
        for memory_type, count, total_importance in result.all():
            stats.by_type[memory_type] = count
            stats.total_memories += count
            importance_sum += total_importance or 0

        if stats.total_memories:
            stats.avg_importance = round(importance_sum / stats.total_memories, 2)
        return stats

    # ── Typed helpers ────────────────────────────────────────────────

    async def add_fact(self, db, project_id, key, value, importance=7):
        return await self.set_memory(db, project_id, "fact", key, value, importance)

    async def add_decision(self, db, project_id, key, value, importance=8):
        return await self.set_memory(db, project_id, "decision", key, value, importance)

    async def add_blocker(self, db, project_id, key, value, importance=9):
        return await self.set_memory(db, project_id, "blocker", key, value, importance)

    async def add_preference(self, db, project_id, key, value, importance=6):
        return await self.set_memory(db, project_id, "preference", key, value, importance)

    async def add_insight(self, db, project_id, key, value, importance=7):
        return await self.set_memory(db, project_id, "insight", key, value, importance)

    async def resolve_blocker(self, db, project_id, key):
        return await self.remove_memory(db, project_id, key)

    # ── Rendering ────────────────────────────────────────────────────

    @staticmethod
    def format_for_prompt(entries: list[ProjectMemory]) -> str:
        """Group entries under fixed category headings. Empty categories are skipped."""
        if not entries:
            return ""

        by_type: dict[str, list[ProjectMemory]] = {t: [] for t in MEMORY_TYPES}
        for m in entries:
            if m.memory_type in by_type:
                by_type[m.memory_type].append(m)

        prompt = "## Project Memory (Important Facts & Decisions)\n\n"
        for memory_type, heading in _SECTIONS:
            items = by_type[memory_type]
            if not items:
                continue
            prompt += f"**{heading}:**\n"
            for m in items:
                prompt += f"- {m.key}: {m.value}\n"
            prompt += "\n"

        return prompt

    @staticmethod
    def estimate_tokens(entries: list[ProjectMemory]) -> int:
        """Monitoring only. 50 chars of header, 10 per entry for formatting, 4 chars per token."""
        if not entries:
            return 0
        chars = 50
        for m in entries:
            chars += len(m.key) + len(m.value) + 10
        return math.ceil(chars / 4)
