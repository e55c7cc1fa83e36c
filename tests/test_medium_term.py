"""Tests for Tier 2: the capacity-bounded project scratchpad."""

from datetime import timedelta

import pytest
from sqlalchemy import select, func

from persona_memory.core.config import MemoryConfig
from persona_memory.core.errors import MemoryValidationError, NotFoundError
from persona_memory.models import Project, ProjectMemory
from persona_memory.models.base import utcnow
from persona_memory.services.medium_term import MediumTermMemoryStore


@pytest.fixture
def store(config):
    return MediumTermMemoryStore(config)


async def _row_count(db, project_id):
    result = await db.execute(
        select(func.count(ProjectMemory.id)).where(ProjectMemory.project_id == project_id)
    )
    return result.scalar_one()


class TestCapacity:
    async def test_thirty_first_entry_evicts_least_important(self, db, project, store):
        await store.set_memory(db, project.id, "fact", "trivia", "Likes green ink", importance=1)
        for i in range(30):
            await store.set_memory(db, project.id, "fact", f"fact-{i}", f"value {i}", importance=5)

        memories = await store.get_memories(db, project.id)

        assert len(memories) == 30
        assert "trivia" not in {m.key for m in memories}

    async def test_never_exceeds_capacity(self, db, project):
        store = MediumTermMemoryStore(MemoryConfig(max_project_memories=5))
        for i in range(12):
            await store.set_memory(db, project.id, "insight", f"k{i}", "v", importance=(i % 10) + 1)
            assert await _row_count(db, project.id) <= 5

        kept = await store.get_memories(db, project.id)
        assert sorted(m.importance for m in kept) == [6, 7, 8, 9, 10]

    async def test_ties_evict_oldest(self, db, project):
        store = MediumTermMemoryStore(MemoryConfig(max_project_memories=2))
        await store.set_memory(db, project.id, "fact", "a", "first")
        await store.set_memory(db, project.id, "fact", "b", "second")
        await store.set_memory(db, project.id, "fact", "c", "third")

        assert [m.key for m in await store.get_memories(db, project.id)] == ["c", "b"]

    async def test_capacity_is_per_project(self, db, project):
        other = Project(user_id="user-2", title="Run a marathon")
        db.add(other)
        await db.flush()

        store = MediumTermMemoryStore(MemoryConfig(max_project_memories=2))
        for i in range(3):
            await store.set_memory(db, project.id, "fact", f"k{i}", "v")
        await store.set_memory(db, other.id, "fact", "solo", "v")

        assert await _row_count(db, project.id) == 2
        assert await _row_count(db, other.id) == 1


class TestUpsert:
    async def test_same_key_updates_in_place(self, db, project, store):
        first_id = await store.set_memory(db, project.id, "decision", "stack", "Use Scrivener", importance=6)
        second_id = await store.set_memory(db, project.id, "decision", "stack", "Use plain markdown", importance=8)

        assert first_id == second_id
        memories = await store.get_memories(db, project.id)
        assert len(memories) == 1
        assert memories[0].value == "Use plain markdown"
        assert memories[0].importance == 8

    async def test_upsert_can_change_type(self, db, project, store):
        await store.set_memory(db, project.id, "blocker", "time", "No time on weekdays")
        await store.set_memory(db, project.id, "insight", "time", "Mornings work best")

        assert await store.get_memories_by_type(db, project.id, "blocker") == []
        assert len(await store.get_memories_by_type(db, project.id, "insight")) == 1


class TestValidation:
    async def test_invalid_type_rejected_before_any_write(self, db, project, store):
        await store.set_memory(db, project.id, "fact", "kept", "v")

        with pytest.raises(MemoryValidationError, match="Invalid memory type"):
            await store.set_memory(db, project.id, "rumor", "nope", "v")

        assert await _row_count(db, project.id) == 1

    @pytest.mark.parametrize("importance", [0, 11, -3, 5.5, True, "7"])
    async def test_invalid_importance_rejected(self, db, project, store, importance):
        with pytest.raises(MemoryValidationError):
            await store.set_memory(db, project.id, "fact", "k", "v", importance=importance)
        assert await _row_count(db, project.id) == 0

    async def test_blank_key_rejected(self, db, project, store):
        with pytest.raises(MemoryValidationError):
            await store.set_memory(db, project.id, "fact", "  ", "v")

    async def test_validation_error_is_a_value_error(self, db, project, store):
        with pytest.raises(ValueError):
            await store.get_memories_by_type(db, project.id, "gossip")


class TestMutations:
    async def test_update_importance(self, db, project, store):
        await store.set_memory(db, project.id, "fact", "k", "v", importance=3)
        entry = await store.update_importance(db, project.id, "k", 9)
        assert entry.importance == 9

    async def test_update_importance_missing_key(self, db, project, store):
        with pytest.raises(NotFoundError):
            await store.update_importance(db, project.id, "missing", 5)

    async def test_update_importance_validates(self, db, project, store):
        await store.set_memory(db, project.id, "fact", "k", "v")
        with pytest.raises(MemoryValidationError):
            await store.update_importance(db, project.id, "k", 42)

    async def test_remove_memory(self, db, project, store):
        await store.set_memory(db, project.id, "fact", "k", "v")
        assert await store.remove_memory(db, project.id, "k") is True
        assert await store.remove_memory(db, project.id, "k") is False

    async def test_resolve_blocker(self, db, project, store):
        await store.add_blocker(db, project.id, "plot-hole", "Act two sags")
        assert await store.resolve_blocker(db, project.id, "plot-hole") is True
        assert await store.get_memories_by_type(db, project.id, "blocker") == []

    async def test_typed_helper_defaults(self, db, project, store):
        await store.add_fact(db, project.id, "f", "v")
        await store.add_decision(db, project.id, "d", "v")
        await store.add_blocker(db, project.id, "b", "v")
        await store.add_preference(db, project.id, "p", "v")
        await store.add_insight(db, project.id, "i", "v")

        by_key = {m.key: m for m in await store.get_memories(db, project.id)}
        assert {k: m.importance for k, m in by_key.items()} == {"f": 7, "d": 8, "b": 9, "p": 6, "i": 7}
        assert {k: m.memory_type for k, m in by_key.items()} == {
            "f": "fact", "d": "decision", "b": "blocker", "p": "preference", "i": "insight",
        }


class TestExpiry:
    async def test_expired_entries_are_hidden(self, db, project, store):
        await store.set_memory(db, project.id, "fact", "old", "v", expires_at=utcnow() - timedelta(hours=1))
        await store.set_memory(db, project.id, "fact", "fresh", "v", expires_at=utcnow() + timedelta(days=1))
        await store.set_memory(db, project.id, "fact", "forever", "v")

        assert {m.key for m in await store.get_memories(db, project.id)} == {"fresh", "forever"}

    async def test_cleanup_expired(self, db, project, store):
        await store.set_memory(db, project.id, "fact", "old", "v", expires_at=utcnow() - timedelta(hours=1))
        await store.set_memory(db, project.id, "fact", "forever", "v")

        assert await store.cleanup_expired(db) == 1
        assert await _row_count(db, project.id) == 1


class TestStatsAndFormatting:
    async def test_stats(self, db, project, store):
        await store.add_fact(db, project.id, "f", "v", importance=4)
        await store.add_blocker(db, project.id, "b", "v", importance=8)

        stats = await store.get_stats(db, project.id)

        assert stats.total_memories == 2
        assert stats.by_type["fact"] == 1
        assert stats.by_type["blocker"] == 1
        assert stats.by_type["insight"] == 0
        assert stats.avg_importance == 6.0

    def test_format_groups_by_category(self):
        entries = [
            ProjectMemory(memory_type="blocker", key="time", value="Weekdays are packed", importance=9),
            ProjectMemory(memory_type="fact", key="genre", value="Literary thriller", importance=7),
        ]

        text = MediumTermMemoryStore.format_for_prompt(entries)

        assert text.startswith("## Project Memory (Important Facts & Decisions)\n\n")
        assert text.index("**Facts:**") < text.index("**Current Blockers:**")
        assert "- genre: Literary thriller\n" in text
        assert "**Decisions Made:**" not in text

    def test_format_empty(self):
        assert MediumTermMemoryStore.format_for_prompt([]) == ""

    def test_estimate_tokens(self):
        entries = [ProjectMemory(memory_type="fact", key="k" * 5, value="v" * 15)]
        # ceil((50 + 5 + 15 + 10) / 4)
        assert MediumTermMemoryStore.estimate_tokens(entries) == 20
        assert MediumTermMemoryStore.estimate_tokens([]) == 0
