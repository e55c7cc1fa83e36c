"""Tests for memory system wiring and lifecycle hooks."""

from sqlalchemy import inspect

from persona_memory.core.config import MemoryConfig
from persona_memory.factory import create_memory_system
from persona_memory.services import llm

from conftest import add_turns, fact


class TestMemorySystem:
    async def test_tiers_share_config_and_client(self, fake_llm, session_factory):
        config = MemoryConfig(max_project_memories=5)
        system = create_memory_system(config=config, llm_client=fake_llm, session_factory=session_factory)

        assert system.medium_term.config is config
        assert system.episodic.llm is fake_llm
        assert system.short_term.llm is fake_llm

    async def test_defaults_to_module_client(self, session_factory):
        system = create_memory_system(session_factory=session_factory)
        assert system.llm is llm

    async def test_startup_creates_tables(self, fake_llm, engine, session_factory):
        system = create_memory_system(llm_client=fake_llm, session_factory=session_factory)

        await system.startup()

        async with engine.connect() as conn:
            tables = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())
        assert {"conversation_episodes", "knowledge_nodes", "project_memory"} <= set(tables)
        await system.shutdown()

    async def test_run_consolidation_below_threshold(self, db, conversation, fake_llm, session_factory):
        system = create_memory_system(llm_client=fake_llm, session_factory=session_factory)
        await add_turns(db, conversation, 2)
        await db.commit()

        assert await system.run_consolidation(conversation.id) is None
        assert fake_llm.calls_to("chat_json") == []

    async def test_run_consolidation_builds_episode(self, db, conversation, fake_llm, session_factory):
        system = create_memory_system(
            config=MemoryConfig(episode_message_threshold=4),
            llm_client=fake_llm,
            session_factory=session_factory,
        )
        fake_llm.facts.append({"facts": [fact("goal", "Finish chapter three")]})
        await add_turns(db, conversation, 4)
        await db.commit()

        outcome = await system.run_consolidation(conversation.id)

        assert outcome.episode.message_count == 4
        assert outcome.created == 1
        assert [n.label for n in outcome.nodes] == ["Finish chapter three"]
