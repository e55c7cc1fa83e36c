"""Tests for conversation and message bookkeeping."""

import pytest

from persona_memory.core.errors import NotFoundError
from persona_memory.orchestrator import state



class TestConversations:
    async def test_active_conversation_is_reused(self, db, project, conversation):
        again = await state.get_or_create_conversation(db, project.id, "user-1")
        assert again.id == conversation.id

    async def test_other_user_gets_own_conversation(self, db, project, conversation):
        other = await state.get_or_create_conversation(db, project.id, "user-2")
        assert other.id != conversation.id

    async def test_closed_conversation_is_not_reused(self, db, project, conversation):
        conversation.status = "closed"
        await db.flush()

        fresh = await state.get_or_create_conversation(db, project.id, "user-1")
        assert fresh.id != conversation.id
        assert fresh.status == "active"


class TestMessages:
    async def test_add_message_keeps_metadata(self, db, conversation):
        msg = await state.add_message(
            db, conversation, sender_type="persona", content="Sorry", intent="error",
            metadata={"error": "timeout"},
        )
        assert msg.id is not None
        assert msg.metadata_ == {"error": "timeout"}


class TestLookups:
    async def test_active_persona(self, db, project):
        persona = await state.get_active_persona(db, project.id)
        assert persona.display_name == "Coach Ada"

    async def test_inactive_persona_is_ignored(self, db, project):
        persona = await state.get_active_persona(db, project.id)
        persona.is_active = False
        await db.flush()

        with pytest.raises(NotFoundError):
            await state.get_active_persona(db, project.id)

    async def test_missing_project(self, db):
        with pytest.raises(NotFoundError):
            await state.get_project(db, 999)
