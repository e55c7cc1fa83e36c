"""
Per-turn conversation handling.

Receive message → read tiers → assemble prompt → reply → persist → maybe consolidate.

Tier 1 and Tier 2 are read inline. The Tier 1 summary update runs inline too,
after the read, so this turn sees the pre-update summary. Tier 3 consolidation
is handed to the background runner once the turn has committed.
"""

import logging
import time
from typing import TYPE_CHECKING

from sqlalchemy.ext.asyncio import AsyncSession

from ..core.flags import get_flags
from ..services import realtime
from .state import (
    get_project,
    get_active_persona,
    get_or_create_conversation,
    add_message,
)

if TYPE_CHECKING:
    from ..factory import MemorySystem

logger = logging.getLogger(__name__)

FALLBACK_REPLY = "I apologize, but I'm having trouble responding right now. Please try again."


async def handle_message(
    db: AsyncSession,
    memory: "MemorySystem",
    project_id: int,
    user_id: str,
    message: str,
) -> dict:
    """
    Main entry point for one user turn.
    Upstream completion failures never raise; they produce a persisted fallback reply.
    """
    start = time.monotonic()
    flags = get_flags()

    # 1. Framing collaborators
    project = await get_project(db, project_id)
    persona = await get_active_persona(db, project_id)

    # 2. Conversation + user message
    convo = await get_or_create_conversation(db, project_id, user_id)
    user_msg = await add_message(
        db, convo, sender_type="user", content=message, sender_id=user_id,
    )
    await realtime.chat_started(convo.id, {"message": message[:100]})

    # 3. Tier 1: recent messages + rolling summary. The new message goes last on its own.
    window = memory.config.recent_message_limit
    short_term_context = await memory.short_term.get_context(db, convo.id, limit=window + 1)
    history = [m for m in short_term_context.recent_messages if m.id != user_msg.id]
    short_term_context.recent_messages = history[-window:]
    short_term_context.token_estimate = memory.short_term.estimate_tokens(
        short_term_context.recent_messages, short_term_context.summary
    )

    # 4. Tier 2: project scratchpad
    medium_term_entries = await memory.medium_term.get_memories(db, project_id)

    # 5. Tier 3: episodes + knowledge facts
    long_term_text = ""
    if flags.enable_long_term_memory:
        memory_context = await memory.episodic.get_memory_context(
            db, user_id, project_id, query_text=message,
        )
        long_term_text = memory.episodic.format_memory_context_for_prompt(memory_context)

    # 6. Fold aged-out messages into the summary for the next turn
    await memory.short_term.update_summary_if_needed(db, convo.id)

    # 7. Assemble + generate
    messages = memory.assembler.build_messages(
        persona, project, short_term_context, medium_term_entries, long_term_text, message,
    )

    error = None
    try:
        reply = (await memory.llm.chat_text(messages)).strip()
        if not reply:
            raise ValueError("Empty completion")
        intent = "response"
        metadata = {}
    except Exception as e:
        logger.exception("Reply generation failed for conversation %s: %s", convo.id, e)
        await realtime.chat_error(convo.id, {"error": str(e)})
        error = str(e)
        reply = FALLBACK_REPLY
        intent = "error"
        metadata = {"error": error}

    # 8. Persist the reply
    persona_msg = await add_message(
        db, convo,
        sender_type="persona",
        content=reply,
        sender_id=str(persona.id),
        sender_name=persona.display_name,
        intent=intent,
        metadata=metadata,
    )

    should_consolidate = (
        flags.enable_long_term_memory
        and await memory.episodic.should_trigger_episode_summarization(db, convo.id)
    )

    # Background work runs in its own session and must see this turn's rows
    await db.commit()

    if should_consolidate:
        memory.schedule_consolidation(convo.id)

    elapsed = time.monotonic() - start
    await realtime.chat_completed(convo.id, {
        "intent": intent,
        "elapsed_ms": int(elapsed * 1000),
    })

    return {
        "content": reply,
        "intent": intent,
        "conversation_id": convo.id,
        "message_id": persona_msg.id,
        "persona": persona.display_name,
        "consolidation_scheduled": bool(should_consolidate),
        "error": error,
    }
