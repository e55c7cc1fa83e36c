"""
Realtime notifications. Thin wrapper around core.redis.
Provides typed event helpers for chat turns and memory tiers.
"""

from ..core import redis as _redis


# ── Chat events ──────────────────────────────────────────────────────

async def chat_started(conversation_id: int, data: dict = None):
    await _redis.notify_conversation(conversation_id, "chat.started", data)


async def chat_completed(conversation_id: int, data: dict = None):
    await _redis.notify_conversation(conversation_id, "chat.completed", data)


async def chat_error(conversation_id: int, data: dict = None):
    await _redis.notify_conversation(conversation_id, "chat.error", data)


# ── Memory events ────────────────────────────────────────────────────

async def summary_updated(conversation_id: int, cursor: int):
    await _redis.notify_conversation(
        conversation_id, "memory.summary_updated", {"last_summarized_message_id": cursor}
    )


async def episode_created(user_id: str, episode_id: int, conversation_id: int):
    await _redis.notify_user(
        user_id, "memory.episode_created",
        {"episode_id": episode_id, "conversation_id": conversation_id},
    )


async def facts_extracted(user_id: str, episode_id: int, created: int, reinforced: int):
    await _redis.notify_user(
        user_id, "memory.facts_extracted",
        {"episode_id": episode_id, "created": created, "reinforced": reinforced},
    )
