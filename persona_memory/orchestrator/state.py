"""
Conversation state management.

Conversations are keyed by (project, user); the newest active one is reused.
Messages are append-only rows; the memory tiers read them by id.
"""

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.errors import NotFoundError
from ..models.base import utcnow
from ..models.conversation import Conversation, ConversationMessage
from ..models.project import Persona, Project

logger = logging.getLogger(__name__)


async def get_project(db: AsyncSession, project_id: int) -> Project:
    project = await db.get(Project, project_id)
    if project is None:
        raise NotFoundError("Project", project_id)
    return project


async def get_active_persona(db: AsyncSession, project_id: int) -> Persona:
    """The project's active persona. Raises NotFoundError when there is none."""
    result = await db.execute(
        select(Persona)
        .where(Persona.project_id == project_id, Persona.is_active == True)  # noqa: E712
        .order_by(Persona.id.desc())
        .limit(1)
    )
    persona = result.scalar_one_or_none()
    if persona is None:
        raise NotFoundError("Active persona for project", project_id)
    return persona


async def get_or_create_conversation(
    db: AsyncSession,
    project_id: int,
    user_id: str,
) -> Conversation:
    """Get existing conversation or create a new one."""
    result = await db.execute(
        select(Conversation)
        .where(
            Conversation.project_id == project_id,
            Conversation.user_id == user_id,
            Conversation.status == "active",
        )
        .order_by(Conversation.updated_at.desc(), Conversation.id.desc())
        .limit(1)
    )
    convo = result.scalar_one_or_none()

    if convo is None:
        convo = Conversation(project_id=project_id, user_id=user_id, status="active")
        db.add(convo)
        await db.flush()
        logger.info("Created conversation: %s (project=%s, user=%s)", convo.id, project_id, user_id)

    return convo


async def add_message(
    db: AsyncSession,
    convo: Conversation,
    sender_type: str,
    content: str,
    sender_id: Optional[str] = None,
    sender_name: Optional[str] = None,
    intent: Optional[str] = None,
    metadata: dict = None,
) -> ConversationMessage:
    """Add a message to the conversation."""
    msg = ConversationMessage(
        conversation_id=convo.id,
        sender_id=sender_id,
        sender_type=sender_type,
        sender_name=sender_name,
        content=content,
        intent=intent,
        metadata_=metadata or {},
    )
    db.add(msg)
    # Touch the conversation so get_or_create picks the most recently used one
    convo.updated_at = utcnow()
    await db.flush()
    return msg
