"""
All database models. Imported here so Base.metadata sees them for create_all().
"""

from .base import TimestampedBase
from .project import Project, Persona
from .conversation import Conversation, ConversationMessage
from .memory import ProjectMemory, MEMORY_TYPES
from .episodic import ConversationEpisode, KnowledgeNode, MemoryConfigOverride, NODE_TYPES

__all__ = [
    "TimestampedBase",
    "Project", "Persona",
    "Conversation", "ConversationMessage",
    "ProjectMemory", "MEMORY_TYPES",
    "ConversationEpisode", "KnowledgeNode", "MemoryConfigOverride", "NODE_TYPES",
]
