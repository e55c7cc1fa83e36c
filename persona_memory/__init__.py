"""
Tiered conversational memory for persona chat.
"""

from .factory import MemorySystem, create_memory_system

__all__ = ["MemorySystem", "create_memory_system"]
