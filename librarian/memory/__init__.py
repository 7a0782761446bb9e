"""Conversation memory: in-process sessions and re-indexed exchanges."""
from librarian.memory.manager import ConversationManager, ConversationTurn
from librarian.memory.writer import MemoryWriter

__all__ = ["ConversationManager", "ConversationTurn", "MemoryWriter"]
