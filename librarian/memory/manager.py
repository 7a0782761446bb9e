"""Conversation memory manager for the Personal Librarian.

Handles session creation, turn storage, and conversation history for
multi-turn chat. Sessions live in process memory only; the durable form of a
conversation is its re-embedded exchanges in the vector store.
"""
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Deque, Dict, List, Optional, Any
import structlog

from librarian import config

logger = structlog.get_logger()

ROLES = ("user", "assistant")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class ConversationTurn:
    """One message in a conversation."""

    role: str
    content: str
    timestamp: str = field(default_factory=_now)

    def __post_init__(self):
        if self.role not in ROLES:
            raise ValueError(f"Invalid role: {self.role!r}")

    def to_dict(self) -> Dict[str, Any]:
        return {"role": self.role, "content": self.content, "created_at": self.timestamp}


@dataclass
class ChatSession:
    id: str
    owner_id: str
    title: Optional[str]
    created_at: str
    turns: Deque[ConversationTurn]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "created_at": self.created_at,
            "message_count": len(self.turns),
        }


class ConversationManager:
    """Manages chat sessions and conversation history."""

    def __init__(self, context_window_size: int = None, max_turns: int = None):
        """Initialize the conversation manager.

        Args:
            context_window_size: Number of recent turns returned as history
            max_turns: Turns kept per session before the oldest are dropped
        """
        self.context_window_size = context_window_size or config.HISTORY_TURNS
        self.max_turns = max_turns or config.MAX_SESSION_TURNS
        self._sessions: Dict[str, ChatSession] = {}

    def create_session(self, owner_id: str, title: Optional[str] = None) -> str:
        """Create a new chat session.

        Args:
            owner_id: Owner of the session
            title: Optional title for the session

        Returns:
            The created session ID
        """
        session_id = str(uuid.uuid4())
        self._sessions[session_id] = ChatSession(
            id=session_id,
            owner_id=owner_id,
            title=title,
            created_at=_now(),
            turns=deque(maxlen=self.max_turns),
        )
        logger.info("conversation_session_created", session_id=session_id)
        return session_id

    def get_session(self, owner_id: str, session_id: str) -> Optional[ChatSession]:
        """Get a session, or None if it doesn't exist or belongs to another owner."""
        session = self._sessions.get(session_id)
        if session is None or session.owner_id != owner_id:
            return None
        return session

    def add_turn(self, owner_id: str, session_id: str, role: str, content: str) -> ConversationTurn:
        """Append a turn to a session.

        Raises:
            KeyError: If the session doesn't exist for this owner
        """
        session = self.get_session(owner_id, session_id)
        if session is None:
            raise KeyError(session_id)

        turn = ConversationTurn(role=role, content=content)
        session.turns.append(turn)

        if role == "user" and session.title is None:
            session.title = self._make_title(content)

        logger.debug(
            "conversation_turn_added",
            session_id=session_id,
            role=role,
            turn_count=len(session.turns),
        )
        return turn

    def get_history(
        self, owner_id: str, session_id: str, limit: Optional[int] = None
    ) -> List[ConversationTurn]:
        """Get the most recent turns, oldest first.

        Args:
            owner_id: Owner of the session
            session_id: The session ID to get turns for
            limit: Maximum number of turns (defaults to context_window_size)
        """
        session = self.get_session(owner_id, session_id)
        if session is None:
            return []
        limit = limit or self.context_window_size
        return list(session.turns)[-limit:]

    def get_all_turns(self, owner_id: str, session_id: str) -> List[ConversationTurn]:
        session = self.get_session(owner_id, session_id)
        return list(session.turns) if session else []

    def list_sessions(self, owner_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        """List an owner's sessions, most recent first."""
        sessions = [s for s in self._sessions.values() if s.owner_id == owner_id]
        sessions.sort(key=lambda s: s.created_at, reverse=True)
        return [s.to_dict() for s in sessions[:limit]]

    def delete_session(self, owner_id: str, session_id: str) -> bool:
        """Delete a session and all its turns.

        Returns:
            True if deleted, False if not found
        """
        if self.get_session(owner_id, session_id) is None:
            return False
        del self._sessions[session_id]
        logger.info("conversation_session_deleted", session_id=session_id)
        return True

    @staticmethod
    def _make_title(first_message: str) -> str:
        """Create a concise title from the first user message (max 50 chars)."""
        title = first_message[:50]
        if len(first_message) > 50:
            title = title.rsplit(" ", 1)[0] + "..."
        return title
