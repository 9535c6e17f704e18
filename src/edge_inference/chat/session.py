"""
Chat session state.

A ChatSession owns one system prompt, its retrieval and generation settings,
and an append-only history of user/assistant messages. Sessions are created
and closed by the RagOrchestrator; the per-session turn lock lives here so
that concurrent turns on the same session run in submission order.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from ..exceptions import SessionClosedError
from ..settings import ChatSessionConfig, GenerationParams, RetrievalConfig
from ..storage.records import utcnow


class ChatRole(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class SessionState(str, Enum):
    ACTIVE = "active"
    CLOSED = "closed"


@dataclass(frozen=True)
class ChatMessage:
    """
    One message of a conversation.

    Attributes:
        role: system, user or assistant.
        content: Message text.
        timestamp: UTC creation time.
        metadata: Free-form annotations (retrieved ids, serving adapter...).
    """

    role: ChatRole
    content: str
    timestamp: datetime = field(default_factory=utcnow)
    metadata: Dict[str, Any] = field(default_factory=dict, hash=False)

    @classmethod
    def system(cls, content: str) -> "ChatMessage":
        return cls(role=ChatRole.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str, **metadata: Any) -> "ChatMessage":
        return cls(role=ChatRole.USER, content=content, metadata=metadata)

    @classmethod
    def assistant(cls, content: str, **metadata: Any) -> "ChatMessage":
        return cls(role=ChatRole.ASSISTANT, content=content, metadata=metadata)

    def to_dict(self) -> Dict[str, str]:
        """OpenAI chat message format."""
        return {"role": ChatRole(self.role).value, "content": self.content}


class ChatSession:
    """
    A conversation with its configuration and history.

    History only grows, two messages per committed turn. Use
    RagOrchestrator.create_session() rather than constructing directly.
    """

    def __init__(self, config: Optional[ChatSessionConfig] = None, session_id: Optional[str] = None):
        config = config or ChatSessionConfig()
        self.id = session_id or uuid.uuid4().hex
        self.system_prompt = config.system_prompt
        self.retrieval: Optional[RetrievalConfig] = config.retrieval
        self.generation: GenerationParams = config.generation
        self.max_history_messages = config.max_history_messages
        self.state = SessionState.ACTIVE
        self.created_at = utcnow()
        self.updated_at = self.created_at
        self._history: List[ChatMessage] = []
        self._turn_lock = asyncio.Lock()

    @property
    def history(self) -> Tuple[ChatMessage, ...]:
        return tuple(self._history)

    @property
    def is_active(self) -> bool:
        return self.state is SessionState.ACTIVE

    @property
    def turn_lock(self) -> asyncio.Lock:
        """FIFO lock held for the whole duration of a turn."""
        return self._turn_lock

    def ensure_active(self) -> None:
        if not self.is_active:
            raise SessionClosedError(self.id)

    def recent_history(self) -> List[ChatMessage]:
        """History as sent to the model, limited to max_history_messages."""
        if self.max_history_messages is None:
            return list(self._history)
        return self._history[-self.max_history_messages:]

    def commit_turn(self, user: ChatMessage, assistant: ChatMessage) -> None:
        """Append one completed turn."""
        self.ensure_active()
        self._history.extend((user, assistant))
        self.updated_at = utcnow()

    def close(self) -> None:
        self.state = SessionState.CLOSED
        self.updated_at = utcnow()

    def __repr__(self) -> str:
        return (
            f"ChatSession(id={self.id!r}, state={self.state.value}, "
            f"messages={len(self._history)})"
        )


__all__ = ["ChatMessage", "ChatRole", "ChatSession", "SessionState"]
