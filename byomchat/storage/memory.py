"""
In-memory conversation store.

One bounded deque per conversation. Conversations are never removed and
live for the lifetime of the process.
"""

from __future__ import annotations

import logging
import threading
from collections import deque

from byomchat.storage.base import ConversationStore, DEFAULT_MAX_MESSAGES
from byomchat.storage.models import Message

logger = logging.getLogger(__name__)


class InMemoryConversationStore(ConversationStore):
    """Process-local store. A single lock makes every operation atomic."""

    def __init__(self, max_messages: int = DEFAULT_MAX_MESSAGES):
        if max_messages < 1:
            raise ValueError(f"max_messages must be positive, got {max_messages}")
        self.max_messages = max_messages
        self._conversations: dict[str, deque[Message]] = {}
        self._lock = threading.Lock()

    def _get_or_create(self, conversation_id: str) -> deque[Message]:
        log = self._conversations.get(conversation_id)
        if log is None:
            log = deque(maxlen=self.max_messages)
            self._conversations[conversation_id] = log
            logger.debug("Created conversation %s", conversation_id)
        return log

    def ensure(self, conversation_id: str) -> list[Message]:
        with self._lock:
            return list(self._get_or_create(conversation_id))

    def append(self, conversation_id: str, message: Message) -> None:
        # deque(maxlen=...) drops from the left on overflow
        with self._lock:
            self._get_or_create(conversation_id).append(message)

    def read(self, conversation_id: str) -> list[Message]:
        with self._lock:
            log = self._conversations.get(conversation_id)
            return list(log) if log is not None else []

    def stats(self) -> dict:
        with self._lock:
            return {
                "conversations": len(self._conversations),
                "messages": sum(len(log) for log in self._conversations.values()),
            }

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} max_messages={self.max_messages}>"
