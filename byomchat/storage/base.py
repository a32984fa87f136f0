"""
ConversationStore: abstract base for conversation log storage.

All stores must implement three primitives:
  ensure  : get-or-create the log for a conversation
  append  : add a message, evicting the oldest past the retention cap
  read    : the retained log in insertion order

The gateway only ever talks to this interface, so a persistent store can be
swapped in without touching the relay logic.
"""

from abc import ABC, abstractmethod

from byomchat.storage.models import Message

DEFAULT_MAX_MESSAGES = 1000


class ConversationStore(ABC):
    """Abstract conversation store."""

    @abstractmethod
    def ensure(self, conversation_id: str) -> list[Message]:
        """Return the log for conversation_id, creating an empty one if absent."""
        ...

    @abstractmethod
    def append(self, conversation_id: str, message: Message) -> None:
        """Append message, keeping only the most recent entries."""
        ...

    @abstractmethod
    def read(self, conversation_id: str) -> list[Message]:
        """Return the retained log in insertion order ([] if unknown)."""
        ...

    @abstractmethod
    def stats(self) -> dict:
        """Return {"conversations": int, "messages": int}."""
        ...
