"""
Conversation store factory.

Usage:
    from byomchat.storage import make_store
    store = make_store("memory", max_messages=1000)

Adding a new store:
    1. Create byomchat/storage/<name>.py implementing ConversationStore.
    2. Add an entry to _REGISTRY below.
    3. Set  store.kind: <name>  in config.yaml.
"""

from .base import ConversationStore
from .models import Message, MessageMeta

_REGISTRY: dict[str, type[ConversationStore]] = {}


def _register():
    """Lazy-import stores to avoid import cycles at package import time."""
    global _REGISTRY
    if _REGISTRY:
        return
    from .memory import InMemoryConversationStore
    _REGISTRY["memory"] = InMemoryConversationStore


def make_store(kind: str, **kwargs) -> ConversationStore:
    """
    Instantiate a conversation store by name.

    Args:
        kind:     Registry key (e.g. "memory").
        **kwargs: Passed directly to the store constructor.

    Raises:
        ValueError: If the store kind is not registered.
    """
    _register()
    cls = _REGISTRY.get(kind)
    if cls is None:
        available = ", ".join(_REGISTRY.keys())
        raise ValueError(
            f"Unknown conversation store: '{kind}'. "
            f"Available: {available}"
        )
    return cls(**kwargs)


__all__ = ["ConversationStore", "Message", "MessageMeta", "make_store"]
