"""
Data models for the conversation store.
These define the shape of messages flowing through the gateway and the
wire form (camelCase keys) clients see in history/message/assistant events.
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace

ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
ROLES = (ROLE_USER, ROLE_ASSISTANT)

# Author value for every assistant-role message.
ASSISTANT_AUTHOR = "assistant"


@dataclass
class MessageMeta:
    """Optional per-message metadata."""
    model_id: str | None = None
    sent_to_ai: bool | None = None

    def to_dict(self) -> dict:
        out: dict = {}
        if self.model_id is not None:
            out["modelId"] = self.model_id
        if self.sent_to_ai is not None:
            out["sentToAI"] = self.sent_to_ai
        return out

    @classmethod
    def from_dict(cls, data) -> MessageMeta | None:
        """Lenient parse: unknown keys and wrong-typed values are ignored."""
        if not isinstance(data, dict):
            return None
        model_id = data.get("modelId")
        sent = data.get("sentToAI")
        return cls(
            model_id=model_id if isinstance(model_id, str) else None,
            sent_to_ai=sent if isinstance(sent, bool) else None,
        )


@dataclass
class Message:
    """A single message in a conversation."""
    author: str
    role: str                # "user" | "assistant"
    text: str
    ts: int | float          # sender-supplied, never re-validated
    meta: MessageMeta | None = None
    ephemeral: bool = False

    def to_dict(self) -> dict:
        """Wire form. Optional fields are omitted when unset."""
        out: dict = {
            "author": self.author,
            "role": self.role,
            "text": self.text,
            "ts": self.ts,
        }
        if self.meta is not None:
            out["meta"] = self.meta.to_dict()
        if self.ephemeral:
            out["ephemeral"] = True
        return out

    @classmethod
    def from_dict(cls, data: dict) -> Message:
        return cls(
            author=data.get("author", ""),
            role=data.get("role", ROLE_USER),
            text=data.get("text", ""),
            ts=data.get("ts", 0),
            meta=MessageMeta.from_dict(data.get("meta")),
            ephemeral=bool(data.get("ephemeral", False)),
        )

    def published(self) -> Message:
        """Copy of this message with the ephemeral flag cleared."""
        return replace(self, ephemeral=False)
