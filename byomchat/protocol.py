"""
Event protocol between chat clients and the gateway.

Every WebSocket frame is one JSON object:

    {"event": "<name>", "data": <payload>}

Inbound payloads are parsed into small tagged records at the boundary.
parse() returns None for anything malformed; the gateway drops those
without replying (fire-and-forget, there is no ack channel).
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass

from byomchat.storage.models import (
    ASSISTANT_AUTHOR,
    ROLE_ASSISTANT,
    ROLE_USER,
    Message,
    MessageMeta,
)

EVENT_JOIN = "join"
EVENT_HISTORY = "history"
EVENT_MESSAGE = "message"
EVENT_ASSISTANT = "assistant"
EVENT_ERROR = "error"

CLIENT_EVENTS = (EVENT_JOIN, EVENT_MESSAGE, EVENT_ASSISTANT)
SERVER_EVENTS = (EVENT_HISTORY, EVENT_MESSAGE, EVENT_ASSISTANT, EVENT_ERROR)

PARTICIPANTS_FULL = "Conversation already has two participants"
MAX_PARTICIPANTS = 2


def _nonempty_str(value) -> bool:
    return isinstance(value, str) and value != ""


def _is_number(value) -> bool:
    # bool is an int subclass but never a valid timestamp; NaN and Infinity
    # have no JSON encoding
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        return False
    return isinstance(value, int) or math.isfinite(value)


@dataclass(frozen=True)
class JoinRequest:
    conversation_id: str
    user_id: str

    @classmethod
    def parse(cls, data) -> JoinRequest | None:
        if not isinstance(data, dict):
            return None
        cid = data.get("conversationId")
        uid = data.get("userId")
        if not (_nonempty_str(cid) and _nonempty_str(uid)):
            return None
        return cls(conversation_id=cid, user_id=uid)

    def to_dict(self) -> dict:
        return {"conversationId": self.conversation_id, "userId": self.user_id}


@dataclass(frozen=True)
class MessageSubmit:
    """A user message submitted for publication."""
    conversation_id: str
    author: str
    text: str
    ts: int | float
    meta: MessageMeta | None = None

    @classmethod
    def parse(cls, data) -> MessageSubmit | None:
        if not isinstance(data, dict):
            return None
        cid = data.get("conversationId")
        author = data.get("author")
        text = data.get("text")
        ts = data.get("ts")
        if not (_nonempty_str(cid) and _nonempty_str(author)):
            return None
        if not isinstance(text, str) or not _is_number(ts):
            return None
        return cls(cid, author, text, ts, MessageMeta.from_dict(data.get("meta")))

    def to_message(self) -> Message:
        return Message(author=self.author, role=ROLE_USER, text=self.text, ts=self.ts, meta=self.meta)

    def to_dict(self) -> dict:
        out = {
            "conversationId": self.conversation_id,
            "author": self.author,
            "text": self.text,
            "ts": self.ts,
        }
        if self.meta is not None:
            out["meta"] = self.meta.to_dict()
        return out


@dataclass(frozen=True)
class AssistantSubmit:
    """An assistant reply a participant chose to publish to the room."""
    conversation_id: str
    text: str
    ts: int | float
    meta: MessageMeta | None = None

    @classmethod
    def parse(cls, data) -> AssistantSubmit | None:
        if not isinstance(data, dict):
            return None
        cid = data.get("conversationId")
        text = data.get("text")
        ts = data.get("ts")
        if not _nonempty_str(cid) or not isinstance(text, str) or not _is_number(ts):
            return None
        return cls(cid, text, ts, MessageMeta.from_dict(data.get("meta")))

    def to_message(self) -> Message:
        return Message(
            author=ASSISTANT_AUTHOR,
            role=ROLE_ASSISTANT,
            text=self.text,
            ts=self.ts,
            meta=self.meta,
        )

    def to_dict(self) -> dict:
        out = {
            "conversationId": self.conversation_id,
            "author": ASSISTANT_AUTHOR,
            "text": self.text,
            "ts": self.ts,
        }
        if self.meta is not None:
            out["meta"] = self.meta.to_dict()
        return out


def encode(event: str, data) -> str:
    """Serialize one frame."""
    return json.dumps({"event": event, "data": data}, ensure_ascii=False, allow_nan=False)


def decode(frame: str | bytes) -> tuple[str, object] | None:
    """Parse one frame into (event, data). Returns None for garbage."""
    try:
        obj = json.loads(frame)
    except (ValueError, TypeError):
        return None
    if not isinstance(obj, dict):
        return None
    event = obj.get("event")
    if not _nonempty_str(event):
        return None
    return event, obj.get("data")


def user_participants(history: list[Message]) -> set[str]:
    """Distinct authors of user-role messages."""
    return {m.author for m in history if m.role == ROLE_USER}


def admits(history: list[Message], user_id: str) -> bool:
    """
    Two-participant admission rule: a newcomer may join only while fewer
    than two distinct users have spoken. Existing participants always may.
    """
    participants = user_participants(history)
    return user_id in participants or len(participants) < MAX_PARTICIPANTS
