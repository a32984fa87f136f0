"""
Client-side view of a conversation.

ChatStore keeps one local log per conversation. Two write paths meet there:

  1. Optimistic sends. send() appends the message at once and marks it
     pending. When the server's broadcast of the same message comes back
     (same role, author, ts and text) it confirms the pending entry in place
     instead of adding a second copy.
  2. Ephemeral AI turns. The widget's prompt and the model's reply are
     local-only until the user publishes them; publish() flips the entry to
     non-ephemeral in place and emits exactly one event for it.

Ephemeral entries never touch the transport. Published entries are never
retracted.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from typing import AsyncIterator, Protocol

from byomchat import protocol
from byomchat.client.auth import AuthStore
from byomchat.client.observable import Observable
from byomchat.protocol import AssistantSubmit, JoinRequest, MessageSubmit
from byomchat.storage.models import (
    ASSISTANT_AUTHOR,
    ROLE_ASSISTANT,
    ROLE_USER,
    Message,
    MessageMeta,
)

logger = logging.getLogger(__name__)

AI_CONTEXT_LIMIT = 50


class Transport(Protocol):
    async def send(self, event: str, data) -> None: ...

    async def close(self) -> None: ...

    def __aiter__(self) -> AsyncIterator[tuple[str, object]]: ...


def now_ms() -> int:
    return int(time.time() * 1000)


def _echo_key(m: Message) -> tuple:
    return (m.role, m.author, m.ts, m.text)


class ChatStore(Observable):
    """Per-conversation local logs with pending-send tracking."""

    def __init__(self):
        super().__init__()
        self._logs: dict[str, list[Message]] = {}
        self._pending: dict[str, list[Message]] = {}

    def snapshot(self) -> dict[str, list[Message]]:
        return {cid: list(log) for cid, log in self._logs.items()}

    def get(self, conversation_id: str) -> list[Message]:
        return list(self._logs.get(conversation_id, []))

    def pending(self, conversation_id: str) -> list[Message]:
        return list(self._pending.get(conversation_id, []))

    def set(self, conversation_id: str, messages: list[Message]):
        """Replace the local log (e.g. with server history). Drops pending state."""
        self._logs[conversation_id] = list(messages)
        self._pending.pop(conversation_id, None)
        self._emit()

    def clear(self, conversation_id: str):
        self.set(conversation_id, [])

    def add(self, conversation_id: str, message: Message, pending: bool = False):
        self._logs.setdefault(conversation_id, []).append(message)
        if pending:
            self._pending.setdefault(conversation_id, []).append(message)
        self._emit()

    def replace(self, conversation_id: str, old: Message, new: Message, pending: bool = False) -> bool:
        """Swap one entry in place (matched by identity). False if not found."""
        log = self._logs.get(conversation_id, [])
        for i, m in enumerate(log):
            if m is old:
                log[i] = new
                if pending:
                    self._pending.setdefault(conversation_id, []).append(new)
                self._emit()
                return True
        return False

    def reconcile(self, conversation_id: str, incoming: Message) -> bool:
        """
        Apply a broadcast. Confirms the oldest matching pending entry in
        place and returns True; otherwise appends and returns False.
        """
        pending = self._pending.get(conversation_id, [])
        key = _echo_key(incoming)
        for entry in pending:
            if _echo_key(entry) == key:
                pending.remove(entry)
                log = self._logs[conversation_id]
                for i, m in enumerate(log):
                    if m is entry:
                        log[i] = incoming
                        break
                self._emit()
                return True
        self.add(conversation_id, incoming)
        return False


@dataclass(frozen=True)
class ChatSessionState:
    joined: bool = False
    admission_error: str | None = None


class ChatSession(Observable):
    """One user's membership in one conversation, over a Transport."""

    def __init__(self, user_id: str, conversation_id: str, transport: Transport, store: ChatStore | None = None):
        super().__init__()
        self.user_id = user_id
        self.conversation_id = conversation_id
        self.transport = transport
        self.store = store or ChatStore()
        self._state = ChatSessionState()

    def snapshot(self) -> ChatSessionState:
        return self._state

    @property
    def joined(self) -> bool:
        return self._state.joined

    @property
    def messages(self) -> list[Message]:
        return self.store.get(self.conversation_id)

    def _set(self, **changes):
        self._state = replace(self._state, **changes)
        self._emit()

    # -- outbound ------------------------------------------------------------

    async def join(self):
        self._set(admission_error=None)
        await self.transport.send(
            protocol.EVENT_JOIN,
            JoinRequest(self.conversation_id, self.user_id).to_dict(),
        )

    async def send(self, text: str, ts: int | None = None) -> Message:
        """Optimistically append a user message and submit it."""
        msg = Message(author=self.user_id, role=ROLE_USER, text=text, ts=ts if ts is not None else now_ms())
        self.store.add(self.conversation_id, msg, pending=True)
        await self.transport.send(
            protocol.EVENT_MESSAGE,
            MessageSubmit(self.conversation_id, msg.author, msg.text, msg.ts).to_dict(),
        )
        return msg

    def add_ephemeral_prompt(self, text: str) -> Message:
        msg = Message(
            author=self.user_id,
            role=ROLE_USER,
            text=text,
            ts=now_ms(),
            meta=MessageMeta(sent_to_ai=True),
            ephemeral=True,
        )
        self.store.add(self.conversation_id, msg)
        return msg

    def add_ephemeral_reply(self, text: str, meta: MessageMeta | None = None) -> Message:
        msg = Message(
            author=ASSISTANT_AUTHOR,
            role=ROLE_ASSISTANT,
            text=text,
            ts=now_ms(),
            meta=meta,
            ephemeral=True,
        )
        self.store.add(self.conversation_id, msg)
        return msg

    async def publish(self, message: Message) -> bool:
        """
        Promote a local ephemeral message into the shared conversation.
        Returns False (and sends nothing) for anything already published.
        """
        if not message.ephemeral:
            return False
        published = message.published()
        if not self.store.replace(self.conversation_id, message, published, pending=True):
            logger.debug("publish: message not in local log for %s", self.conversation_id)
            return False

        if published.role == ROLE_ASSISTANT:
            sub = AssistantSubmit(self.conversation_id, published.text, published.ts, published.meta)
            await self.transport.send(protocol.EVENT_ASSISTANT, sub.to_dict())
        else:
            sub = MessageSubmit(self.conversation_id, published.author, published.text, published.ts, published.meta)
            await self.transport.send(protocol.EVENT_MESSAGE, sub.to_dict())
        return True

    async def leave(self):
        await self.transport.close()
        self._set(joined=False)

    def bind_auth(self, auth: AuthStore):
        """
        Follow the auth session: when it ends (sign-out, or a 401 from the
        backend) leave the conversation and clear the local log.
        Returns the unsubscribe function.
        """
        signed_in = auth.snapshot().signed_in

        def on_auth():
            nonlocal signed_in
            now = auth.snapshot().signed_in
            if signed_in and not now:
                self._spawn(self._end_session())
            signed_in = now

        return auth.subscribe(on_auth)

    async def _end_session(self):
        logger.info("Session ended, leaving %s", self.conversation_id)
        await self.leave()
        self.store.clear(self.conversation_id)

    def snapshot_for_ai(self, limit: int = AI_CONTEXT_LIMIT) -> list[dict]:
        """Recent local messages in the shape the /chat endpoint expects."""
        return [
            {"author": m.author, "role": m.role, "text": m.text, "ts": m.ts}
            for m in self.messages[-limit:]
        ]

    # -- inbound -------------------------------------------------------------

    async def handle(self, event: str, data):
        if event == protocol.EVENT_HISTORY:
            await self._on_history(data)
        elif event in (protocol.EVENT_MESSAGE, protocol.EVENT_ASSISTANT):
            if isinstance(data, dict):
                self.store.reconcile(self.conversation_id, Message.from_dict(data))
        elif event == protocol.EVENT_ERROR:
            reason = data.get("reason") if isinstance(data, dict) else None
            await self.transport.close()
            self._set(joined=False, admission_error=reason or "Join refused")
        else:
            logger.debug("Ignoring unknown event %r", event)

    async def _on_history(self, data):
        if not isinstance(data, list):
            return
        history = [Message.from_dict(d) for d in data if isinstance(d, dict)]
        if not protocol.admits(history, self.user_id):
            logger.info("Refusing %s: %s", self.conversation_id, protocol.PARTICIPANTS_FULL)
            await self.transport.close()
            self._set(joined=False, admission_error=protocol.PARTICIPANTS_FULL)
            return
        self.store.set(self.conversation_id, history)
        self._set(joined=True, admission_error=None)

    async def listen(self):
        """Dispatch inbound events until the transport closes."""
        async for event, data in self.transport:
            await self.handle(event, data)
