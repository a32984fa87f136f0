"""
Session gateway: room membership plus the per-connection relay state machine.

    unjoined ──join──▶ joined ──message/assistant──▶ joined
        │                 │
        └──── disconnect ─┴──▶ disconnected (terminal)

The gateway persists every valid message/assistant event to the
ConversationStore and fans it out to everyone in the conversation's room,
sender included. Malformed payloads are dropped without a reply.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from enum import Enum
from typing import Protocol

from byomchat import protocol
from byomchat.protocol import AssistantSubmit, JoinRequest, MessageSubmit
from byomchat.storage.base import ConversationStore
from byomchat.storage.models import Message
from byomchat.wiretap import WireLog

logger = logging.getLogger(__name__)


class Connection(Protocol):
    """Anything that can push a text frame to one client (a FastAPI WebSocket)."""

    async def send_text(self, data: str) -> None: ...


class SessionState(str, Enum):
    UNJOINED = "unjoined"
    JOINED = "joined"
    DISCONNECTED = "disconnected"


class RoomManager:
    """
    Tracks which connections are in which conversation room.

    Broadcast holds a per-room lock so frames reach every member in the order
    messages were appended, even though each send may suspend.
    """

    def __init__(self):
        self._rooms: dict[str, list[Connection]] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    def join(self, room: str, conn: Connection):
        members = self._rooms.setdefault(room, [])
        if conn not in members:
            members.append(conn)

    def leave(self, conn: Connection, room: str | None = None):
        """Remove conn from one room, or from every room when room is None."""
        rooms = [room] if room is not None else list(self._rooms)
        for name in rooms:
            members = self._rooms.get(name)
            if members and conn in members:
                members.remove(conn)
                if not members:
                    del self._rooms[name]
                    self._drop_idle_lock(name)

    def members(self, room: str) -> list[Connection]:
        return list(self._rooms.get(room, []))

    @asynccontextmanager
    async def locked(self, room: str):
        """Hold the room's lock. Locks of empty rooms nobody is holding or awaiting are discarded."""
        lock = self._locks.get(room)
        if lock is None:
            lock = self._locks[room] = asyncio.Lock()
        self._lock_users[room] = self._lock_users.get(room, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[room] -= 1
            self._drop_idle_lock(room)

    def _drop_idle_lock(self, room: str):
        if room not in self._rooms and not self._lock_users.get(room):
            self._locks.pop(room, None)
            self._lock_users.pop(room, None)

    def lock_count(self) -> int:
        return len(self._locks)

    async def broadcast(self, room: str, frame: str) -> int:
        """Send frame to every member. Members whose send fails are dropped."""
        delivered = 0
        dead = []
        for conn in self.members(room):
            try:
                await conn.send_text(frame)
                delivered += 1
            except Exception as e:
                logger.warning("Dropping member of room %s after failed send: %s", room, e)
                dead.append(conn)
        for conn in dead:
            self.leave(conn, room)
        return delivered

    def room_count(self) -> int:
        return len(self._rooms)

    def connection_count(self) -> int:
        return len({id(c) for members in self._rooms.values() for c in members})


class SessionGateway:
    """Shared state for all sessions: the store, the rooms and the wire log."""

    def __init__(
        self,
        store: ConversationStore,
        rooms: RoomManager | None = None,
        wire: WireLog | None = None,
        enforce_participant_limit: bool = False,
    ):
        self.store = store
        self.rooms = rooms or RoomManager()
        self.wire = wire
        self.enforce_participant_limit = enforce_participant_limit
        self._next_id = 0

    def open(self, conn: Connection) -> GatewaySession:
        self._next_id += 1
        return GatewaySession(self, conn, f"c{self._next_id}")

    def _tap(self, event: str, conversation_id: str = "", author: str = "", content: str = ""):
        if self.wire:
            self.wire.log(event, conversation_id=conversation_id, author=author, content=content)

    async def publish(self, conversation_id: str, event: str, message: Message):
        """Append then broadcast, atomically with respect to the room."""
        async with self.rooms.locked(conversation_id):
            self.store.append(conversation_id, message)
            frame = protocol.encode(event, message.to_dict())
            delivered = await self.rooms.broadcast(conversation_id, frame)
        self._tap(event, conversation_id, message.author, message.text)
        logger.debug("Relayed %s in %s to %d member(s)", event, conversation_id, delivered)


class GatewaySession:
    """One client connection's view of the gateway."""

    def __init__(self, gateway: SessionGateway, conn: Connection, connection_id: str):
        self.gateway = gateway
        self.conn = conn
        self.connection_id = connection_id
        self.state = SessionState.UNJOINED
        self.conversation_id: str | None = None
        self.user_id: str | None = None

    async def handle_frame(self, frame: str | bytes):
        decoded = protocol.decode(frame)
        if decoded is None:
            logger.debug("[%s] dropped undecodable frame", self.connection_id)
            return
        await self.handle(*decoded)

    async def handle(self, event: str, data):
        if self.state is SessionState.DISCONNECTED:
            return
        if event == protocol.EVENT_JOIN:
            await self._on_join(data)
        elif event == protocol.EVENT_MESSAGE:
            await self._on_message(data)
        elif event == protocol.EVENT_ASSISTANT:
            await self._on_assistant(data)
        else:
            logger.debug("[%s] ignoring unknown event %r", self.connection_id, event)

    async def _on_join(self, data):
        req = JoinRequest.parse(data)
        if req is None:
            logger.debug("[%s] dropped malformed join", self.connection_id)
            return

        gw = self.gateway
        history = gw.store.ensure(req.conversation_id)

        if gw.enforce_participant_limit and not protocol.admits(history, req.user_id):
            logger.info(
                "[%s] refused %s: %s is full",
                self.connection_id, req.user_id, req.conversation_id,
            )
            await self.conn.send_text(
                protocol.encode(protocol.EVENT_ERROR, {"reason": protocol.PARTICIPANTS_FULL})
            )
            return

        if self.conversation_id and self.conversation_id != req.conversation_id:
            gw.rooms.leave(self.conn, self.conversation_id)
        gw.rooms.join(req.conversation_id, self.conn)

        self.state = SessionState.JOINED
        self.conversation_id = req.conversation_id
        self.user_id = req.user_id

        await self.conn.send_text(
            protocol.encode(protocol.EVENT_HISTORY, [m.to_dict() for m in history])
        )
        gw._tap(protocol.EVENT_JOIN, req.conversation_id, req.user_id)
        logger.info(
            "[%s] %s joined %s (%d messages in history)",
            self.connection_id, req.user_id, req.conversation_id, len(history),
        )

    async def _on_message(self, data):
        sub = MessageSubmit.parse(data)
        if sub is None:
            logger.debug("[%s] dropped malformed message", self.connection_id)
            return
        await self.gateway.publish(sub.conversation_id, protocol.EVENT_MESSAGE, sub.to_message())

    async def _on_assistant(self, data):
        sub = AssistantSubmit.parse(data)
        if sub is None:
            logger.debug("[%s] dropped malformed assistant", self.connection_id)
            return
        await self.gateway.publish(sub.conversation_id, protocol.EVENT_ASSISTANT, sub.to_message())

    def disconnect(self, reason=None):
        """Transport went away. No announcement is broadcast."""
        if self.state is SessionState.DISCONNECTED:
            return
        self.gateway.rooms.leave(self.conn)
        self.state = SessionState.DISCONNECTED
        self.gateway._tap("disconnect", self.conversation_id or "", self.user_id or "")
        logger.info("[%s] client disconnected (%s)", self.connection_id, reason)
