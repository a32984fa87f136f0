"""
WebSocket transport to the byomchat gateway (/ws), built on `websockets`.
"""

from __future__ import annotations

import logging

import websockets

from byomchat import protocol

logger = logging.getLogger(__name__)


class WebSocketTransport:
    """Sends and yields protocol envelopes over one WebSocket connection."""

    def __init__(self, url: str):
        self.url = url
        self._ws = None

    async def connect(self) -> WebSocketTransport:
        self._ws = await websockets.connect(self.url)
        logger.info("Connected to %s", self.url)
        return self

    async def send(self, event: str, data) -> None:
        if self._ws is None:
            raise ConnectionError(f"Not connected to {self.url}")
        await self._ws.send(protocol.encode(event, data))

    async def close(self) -> None:
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
            logger.info("Disconnected from %s", self.url)

    async def __aiter__(self):
        if self._ws is None:
            return
        try:
            async for frame in self._ws:
                decoded = protocol.decode(frame)
                if decoded is None:
                    logger.debug("Dropped undecodable frame from %s", self.url)
                    continue
                yield decoded
        except websockets.ConnectionClosed as e:
            logger.info("Connection to %s closed: %s", self.url, e)

    async def __aenter__(self) -> WebSocketTransport:
        return await self.connect()

    async def __aexit__(self, *exc):
        await self.close()
