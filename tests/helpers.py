"""
In-process stand-ins for the network: a gateway-side connection that records
frames, and a client transport wired straight into a GatewaySession (frames
still go through the JSON codec both ways).
"""

from byomchat import protocol
from byomchat.gateway import SessionGateway


class RecordingConnection:
    """Gateway-side stand-in for a WebSocket."""

    def __init__(self, fail: bool = False):
        self.frames: list[str] = []
        self.fail = fail

    async def send_text(self, data: str) -> None:
        if self.fail:
            raise RuntimeError("socket gone")
        self.frames.append(data)

    def events(self) -> list[tuple]:
        return [protocol.decode(f) for f in self.frames]


class LoopbackTransport:
    """Client-side transport connected directly to a GatewaySession."""

    def __init__(self, gateway: SessionGateway):
        self.conn = RecordingConnection()
        self.session = gateway.open(self.conn)
        self.sent: list[tuple] = []
        self.closed = False
        self._read = 0

    async def send(self, event, data):
        self.sent.append((event, data))
        await self.session.handle_frame(protocol.encode(event, data))

    async def close(self):
        self.closed = True
        self.session.disconnect("client closed")

    async def __aiter__(self):
        # Drains whatever the gateway has pushed so far, then stops.
        while self._read < len(self.conn.frames):
            frame = self.conn.frames[self._read]
            self._read += 1
            yield protocol.decode(frame)
