"""Connection gateway: owns live WebSocket connections, keyed by handle."""

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

import messages

logger = logging.getLogger("relay.gateway")

DisconnectHandler = Callable[[str, str], Awaitable[None]]

# Close code used when a heartbeat ping cannot be delivered
HEARTBEAT_CLOSE_CODE = 4008


class StaleConnectionError(ConnectionError):
    """A send targeted a connection that is closed or unknown."""

    def __init__(self, handle: str, reason: str = "connection closed"):
        super().__init__(f"{handle}: {reason}")
        self.handle = handle
        self.reason = reason


@dataclass
class Connection:
    handle: str
    ws: object  # WebSocket connection
    connected_at: float = field(default_factory=time.time)
    last_seen: float = field(default_factory=time.time)
    open: bool = True

    def touch(self):
        self.last_seen = time.time()

    def idle_for(self, now: Optional[float] = None) -> float:
        return (now or time.time()) - self.last_seen


class ConnectionGateway:
    def __init__(self):
        self._connections: dict[str, Connection] = {}
        self._on_disconnect: Optional[DisconnectHandler] = None

    def set_disconnect_handler(self, handler: DisconnectHandler):
        self._on_disconnect = handler

    def connect(self, ws) -> Connection:
        conn = Connection(handle=f"conn-{uuid.uuid4().hex[:8]}", ws=ws)
        self._connections[conn.handle] = conn
        logger.info(f"Client connected: {conn.handle} (total {len(self._connections)})")
        return conn

    async def disconnect(self, handle: str, reason: str = "closed"):
        """Forget a connection and run the disconnect hook.

        Safe to call twice: the reaper and the endpoint's own teardown
        both end up here for a reaped connection.
        """
        conn = self._connections.pop(handle, None)
        if conn is None:
            return
        conn.open = False
        logger.info(f"Client disconnected: {handle} ({reason}, remaining {len(self._connections)})")
        if self._on_disconnect:
            await self._on_disconnect(handle, reason)

    def get(self, handle: str) -> Optional[Connection]:
        return self._connections.get(handle)

    def is_open(self, handle: str) -> bool:
        conn = self._connections.get(handle)
        return bool(conn and conn.open)

    def touch(self, handle: str):
        conn = self._connections.get(handle)
        if conn:
            conn.touch()

    async def send(self, handle: str, msg_type: str, data: Optional[dict] = None, session_id: Optional[str] = None):
        """Deliver one message to one connection.

        Raises StaleConnectionError if the handle is unknown, already
        closed, or the transport write fails.
        """
        conn = self._connections.get(handle)
        if conn is None:
            raise StaleConnectionError(handle, "unknown connection")
        if not conn.open:
            raise StaleConnectionError(handle)
        try:
            await conn.ws.send_text(messages.encode(msg_type, data, session_id))
        except Exception as e:
            conn.open = False
            raise StaleConnectionError(handle, f"send failed: {e}") from e

    async def heartbeat(self, interval: float) -> list[str]:
        """Ping connections quiet for at least interval; reap those that fail.

        A quiet but open connection stays: only a failed ping write marks a
        connection dead. Peers that vanish without a close are caught by the
        transport's own ping/pong, which ends the receive loop.
        """
        now = time.time()
        dead = []
        for handle, conn in list(self._connections.items()):
            if conn.open and conn.idle_for(now) < interval:
                continue
            try:
                await self.send(handle, messages.PING)
            except StaleConnectionError as e:
                logger.warning(f"Reaping {handle}: {e.reason}")
                dead.append(handle)

        for handle in dead:
            conn = self._connections.get(handle)
            if conn is None:
                continue
            try:
                await conn.ws.close(code=HEARTBEAT_CLOSE_CODE)
            except Exception as e:
                logger.debug(f"Close of {handle} failed (already gone?): {e}")
            await self.disconnect(handle, "heartbeat failed")
        return dead

    def __len__(self) -> int:
        return len(self._connections)
