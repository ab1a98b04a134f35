"""
Relay Client

Transport adapter between the relay connection and the transfer core.
Owns the socket; the core only sees raw inbound messages and a send
capability.
"""

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

from .protocol import RelayMessage, RelayMessageType, RelayConnection, connect_relay
from .sender import SendFailure

logger = logging.getLogger(__name__)

# Called once per relayed message, one at a time
MessageHandler = Callable[[bytes], Awaitable[None]]


class RelayClient:
    """
    Connection to one room on a relay server.

    Endpoint and room are constructor parameters; nothing is hardcoded.
    """

    def __init__(self, host: str, port: int, room: str,
                 on_message: Optional[MessageHandler] = None,
                 peer_name: str = "", connect_timeout: float = 10.0):
        self.host = host
        self.port = port
        self.room = room
        self.on_message = on_message
        self.peer_name = peer_name
        self.connect_timeout = connect_timeout

        self._conn: Optional[RelayConnection] = None
        self._pending: List[bytes] = []
        self.room_members = 0

        # Statistics
        self.messages_sent = 0
        self.messages_received = 0

    @property
    def endpoint(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def is_connected(self) -> bool:
        return self._conn is not None and not self._conn.is_closed

    async def connect(self):
        """
        Open the connection and join the room.

        Raises:
            ConnectionError: if the relay is unreachable or refuses the join
        """
        conn = await connect_relay(self.host, self.port, timeout=self.connect_timeout)
        if conn is None:
            raise ConnectionError(f"Could not connect to relay at {self.endpoint}")

        await conn.send_join(self.room, self.peer_name)
        try:
            reply = await asyncio.wait_for(self._await_joined(conn),
                                           timeout=self.connect_timeout)
        except asyncio.TimeoutError:
            await conn.close()
            raise ConnectionError(f"Relay at {self.endpoint} did not answer JOIN")

        if reply is None or reply.type != RelayMessageType.JOINED:
            error = reply.headers.get('error') if reply else 'connection closed'
            await conn.close()
            raise ConnectionError(f"Relay refused join of room {self.room}: {error}")

        self._conn = conn
        self.room_members = reply.headers.get('members', 0)
        logger.info(f"Joined room {self.room} on {self.endpoint} "
                    f"({self.room_members} members)")

    async def _await_joined(self, conn: RelayConnection) -> Optional[RelayMessage]:
        """Read until JOINED or ERROR, keeping relayed data that arrives first."""
        while True:
            message = await conn.receive()
            if message is None or message.type != RelayMessageType.RELAY:
                return message
            self._pending.append(message.data)

    async def send(self, raw: bytes):
        """
        Hand one encoded message to the relay.

        Raises:
            SendFailure: if the channel is closed or the write fails
        """
        if not self.is_connected:
            raise SendFailure(f"Not connected to relay at {self.endpoint}")
        try:
            await self._conn.send_relay(raw)
        except (ConnectionError, OSError) as e:
            raise SendFailure(f"Relay connection lost: {e}") from e
        self.messages_sent += 1

    async def listen(self):
        """Deliver relayed messages to on_message until the connection closes."""
        if not self.is_connected:
            raise ConnectionError("listen() called before connect()")

        while self._pending:
            await self._deliver(self._pending.pop(0))

        conn = self._conn
        while True:
            message = await conn.receive()
            if message is None:
                break

            if message.type == RelayMessageType.RELAY:
                await self._deliver(message.data)
            elif message.type == RelayMessageType.ERROR:
                logger.warning(f"Relay error: {message.headers.get('error')}")
            elif message.type == RelayMessageType.JOINED:
                self.room_members = message.headers.get('members', self.room_members)

        logger.info(f"Relay connection to {self.endpoint} closed")
        await self.close()

    async def _deliver(self, data: bytes):
        self.messages_received += 1
        if self.on_message:
            await self.on_message(data)

    async def close(self):
        """Close the relay connection."""
        if self._conn:
            await self._conn.close()

    def get_stats(self) -> dict:
        """Get client statistics."""
        return {
            'endpoint': self.endpoint,
            'room': self.room,
            'connected': self.is_connected,
            'messages_sent': self.messages_sent,
            'messages_received': self.messages_received,
        }
