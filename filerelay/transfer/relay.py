"""
Relay Server

Pure message relay: peers JOIN a room and every RELAY message one peer
sends is forwarded to all other members of that room. The relay never
decodes, stores or reorders chunk data.
"""

import asyncio
import logging
from typing import Dict, Optional, Set

from .protocol import RelayMessage, RelayMessageType, RelayConnection

logger = logging.getLogger(__name__)


class RelayServer:
    """
    TCP server that forwards messages between members of a room.

    A connection must JOIN before it can RELAY. A member whose connection
    fails during forwarding is dropped from its room.
    """

    def __init__(self, host: str = '0.0.0.0', port: int = 8765):
        self.host = host
        self.port = port
        self.server: Optional[asyncio.AbstractServer] = None
        self._rooms: Dict[str, Set[RelayConnection]] = {}
        self._running = False

        # Statistics
        self.messages_relayed = 0
        self.bytes_relayed = 0

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self):
        """Start the relay server."""
        self.server = await asyncio.start_server(
            self._handle_connection,
            self.host,
            self.port
        )
        self._running = True

        addr = self.server.sockets[0].getsockname()
        self.port = addr[1]
        logger.info(f"Relay server listening on {addr[0]}:{addr[1]}")

    async def stop(self):
        """Stop the relay server and drop every member."""
        self._running = False
        for members in list(self._rooms.values()):
            for conn in list(members):
                await conn.close()
        self._rooms.clear()

        if self.server:
            self.server.close()
            await self.server.wait_closed()
            logger.info(f"Relay server stopped. Relayed {self.messages_relayed} messages, "
                        f"{self.bytes_relayed:,} bytes")

    async def serve_forever(self):
        """Run until cancelled."""
        if self.server is None:
            await self.start()
        async with self.server:
            await self.server.serve_forever()

    def room_members(self, room: str) -> int:
        return len(self._rooms.get(room, ()))

    async def _handle_connection(self, reader: asyncio.StreamReader,
                                 writer: asyncio.StreamWriter):
        """Handle one peer connection until it closes."""
        conn = RelayConnection(reader, writer)
        peer = conn.peer_address
        room: Optional[str] = None
        logger.debug(f"New relay connection from {peer}")

        try:
            while self._running:
                message = await conn.receive()
                if message is None:
                    break

                if message.type == RelayMessageType.JOIN:
                    room = await self._join(conn, message, room)
                elif message.type == RelayMessageType.RELAY:
                    if room is None:
                        await conn.send_error("JOIN a room before sending")
                        continue
                    await self._forward(room, conn, message.data)
                elif message.type == RelayMessageType.PING:
                    await conn.send(RelayMessage(type=RelayMessageType.PONG, headers={}))
                else:
                    logger.warning(f"Unexpected {message.type.value} from {peer}")

        except (ConnectionError, OSError) as e:
            logger.debug(f"Connection error from {peer}: {e}")
        finally:
            if room is not None:
                self._leave(room, conn)
            await conn.close()
            logger.debug(f"Connection closed: {peer}")

    async def _join(self, conn: RelayConnection, message: RelayMessage,
                    current: Optional[str]) -> Optional[str]:
        room = message.headers.get('room')
        if not isinstance(room, str) or not room:
            await conn.send_error("JOIN requires a room")
            return current

        if current is not None and current != room:
            self._leave(current, conn)

        members = self._rooms.setdefault(room, set())
        members.add(conn)
        await conn.send_joined(room, len(members))

        logger.info(f"{message.headers.get('peer_name') or conn.peer_address} "
                    f"joined room {room} ({len(members)} members)")
        return room

    def _leave(self, room: str, conn: RelayConnection):
        members = self._rooms.get(room)
        if not members:
            return
        members.discard(conn)
        if not members:
            del self._rooms[room]
        logger.debug(f"Peer left room {room}")

    async def _forward(self, room: str, source: RelayConnection, data: bytes):
        """Forward one message to every other member of the room."""
        for member in list(self._rooms.get(room, ())):
            if member is source:
                continue
            try:
                await member.send_relay(data)
            except (ConnectionError, OSError) as e:
                logger.warning(f"Dropping member {member.peer_address} from {room}: {e}")
                self._leave(room, member)
                await member.close()
                continue
            self.messages_relayed += 1
            self.bytes_relayed += len(data)

    def get_stats(self) -> dict:
        """Get relay statistics."""
        return {
            'rooms': {room: len(members) for room, members in self._rooms.items()},
            'messages_relayed': self.messages_relayed,
            'bytes_relayed': self.bytes_relayed,
            'port': self.port,
        }
