"""
Relay Protocol

Design Decision: Relay Transport
================================

Options Considered:
1. HTTP uploads to a server
   - Files would pass through server storage
2. WebSocket rooms
   - Message oriented, but needs an HTTP upgrade stack
3. Raw TCP with length-prefixed frames
   - Lightweight, message oriented once framed

Decision: TCP with one prefix for every message
- 8-byte prefix: total length, header length (both big-endian uint32)
- JSON header names the message kind; RELAY data stays opaque
- Control messages and relayed chunks share the same framing

Frame:
```
+----------------+----------------+----------------+----------------+
| Length (4B)    | Header len (4B)| Header (JSON)  | Data (binary)  |
+----------------+----------------+----------------+----------------+

Header JSON:
{
    "type": "JOIN" | "JOINED" | "RELAY" | "ERROR" | "PING" | "PONG",
    "room": "room-1",          (JOIN, JOINED)
    "peer_name": "laptop",     (JOIN)
    "members": 2,              (JOINED)
    "error": "..."             (ERROR)
}
```
"""

import asyncio
import json
import logging
import struct
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

# Total length covers header + data
MAX_MESSAGE_SIZE = 100 * 1024 * 1024

_PREFIX = struct.Struct('>II')


class RelayMessageType(Enum):
    """Relay protocol message kinds."""
    # Room membership
    JOIN = "JOIN"
    JOINED = "JOINED"

    # Opaque payload forwarded to the room
    RELAY = "RELAY"

    # Control
    ERROR = "ERROR"
    PING = "PING"
    PONG = "PONG"


@dataclass
class RelayMessage:
    """One framed relay message."""
    type: RelayMessageType
    headers: Dict[str, Any] = field(default_factory=dict)
    data: bytes = b''

    def encode(self) -> bytes:
        """Frame the message for the wire."""
        header = json.dumps({'type': self.type.value, **self.headers}).encode('utf-8')
        return _PREFIX.pack(len(header) + len(self.data), len(header)) + header + self.data

    @classmethod
    async def read(cls, reader: asyncio.StreamReader) -> Optional['RelayMessage']:
        """
        Read the next message from a stream.

        Returns None at end of stream or when the framing is broken; the
        caller treats both as a closed connection.
        """
        try:
            total_length, header_length = _PREFIX.unpack(
                await reader.readexactly(_PREFIX.size)
            )
            if total_length > MAX_MESSAGE_SIZE:
                raise ValueError(f"Message too large: {total_length}")
            if header_length > total_length:
                raise ValueError(f"Header length {header_length} exceeds message length")

            body = await reader.readexactly(total_length)
            header = json.loads(body[:header_length].decode('utf-8'))
            kind = RelayMessageType(header.pop('type'))

        except asyncio.IncompleteReadError:
            return None
        except (ConnectionError, OSError) as e:
            logger.debug(f"Connection lost while reading: {e}")
            return None
        except (ValueError, KeyError, AttributeError, TypeError, RecursionError) as e:
            logger.error(f"Bad relay frame: {e}")
            return None

        return cls(type=kind, headers=header, data=body[header_length:])


class RelayConnection:
    """
    One framed connection to or from the relay.

    Writes are serialized so concurrent senders never interleave frames.
    """

    def __init__(self, reader: asyncio.StreamReader,
                 writer: asyncio.StreamWriter):
        self.reader = reader
        self.writer = writer
        self._closed = False
        self._write_lock = asyncio.Lock()

    @property
    def peer_address(self) -> Tuple[str, int]:
        return self.writer.get_extra_info('peername')

    @property
    def is_closed(self) -> bool:
        return self._closed or self.writer.is_closing()

    async def send(self, message: RelayMessage):
        """
        Write one message.

        Raises:
            ConnectionError: if the connection is closed or the write fails
        """
        if self.is_closed:
            raise ConnectionError("Relay connection closed")

        frame = message.encode()
        async with self._write_lock:
            self.writer.write(frame)
            await self.writer.drain()

    async def receive(self) -> Optional[RelayMessage]:
        """Next message, or None once the connection is gone."""
        if self._closed:
            return None
        return await RelayMessage.read(self.reader)

    async def close(self):
        if self._closed:
            return
        self._closed = True
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except (ConnectionError, OSError):
            pass

    # === Message helpers ===

    async def send_join(self, room: str, peer_name: str = ""):
        await self.send(RelayMessage(RelayMessageType.JOIN,
                                     {'room': room, 'peer_name': peer_name}))

    async def send_joined(self, room: str, members: int):
        await self.send(RelayMessage(RelayMessageType.JOINED,
                                     {'room': room, 'members': members}))

    async def send_relay(self, data: bytes):
        await self.send(RelayMessage(RelayMessageType.RELAY, data=data))

    async def send_error(self, error: str):
        await self.send(RelayMessage(RelayMessageType.ERROR, {'error': error}))


async def connect_relay(host: str, port: int,
                        timeout: float = 10.0) -> Optional[RelayConnection]:
    """
    Open a TCP connection to a relay server.

    Returns:
        RelayConnection, or None if the relay is unreachable
    """
    try:
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port),
            timeout=timeout
        )
    except (asyncio.TimeoutError, OSError) as e:
        logger.error(f"Failed to connect to relay {host}:{port}: {e}")
        return None
    return RelayConnection(reader, writer)
