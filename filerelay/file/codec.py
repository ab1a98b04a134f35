"""
Chunk Codec

Design Decision: Wire Format
============================

Options Considered:
| Format                     | Pros                          | Cons                          |
|----------------------------|-------------------------------|-------------------------------|
| JSON + byte-value array    | Browser friendly              | ~4x payload inflation         |
| JSON + base64 payload      | Text-safe, self-describing    | ~1.33x payload inflation      |
| Length-prefixed frame      | No inflation, binary-safe     | Needs a binary-capable channel|

Decision: JSON text with a base64 payload, plus a binary frame
- Every message carries fileId, name, mimeType, chunkIndex, totalChunks
  so a receiver never needs prior context
- The binary frame reuses the transfer framing (length + JSON header + data)
- Decoding also accepts the byte-array payload and the legacy envelope
  {"type": "filechunk", "data": "<json>"} produced by browser senders

Frame Format:
```
+----------------+----------------+----------------+----------------+
| Length (4B)    | Header len (4B)| Header (JSON)  | Payload (raw)  |
+----------------+----------------+----------------+----------------+
```
"""

import base64
import binascii
import json
import struct
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

MESSAGE_TYPE = "filechunk"

PAYLOAD_BASE64 = "base64"
PAYLOAD_BYTES = "bytes"

# Largest frame accepted by decode_chunk (matches the relay's message limit)
MAX_FRAME_SIZE = 100 * 1024 * 1024

# Largest totalChunks accepted; receivers allocate one slot per chunk
MAX_TOTAL_CHUNKS = 1 << 20

_LENGTH = struct.Struct('>I')


class MalformedChunk(ValueError):
    """Raised when a wire message cannot be turned into a Chunk."""


@dataclass(frozen=True)
class Chunk:
    """One wire unit: a slice of a file tagged with its position."""
    file_id: str
    name: str
    mime_type: str
    chunk_index: int
    total_chunks: int
    payload: bytes
    sender_id: str = ""

    @property
    def is_last(self) -> bool:
        return self.chunk_index == self.total_chunks - 1

    def header(self) -> Dict[str, Any]:
        """Metadata fields in wire naming, without the payload."""
        header = {
            'type': MESSAGE_TYPE,
            'fileId': self.file_id,
            'name': self.name,
            'mimeType': self.mime_type,
            'chunkIndex': self.chunk_index,
            'totalChunks': self.total_chunks,
        }
        if self.sender_id:
            header['senderId'] = self.sender_id
        return header


# === Encoding ===

def encode_chunk(chunk: Chunk, payload_encoding: str = PAYLOAD_BASE64) -> str:
    """
    Encode a chunk as a self-contained JSON message.

    Args:
        chunk: The chunk to encode
        payload_encoding: "base64" (default) or "bytes" for an array of
            unsigned byte values

    Returns:
        JSON text
    """
    message = chunk.header()
    if payload_encoding == PAYLOAD_BASE64:
        message['payload'] = base64.b64encode(chunk.payload).decode('ascii')
    elif payload_encoding == PAYLOAD_BYTES:
        message['payload'] = list(chunk.payload)
    else:
        raise ValueError(f"Unknown payload encoding: {payload_encoding}")
    return json.dumps(message, separators=(',', ':'))


def encode_chunk_frame(chunk: Chunk) -> bytes:
    """Encode a chunk as a length-prefixed binary frame."""
    header = chunk.header()
    header['payloadLength'] = len(chunk.payload)
    header_bytes = json.dumps(header, separators=(',', ':')).encode('utf-8')

    total_length = len(header_bytes) + len(chunk.payload)
    return (
        _LENGTH.pack(total_length) +
        _LENGTH.pack(len(header_bytes)) +
        header_bytes +
        chunk.payload
    )


# === Decoding ===

def decode_chunk(raw: Union[str, bytes, bytearray, memoryview, Dict[str, Any]],
                 max_payload_size: Optional[int] = None,
                 max_total_chunks: int = MAX_TOTAL_CHUNKS) -> Chunk:
    """
    Decode a wire message into a Chunk.

    Accepts JSON text (str or bytes), a binary frame, or an already
    parsed dict.

    Raises:
        MalformedChunk: if the message is unparsable or violates the
            chunk constraints
    """
    if isinstance(raw, dict):
        fields, payload = _unwrap_envelope(raw), None
    elif isinstance(raw, (bytes, bytearray, memoryview)):
        data = bytes(raw)
        if data.lstrip()[:1] == b'{':
            fields, payload = _parse_json_text(data), None
        else:
            fields, payload = _parse_frame(data)
    elif isinstance(raw, str):
        fields, payload = _parse_json_text(raw), None
    else:
        raise MalformedChunk(f"Unsupported message type: {type(raw).__name__}")

    if payload is None:
        payload = _decode_payload(fields)

    chunk = _build_chunk(fields, payload, max_total_chunks)
    if max_payload_size is not None and len(chunk.payload) > max_payload_size:
        raise MalformedChunk(
            f"Payload of {len(chunk.payload)} bytes exceeds limit {max_payload_size}"
        )
    return chunk


def _parse_json_text(text: Union[str, bytes]) -> Dict[str, Any]:
    try:
        message = json.loads(text)
    except (ValueError, UnicodeDecodeError, RecursionError) as e:
        raise MalformedChunk(f"Invalid JSON: {e}") from e
    if not isinstance(message, dict):
        raise MalformedChunk("Message is not a JSON object")
    return _unwrap_envelope(message)


def _unwrap_envelope(message: Dict[str, Any]) -> Dict[str, Any]:
    """Flatten {"type": "filechunk", "data": "<json>"} into a single dict."""
    if message.get('type') != MESSAGE_TYPE:
        raise MalformedChunk(f"Unexpected message type: {message.get('type')!r}")

    inner = message.get('data')
    if 'fileId' not in message and isinstance(inner, str):
        try:
            inner = json.loads(inner)
        except (ValueError, RecursionError) as e:
            raise MalformedChunk(f"Invalid envelope data: {e}") from e
        if not isinstance(inner, dict):
            raise MalformedChunk("Envelope data is not a JSON object")
        fields = dict(inner)
        if 'payload' not in fields and 'data' in fields:
            fields['payload'] = fields.pop('data')
        return fields

    return message


def _parse_frame(data: bytes):
    if len(data) < 2 * _LENGTH.size:
        raise MalformedChunk(f"Frame too short: {len(data)} bytes")

    total_length = _LENGTH.unpack_from(data, 0)[0]
    header_length = _LENGTH.unpack_from(data, _LENGTH.size)[0]

    if total_length > MAX_FRAME_SIZE:
        raise MalformedChunk(f"Frame too large: {total_length}")
    if header_length > total_length:
        raise MalformedChunk("Header length exceeds frame length")
    if len(data) != 2 * _LENGTH.size + total_length:
        raise MalformedChunk(
            f"Frame length mismatch. Expected {2 * _LENGTH.size + total_length}, got {len(data)}"
        )

    start = 2 * _LENGTH.size
    header_bytes = data[start:start + header_length]
    payload = data[start + header_length:]

    try:
        header = json.loads(header_bytes.decode('utf-8'))
    except (ValueError, UnicodeDecodeError, RecursionError) as e:
        raise MalformedChunk(f"Invalid frame header: {e}") from e
    if not isinstance(header, dict):
        raise MalformedChunk("Frame header is not a JSON object")
    if header.get('type') != MESSAGE_TYPE:
        raise MalformedChunk(f"Unexpected message type: {header.get('type')!r}")

    declared = header.get('payloadLength')
    if declared is not None and declared != len(payload):
        raise MalformedChunk(
            f"Payload length mismatch. Header says {declared}, got {len(payload)}"
        )

    return header, payload


def _decode_payload(fields: Dict[str, Any]) -> bytes:
    if 'payload' not in fields:
        raise MalformedChunk("Missing required field: payload")

    value = fields['payload']
    if isinstance(value, str):
        try:
            return base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError) as e:
            raise MalformedChunk(f"Payload is not valid base64: {e}") from e

    if isinstance(value, list):
        if not all(isinstance(b, int) and not isinstance(b, bool) and 0 <= b <= 255
                   for b in value):
            raise MalformedChunk("Payload array must contain byte values 0-255")
        return bytes(value)

    raise MalformedChunk(f"Payload has unsupported type: {type(value).__name__}")


def _require(fields: Dict[str, Any], key: str, kind: type):
    if key not in fields:
        raise MalformedChunk(f"Missing required field: {key}")
    value = fields[key]
    # bool is an int subclass; it is never a valid index
    if not isinstance(value, kind) or isinstance(value, bool):
        raise MalformedChunk(f"Field {key} must be {kind.__name__}, got {type(value).__name__}")
    return value


def _build_chunk(fields: Dict[str, Any], payload: bytes, max_total_chunks: int) -> Chunk:
    file_id = _require(fields, 'fileId', str)
    name = _require(fields, 'name', str)
    mime_type = _require(fields, 'mimeType', str)
    chunk_index = _require(fields, 'chunkIndex', int)
    total_chunks = _require(fields, 'totalChunks', int)
    sender_id = fields.get('senderId', "")

    if not file_id:
        raise MalformedChunk("fileId must not be empty")
    if not isinstance(sender_id, str):
        raise MalformedChunk("senderId must be a string")
    if total_chunks <= 0:
        raise MalformedChunk(f"totalChunks must be positive, got {total_chunks}")
    if total_chunks > max_total_chunks:
        raise MalformedChunk(f"totalChunks {total_chunks} exceeds limit {max_total_chunks}")
    if chunk_index < 0:
        raise MalformedChunk(f"chunkIndex must not be negative, got {chunk_index}")
    if chunk_index >= total_chunks:
        raise MalformedChunk(f"chunkIndex {chunk_index} out of range for {total_chunks} chunks")

    return Chunk(
        file_id=file_id,
        name=name,
        mime_type=mime_type,
        chunk_index=chunk_index,
        total_chunks=total_chunks,
        payload=payload,
        sender_id=sender_id,
    )
