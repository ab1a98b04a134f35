"""
File Module - Chunk Codec and Chunking

This module handles the wire representation of file chunks.
"""

from .chunker import FileChunker, CHUNK_SIZE
from .codec import (
    Chunk, MalformedChunk, encode_chunk, encode_chunk_frame, decode_chunk,
    PAYLOAD_BASE64, PAYLOAD_BYTES, MAX_TOTAL_CHUNKS,
)

__all__ = [
    'FileChunker',
    'CHUNK_SIZE',
    'Chunk',
    'MalformedChunk',
    'encode_chunk',
    'encode_chunk_frame',
    'decode_chunk',
    'PAYLOAD_BASE64',
    'PAYLOAD_BYTES',
    'MAX_TOTAL_CHUNKS',
]
