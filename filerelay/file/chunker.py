"""
File Chunker

Design Decision: Chunk Size
===========================

Options Considered:
| Size    | Pros                          | Cons                           |
|---------|-------------------------------|--------------------------------|
| 16KB    | Fine-grained progress         | Many messages per file         |
| 64KB    | Fits one message comfortably  | -                              |
| 256KB   | Lower overhead                | Large single messages on relay |
| 1MB     | Very low overhead             | Coarse progress, memory spikes |

Decision: 64KB (65,536 bytes)
- Each chunk travels as one discrete relay message
- Keeps per-message memory on the relay small
- Progress updates stay smooth for small files

Chunking Strategy: Fixed-Size
- Chunk count is ceil(size / chunk_size), never less than 1
- A zero-length file is one empty chunk
"""

from pathlib import Path

import aiofiles

# Chunk size: 64KB
CHUNK_SIZE = 64 * 1024  # 65,536 bytes


class FileChunker:
    """
    Splits byte sources into fixed-size chunks.

    Features:
    - Fixed-size chunks, last chunk may be shorter
    - Zero-length sources map to a single empty chunk
    - Async file reading
    """

    def __init__(self, chunk_size: int = CHUNK_SIZE):
        if chunk_size <= 0:
            raise ValueError(f"Chunk size must be positive, got {chunk_size}")
        self.chunk_size = chunk_size

    def get_chunk_count(self, file_size: int) -> int:
        """Calculate number of chunks for a source of given size."""
        return max(1, (file_size + self.chunk_size - 1) // self.chunk_size)

    async def read_file(self, file_path: Path) -> bytes:
        """Read a whole file in chunk-sized reads."""
        parts = []
        async with aiofiles.open(file_path, 'rb') as f:
            while True:
                data = await f.read(self.chunk_size)
                if not data:
                    break
                parts.append(data)
        return b''.join(parts)

