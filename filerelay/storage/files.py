"""
Received File Storage

Writes reassembled files to disk. The relay keeps nothing; every
receiver owns its own copies.

Storage Layout:
```
data/
├── files/            # Reassembled files
│   └── <stored_id>/    # derived from (sender_id, file_id)
│       └── <name>
├── temp/             # Partial writes
└── filerelay.db      # Received/sent history
```
"""

import hashlib
import logging
import re
from pathlib import Path
from typing import Optional

import aiofiles
import aiofiles.os

from ..transfer.reassembly import CompletedFile

logger = logging.getLogger(__name__)

_UNSAFE = re.compile(r'[^A-Za-z0-9._-]+')


def safe_filename(name: str, default: str = "file") -> str:
    """Reduce a display name to a single safe path component."""
    base = Path(name.replace('\\', '/')).name
    cleaned = _UNSAFE.sub('_', base).strip('._')
    return cleaned[:200] or default


def stored_id(sender_id: str, file_id: str) -> str:
    """
    Local identifier of a received file.

    Two senders may pick the same fileId, and safe_filename() maps
    different ids onto one name, so the readable prefix is followed by
    a digest of the exact (sender_id, file_id) pair.
    """
    digest = hashlib.sha256(f"{sender_id}\x00{file_id}".encode('utf-8')).hexdigest()
    return f"{safe_filename(file_id, default='unnamed')[:64]}-{digest[:16]}"


class FileStore:
    """
    Local storage for received files.

    Provides:
    - Atomic writes (temp file, then rename)
    - One directory per stored id, holding exactly one file
    """

    def __init__(self, data_dir: Path):
        self.data_dir = Path(data_dir)
        self.files_dir = self.data_dir / "files"
        self.temp_dir = self.data_dir / "temp"

        self._ensure_directories()

    def _ensure_directories(self):
        """Create storage directories if they don't exist."""
        for dir_path in [self.files_dir, self.temp_dir]:
            dir_path.mkdir(parents=True, exist_ok=True)

    def _file_dir(self, key: str) -> Path:
        return self.files_dir / safe_filename(key, default="unnamed")

    async def save(self, completed: CompletedFile) -> Path:
        """
        Write a completed file.

        Returns:
            Path of the stored file
        """
        target_dir = self._file_dir(stored_id(completed.sender_id, completed.file_id))
        await aiofiles.os.makedirs(target_dir, exist_ok=True)
        output_path = target_dir / safe_filename(completed.name)

        temp_path = self.temp_dir / f"{target_dir.name}.tmp"
        async with aiofiles.open(temp_path, 'wb') as f:
            await f.write(completed.data)

        await aiofiles.os.rename(temp_path, output_path)

        # A repeat transfer under the same key may carry a new name
        for entry in list(target_dir.iterdir()):
            if entry != output_path:
                await aiofiles.os.remove(entry)

        logger.debug(f"Stored {completed.file_id} at {output_path}")
        return output_path

    def get_path(self, key: str) -> Optional[Path]:
        """Path of a stored file by its stored id, or None if unknown."""
        target_dir = self._file_dir(key)
        if not target_dir.is_dir():
            return None
        for entry in target_dir.iterdir():
            if entry.is_file():
                return entry
        return None

    async def delete(self, key: str) -> bool:
        """Delete a stored file by its stored id."""
        path = self.get_path(key)
        if path is None:
            return False
        await aiofiles.os.remove(path)
        await aiofiles.os.rmdir(path.parent)
        return True

