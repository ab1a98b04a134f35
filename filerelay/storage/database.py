"""
Transfer History (SQLite)

Design Decision: Where history lives
====================================

Options Considered:
1. SQLite file in the data directory
2. JSON sidecar per received file
3. Nothing; scan the files directory

Decision: SQLite through aiosqlite
- One file next to the received files, no server
- The REST API lists and looks up files without touching the disk tree
- Queries stay on the event loop without blocking it

Tables:
- received_files: one row per reassembled file, keyed by stored_id(sender_id, file_id)
- sent_files: one row per outgoing job and how it ended
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import aiosqlite

from ..transfer.reassembly import CompletedFile
from ..transfer.sender import SenderJob
from .files import stored_id

logger = logging.getLogger(__name__)

DB_FILENAME = "filerelay.db"

SCHEMA_VERSION = 2

SCHEMA = f"""
CREATE TABLE IF NOT EXISTS received_files (
    id TEXT PRIMARY KEY,
    file_id TEXT NOT NULL,
    sender_id TEXT NOT NULL DEFAULT '',
    name TEXT NOT NULL,
    mime_type TEXT NOT NULL DEFAULT '',
    size INTEGER NOT NULL,
    total_chunks INTEGER NOT NULL,
    local_path TEXT,
    received_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS sent_files (
    file_id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    mime_type TEXT NOT NULL DEFAULT '',
    size INTEGER NOT NULL,
    total_chunks INTEGER NOT NULL,
    status TEXT NOT NULL,
    error TEXT,
    sent_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_received_at ON received_files(received_at);

PRAGMA user_version = {SCHEMA_VERSION};
"""


class Database:
    """Received and sent file history for one node."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self._db: Optional[aiosqlite.Connection] = None

    async def connect(self):
        """Open the database and create tables if needed."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row

        async with self._db.execute("PRAGMA user_version") as cursor:
            version = (await cursor.fetchone())[0]
        if 0 < version < SCHEMA_VERSION:
            # Version 1 keyed received files on file_id alone
            logger.warning(f"Rebuilding received_files table (schema {version} -> {SCHEMA_VERSION})")
            await self._db.execute("DROP TABLE IF EXISTS received_files")

        await self._db.executescript(SCHEMA)
        await self._db.commit()

        logger.info(f"History database opened: {self.db_path}")

    async def close(self):
        if self._db:
            await self._db.close()
            self._db = None

    async def _write(self, sql: str, params: Sequence[Any]):
        await self._db.execute(sql, params)
        await self._db.commit()

    async def _rows(self, sql: str, params: Sequence[Any]) -> List[Dict]:
        async with self._db.execute(sql, params) as cursor:
            return [dict(row) for row in await cursor.fetchall()]

    # === Received Files ===

    async def add_received_file(self, completed: CompletedFile, local_path: Path = None) -> str:
        """
        Record a reassembled file.

        Returns:
            Its stored id. Receiving the same (sender, fileId) again
            replaces the row.
        """
        key = stored_id(completed.sender_id, completed.file_id)
        await self._write(
            """INSERT INTO received_files
                   (id, file_id, sender_id, name, mime_type, size, total_chunks, local_path)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(id) DO UPDATE SET
                   name = excluded.name, mime_type = excluded.mime_type,
                   size = excluded.size, total_chunks = excluded.total_chunks,
                   local_path = excluded.local_path, received_at = CURRENT_TIMESTAMP""",
            (key, completed.file_id, completed.sender_id, completed.name,
             completed.mime_type, completed.size, completed.total_chunks,
             str(local_path) if local_path else None),
        )
        return key

    async def get_received_files(self, limit: int = 100) -> List[Dict]:
        """Received files, newest first."""
        return await self._rows(
            "SELECT * FROM received_files ORDER BY received_at DESC, rowid DESC LIMIT ?",
            (limit,),
        )

    async def get_received_file(self, key: str) -> Optional[Dict]:
        rows = await self._rows("SELECT * FROM received_files WHERE id = ?", (key,))
        return rows[0] if rows else None

    async def remove_received_file(self, key: str):
        await self._write("DELETE FROM received_files WHERE id = ?", (key,))

    # === Sent Files ===

    async def record_sent_file(self, job: SenderJob):
        """Record an outgoing job; a second call updates its status."""
        await self._write(
            """INSERT INTO sent_files (file_id, name, mime_type, size, total_chunks, status, error)
               VALUES (?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(file_id) DO UPDATE SET
                   status = excluded.status, error = excluded.error""",
            (job.file_id, job.name, job.mime_type, job.source_length,
             job.total_chunks, job.status, job.error),
        )

    async def get_sent_files(self, limit: int = 100) -> List[Dict]:
        """Sent files, newest first."""
        return await self._rows(
            "SELECT * FROM sent_files ORDER BY sent_at DESC, rowid DESC LIMIT ?",
            (limit,),
        )


async def init_database(data_dir: Path) -> Database:
    """Open the history database inside a data directory."""
    db = Database(Path(data_dir) / DB_FILENAME)
    await db.connect()
    return db
