"""
Transfer Node - Main Controller

This is the main entry point that orchestrates all components:
- Relay client for the room connection
- Sender pacer for outgoing files
- Reassembly table for incoming chunks
- File store and database for received files
"""

import asyncio
import logging
import mimetypes
import secrets
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional

import aiosqlite

from .config import Config
from .file import FileChunker
from .storage import Database, FileStore, init_database
from .transfer import (
    Completed, CompletedFile, ProgressSink, ReassemblyTable, RelayClient,
    SendFailure, SenderJob, SenderPacer,
)
from .transfer.sender import SendProgressCallback

logger = logging.getLogger(__name__)

# (completed file, stored path or None) -> None
FileReceivedCallback = Callable[[CompletedFile, Optional[Path]], Awaitable[None]]


def generate_node_id() -> str:
    """Random identifier used as senderId when no peer name is configured."""
    return secrets.token_hex(8)


class TransferNode:
    """
    A complete file relay peer.

    Combines all components into a unified interface:
    - send_file(path): Send a file to everyone in the room
    - send_bytes(data, name): Send an in-memory buffer
    - list_received_files(): Files reassembled and stored locally
    """

    def __init__(self, config: Config = None,
                 progress_sink: ProgressSink = None,
                 send_progress: SendProgressCallback = None,
                 on_file_received: FileReceivedCallback = None):
        """
        Initialize a transfer node.

        Args:
            config: Node configuration (uses defaults if not provided)
            progress_sink: Receives incoming transfer progress
            send_progress: Called with (file_id, fraction) for outgoing files
            on_file_received: Awaited after a received file is stored
        """
        self.config = config or Config()
        self.node_id = self.config.peer_name or generate_node_id()
        self.on_file_received = on_file_received

        # Create data directory
        self.data_dir = Path(self.config.data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)

        # Initialize components
        self.files = FileStore(self.data_dir)
        self.db: Optional[Database] = None

        self.table = ReassemblyTable(
            max_in_flight=self.config.max_in_flight,
            max_completed=self.config.max_completed,
            max_total_chunks=self.config.max_total_chunks,
            progress_sink=progress_sink,
        )

        self.pacer = SenderPacer(
            chunk_size=self.config.chunk_size,
            sender_id=self.node_id,
            progress_callback=send_progress,
        )

        self.client = RelayClient(
            host=self.config.relay_host,
            port=self.config.relay_port,
            room=self.config.room,
            on_message=self._on_message,
            peer_name=self.node_id,
            connect_timeout=self.config.connect_timeout,
        )

        # State
        self._running = False
        self._tasks: List[asyncio.Task] = []

        # Statistics
        self.files_stored = 0
        self.storage_errors = 0
        self.messages_failed = 0

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self):
        """
        Start the node.

        1. Open the database
        2. Connect to the relay and join the room
        3. Start the receive loop (and idle eviction if enabled)

        Raises:
            ConnectionError: if the relay cannot be reached
        """
        if self._running:
            return

        logger.info(f"Starting node {self.node_id}...")

        self.db = await init_database(self.data_dir)
        try:
            await self.client.connect()
        except ConnectionError:
            await self.db.close()
            self.db = None
            raise

        self._running = True
        self._tasks.append(asyncio.create_task(self._listen()))
        if self.config.idle_timeout > 0:
            self._tasks.append(asyncio.create_task(self._evict_idle_loop()))

        logger.info("Node started")
        logger.info(f"  Relay: {self.client.endpoint}")
        logger.info(f"  Room: {self.config.room}")
        logger.info(f"  Data Dir: {self.data_dir}")

    async def stop(self):
        """Stop the node."""
        if not self._running:
            return

        logger.info("Stopping node...")

        self._running = False

        await self.client.close()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        if self.db:
            await self.db.close()
            self.db = None

        logger.info("Node stopped")

    async def _listen(self):
        await self.client.listen()
        if self._running:
            logger.warning("Lost connection to relay")

    async def _evict_idle_loop(self):
        interval = max(1.0, self.config.idle_timeout / 2)
        while True:
            await asyncio.sleep(interval)
            self.table.evict_idle(self.config.idle_timeout)

    # === Receiving ===

    async def _on_message(self, raw: bytes):
        """Apply one relayed message; store the file when it completes."""
        try:
            result = self.table.on_inbound_message(raw)
            if isinstance(result, Completed):
                await self._store(result.file)
        except Exception as e:
            self.messages_failed += 1
            logger.error(f"Failed to handle relayed message: {e}", exc_info=True)

    async def _store(self, completed: CompletedFile):
        path = None
        try:
            path = await self.files.save(completed)
            if self.db:
                await self.db.add_received_file(completed, path)
            self.files_stored += 1
        except (OSError, aiosqlite.Error) as e:
            self.storage_errors += 1
            logger.error(f"Failed to store {completed.file_id}: {e}", exc_info=True)

        if self.on_file_received:
            await self.on_file_received(completed, path)

    # === Sending ===

    async def send_file(self, file_path: Path, mime_type: str = None,
                        chunk_size: int = None) -> SenderJob:
        """
        Send a file to every other member of the room.

        Args:
            file_path: Path to the file to send
            mime_type: MIME type (guessed from the name if not provided)
            chunk_size: Override the configured chunk size

        Returns:
            The completed SenderJob

        Raises:
            FileNotFoundError: if the path is not a file
            SendFailure: if the relay connection fails mid-send
        """
        file_path = Path(file_path)
        if not file_path.is_file():
            raise FileNotFoundError(f"File not found: {file_path}")

        if mime_type is None:
            mime_type = mimetypes.guess_type(file_path.name)[0] or ''

        data = await FileChunker(chunk_size or self.pacer.chunk_size).read_file(file_path)
        return await self.send_bytes(data, file_path.name, mime_type, chunk_size)

    async def send_bytes(self, data: bytes, name: str, mime_type: str = '',
                         chunk_size: int = None) -> SenderJob:
        """Send an in-memory buffer as a file."""
        job = self.pacer.begin_send(data, name, mime_type, chunk_size=chunk_size)
        try:
            await self.pacer.send(job, self.client.send)
        except SendFailure:
            await self._record_sent(job)
            raise

        await self._record_sent(job)
        return job

    async def _record_sent(self, job: SenderJob):
        if not self.db:
            return
        try:
            await self.db.record_sent_file(job)
        except aiosqlite.Error as e:
            logger.error(f"Failed to record send of {job.file_id}: {e}", exc_info=True)

    # === Queries ===

    async def list_received_files(self, limit: int = 100) -> List[Dict]:
        """Received files, newest first."""
        if not self.db:
            return []
        return await self.db.get_received_files(limit)

    async def get_received_file(self, key: str) -> Optional[Dict]:
        """Metadata of one received file by its stored id."""
        if not self.db:
            return None
        return await self.db.get_received_file(key)

    def get_received_path(self, key: str) -> Optional[Path]:
        """Local path of one received file by its stored id."""
        return self.files.get_path(key)

    async def delete_received_file(self, key: str) -> bool:
        """Remove a received file from disk and history."""
        deleted = await self.files.delete(key)
        if self.db and await self.db.get_received_file(key):
            await self.db.remove_received_file(key)
            deleted = True
        return deleted

    def get_transfers(self) -> dict:
        """In-flight transfers in both directions."""
        return {
            'incoming': self.table.snapshot(),
            'outgoing': [job.to_dict() for job in self.pacer.active_jobs()],
        }

    def get_full_stats(self) -> dict:
        """Get complete node statistics."""
        return {
            'node_id': self.node_id,
            'running': self._running,
            'room': self.config.room,
            'relay': self.client.get_stats(),
            'reassembly': self.table.get_stats(),
            'sender': self.pacer.get_stats(),
            'storage': {
                'files_stored': self.files_stored,
                'errors': self.storage_errors,
                'failed_messages': self.messages_failed,
            },
        }

