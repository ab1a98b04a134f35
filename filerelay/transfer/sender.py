"""
Sender Pacer

Walks a source byte buffer, slices it into ordered chunks and hands them
one by one to a send capability.

Send Flow:
1. begin_send() creates a SenderJob (file id, chunk count)
2. advance() produces the next chunk and reports progress
3. send() encodes each chunk and awaits the capability before
   producing the next one
4. A failed hand-off aborts the job; it is never resumed
"""

import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from ..file.chunker import FileChunker, CHUNK_SIZE
from ..file.codec import Chunk, encode_chunk_frame

logger = logging.getLogger(__name__)


class SendFailure(ConnectionError):
    """Raised when the transport cannot accept a chunk mid-send."""


# (file_id, fraction) -> None
SendProgressCallback = Callable[[str, float], None]

# Async capability that hands one encoded message to the transport
SendCapability = Callable[[bytes], Awaitable[None]]


def generate_file_id(name: str) -> str:
    """
    Build a file id that is unique across concurrent sends.

    Name + nanosecond timestamp + random suffix.
    """
    return f"{name}-{time.time_ns()}-{secrets.token_hex(4)}"


@dataclass
class SenderJob:
    """Sender-side cursor through one file's chunk sequence."""
    file_id: str
    name: str
    mime_type: str
    total_chunks: int
    chunk_size: int
    source: bytes = field(repr=False)
    sender_id: str = ""
    next_index: int = 0
    status: str = 'pending'  # 'pending', 'sending', 'completed', 'failed'
    error: Optional[str] = None
    started_at: float = field(default_factory=time.time)

    @property
    def source_length(self) -> int:
        return len(self.source)

    @property
    def is_finished(self) -> bool:
        return self.next_index >= self.total_chunks

    @property
    def progress(self) -> float:
        """Progress as 0.0 to 1.0."""
        return self.next_index / self.total_chunks

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            'file_id': self.file_id,
            'name': self.name,
            'mime_type': self.mime_type,
            'size': self.source_length,
            'total_chunks': self.total_chunks,
            'chunk_size': self.chunk_size,
            'sent_chunks': self.next_index,
            'progress_percent': self.progress * 100,
            'status': self.status,
            'error': self.error,
        }


class SenderPacer:
    """
    Produces chunks for outgoing files, strictly in index order.

    Each SenderJob belongs to the pacer that created it. Jobs are dropped
    from the pacer once they complete, fail or are abandoned.
    """

    def __init__(self, chunk_size: int = CHUNK_SIZE, sender_id: str = "",
                 progress_callback: SendProgressCallback = None):
        self.chunker = FileChunker(chunk_size)
        self.sender_id = sender_id
        self.progress_callback = progress_callback
        self._jobs: Dict[str, SenderJob] = {}

        # Statistics
        self.files_sent = 0
        self.files_failed = 0
        self.bytes_sent = 0

    @property
    def chunk_size(self) -> int:
        return self.chunker.chunk_size

    def begin_send(self, source: bytes, name: str, mime_type: str = "",
                   chunk_size: int = None) -> SenderJob:
        """
        Create a job for an outgoing file.

        Args:
            source: Complete file contents
            name: Display name sent with every chunk
            mime_type: Advisory MIME type
            chunk_size: Override the pacer's chunk size for this job

        Returns:
            A pending SenderJob
        """
        chunker = self.chunker if chunk_size is None else FileChunker(chunk_size)
        source = bytes(source)

        job = SenderJob(
            file_id=generate_file_id(name),
            name=name,
            mime_type=mime_type,
            total_chunks=chunker.get_chunk_count(len(source)),
            chunk_size=chunker.chunk_size,
            source=source,
            sender_id=self.sender_id,
        )
        self._jobs[job.file_id] = job

        logger.debug(f"Created send job {job.file_id}: {len(source):,} bytes, "
                     f"{job.total_chunks} chunks")
        return job

    def advance(self, job: SenderJob) -> Tuple[Chunk, bool]:
        """
        Produce the next chunk of a job.

        Returns:
            (chunk, is_last) tuple

        Raises:
            ValueError: if the job is already finished or failed
        """
        if job.status == 'failed':
            raise ValueError(f"Job {job.file_id} has failed")
        if job.is_finished:
            raise ValueError(f"Job {job.file_id} has no chunks left")

        start = job.next_index * job.chunk_size
        end = min(job.source_length, start + job.chunk_size)

        chunk = Chunk(
            file_id=job.file_id,
            name=job.name,
            mime_type=job.mime_type,
            chunk_index=job.next_index,
            total_chunks=job.total_chunks,
            payload=job.source[start:end],
            sender_id=job.sender_id,
        )

        job.next_index += 1
        job.status = 'sending'

        if self.progress_callback:
            self.progress_callback(job.file_id, job.progress)

        return chunk, job.is_finished

    async def send(self, job: SenderJob, send_capability: SendCapability,
                   encoder: Callable[[Chunk], bytes] = encode_chunk_frame) -> SenderJob:
        """
        Send every remaining chunk of a job, one at a time.

        Raises:
            SendFailure: if the capability reports the channel is unavailable.
                The job is marked failed and the remaining chunks are dropped.
            Anything else the capability raises, cancellation included, also
                fails the job and is re-raised unchanged.
        """
        logger.info(f"Sending {job.name} ({job.source_length:,} bytes, "
                    f"{job.total_chunks} chunks)")

        while not job.is_finished:
            chunk, _ = self.advance(job)
            try:
                await send_capability(encoder(chunk))
            except (ConnectionError, OSError) as e:
                self._fail(job, e)
                raise SendFailure(
                    f"Send of {job.file_id} aborted at chunk {chunk.chunk_index}: {e}"
                ) from e
            except BaseException as e:
                # Cancellation or a capability bug still ends the job
                self._fail(job, e)
                raise

            self.bytes_sent += len(chunk.payload)

        job.status = 'completed'
        self.files_sent += 1
        self._jobs.pop(job.file_id, None)

        logger.info(f"Sent {job.name} as {job.file_id}")
        return job

    def _fail(self, job: SenderJob, error: BaseException):
        job.status = 'failed'
        job.error = str(error) or type(error).__name__
        self.files_failed += 1
        self._jobs.pop(job.file_id, None)
        logger.error(f"Send failed for {job.file_id} after "
                     f"{job.next_index - 1}/{job.total_chunks} chunks: {error}")

    def abandon(self, job: SenderJob) -> bool:
        """Drop a job without sending the rest of it."""
        return self._jobs.pop(job.file_id, None) is not None

    def active_jobs(self) -> List[SenderJob]:
        """Jobs that have been created but not finished."""
        return list(self._jobs.values())

    def get_stats(self) -> dict:
        """Get sender statistics."""
        return {
            'files_sent': self.files_sent,
            'files_failed': self.files_failed,
            'bytes_sent': self.bytes_sent,
            'active_jobs': len(self._jobs),
        }
