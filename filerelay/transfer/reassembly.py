"""
Reassembly Table

Design Decision: Reassembly Strategy
====================================

Options Considered:
1. Append payloads in arrival order
   - Only correct when the channel never reorders
2. Index-addressed slots per file
   - Order independent, duplicates overwrite in place
3. Spill chunks to disk, stitch on completion
   - Bounded memory, but storage is a collaborator concern here

Decision: Index-addressed slots, one TransferState per (sender_id, file_id)
- slots[chunk_index] holds the payload, received_count counts filled slots
- Completion fires exactly once, then the state is terminal and released
- Completed keys are remembered (bounded) so late duplicates are no-ops

Table Bounds:
- At most max_in_flight live transfers; the least recently touched one
  is evicted when a new transfer would exceed the limit
- At most max_completed remembered completed keys

Locking:
- A table lock guards the key -> state lookup, insert and eviction
- Each TransferState has its own lock for slot updates
- Sink callbacks run after every lock is released
"""

import enum
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from ..file.codec import MAX_TOTAL_CHUNKS, Chunk, MalformedChunk, decode_chunk

logger = logging.getLogger(__name__)

# (sender_id, file_id)
TransferKey = Tuple[str, str]


class RejectReason(str, enum.Enum):
    """Why a chunk was rejected."""
    MALFORMED = "malformed"
    TOTAL_CHUNKS_MISMATCH = "total_chunks_mismatch"


class IgnoreReason(str, enum.Enum):
    """Why a chunk was accepted as a no-op."""
    LATE_CHUNK = "late_chunk"


@dataclass
class CompletedFile:
    """A fully reassembled file, handed to the collaborator once."""
    file_id: str
    name: str
    mime_type: str
    total_chunks: int
    data: bytes = field(repr=False)
    sender_id: str = ""
    completed_at: float = field(default_factory=time.time)

    @property
    def size(self) -> int:
        return len(self.data)


# === Apply results ===

@dataclass(frozen=True)
class Progressed:
    file_id: str
    fraction: float
    received: int
    total: int


@dataclass(frozen=True)
class Completed:
    file: CompletedFile

    @property
    def file_id(self) -> str:
        return self.file.file_id


@dataclass(frozen=True)
class Rejected:
    file_id: Optional[str]
    reason: RejectReason
    detail: str = ""


@dataclass(frozen=True)
class Ignored:
    file_id: str
    reason: IgnoreReason


ApplyResult = Union[Progressed, Completed, Rejected, Ignored]


class ProgressSink:
    """
    Receives progress and completion notifications.

    The base class ignores everything; collaborators override what they
    need.
    """

    def on_progress(self, file_id: str, fraction: float) -> None:
        pass

    def on_completed(self, completed: CompletedFile) -> None:
        pass


@dataclass
class TransferState:
    """Receiver-side accumulator for one file in flight."""
    file_id: str
    name: str
    mime_type: str
    total_chunks: int
    sender_id: str = ""
    slots: List[Optional[bytes]] = field(default=None, repr=False)
    received_count: int = 0
    terminal: bool = False
    created_at: float = field(default_factory=time.monotonic)
    last_touched: float = field(default_factory=time.monotonic)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def __post_init__(self):
        if self.slots is None:
            self.slots = [None] * self.total_chunks

    @classmethod
    def from_chunk(cls, chunk: Chunk) -> 'TransferState':
        return cls(
            file_id=chunk.file_id,
            name=chunk.name,
            mime_type=chunk.mime_type,
            total_chunks=chunk.total_chunks,
            sender_id=chunk.sender_id,
        )

    @property
    def is_complete(self) -> bool:
        return self.received_count == self.total_chunks

    @property
    def fraction(self) -> float:
        return min(max(self.received_count / self.total_chunks, 0.0), 1.0)

    def store(self, index: int, payload: bytes) -> bool:
        """
        Put a payload in its slot.

        Returns:
            True if the slot was empty before
        """
        is_new = self.slots[index] is None
        self.slots[index] = payload
        if is_new:
            self.received_count += 1
        self.last_touched = time.monotonic()
        return is_new

    def assemble(self) -> bytes:
        return b''.join(self.slots)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            'file_id': self.file_id,
            'sender_id': self.sender_id,
            'name': self.name,
            'mime_type': self.mime_type,
            'total_chunks': self.total_chunks,
            'received_chunks': self.received_count,
            'progress_percent': self.fraction * 100,
            'missing': [i for i, s in enumerate(self.slots) if s is None],
        }


class ReassemblyTable:
    """
    Process-wide map from file id to in-flight reassembly state.

    All mutation goes through apply_chunk(). Safe to call from several
    threads at once as long as chunks of one file arrive from one stream.
    """

    def __init__(self, max_in_flight: int = 64, max_completed: int = 1024,
                 progress_sink: ProgressSink = None,
                 max_payload_size: Optional[int] = None,
                 max_total_chunks: int = MAX_TOTAL_CHUNKS):
        if max_in_flight <= 0:
            raise ValueError(f"max_in_flight must be positive, got {max_in_flight}")
        self.max_in_flight = max_in_flight
        self.max_completed = max_completed
        self.progress_sink = progress_sink or ProgressSink()
        self.max_payload_size = max_payload_size
        self.max_total_chunks = max_total_chunks

        self._lock = threading.Lock()
        self._states: 'OrderedDict[TransferKey, TransferState]' = OrderedDict()
        self._completed: 'OrderedDict[TransferKey, float]' = OrderedDict()

        # Statistics
        self.files_completed = 0
        self.chunks_applied = 0
        self.chunks_rejected = 0
        self.chunks_ignored = 0
        self.transfers_evicted = 0

    # === Core entry points ===

    def on_inbound_message(self, raw) -> ApplyResult:
        """Decode one raw wire message and apply it."""
        try:
            chunk = decode_chunk(raw, max_payload_size=self.max_payload_size,
                                 max_total_chunks=self.max_total_chunks)
        except MalformedChunk as e:
            return self._reject_malformed(None, str(e))

        return self.apply_chunk(chunk)

    def apply_chunk(self, chunk: Chunk) -> ApplyResult:
        """
        Apply one chunk to its transfer.

        Returns:
            Progressed, Completed, Rejected or Ignored
        """
        if chunk.total_chunks > self.max_total_chunks:
            return self._reject_malformed(
                chunk.file_id,
                f"totalChunks {chunk.total_chunks} exceeds limit {self.max_total_chunks}",
            )

        key = (chunk.sender_id, chunk.file_id)

        with self._lock:
            if key in self._completed:
                self.chunks_ignored += 1
                logger.debug(f"Ignoring late chunk {chunk.chunk_index} for completed {chunk.file_id}")
                return Ignored(file_id=chunk.file_id, reason=IgnoreReason.LATE_CHUNK)

            state = self._states.get(key)
            if state is None:
                state = TransferState.from_chunk(chunk)
                self._states[key] = state
                self._evict_overflow(keep=key)
                logger.debug(f"New transfer {chunk.file_id} ({chunk.name}, "
                             f"{chunk.total_chunks} chunks)")
            else:
                self._states.move_to_end(key)

        result, completed = self._apply_to_state(state, chunk)

        if completed is not None:
            with self._lock:
                if self._states.get(key) is state:
                    del self._states[key]
                self._remember_completed(key)
                self.files_completed += 1
            logger.info(f"Reassembled {completed.name} ({completed.size:,} bytes, "
                        f"{completed.total_chunks} chunks)")
            self.progress_sink.on_progress(chunk.file_id, 1.0)
            self.progress_sink.on_completed(completed)
        elif isinstance(result, Progressed):
            self.progress_sink.on_progress(result.file_id, result.fraction)

        return result

    def _reject_malformed(self, file_id: Optional[str], detail: str) -> Rejected:
        with self._lock:
            self.chunks_rejected += 1
        logger.warning(f"Dropping malformed chunk: {detail}")
        return Rejected(file_id=file_id, reason=RejectReason.MALFORMED, detail=detail)

    def _apply_to_state(self, state: TransferState,
                        chunk: Chunk) -> Tuple[ApplyResult, Optional[CompletedFile]]:
        with state.lock:
            if state.terminal:
                with self._lock:
                    self.chunks_ignored += 1
                return Ignored(file_id=chunk.file_id, reason=IgnoreReason.LATE_CHUNK), None

            if chunk.total_chunks != state.total_chunks:
                with self._lock:
                    self.chunks_rejected += 1
                detail = (f"totalChunks {chunk.total_chunks} != established "
                          f"{state.total_chunks}")
                logger.warning(f"Rejecting chunk {chunk.chunk_index} of {chunk.file_id}: "
                               f"{detail} (possible fileId collision)")
                return Rejected(file_id=chunk.file_id,
                                reason=RejectReason.TOTAL_CHUNKS_MISMATCH,
                                detail=detail), None

            if not state.store(chunk.chunk_index, chunk.payload):
                logger.debug(f"Duplicate chunk {chunk.chunk_index} of {chunk.file_id}")
            with self._lock:
                self.chunks_applied += 1

            if not state.is_complete:
                return Progressed(
                    file_id=state.file_id,
                    fraction=state.fraction,
                    received=state.received_count,
                    total=state.total_chunks,
                ), None

            state.terminal = True
            completed = CompletedFile(
                file_id=state.file_id,
                name=state.name,
                mime_type=state.mime_type,
                total_chunks=state.total_chunks,
                data=state.assemble(),
                sender_id=state.sender_id,
            )
            # Payloads now live in the completed buffer only
            state.slots = [None] * state.total_chunks
            return Completed(file=completed), completed

    # === Bounds (call with self._lock held) ===

    def _evict_overflow(self, keep: TransferKey):
        while len(self._states) > self.max_in_flight:
            oldest = next(iter(self._states))
            if oldest == keep:
                break
            state = self._states.pop(oldest)
            self.transfers_evicted += 1
            logger.warning(f"Evicted stalled transfer {state.file_id} "
                           f"({state.received_count}/{state.total_chunks} chunks)")

    def _remember_completed(self, key: TransferKey):
        self._completed[key] = time.monotonic()
        self._completed.move_to_end(key)
        while len(self._completed) > self.max_completed:
            self._completed.popitem(last=False)

    # === Management ===

    def evict(self, file_id: str, sender_id: str = "") -> bool:
        """Abandon an in-flight transfer. Returns False if it was unknown."""
        with self._lock:
            state = self._states.pop((sender_id, file_id), None)
            if state is None:
                return False
            self.transfers_evicted += 1
        logger.info(f"Evicted transfer {file_id}")
        return True

    def evict_idle(self, max_idle_seconds: float) -> List[TransferKey]:
        """Evict every transfer untouched for longer than max_idle_seconds."""
        cutoff = time.monotonic() - max_idle_seconds
        with self._lock:
            stale = [k for k, s in self._states.items() if s.last_touched < cutoff]
            for key in stale:
                del self._states[key]
            self.transfers_evicted += len(stale)

        for _, file_id in stale:
            logger.info(f"Evicted idle transfer {file_id}")
        return stale

    def progress(self, file_id: str, sender_id: str = "") -> Optional[float]:
        """Fraction received for an in-flight transfer, 1.0 if completed."""
        key = (sender_id, file_id)
        with self._lock:
            if key in self._completed:
                return 1.0
            state = self._states.get(key)
            return state.fraction if state else None

    def is_completed(self, file_id: str, sender_id: str = "") -> bool:
        with self._lock:
            return (sender_id, file_id) in self._completed

    def snapshot(self) -> List[Dict[str, Any]]:
        """In-flight transfers, least recently touched first."""
        with self._lock:
            states = list(self._states.values())
        return [s.to_dict() for s in states]

    def __len__(self) -> int:
        with self._lock:
            return len(self._states)

    def __contains__(self, key: TransferKey) -> bool:
        with self._lock:
            return key in self._states

    def get_stats(self) -> dict:
        """Get reassembly statistics."""
        with self._lock:
            return {
                'in_flight': len(self._states),
                'files_completed': self.files_completed,
                'chunks_applied': self.chunks_applied,
                'chunks_rejected': self.chunks_rejected,
                'chunks_ignored': self.chunks_ignored,
                'transfers_evicted': self.transfers_evicted,
            }
