"""
Transfer Module - Sending, Reassembly and Relay Transport

Handles pacing outgoing chunks, reassembling incoming ones, and moving
them over a relay connection.
"""

from .sender import SenderPacer, SenderJob, SendFailure, generate_file_id
from .reassembly import (
    ReassemblyTable, TransferState, CompletedFile, ProgressSink,
    Progressed, Completed, Rejected, Ignored, RejectReason, IgnoreReason,
)
from .protocol import RelayMessage, RelayMessageType, RelayConnection
from .relay import RelayServer
from .client import RelayClient

__all__ = [
    'SenderPacer',
    'SenderJob',
    'SendFailure',
    'generate_file_id',
    'ReassemblyTable',
    'TransferState',
    'CompletedFile',
    'ProgressSink',
    'Progressed',
    'Completed',
    'Rejected',
    'Ignored',
    'RejectReason',
    'IgnoreReason',
    'RelayMessage',
    'RelayMessageType',
    'RelayConnection',
    'RelayServer',
    'RelayClient',
]
