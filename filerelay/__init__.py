"""
File Relay - chunked file transfer over a relay room.

Files are split into fixed-size chunks, each chunk travels as one
self-describing message, and receivers reassemble them in any order.
"""

__version__ = "1.0.0"
