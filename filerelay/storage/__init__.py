"""
Storage Module - Received Files and Transfer History

Writes reassembled files to disk and keeps their metadata in SQLite.
"""

from .database import Database, init_database
from .files import FileStore, safe_filename, stored_id

__all__ = ['Database', 'init_database', 'FileStore', 'safe_filename', 'stored_id']
