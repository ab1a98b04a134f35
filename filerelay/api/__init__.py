"""
API Module - REST API for a Transfer Node

Provides HTTP endpoints for sending files and listing received ones.
"""

from .rest import create_app, run_api_server

__all__ = ['create_app', 'run_api_server']
