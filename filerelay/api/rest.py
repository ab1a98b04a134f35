"""
REST API for a Transfer Node

Design Decision: API Framework
==============================

Options Considered:
1. FastAPI - Modern, fast, auto-docs, async support
2. Flask - Simple, widely used, but sync-focused
3. aiohttp - Async, but less features

Decision: FastAPI
- Runs on the same event loop as the node
- Pydantic validation for request bodies
- FileResponse serves received files directly ("download links")

API Design:
- JSON responses
- 404 for unknown files, 400 for bad paths
- 502 when the relay drops mid-send, 503 when the node is not running
"""

import logging
from pathlib import Path
from typing import Optional, List
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.responses import FileResponse
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from .. import __version__
from ..transfer import SendFailure

logger = logging.getLogger(__name__)

# Global reference to the node (set when app is created)
_node = None


# === Pydantic Models ===

class SendRequest(BaseModel):
    """Request to send a file to the room."""
    file_path: str
    mime_type: Optional[str] = None


class NodeStatus(BaseModel):
    """Node status response."""
    node_id: str
    running: bool
    room: str
    relay: str
    connected: bool
    files_received: int
    files_sent: int
    transfers_in_flight: int


class ReceivedFileInfo(BaseModel):
    """Information about a received file."""
    id: str
    file_id: str
    sender_id: str
    name: str
    mime_type: str
    size: int
    total_chunks: int
    received_at: Optional[str] = None
    download_url: str


def _file_info(row: dict) -> ReceivedFileInfo:
    return ReceivedFileInfo(
        id=row['id'],
        file_id=row['file_id'],
        sender_id=row['sender_id'],
        name=row['name'],
        mime_type=row['mime_type'],
        size=row['size'],
        total_chunks=row['total_chunks'],
        received_at=row.get('received_at'),
        download_url=f"/files/{row['id']}/download",
    )


def _require_node():
    if not _node or not _node.is_running:
        raise HTTPException(status_code=503, detail="Node not initialized")
    return _node


# === API Creation ===

def create_app(node=None) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        node: TransferNode instance to control

    Returns:
        FastAPI application
    """
    global _node
    _node = node

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Handle startup and shutdown."""
        logger.info("API server starting...")
        yield
        logger.info("API server stopping...")

    app = FastAPI(
        title="File Relay API",
        description="REST API for sending and receiving files over a relay room",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # === Endpoints ===

    @app.get("/", tags=["General"])
    async def root():
        """API root - basic info."""
        return {
            "name": "File Relay",
            "version": __version__,
            "status": "running" if _node and _node.is_running else "not running"
        }

    @app.get("/status", response_model=NodeStatus, tags=["Node"])
    async def get_status():
        """Get node status."""
        node = _require_node()
        stats = node.get_full_stats()

        return NodeStatus(
            node_id=stats['node_id'],
            running=stats['running'],
            room=stats['room'],
            relay=stats['relay']['endpoint'],
            connected=stats['relay']['connected'],
            files_received=stats['reassembly']['files_completed'],
            files_sent=stats['sender']['files_sent'],
            transfers_in_flight=stats['reassembly']['in_flight'],
        )

    @app.get("/transfers", tags=["Node"])
    async def get_transfers():
        """In-flight transfers in both directions."""
        node = _require_node()
        return node.get_transfers()

    # === File Operations ===

    @app.get("/files", response_model=List[ReceivedFileInfo], tags=["Files"])
    async def list_files(limit: int = 100):
        """List received files."""
        node = _require_node()
        rows = await node.list_received_files(limit)
        return [_file_info(row) for row in rows]

    @app.get("/files/{stored_id}", response_model=ReceivedFileInfo, tags=["Files"])
    async def get_file_info(stored_id: str):
        """Get information about a received file."""
        node = _require_node()
        row = await node.get_received_file(stored_id)
        if not row:
            raise HTTPException(status_code=404, detail="File not found")
        return _file_info(row)

    @app.get("/files/{stored_id}/download", tags=["Files"])
    async def download_file(stored_id: str):
        """Serve a received file."""
        node = _require_node()
        row = await node.get_received_file(stored_id)
        path = node.get_received_path(stored_id)
        if not row or path is None:
            raise HTTPException(status_code=404, detail="File not found")

        return FileResponse(
            path,
            media_type=row['mime_type'] or "application/octet-stream",
            filename=row['name'],
        )

    @app.delete("/files/{stored_id}", tags=["Files"])
    async def delete_file(stored_id: str):
        """Delete a received file."""
        node = _require_node()
        if not await node.delete_received_file(stored_id):
            raise HTTPException(status_code=404, detail="File not found")
        return {"success": True}

    @app.post("/files/send", tags=["Files"])
    async def send_file(request: SendRequest):
        """Send a local file to the room."""
        node = _require_node()

        file_path = Path(request.file_path)
        if not file_path.is_absolute():
            file_path = file_path.resolve()

        logger.info(f"Send request for: {file_path}")

        if not file_path.exists():
            raise HTTPException(status_code=404, detail=f"File not found: {file_path}")

        if not file_path.is_file():
            raise HTTPException(status_code=400, detail=f"Not a file: {file_path}")

        try:
            job = await node.send_file(file_path, mime_type=request.mime_type)
        except SendFailure as e:
            logger.error(f"Send failed: {e}")
            raise HTTPException(status_code=502, detail=str(e))

        return {"success": True, **job.to_dict()}

    return app


async def run_api_server(node, host: str = "0.0.0.0", port: int = 8080):
    """
    Run the API server.

    Args:
        node: TransferNode instance
        host: Host to bind to
        port: Port to listen on
    """
    import uvicorn

    app = create_app(node)

    config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_level="info",
    )
    server = uvicorn.Server(config)
    await server.serve()
