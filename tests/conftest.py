"""Shared pytest fixtures for all tests."""

import pytest
import pytest_asyncio

from filerelay.config import Config
from filerelay.file import Chunk
from filerelay.transfer import RelayServer


def make_chunk(index, total, payload=b'x', file_id='f1', sender_id='',
               name='a.bin', mime_type='application/octet-stream'):
    """Build a chunk with sensible defaults."""
    return Chunk(
        file_id=file_id,
        name=name,
        mime_type=mime_type,
        chunk_index=index,
        total_chunks=total,
        payload=payload,
        sender_id=sender_id,
    )


def split(data, chunk_size):
    """Slice data the way a sender does; empty data is one empty slice."""
    if not data:
        return [b'']
    return [data[i:i + chunk_size] for i in range(0, len(data), chunk_size)]


@pytest.fixture
def sample_data():
    """150,000 bytes of non-repeating content."""
    return bytes((i * 7 + i // 256) % 256 for i in range(150_000))


@pytest.fixture
def sample_file(tmp_path, sample_data):
    """
    Create a sample file for send tests.

    Returns:
        Path to the file
    """
    file_path = tmp_path / 'report.pdf'
    file_path.write_bytes(sample_data)
    return file_path


@pytest_asyncio.fixture
async def relay_server():
    """Relay server on an ephemeral local port."""
    server = RelayServer('127.0.0.1', 0)
    await server.start()
    yield server
    await server.stop()


@pytest.fixture
def node_config_factory(tmp_path, relay_server):
    """Build node configs that point at the test relay."""
    def factory(name, **overrides):
        config = Config(
            relay_host='127.0.0.1',
            relay_port=relay_server.port,
            room='test-room',
            peer_name=name,
            data_dir=tmp_path / name,
            connect_timeout=5.0,
        )
        for key, value in overrides.items():
            setattr(config, key, value)
        return config
    return factory
