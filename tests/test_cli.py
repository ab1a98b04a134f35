"""Tests for CLI commands."""

import asyncio
import socket

import pytest
from click.testing import CliRunner

from filerelay.cli import cli, format_size
from filerelay.storage import init_database
from filerelay.transfer import CompletedFile, SenderPacer


def unused_port():
    with socket.socket() as s:
        s.bind(('127.0.0.1', 0))
        return s.getsockname()[1]


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    import os
    for key in list(os.environ):
        if key.startswith('FILERELAY_'):
            monkeypatch.delenv(key)
    monkeypatch.chdir(tmp_path)


def test_format_size():
    assert format_size(512) == "512.0 B"
    assert format_size(150_000) == "146.5 KB"
    assert format_size(5 * 1024 ** 3) == "5.0 GB"


def test_files_empty(tmp_path):
    result = CliRunner().invoke(cli, ['--data-dir', str(tmp_path / 'data'), 'files'])

    assert result.exit_code == 0
    assert 'No received files' in result.output


def test_files_lists_received(tmp_path):
    data_dir = tmp_path / 'data'

    async def seed():
        db = await init_database(data_dir)
        await db.add_received_file(CompletedFile(
            file_id='notes-1', name='notes.txt', mime_type='text/plain',
            total_chunks=1, data=b'hi', sender_id='alice',
        ))
        await db.close()

    asyncio.run(seed())
    result = CliRunner().invoke(cli, ['--data-dir', str(data_dir), 'files'])

    assert result.exit_code == 0
    assert 'notes.txt' in result.output
    assert 'alice' in result.output


def test_send_without_relay_exits_nonzero(tmp_path):
    file_path = tmp_path / 'x.txt'
    file_path.write_text('payload')

    result = CliRunner().invoke(cli, [
        '--data-dir', str(tmp_path / 'data'),
        '--port', str(unused_port()),
        'send', str(file_path),
    ])

    assert result.exit_code == 1


def test_send_rejects_bad_chunk_size(tmp_path):
    file_path = tmp_path / 'x.txt'
    file_path.write_text('payload')

    result = CliRunner().invoke(cli, ['send', str(file_path), '--chunk-size', '0'])

    assert result.exit_code == 2


def test_send_missing_file(tmp_path):
    result = CliRunner().invoke(cli, ['send', str(tmp_path / 'missing.txt')])
    assert result.exit_code == 2


def test_files_lists_sent(tmp_path):
    data_dir = tmp_path / 'data'

    async def seed():
        db = await init_database(data_dir)
        job = SenderPacer(chunk_size=4).begin_send(b'abcdefgh', 'out.bin')
        job.status = 'completed'
        await db.record_sent_file(job)
        await db.close()

    asyncio.run(seed())
    result = CliRunner().invoke(cli, ['--data-dir', str(data_dir), 'files', '--sent'])

    assert result.exit_code == 0
    assert 'out.bin' in result.output
    assert 'completed' in result.output
