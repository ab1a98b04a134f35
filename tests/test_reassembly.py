"""Unit tests for the reassembly table."""

import itertools
import json
import random
import threading
import time

import pytest

from filerelay.file import encode_chunk, encode_chunk_frame
from filerelay.transfer import (
    CompletedFile, Completed, Ignored, IgnoreReason, Progressed, ProgressSink,
    ReassemblyTable, Rejected, RejectReason, SenderPacer,
)

from conftest import make_chunk, split


class RecordingSink(ProgressSink):
    """Collects every notification."""

    def __init__(self):
        self.progress = []
        self.completed = []

    def on_progress(self, file_id, fraction):
        self.progress.append((file_id, fraction))

    def on_completed(self, completed):
        self.completed.append(completed)


def chunks_for(data, chunk_size, file_id='f1', sender_id=''):
    parts = split(data, chunk_size)
    return [make_chunk(i, len(parts), part, file_id=file_id, sender_id=sender_id)
            for i, part in enumerate(parts)]


class TestReassemblyScenarios:
    """Concrete end-to-end scenarios."""

    def test_three_chunks_out_of_order(self, sample_data):
        sink = RecordingSink()
        table = ReassemblyTable(progress_sink=sink)
        chunks = chunks_for(sample_data, 65536)

        assert [len(c.payload) for c in chunks] == [65536, 65536, 18928]

        first = table.apply_chunk(chunks[2])
        second = table.apply_chunk(chunks[0])
        third = table.apply_chunk(chunks[1])

        assert first == Progressed(file_id='f1', fraction=pytest.approx(1 / 3), received=1, total=3)
        assert second == Progressed(file_id='f1', fraction=pytest.approx(2 / 3), received=2, total=3)
        assert isinstance(third, Completed)
        assert third.file.data == sample_data
        assert third.file.size == 150_000
        assert sink.completed == [third.file]
        assert [p for _, p in sink.progress] == pytest.approx([1 / 3, 2 / 3, 1.0])

    def test_empty_file_completes_immediately(self):
        table = ReassemblyTable()
        result = table.apply_chunk(make_chunk(0, 1, b''))

        assert isinstance(result, Completed)
        assert result.file.data == b''
        assert result.file.size == 0

    def test_duplicate_final_chunk_after_completion_is_ignored(self):
        sink = RecordingSink()
        table = ReassemblyTable(progress_sink=sink)
        chunks = chunks_for(b'abcdef', 2)

        for chunk in chunks:
            table.apply_chunk(chunk)
        again = table.apply_chunk(chunks[-1])

        assert again == Ignored(file_id='f1', reason=IgnoreReason.LATE_CHUNK)
        assert len(sink.completed) == 1

    def test_completed_state_leaves_table(self):
        table = ReassemblyTable()
        for chunk in chunks_for(b'abcd', 2):
            table.apply_chunk(chunk)

        assert len(table) == 0
        assert table.is_completed('f1')
        assert table.progress('f1') == 1.0


class TestReassemblyProperties:
    """Properties that hold for any delivery order."""

    @pytest.mark.parametrize("order", list(itertools.permutations(range(4))))
    def test_any_permutation_round_trips(self, order):
        data = bytes(range(200)) * 3
        chunks = chunks_for(data, 160)
        assert len(chunks) == 4

        table = ReassemblyTable()
        results = [table.apply_chunk(chunks[i]) for i in order]

        assert all(isinstance(r, Progressed) for r in results[:-1])
        assert isinstance(results[-1], Completed)
        assert results[-1].file.data == data

    def test_random_order_with_duplicates(self):
        rng = random.Random(1234)
        data = bytes(rng.randrange(256) for _ in range(10_000))
        chunks = chunks_for(data, 333)

        deliveries = chunks + rng.sample(chunks, 10)
        rng.shuffle(deliveries)

        table = ReassemblyTable()
        completions = []
        for chunk in deliveries:
            result = table.apply_chunk(chunk)
            if isinstance(result, Completed):
                completions.append(result)

        assert len(completions) == 1
        assert completions[0].file.data == data

    def test_duplicate_does_not_increment_count(self):
        table = ReassemblyTable()
        chunks = chunks_for(b'abcdef', 2)

        first = table.apply_chunk(chunks[0])
        again = table.apply_chunk(chunks[0])

        assert first.received == 1
        assert again.received == 1
        assert table.snapshot()[0]['received_chunks'] == 1

    def test_duplicate_overwrites_slot(self):
        table = ReassemblyTable()
        table.apply_chunk(make_chunk(0, 2, b'old'))
        table.apply_chunk(make_chunk(0, 2, b'new'))
        result = table.apply_chunk(make_chunk(1, 2, b'!'))

        assert result.file.data == b'new!'

    def test_received_count_is_monotonic(self):
        table = ReassemblyTable()
        chunks = chunks_for(bytes(100), 10)
        rng = random.Random(7)
        seen = []
        for chunk in rng.choices(chunks[:-1], k=40):
            seen.append(table.apply_chunk(chunk).received)

        assert seen == sorted(seen)
        assert seen[-1] <= 9

    def test_total_mismatch_rejected_without_mutation(self):
        table = ReassemblyTable()
        table.apply_chunk(make_chunk(0, 3, b'a'))
        before = table.snapshot()

        result = table.apply_chunk(make_chunk(1, 4, b'b'))

        assert isinstance(result, Rejected)
        assert result.reason == RejectReason.TOTAL_CHUNKS_MISMATCH
        assert table.snapshot() == before
        assert table.get_stats()['chunks_rejected'] == 1

    def test_fraction_stays_in_range(self):
        table = ReassemblyTable()
        for chunk in chunks_for(bytes(50), 10)[:-1]:
            result = table.apply_chunk(chunk)
            assert 0.0 <= result.fraction < 1.0


class TestInboundMessages:
    """Test decoding through on_inbound_message."""

    def test_json_and_frames_mix(self):
        table = ReassemblyTable()
        chunks = chunks_for(b'hello world', 4)

        table.on_inbound_message(encode_chunk(chunks[0]))
        table.on_inbound_message(encode_chunk_frame(chunks[2]))
        result = table.on_inbound_message(encode_chunk(chunks[1]).encode())

        assert isinstance(result, Completed)
        assert result.file.data == b'hello world'

    def test_malformed_message_is_dropped(self):
        table = ReassemblyTable()
        table.apply_chunk(make_chunk(0, 2, b'a'))

        result = table.on_inbound_message(json.dumps({"type": "filechunk", "fileId": "f1"}))

        assert isinstance(result, Rejected)
        assert result.reason == RejectReason.MALFORMED
        assert table.progress('f1') == 0.5

    def test_oversized_payload_rejected(self):
        table = ReassemblyTable(max_payload_size=2)
        result = table.on_inbound_message(encode_chunk(make_chunk(0, 1, b'abc')))
        assert result.reason == RejectReason.MALFORMED

    def test_huge_total_chunks_rejected_without_state(self):
        table = ReassemblyTable()
        message = json.dumps({
            "type": "filechunk", "fileId": "big", "name": "big.bin", "mimeType": "",
            "chunkIndex": 0, "totalChunks": 10 ** 12, "payload": "",
        })

        result = table.on_inbound_message(message)

        assert isinstance(result, Rejected)
        assert result.reason == RejectReason.MALFORMED
        assert table.get_stats()['in_flight'] == 0

    def test_total_chunks_limit_applies_to_direct_chunks(self):
        table = ReassemblyTable(max_total_chunks=4)

        result = table.apply_chunk(make_chunk(0, 5))

        assert isinstance(result, Rejected)
        assert result.reason == RejectReason.MALFORMED
        assert result.file_id == 'f1'
        assert table.get_stats()['chunks_rejected'] == 1
        assert isinstance(table.apply_chunk(make_chunk(0, 4)), Progressed)

    def test_deeply_nested_message_rejected(self):
        nested = "[" * 200_000 + "]" * 200_000
        result = ReassemblyTable().on_inbound_message(
            '{"type":"filechunk","fileId":' + nested + "}")
        assert isinstance(result, Rejected)
        assert result.reason == RejectReason.MALFORMED

    def test_pacer_output_reassembles(self, sample_data):
        pacer = SenderPacer(chunk_size=10_000, sender_id='alice')
        job = pacer.begin_send(sample_data, 'report.pdf', 'application/pdf')
        frames = []
        while not job.is_finished:
            chunk, _ = pacer.advance(job)
            frames.append(encode_chunk_frame(chunk))

        table = ReassemblyTable()
        results = [table.on_inbound_message(f) for f in reversed(frames)]

        completed = results[-1].file
        assert isinstance(completed, CompletedFile)
        assert completed.data == sample_data
        assert completed.sender_id == 'alice'
        assert completed.name == 'report.pdf'
        assert completed.mime_type == 'application/pdf'


class TestKeys:
    """Test (sender_id, file_id) keying."""

    def test_same_file_id_from_different_senders(self):
        table = ReassemblyTable()
        table.apply_chunk(make_chunk(0, 2, b'A', sender_id='alice'))
        table.apply_chunk(make_chunk(0, 3, b'B', sender_id='bob'))

        assert len(table) == 2
        assert ('alice', 'f1') in table
        assert ('bob', 'f1') in table

        done = table.apply_chunk(make_chunk(1, 2, b'a', sender_id='alice'))
        assert done.file.data == b'Aa'
        assert table.progress('f1', sender_id='bob') == pytest.approx(1 / 3)


class TestEviction:
    """Test bounds and cancellation."""

    def test_lru_eviction_over_capacity(self):
        table = ReassemblyTable(max_in_flight=2)
        table.apply_chunk(make_chunk(0, 2, file_id='a'))
        table.apply_chunk(make_chunk(0, 2, file_id='b'))
        table.apply_chunk(make_chunk(0, 2, file_id='a'))  # touch a
        table.apply_chunk(make_chunk(0, 2, file_id='c'))

        assert ('', 'a') in table
        assert ('', 'b') not in table
        assert ('', 'c') in table
        assert table.get_stats()['transfers_evicted'] == 1

    def test_evicted_transfer_restarts_on_late_chunk(self):
        table = ReassemblyTable()
        table.apply_chunk(make_chunk(0, 2, b'a'))
        assert table.evict('f1')

        result = table.apply_chunk(make_chunk(1, 2, b'b'))

        assert isinstance(result, Progressed)
        assert result.received == 1

    def test_evict_unknown(self):
        assert not ReassemblyTable().evict('missing')

    def test_evict_idle(self):
        table = ReassemblyTable()
        table.apply_chunk(make_chunk(0, 2, file_id='old'))
        time.sleep(0.3)
        table.apply_chunk(make_chunk(0, 2, file_id='new'))

        evicted = table.evict_idle(0.15)

        assert evicted == [('', 'old')]
        assert len(table) == 1

    def test_completed_keys_are_bounded(self):
        table = ReassemblyTable(max_completed=2)
        for file_id in ('a', 'b', 'c'):
            table.apply_chunk(make_chunk(0, 1, file_id=file_id))

        assert not table.is_completed('a')
        assert table.is_completed('b')
        assert table.is_completed('c')

    def test_invalid_capacity(self):
        with pytest.raises(ValueError):
            ReassemblyTable(max_in_flight=0)


class TestConcurrency:
    """Test applying chunks from several threads."""

    def test_threads_on_different_files(self):
        sink = RecordingSink()
        table = ReassemblyTable(progress_sink=sink)
        files = {f"file-{n}": bytes([n]) * 5000 for n in range(8)}
        errors = []

        def worker(file_id, data):
            try:
                chunks = chunks_for(data, 100, file_id=file_id)
                random.Random(file_id).shuffle(chunks)
                for chunk in chunks:
                    table.apply_chunk(chunk)
            except Exception as e:  # pragma: no cover
                errors.append(e)

        threads = [threading.Thread(target=worker, args=item) for item in files.items()]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(table) == 0
        assert {c.file_id: c.data for c in sink.completed} == files

    def test_threads_on_same_file_complete_once(self):
        sink = RecordingSink()
        table = ReassemblyTable(progress_sink=sink)
        data = bytes(range(256)) * 40
        chunks = chunks_for(data, 64)

        def worker():
            for chunk in chunks:
                table.apply_chunk(chunk)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(sink.completed) == 1
        assert sink.completed[0].data == data
