import os
import threading

import pytest

from streamlog.datalog import Datalog, read_chunks_until, read_next_chunk
from streamlog.models import (
    ALIGNMENT_FLAG,
    ALIGNMENT_SIZE,
    CHUNK_HEADER_SIZE,
    MiB,
    ChecksumError,
    DatalogConfig,
    TopicDataId,
    encode_chunk,
    segment_file_name,
)


def create_test_chunk(body_length, start, record_length):
    body = bytes(i % 256 for i in range(body_length))
    return encode_chunk(body, start, record_length)


def create_aligned_chunk(body_length, start, record_length):
    chunk = create_test_chunk(body_length, start, record_length)
    rem = len(chunk) % ALIGNMENT_SIZE
    if rem == 0:
        return chunk
    return chunk + bytes([ALIGNMENT_FLAG]) * (ALIGNMENT_SIZE - rem)


def create_segment_file_and_config(tmp_path, segment_id, chunks):
    config = DatalogConfig(segments_path=tmp_path)
    base = config.datalog_path(TopicDataId())
    os.makedirs(base, exist_ok=True)
    with open(os.path.join(base, segment_file_name(segment_id)), "wb") as f:
        f.write(b"".join(chunks))
    return config


class TestReadChunksUntil:
    def test_single_chunk(self):
        chunk = create_aligned_chunk(400, 100, 50)
        obtained, complete = read_chunks_until(chunk, 100, 20)
        assert complete is True
        assert obtained == chunk[: CHUNK_HEADER_SIZE + 400]

    def test_multiple_chunks(self):
        chunk1 = create_aligned_chunk(480, 100, 50)
        chunks = chunk1 + create_test_chunk(200, 150, 50)
        obtained, complete = read_chunks_until(chunks, 100, 300)
        assert complete is True
        assert obtained == chunks[: len(chunk1) + CHUNK_HEADER_SIZE + 200]

    def test_chunk_matching_start(self):
        chunk1 = create_aligned_chunk(480, 100, 50)
        chunk2 = create_test_chunk(200, 150, 50)
        obtained, complete = read_chunks_until(chunk1 + chunk2, 150, 300)
        assert complete is True
        assert obtained == chunk2

    def test_stops_at_max_records(self):
        chunk1 = create_aligned_chunk(480, 100, 50)
        chunk2 = create_test_chunk(200, 150, 50)
        obtained, complete = read_chunks_until(chunk1 + chunk2, 100, 20)
        assert complete is True
        assert obtained == chunk1[: CHUNK_HEADER_SIZE + 480]

    def test_header_not_contained(self):
        chunk2 = create_test_chunk(200, 100, 50)
        chunks = create_test_chunk(200, 0, 100) + chunk2[: CHUNK_HEADER_SIZE - 2]
        obtained, complete = read_chunks_until(chunks, 100, 300)
        assert complete is False
        assert obtained == chunk2[: CHUNK_HEADER_SIZE - 2]

    def test_body_not_contained(self):
        chunk2 = create_test_chunk(200, 100, 50)
        chunks = create_test_chunk(200, 0, 100) + chunk2[: CHUNK_HEADER_SIZE + 10]
        obtained, complete = read_chunks_until(chunks, 100, 300)
        assert complete is False
        assert obtained == chunk2[: CHUNK_HEADER_SIZE + 10]

    def test_corrupted_header(self):
        chunk = bytearray(create_test_chunk(50, 0, 10))
        chunk[CHUNK_HEADER_SIZE - 1] ^= 0xFF
        with pytest.raises(ChecksumError):
            read_chunks_until(bytes(chunk), 0, 10)


class TestReadNextChunk:
    def test_skips_alignment(self):
        chunk = create_test_chunk(30, 7, 3)
        header, alignment = read_next_chunk(bytes([ALIGNMENT_FLAG]) * 5 + chunk)
        assert alignment == 5
        assert (header.start, header.record_length, header.body_length) == (7, 3, 30)

    def test_incomplete(self):
        chunk = create_test_chunk(30, 7, 3)
        assert read_next_chunk(chunk[:-1]) == (None, 0)


class TestReadFileFrom:
    def test_single_chunk_when_contained(self, tmp_path):
        chunks = [
            create_aligned_chunk(400, 0, 100),
            create_aligned_chunk(400, 100, 100),
            create_aligned_chunk(400, 200, 100),
        ]
        d = Datalog(create_segment_file_and_config(tmp_path, 0, chunks))
        obtained = d.read_file_from(4096, MiB, 0, 100, 20, TopicDataId())
        assert obtained == chunks[1][: CHUNK_HEADER_SIZE + 400]

    def test_chunks_until_max_records(self, tmp_path):
        chunks = [
            create_aligned_chunk(400, 0, 100),
            create_aligned_chunk(400, 100, 100),
            create_aligned_chunk(400, 200, 100),
            create_aligned_chunk(400, 300, 100),
        ]
        d = Datalog(create_segment_file_and_config(tmp_path, 0, chunks))
        obtained = d.read_file_from(4096, MiB, 0, 100, 300, TopicDataId())
        assert obtained == chunks[1] + chunks[2] + chunks[3][: CHUNK_HEADER_SIZE + 400]

    def test_chunks_that_fit_into_buffer(self, tmp_path):
        chunks = [
            create_aligned_chunk(3000, 0, 100),
            create_aligned_chunk(400, 100, 100),
            create_aligned_chunk(3000, 200, 100),
        ]
        d = Datalog(create_segment_file_and_config(tmp_path, 0, chunks))
        obtained = d.read_file_from(4096, MiB, 0, 100, 300, TopicDataId())
        assert obtained == chunks[1][: CHUNK_HEADER_SIZE + 400]

    def test_multiple_reads_after_skipping(self, tmp_path):
        max_chunk_size = ALIGNMENT_SIZE * 8
        large = max_chunk_size - 1000
        chunks = [
            create_aligned_chunk(large, 0, 100),
            create_aligned_chunk(400, 100, 100),
            create_aligned_chunk(large, 200, 100),
        ]
        d = Datalog(create_segment_file_and_config(tmp_path, 0, chunks))
        obtained = d.read_file_from(max_chunk_size, MiB, 0, 200, 300, TopicDataId())
        assert obtained == chunks[2][: CHUNK_HEADER_SIZE + large]

    def test_offset_not_found(self, tmp_path):
        chunks = [create_aligned_chunk(400, 0, 100)]
        d = Datalog(create_segment_file_and_config(tmp_path, 0, chunks))
        assert d.read_file_from(4096, MiB, 0, 500, 10, TopicDataId()) is None

    def test_missing_file(self, tmp_path):
        d = Datalog(DatalogConfig(segments_path=tmp_path))
        with pytest.raises(FileNotFoundError):
            d.read_file_from(4096, MiB, 0, 0, 10, TopicDataId())


class TestStreamBuffers:
    def test_buffers_have_configured_size(self, tmp_path):
        d = Datalog(DatalogConfig(segments_path=tmp_path, stream_buffer_size=1024))
        first = d.stream_buffer()
        second = d.stream_buffer()
        assert len(first) == 1024
        assert len(second) == 1024
        assert first is not second

    def test_blocks_until_released(self, tmp_path):
        d = Datalog(DatalogConfig(segments_path=tmp_path, stream_buffer_size=64))
        first = d.stream_buffer()
        d.stream_buffer()
        obtained = []
        waiter = threading.Thread(target=lambda: obtained.append(d.stream_buffer()))
        waiter.start()
        waiter.join(0.05)
        assert obtained == []
        d.release_stream_buffer(first)
        waiter.join(5)
        assert len(obtained) == 1
        assert obtained[0] is first


def test_close_stops_retention_cleaner(tmp_path):
    with Datalog(DatalogConfig(segments_path=tmp_path, log_retention=3600.0)) as d:
        buf = d.stream_buffer()
        assert len(buf) == MiB
    assert threading.active_count() >= 1
    assert not any(t.name == "retention-cleaner" for t in threading.enumerate())