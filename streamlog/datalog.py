"""Reading ranges of chunks from segment files and the stream buffer pool."""

from __future__ import annotations

import logging
import os
import queue
import re
from typing import Optional, Tuple, Union

from streamlog.cleaner import RetentionCleaner
from streamlog.index_file import try_read_index_file
from streamlog.models import (
    ALIGNMENT_SIZE,
    CHUNK_HEADER_SIZE,
    ChunkHeader,
    DatalogConfig,
    TopicDataId,
    read_chunk_header,
    segment_file_name,
    segment_file_prefix,
)

logger = logging.getLogger(__name__)

# Amount of buffers available for file streaming
STREAM_BUFFER_LENGTH = 2

_ALIGNMENT_RUN = re.compile(rb"\x80*")

Buffer = Union[bytes, bytearray, memoryview]


def _round_up(length: int) -> int:
    return -(-length // ALIGNMENT_SIZE) * ALIGNMENT_SIZE


def _next_chunk(buf: Buffer, pos: int) -> Tuple[Optional[ChunkHeader], int]:
    alignment = _ALIGNMENT_RUN.match(buf, pos).end() - pos
    start = pos + alignment
    if len(buf) - start < CHUNK_HEADER_SIZE:
        return None, 0
    header = read_chunk_header(buf[start : start + CHUNK_HEADER_SIZE])
    if CHUNK_HEADER_SIZE + header.body_length > len(buf) - start:
        return None, 0
    return header, alignment


def read_next_chunk(buf: Buffer) -> Tuple[Optional[ChunkHeader], int]:
    """Return the header of the complete chunk at the start of ``buf`` and its leading padding.

    The header is None when the chunk is not fully contained in ``buf``.
    """
    return _next_chunk(bytes(buf), 0)


def read_chunks_until(buf: Buffer, start_offset: int, max_records: int) -> Tuple[bytes, bool]:
    """Find the chunk holding ``start_offset`` and the following ones up to ``max_records``.

    Returns the chunks and True when found. Otherwise returns the trailing
    incomplete chunk (possibly empty) and False.
    """
    buf = bytes(buf)
    pos = 0
    while pos < len(buf):
        header, alignment = _next_chunk(buf, pos)
        if header is None:
            return buf[pos:], False

        if header.start <= start_offset < header.start + header.record_length:
            first = pos + alignment
            end = pos
            max_offset = start_offset + max_records - 1
            while True:
                end += alignment + CHUNK_HEADER_SIZE + header.body_length
                try:
                    header, alignment = _next_chunk(buf, end)
                except ValueError:
                    header = None
                if header is None or header.start > max_offset:
                    break
            return buf[first:end], True

        pos += alignment + CHUNK_HEADER_SIZE + header.body_length
    return b"", False


class Datalog:
    """Serves chunk ranges from local segment files and pools stream buffers."""

    def __init__(self, config: DatalogConfig) -> None:
        self._config = config
        self._stream_buffers: "queue.Queue[bytearray]" = queue.Queue()
        for _ in range(STREAM_BUFFER_LENGTH):
            self._stream_buffers.put(bytearray(config.stream_buffer_size))

        self._cleaner: Optional[RetentionCleaner] = None
        if config.log_retention is not None:
            self._cleaner = RetentionCleaner(config.segments_path, config.log_retention)
            self._cleaner.start()

    def stream_buffer(self) -> bytearray:
        """Block until a stream buffer is available; release it after use."""
        return self._stream_buffers.get()

    def release_stream_buffer(self, buf: bytearray) -> None:
        self._stream_buffers.put(buf)

    def read_file_from(
        self,
        buffer_size: int,
        max_size: int,
        segment_id: int,
        start_offset: int,
        max_records: int,
        topic: TopicDataId,
    ) -> Optional[bytes]:
        """Read the chunks starting at ``start_offset`` that fit in the buffer.

        Returns None when the offset is not found in the segment file.
        """
        base_path = self._config.datalog_path(topic)
        file_offset = try_read_index_file(base_path, segment_file_prefix(segment_id), start_offset)
        capacity = min(buffer_size, max_size)
        capacity -= capacity % ALIGNMENT_SIZE
        path = os.path.join(base_path, segment_file_name(segment_id))

        with open(path, "rb", buffering=0) as f:
            if file_offset > 0:
                f.seek(file_offset)

            remainder = b""
            while True:
                read_size = capacity - _round_up(len(remainder))
                if read_size <= 0:
                    return None
                data = f.read(read_size)
                if len(remainder) + len(data) < CHUNK_HEADER_SIZE:
                    return None

                chunks, complete = read_chunks_until(remainder + data, start_offset, max_records)
                if complete:
                    return chunks
                remainder = chunks
                if not data:
                    return None

    def close(self) -> None:
        """Stop background work."""
        if self._cleaner is not None:
            self._cleaner.stop()
            self._cleaner = None

    def __enter__(self) -> "Datalog":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()