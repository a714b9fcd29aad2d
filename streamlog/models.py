"""Segment data model: topics, configuration, chunk framing and file naming."""

from __future__ import annotations

import os
import struct
import zlib
from dataclasses import dataclass
from typing import Optional, Union

MiB = 1024 * 1024

# Direct I/O friendly block size used for segment alignment.
ALIGNMENT_SIZE = 512
# Padding byte written after a chunk to reach the alignment boundary.
ALIGNMENT_FLAG = 0x80

SEGMENT_FILE_EXTENSION = "dlog"
INDEX_FILE_EXTENSION = "index"
PRODUCER_OFFSET_FILE_NAME = "producer.offset"

DIRECTORY_PERMISSIONS = 0o755
FILE_PERMISSIONS = 0o644

_CHUNK_HEADER = struct.Struct(">BIqII")
_CHUNK_HEAD_WITHOUT_CRC = struct.Struct(">BIqI")
CHUNK_HEADER_SIZE = _CHUNK_HEADER.size


def crc32(data: Union[bytes, bytearray, memoryview]) -> int:
    """Return the IEEE CRC-32 checksum of ``data`` as an unsigned int."""
    return zlib.crc32(data) & 0xFFFFFFFF


class ChecksumError(ValueError):
    """Raised when stored data does not match its checksum."""


@dataclass(frozen=True)
class TopicDataId:
    """Identifies the data of a topic for a token range and generation."""

    name: str = ""
    token: int = 0
    range_index: int = 0
    version: int = 0

    def __str__(self) -> str:
        return f"'{self.name}' T{self.token}/{self.range_index} v{self.version}"


@dataclass
class DatalogConfig:
    """Settings that drive how segment data is stored and read."""

    segments_path: Union[str, os.PathLike]
    read_ahead_size: int = MiB
    stream_buffer_size: int = MiB
    segment_buffer_size: int = 8 * MiB
    max_segment_size: int = 1024 * MiB
    max_group_size: int = 2 * MiB
    index_file_period_bytes: int = 50 * MiB
    segment_flush_interval: float = 5.0
    auto_commit_interval: float = 5.0
    log_retention: Optional[float] = None

    def __post_init__(self) -> None:
        self.segments_path = os.fspath(self.segments_path)

    def datalog_path(self, topic: TopicDataId) -> str:
        """Directory holding the segment files of ``topic``."""
        return os.path.join(
            self.segments_path,
            topic.name,
            str(topic.token),
            str(topic.range_index),
            str(topic.version),
        )


@dataclass(frozen=True)
class ChunkHeader:
    """Fixed-size header that precedes every chunk body in a segment file."""

    flags: int
    body_length: int
    start: int
    record_length: int
    crc: int

    def to_bytes(self) -> bytes:
        return _CHUNK_HEADER.pack(
            self.flags, self.body_length, self.start, self.record_length, self.crc
        )


@dataclass(frozen=True)
class ReadSegmentChunk:
    """A chunk read back from a segment: its body and the records it spans."""

    data_block: bytes
    start_offset: int
    record_length: int


def new_empty_chunk(start: int) -> ReadSegmentChunk:
    """Return a chunk with no data positioned at ``start``."""
    return ReadSegmentChunk(data_block=b"", start_offset=start, record_length=0)


def read_chunk_header(data: Union[bytes, bytearray, memoryview]) -> ChunkHeader:
    """Decode and validate the chunk header at the start of ``data``."""
    if len(data) < CHUNK_HEADER_SIZE:
        raise ValueError("Incomplete chunk header")
    raw = bytes(data[:CHUNK_HEADER_SIZE])
    expected = crc32(raw[: CHUNK_HEADER_SIZE - 4])
    header = ChunkHeader(*_CHUNK_HEADER.unpack(raw))
    if header.crc != expected:
        raise ChecksumError("Checksum mismatch")
    if header.start < 0:
        raise ValueError("Invalid length")
    return header


def encode_chunk(body: Union[bytes, bytearray], start: int, record_length: int) -> bytes:
    """Frame ``body`` as a chunk: header with checksum followed by the body."""
    head = _CHUNK_HEAD_WITHOUT_CRC.pack(0, len(body), start, record_length)
    return head + struct.pack(">I", crc32(head)) + bytes(body)


def segment_file_prefix(segment_id: int) -> str:
    """Zero-padded name shared by a segment file and its index file."""
    return f"{segment_id:020d}"


def segment_file_name(segment_id: int) -> str:
    return f"{segment_file_prefix(segment_id)}.{SEGMENT_FILE_EXTENSION}"


def segment_id_from_name(name: str) -> int:
    """Parse the segment id from a segment or index file name."""
    prefix = os.path.basename(name).split(".", 1)[0]
    try:
        return int(prefix, 10)
    except ValueError:
        raise ValueError(f"Invalid segment file name: {name!r}") from None


def make_aligned_buffer(length: int) -> bytearray:
    """Return a zeroed buffer whose length is ``length`` rounded down to the alignment."""
    return bytearray(length - length % ALIGNMENT_SIZE)