"""Sequential reading of chunks from segment files for a consumer group."""

from __future__ import annotations

import enum
import logging
import os
import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Any, List, Optional, Protocol, Tuple

from streamlog.index_file import try_read_index_file
from streamlog.models import (
    ALIGNMENT_FLAG,
    ALIGNMENT_SIZE,
    CHUNK_HEADER_SIZE,
    DIRECTORY_PERMISSIONS,
    SEGMENT_FILE_EXTENSION,
    DatalogConfig,
    ReadSegmentChunk,
    TopicDataId,
    new_empty_chunk,
    read_chunk_header,
    segment_id_from_name,
)

logger = logging.getLogger(__name__)

# Offset value signalling that a previous generation was fully consumed.
OFFSET_COMPLETED = 2**63 - 1

_STOP = object()


class OffsetCommitType(enum.Enum):
    LOCAL = "local"
    ALL = "all"


@dataclass(frozen=True)
class Offset:
    """A consumer position for a token range of a generation."""

    offset: int
    token: int = 0
    index: int = 0
    version: int = 0
    cluster_size: int = 0
    source: Any = None

    @property
    def gen_id(self) -> Tuple[int, int]:
        return (self.token, self.version)


class OffsetState(Protocol):
    def set(self, group: str, topic: str, value: Offset, commit_type: OffsetCommitType) -> Any: ...

    def get(
        self, group: str, topic: str, token: int, range_index: int, cluster_size: int
    ) -> Tuple[Optional[Offset], bool]: ...


class ReplicationReader(Protocol):
    def merge_file_structure(self) -> bool: ...

    def stream_file(
        self, segment_id: int, topic: TopicDataId, start_offset: int, max_records: int, max_size: int
    ) -> bytes: ...


class OffsetMovedError(RuntimeError):
    """Raised when the committed offset moved past this reader's generation."""


@dataclass
class _State:
    last_commit: float = float("-inf")
    next_file_name: str = ""
    offset_gap: int = -1
    last_origin: Optional[str] = None
    close_error: Optional[BaseException] = field(default=None)


class SegmentReader:
    """Reads the segment files of one generation of a topic, ahead of consumer polls.

    Items passed to ``submit`` expose ``origin``, ``commit_only`` and
    ``set_result(error, chunk)``.
    """

    def __init__(
        self,
        group: str,
        is_leader: bool,
        replication_reader: Optional[ReplicationReader],
        topic: TopicDataId,
        topic_range_cluster_size: int,
        source_version: Any,
        initial_offset: int,
        offset_state: OffsetState,
        max_produced_offset: Optional[int],
        config: DatalogConfig,
    ) -> None:
        self.topic = topic
        self.topic_range_cluster_size = topic_range_cluster_size
        self.source_version = source_version
        self.max_produced_offset = max_produced_offset
        self._group = group
        self._is_leader = is_leader
        self._replication_reader = replication_reader
        self._offset_state = offset_state
        self._config = config
        self._base_path = config.datalog_path(topic)
        self._message_offset = initial_offset
        self._file_name = ""
        self._segment_file = None
        self._last_chunk_file_position = 0
        self._file_position = 0
        self._skip_from_file = 0
        self._reading_from_replica = False
        self._pending = b""
        self._pos = 0
        self._stopped = False
        self._closing = False
        self._items: "queue.Queue[Any]" = queue.Queue()

        self._init_read(foreground=True)

        self._thread = threading.Thread(target=self._start_reading, daemon=True)
        self._thread.start()

    # Public API

    def submit(self, item: Any) -> None:
        """Queue a poll; the result is given to ``item.set_result``."""
        if self._stopped or self._closing:
            raise RuntimeError("Segment reader has stopped receiving")
        self._items.put(item)

    def close(self) -> None:
        """Stop reading and release the segment file."""
        if not self._closing:
            self._closing = True
            self._items.put(_STOP)
        self._thread.join()
        if self._segment_file is not None:
            self._segment_file.close()
            self._segment_file = None

    def stored_offset_as_completed(self) -> bool:
        """True when the offset was stored as completed (previous generations only)."""
        return self._message_offset == OFFSET_COMPLETED

    def has_stopped_receiving(self) -> bool:
        """True when no further items will be processed."""
        return self._stopped

    def __enter__(self) -> "SegmentReader":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    # Loop

    def _start_reading(self) -> None:
        logger.info("Start reading for %s", self.topic)
        if not self._is_leader:
            try:
                self._init_read(foreground=False)
            except Exception:
                logger.exception("Reader could not be initialized for %s", self.topic)
        self._read_loop()

    def _read_loop(self) -> None:
        st = _State()
        while True:
            item = self._items.get()
            if item is _STOP:
                break
            origin = item.origin
            if st.last_origin is not None and st.last_origin != origin:
                if item.commit_only:
                    item.set_result(RuntimeError("Manual commit was ignored"), None)
                    continue
                try:
                    if self._reset_offset_to_last_committed():
                        self._pending, self._pos = b"", 0
                except OffsetMovedError:
                    item.set_result(None, new_empty_chunk(self._message_offset))
                    break
            else:
                st.last_commit = self._store_offset(st.last_commit, item.commit_only)
                if item.commit_only:
                    item.set_result(None, new_empty_chunk(self._message_offset))
                    continue

            st.last_origin = origin
            remainder = b""
            chunk = None
            if self._pos < len(self._pending):
                chunk, gap, remainder = self._consume_read_ahead()
                if gap >= 0:
                    st.offset_gap = gap

            if chunk is not None:
                item.set_result(None, chunk)
                continue

            item.set_result(None, new_empty_chunk(self._message_offset))

            if self._handle_file_gap(st):
                continue

            if self._segment_file is None:
                try:
                    self._init_read(foreground=False)
                except Exception:
                    logger.exception("Reader could not open segment file in %s", self._base_path)
                if self._segment_file is None:
                    continue

            try:
                data = self._poll_file(remainder)
            except OSError as exc:
                st.close_error = exc
                logger.exception("Error while reading file %s/%s", self._base_path, self._file_name)
                data = remainder

            if len(data) - len(remainder) <= 0:
                if not st.next_file_name:
                    st.next_file_name, st.offset_gap = self._check_next_file()
                else:
                    self._swap_segment_file(st.next_file_name)
                    st.next_file_name = ""
                self._pending, self._pos = remainder, 0
                continue

            self._pending, self._pos = data, 0

        self._close_items(st.close_error)

    def _consume_read_ahead(self) -> Tuple[Optional[ReadSegmentChunk], int, bytes]:
        chunk, gap = self._read_chunk()
        remainder = b""
        if chunk is None and self._pos < len(self._pending):
            remainder = self._pending[self._pos :]
            self._pending, self._pos = b"", 0
        return chunk, gap, remainder

    def _handle_file_gap(self, st: _State) -> bool:
        gap = st.offset_gap
        if gap < 0:
            return False
        if self._message_offset <= gap:
            logger.debug(
                "Handling file gap in %s/%s with the range [%d, %d]",
                self._base_path, self._file_name, self._message_offset, gap,
            )
            self._reading_from_replica = True
            if self._replication_reader is None:
                raise RuntimeError(f"No replication reader found for {self.topic}")
            segment_id = segment_id_from_name(self._file_name)
            max_records = self._message_offset - gap + 1
            try:
                data = self._replication_reader.stream_file(
                    segment_id, self.topic, self._message_offset, max_records,
                    self._config.read_ahead_size,
                )
            except Exception:
                logger.exception("File %s/%s could not be read from replicas", self._base_path, self._file_name)
                data = b""
            self._pending, self._pos = bytes(data), 0
            return True

        st.offset_gap = -1
        self._reading_from_replica = False
        self._skip_from_file = self._last_chunk_file_position % ALIGNMENT_SIZE
        file_offset = self._last_chunk_file_position - self._skip_from_file
        logger.info("Seeking position %d of file %s/%s after gap", file_offset, self._base_path, self._file_name)
        if self._segment_file is not None:
            self._segment_file.seek(file_offset)
        return False

    # Offsets

    def _store_offset(self, last_commit: float, manual: bool) -> float:
        commit_type = OffsetCommitType.LOCAL
        value = Offset(
            offset=self._message_offset,
            token=self.topic.token,
            index=self.topic.range_index,
            version=self.topic.version,
            cluster_size=self.topic_range_cluster_size,
            source=self.source_version,
        )
        now = time.monotonic()
        if now - last_commit >= self._config.auto_commit_interval or manual:
            last_commit = now
            commit_type = OffsetCommitType.ALL
        elif self.max_produced_offset is not None and self._message_offset > self.max_produced_offset:
            if self._message_offset != OFFSET_COMPLETED:
                self._message_offset = OFFSET_COMPLETED
                commit_type = OffsetCommitType.ALL
                value = Offset(
                    offset=OFFSET_COMPLETED, token=value.token, index=value.index,
                    version=value.version, cluster_size=value.cluster_size, source=value.source,
                )
        self._offset_state.set(self._group, self.topic.name, value, commit_type)
        return last_commit

    def _reset_offset_to_last_committed(self) -> bool:
        if self._segment_file is None:
            return False
        offset, ranges_match = self._offset_state.get(
            self._group, self.topic.name, self.topic.token, self.topic.range_index,
            self.topic_range_cluster_size,
        )
        if (
            not ranges_match
            or offset is None
            or offset.cluster_size != self.topic_range_cluster_size
            or offset.gen_id != (self.topic.token, self.topic.version)
        ):
            raise OffsetMovedError("Offset moved ahead")
        self._segment_file.close()
        self._segment_file = None
        self._message_offset = offset.offset
        return True

    # Files

    def _segment_files(self) -> List[str]:
        suffix = "." + SEGMENT_FILE_EXTENSION
        try:
            return sorted(n for n in os.listdir(self._base_path) if n.endswith(suffix))
        except FileNotFoundError:
            return []

    def _init_read(self, foreground: bool) -> None:
        found = self._full_seek(foreground)
        if found is None:
            return
        name, file_offset = found
        self._segment_file = open(os.path.join(self._base_path, name), "rb", buffering=0)
        self._file_name = name
        if file_offset > 0:
            logger.info("Seeking position %d for reading in file %s", file_offset, name)
            self._segment_file.seek(file_offset)

    def _full_seek(self, foreground: bool) -> Optional[Tuple[str, int]]:
        if not self._is_leader:
            if foreground:
                return None
            if not self._set_structure_as_follower():
                return None
        prefix = ""
        for entry in self._segment_files():
            candidate = entry.split(".")[0]
            try:
                start_offset = int(candidate, 10)
            except ValueError:
                continue
            if start_offset > self._message_offset:
                break
            prefix = candidate
        if not prefix:
            return None
        file_offset = try_read_index_file(self._base_path, prefix, self._message_offset)
        return f"{prefix}.{SEGMENT_FILE_EXTENSION}", file_offset

    def _set_structure_as_follower(self) -> bool:
        os.makedirs(self._base_path, mode=DIRECTORY_PERMISSIONS, exist_ok=True)
        if self._replication_reader is None:
            raise RuntimeError(f"No replication reader found for {self.topic}")
        return self._replication_reader.merge_file_structure()

    def _check_next_file(self) -> Tuple[str, int]:
        found_current = False
        next_name = ""
        gap = -1
        for name in self._segment_files():
            if found_current:
                try:
                    segment_id = int(name[: -len(SEGMENT_FILE_EXTENSION) - 1], 10)
                except ValueError:
                    continue
                if segment_id > self._message_offset:
                    gap = segment_id - 1
                next_name = name
                break
            if name == self._file_name:
                found_current = True
        if gap >= 0:
            return "", gap
        if next_name:
            return next_name, -1
        if self.max_produced_offset is not None and self._message_offset <= self.max_produced_offset:
            return "", self.max_produced_offset
        return "", -1

    def _swap_segment_file(self, next_name: str) -> None:
        previous = self._segment_file
        try:
            self._segment_file = open(os.path.join(self._base_path, next_name), "rb", buffering=0)
        except OSError:
            logger.exception("Next file could not be opened")
            return
        self._file_name = next_name
        self._last_chunk_file_position = 0
        self._file_position = 0
        self._skip_from_file = 0
        if previous is not None:
            previous.close()

    def _poll_file(self, remainder: bytes) -> bytes:
        rounded = -(-len(remainder) // ALIGNMENT_SIZE) * ALIGNMENT_SIZE
        size = self._config.read_ahead_size - rounded
        size -= size % ALIGNMENT_SIZE
        data = self._segment_file.read(size) if size > 0 else b""
        data = data or b""
        result = remainder + data
        if self._skip_from_file > 0:
            skip = self._skip_from_file
            self._skip_from_file = 0
            if skip <= len(data):
                return result[skip:]
        return result

    def _close_items(self, error: Optional[BaseException]) -> None:
        logger.info("Closing segment reader for topic: %s", self.topic)
        self._stopped = True
        while True:
            try:
                item = self._items.get_nowait()
            except queue.Empty:
                break
            if item is not _STOP and item is not None:
                item.set_result(error, None)

    # Chunks

    def _read_chunk(self) -> Tuple[Optional[ReadSegmentChunk], int]:
        while True:
            initial_position = self._file_position
            n, chunk = self._read_single_chunk()
            if not self._reading_from_replica:
                self._file_position += n
            if chunk is None:
                return None, -1
            if not self._reading_from_replica:
                self._last_chunk_file_position = initial_position
            if chunk.start_offset > self._message_offset:
                return None, chunk.start_offset - 1
            if chunk.start_offset == self._message_offset:
                break
        self._message_offset = chunk.start_offset + chunk.record_length
        return chunk, -1

    def _read_single_chunk(self) -> Tuple[int, Optional[ReadSegmentChunk]]:
        data, pos = self._pending, self._pos
        n = 0
        while pos < len(data) and data[pos] == ALIGNMENT_FLAG:
            pos += 1
            n += 1
        self._pos = pos
        if len(data) - pos < CHUNK_HEADER_SIZE:
            return n, None
        header = read_chunk_header(data[pos : pos + CHUNK_HEADER_SIZE])
        body_start = pos + CHUNK_HEADER_SIZE
        if len(data) - body_start < header.body_length:
            return n, None
        body = data[body_start : body_start + header.body_length]
        self._pos = body_start + header.body_length
        return n + CHUNK_HEADER_SIZE + header.body_length, ReadSegmentChunk(
            data_block=bytes(body), start_offset=header.start, record_length=header.record_length
        )