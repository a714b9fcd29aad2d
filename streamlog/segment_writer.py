"""Buffered, aligned writing of chunks to segment files, as leader or replica."""

from __future__ import annotations

import enum
import logging
import os
import queue
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Optional, Protocol

from streamlog.index_file import IndexFileWriter
from streamlog.models import (
    ALIGNMENT_FLAG,
    ALIGNMENT_SIZE,
    DIRECTORY_PERMISSIONS,
    FILE_PERMISSIONS,
    DatalogConfig,
    TopicDataId,
    encode_chunk,
    segment_file_name,
)

logger = logging.getLogger(__name__)

# Seconds between two flush checks when no item arrives.
FLUSH_RESOLUTION = 0.2

# Segment id used while no segment file is open.
_NO_SEGMENT = 2**63 - 1

_STOP = object()


class WriterType(enum.Enum):
    LEADER = "leader"
    REPLICA = "replica"


class Replicator(Protocol):
    def send_to_followers(
        self, replication: Any, topic: TopicDataId, segment_id: int, item: Any
    ) -> None: ...


def pad_to_alignment(buffer: bytearray) -> int:
    """Append alignment flags until the length of ``buffer`` is a multiple of the alignment.

    Returns the number of bytes appended.
    """
    rem = len(buffer) % ALIGNMENT_SIZE
    if rem == 0:
        return 0
    to_align = ALIGNMENT_SIZE - rem
    buffer.extend(bytes([ALIGNMENT_FLAG]) * to_align)
    return to_align


class SegmentWriter:
    """Writes chunks to segment files of a topic and, as leader, replicates them.

    Without ``segment_id`` the writer is the leader: items need ``data_block``,
    ``start_offset``, ``record_length``, ``replication`` and ``set_result(error)``.
    With ``segment_id`` it is a replica: items carry ``segment_id`` instead of
    ``replication``.
    """

    def __init__(
        self,
        topic: TopicDataId,
        replicator: Optional[Replicator],
        config: DatalogConfig,
        segment_id: Optional[int] = None,
    ) -> None:
        self.topic = topic
        self._config = config
        self._replicator = replicator
        self._base_path = config.datalog_path(topic)
        os.makedirs(self._base_path, mode=DIRECTORY_PERMISSIONS, exist_ok=True)

        self._buffer = bytearray()
        self._last_flush: Optional[float] = None
        self._buffered_offset = 0
        self._tail_offset = 0
        self._segment_id = _NO_SEGMENT
        self._segment_file = None
        self._segment_length = 0
        self._index_file = IndexFileWriter(self._base_path, config)
        self._items: "queue.Queue[Any]" = queue.Queue(maxsize=1)
        self._closed = False
        self._error: Optional[BaseException] = None
        self._sender: Optional[ThreadPoolExecutor] = None

        if segment_id is None:
            logger.info("Creating segment writer as leader for %s", topic)
            self._writer_type = WriterType.LEADER
            self._sender = ThreadPoolExecutor(max_workers=1, thread_name_prefix="segment-send")
            self._create_file(0)
            target = self._write_loop_as_leader
        else:
            logger.info("Creating segment writer as replica for %s", topic)
            self._writer_type = WriterType.REPLICA
            self._create_file(segment_id)
            target = self._write_loop_as_replica

        self._thread = threading.Thread(target=self._run, args=(target,), daemon=True)
        self._thread.start()

    def submit(self, item: Any) -> None:
        """Queue an item to be written; its result is reported through ``set_result``."""
        if self._closed:
            raise RuntimeError("Segment writer is closed")
        self._items.put(item)

    def close(self) -> None:
        """Flush pending data, close the files and stop the background thread."""
        if self._closed:
            return
        self._closed = True
        self._items.put(_STOP)
        self._thread.join()
        if self._error is not None:
            raise self._error

    def __enter__(self) -> "SegmentWriter":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def _next_items(self):
        while True:
            try:
                item = self._items.get(timeout=FLUSH_RESOLUTION)
            except queue.Empty:
                # A flush check with no data
                yield None
                continue
            if item is _STOP:
                return
            yield item

    def _run(self, loop) -> None:
        try:
            loop()
            self._close_segment_data()
        except BaseException as exc:  # surfaced on close()
            logger.exception("Segment writer failed on %s", self._base_path)
            self._error = exc
        finally:
            if self._sender is not None:
                self._sender.shutdown(wait=True)
            self._index_file.close()

    def _write_loop_as_leader(self) -> None:
        for item in self._next_items():
            if self._maybe_flush():
                self._maybe_close_segment()
            if item is None:
                continue

            self._write_to_buffer(item)
            if self._segment_file is None:
                # The file and segment id must exist locally before sending to replicas
                self._create_file(self._buffered_offset)

            # Send in the background while flushing
            response: Future = self._sender.submit(self._send, item, self._segment_id)

            if self._maybe_flush():
                self._maybe_close_segment()

            item.set_result(response.exception())

    def _write_loop_as_replica(self) -> None:
        for item in self._next_items():
            self._maybe_flush()
            if item is None:
                continue

            if self._segment_id != item.segment_id:
                if self._buffer:
                    self._flush("closing as replica")
                self._close_file()
                self._create_file(item.segment_id)

            self._write_to_buffer(item)
            self._maybe_flush()
            item.set_result(None)

    def _send(self, item: Any, segment_id: int) -> None:
        if self._replicator is None:
            return
        self._replicator.send_to_followers(item.replication, self.topic, segment_id, item)

    def _close_segment_data(self) -> None:
        if self._buffer:
            self._flush("closing writer")
        self._close_file()

    def _maybe_flush(self) -> bool:
        if not self._buffer:
            return False

        can_buffer_next_group = (
            len(self._buffer) + self._config.max_group_size < self._config.segment_buffer_size
        )
        if can_buffer_next_group and (
            time.monotonic() - self._last_flush < self._config.segment_flush_interval
        ):
            return False

        self._flush("timer" if can_buffer_next_group else "buffer size")
        return True

    def _create_file(self, segment_id: int) -> None:
        self._segment_id = segment_id
        name = segment_file_name(segment_id)
        logger.info(
            "Creating segment file %s on %s (%s)", name, self._base_path, self._writer_type.value
        )
        fd = os.open(
            os.path.join(self._base_path, name),
            os.O_CREAT | os.O_WRONLY | os.O_APPEND,
            FILE_PERMISSIONS,
        )
        self._segment_file = os.fdopen(fd, "ab", buffering=0)

    def _flush(self, reason: str) -> None:
        pad_to_alignment(self._buffer)
        length = len(self._buffer)

        if self._segment_file is None:
            if self._writer_type is WriterType.REPLICA:
                raise RuntimeError(
                    "Flush should not create file on replicas as the file name will be invalid"
                )
            self._create_file(self._buffered_offset)

        logger.debug(
            "Writing %d bytes to segment file %s/%s (reason: %s, offset: %d)",
            length,
            self._base_path,
            segment_file_name(self._segment_id),
            reason,
            self._tail_offset,
        )
        self._segment_file.write(self._buffer)

        self._index_file.append(
            self._segment_id, self._buffered_offset, self._segment_length, self._tail_offset
        )
        self._segment_length += length
        self._buffer.clear()
        self._last_flush = time.monotonic()

    def _maybe_close_segment(self) -> None:
        if self._segment_length + self._config.segment_buffer_size > self._config.max_segment_size:
            self._close_file()

    def _close_file(self) -> None:
        previous_id = self._segment_id
        if self._segment_file is not None:
            logger.debug("Closing segment file %d on %s", previous_id, self._base_path)
            try:
                self._segment_file.close()
            except OSError:
                logger.exception(
                    "Closed segment file %s on %s with error",
                    segment_file_name(previous_id),
                    self._base_path,
                )

        self._index_file.close_file(previous_id, self._tail_offset)
        self._segment_file = None
        self._segment_id = _NO_SEGMENT
        self._segment_length = 0

    def _write_to_buffer(self, item: Any) -> None:
        if self._last_flush is None or not self._buffer:
            # The buffer was empty: restart the flush check
            self._last_flush = time.monotonic()
            self._buffered_offset = item.start_offset

        if item.record_length > 0:
            self._tail_offset = item.start_offset + item.record_length - 1

        self._buffer += encode_chunk(item.data_block, item.start_offset, item.record_length)