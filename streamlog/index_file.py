"""Index files mapping message offsets to positions in segment files."""

from __future__ import annotations

import logging
import os
import queue
import struct
import threading
from dataclasses import dataclass
from typing import Optional, Union

from streamlog.models import (
    INDEX_FILE_EXTENSION,
    DatalogConfig,
    crc32,
    segment_file_prefix,
)
from streamlog.offsets import OffsetFileWriter

logger = logging.getLogger(__name__)

_INDEX_ITEM = struct.Struct(">qqI")
_INDEX_HEAD = struct.Struct(">qq")
INDEX_ITEM_SIZE = _INDEX_ITEM.size


@dataclass(frozen=True)
class IndexOffset:
    """An index entry: message offset, file position and checksum of both."""

    offset: int
    file_offset: int
    checksum: Optional[int] = None

    def __post_init__(self) -> None:
        if self.checksum is None:
            object.__setattr__(
                self, "checksum", crc32(_INDEX_HEAD.pack(self.offset, self.file_offset))
            )

    def to_bytes(self) -> bytes:
        return _INDEX_ITEM.pack(self.offset, self.file_offset, self.checksum)


@dataclass(frozen=True)
class _IndexFileItem:
    segment_id: int
    tail_offset: int
    offset: int = 0
    file_offset: int = 0
    to_close: bool = False


class IndexFileWriter:
    """Writes index and producer offset files in a background thread."""

    def __init__(self, base_path: Union[str, os.PathLike], config: DatalogConfig) -> None:
        self._base_path = os.fspath(base_path)
        self._threshold = config.index_file_period_bytes
        self._items: "queue.Queue[Optional[_IndexFileItem]]" = queue.Queue(maxsize=1)
        self._offset_writer = OffsetFileWriter(self._base_path)
        self._closed = False
        self._thread = threading.Thread(
            target=self._write_loop, name="index-file-writer", daemon=True
        )
        self._thread.start()

    def _write_loop(self) -> None:
        file = None
        segment_id: Optional[int] = None
        last_stored_file_offset = 0
        try:
            while (item := self._items.get()) is not None:
                # Always store the producer offset
                self._offset_writer.write(item.tail_offset)

                if item.to_close:
                    if file is not None:
                        try:
                            file.close()
                        except OSError:
                            logger.exception("Index file closed with error on path %s", self._base_path)
                        else:
                            logger.debug("Index file closed on path %s", self._base_path)
                        file = None
                        segment_id = None
                        last_stored_file_offset = 0
                    continue

                if file is None:
                    name = f"{segment_file_prefix(item.segment_id)}.{INDEX_FILE_EXTENSION}"
                    try:
                        file = open(os.path.join(self._base_path, name), "ab", buffering=0)
                    except OSError:
                        logger.exception(
                            "Index file %s could not be created on path %s", name, self._base_path
                        )
                        continue
                    logger.debug("Index file created on path %s", self._base_path)
                    segment_id = item.segment_id

                if item.file_offset - last_stored_file_offset >= self._threshold:
                    entry = IndexOffset(item.offset, item.file_offset)
                    try:
                        file.write(entry.to_bytes())
                    except OSError:
                        logger.exception(
                            "There was an error writing to the index file on path %s", self._base_path
                        )
                    else:
                        logger.debug(
                            "Written to %d index file on path %s", segment_id, self._base_path
                        )
                    last_stored_file_offset = item.file_offset
        finally:
            if file is not None:
                file.close()
            self._offset_writer.close()

    def _put(self, item: _IndexFileItem) -> None:
        if self._closed:
            raise RuntimeError("Index file writer is closed")
        self._items.put(item)

    def append(self, segment_id: int, offset: int, file_offset: int, tail_offset: int) -> None:
        """Queue an entry; it is stored when enough bytes passed since the last one."""
        self._put(
            _IndexFileItem(
                segment_id=segment_id,
                offset=offset,
                file_offset=file_offset,
                tail_offset=tail_offset,
            )
        )

    def close_file(self, segment_id: int, tail_offset: int) -> None:
        """Queue the closing of the current index file."""
        self._put(_IndexFileItem(segment_id=segment_id, tail_offset=tail_offset, to_close=True))

    def close(self) -> None:
        """Stop the writer, waiting for queued items to be written."""
        if self._closed:
            return
        self._closed = True
        self._items.put(None)
        self._thread.join()


def try_read_index_file(
    base_path: Union[str, os.PathLike], file_prefix: str, message_offset: int
) -> int:
    """Return the highest stored file offset whose message offset is at most ``message_offset``."""
    path = os.path.join(os.fspath(base_path), f"{file_prefix}.{INDEX_FILE_EXTENSION}")
    file_offset = 0
    try:
        with open(path, "rb") as f:
            data = f.read()
    except OSError:
        logger.warning("Could not read index file at %s", path)
        return file_offset

    usable = len(data) - len(data) % INDEX_ITEM_SIZE
    for start in range(0, usable, INDEX_ITEM_SIZE):
        raw = data[start : start + INDEX_ITEM_SIZE]
        offset, item_file_offset, checksum = _INDEX_ITEM.unpack(raw)
        if checksum != crc32(raw[: _INDEX_HEAD.size]):
            logger.warning("Invalid index file checksum on %s (%d)", path, checksum)
            return file_offset
        if offset > message_offset:
            return file_offset
        file_offset = item_file_offset
        if offset == message_offset:
            return file_offset
    return file_offset