"""Storage of the last known producer offset in a small checksummed file."""

from __future__ import annotations

import logging
import os
import struct
from types import TracebackType
from typing import Optional, Type, Union

from streamlog.models import (
    FILE_PERMISSIONS,
    PRODUCER_OFFSET_FILE_NAME,
    ChecksumError,
    DatalogConfig,
    TopicDataId,
    crc32,
)

logger = logging.getLogger(__name__)

# The int64 value followed by its uint32 checksum
OFFSET_FILE_SIZE = 12

_VALUE = struct.Struct(">q")
_CHECKSUM = struct.Struct(">I")


class OffsetFileWriter:
    """Writes the last known producer offset to a single file.

    Not thread-safe: a single owner is expected to call ``write``.
    """

    def __init__(self, base_path: Union[str, os.PathLike]) -> None:
        path = os.path.join(os.fspath(base_path), PRODUCER_OFFSET_FILE_NAME)
        fd = os.open(path, os.O_CREAT | os.O_WRONLY, FILE_PERMISSIONS)
        self._file = os.fdopen(fd, "wb", buffering=0)

    def write(self, value: int) -> None:
        """Overwrite the stored offset with ``value``."""
        data = _VALUE.pack(value)
        self._file.seek(0)
        self._file.write(data + _CHECKSUM.pack(crc32(data)))

    def close(self) -> None:
        if self._file.closed:
            return
        try:
            os.fsync(self._file.fileno())
        except OSError:
            pass
        try:
            self._file.close()
        except OSError:
            logger.exception("Producer file closed with error")
        else:
            logger.debug("Producer file closed")

    def __enter__(self) -> "OffsetFileWriter":
        return self

    def __exit__(
        self,
        *args: Union[Optional[Type[BaseException]], Optional[BaseException], Optional[TracebackType]],
    ) -> None:
        self.close()


def read_producer_offset(topic: TopicDataId, config: DatalogConfig) -> int:
    """Read the stored producer offset for ``topic``, validating its checksum."""
    base_path = config.datalog_path(topic)
    with open(os.path.join(base_path, PRODUCER_OFFSET_FILE_NAME), "rb") as f:
        data = f.read(OFFSET_FILE_SIZE)
    if len(data) < OFFSET_FILE_SIZE:
        raise ValueError(f"Producer offset file at {base_path} is incomplete")

    expected = crc32(data[: _VALUE.size])
    (stored_offset,) = _VALUE.unpack_from(data)
    (stored_checksum,) = _CHECKSUM.unpack_from(data, _VALUE.size)
    if stored_checksum != expected:
        raise ChecksumError(f"Checksum does not match for producer file offset at {base_path}")
    return stored_offset