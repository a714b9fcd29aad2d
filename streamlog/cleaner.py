"""Removal of segment files that are older than the retention period."""

from __future__ import annotations

import logging
import os
import threading
import time
from datetime import timedelta
from typing import Optional, Tuple, Union

from streamlog.models import INDEX_FILE_EXTENSION, SEGMENT_FILE_EXTENSION

logger = logging.getLogger(__name__)

# Seconds between two retention checks.
RETENTION_CHECK_INTERVAL = 5 * 60.0

Duration = Union[float, int, timedelta]


def _to_seconds(value: Duration) -> float:
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


def clean_up_file(dir_path: Union[str, os.PathLike], name: str, retention: Duration) -> int:
    """Remove the segment file ``name`` and its index when older than ``retention``.

    Returns 1 when the segment file was removed, 0 otherwise.
    """
    dir_path = os.fspath(dir_path)
    segment_path = os.path.join(dir_path, name)
    try:
        modified = os.stat(segment_path).st_mtime
    except OSError:
        logger.exception("Could not get the modification time of %s", segment_path)
        return 0

    if time.time() - modified < _to_seconds(retention):
        return 0

    logger.debug("Log clean up removing segment file %s", segment_path)

    index_path = os.path.join(dir_path, f"{os.path.splitext(name)[0]}.{INDEX_FILE_EXTENSION}")
    try:
        os.remove(index_path)
    except FileNotFoundError:
        pass
    except OSError:
        logger.exception("Failed to remove index file %s", index_path)

    try:
        os.remove(segment_path)
    except OSError:
        logger.exception("Failed to remove segment file %s", segment_path)
        return 0
    return 1


def clean_up_dir(dir_path: Union[str, os.PathLike], retention: Duration) -> Tuple[int, int]:
    """Walk ``dir_path`` recursively, removing expired segment files.

    Returns the number of files and folders visited and the number of segment
    files removed.
    """
    dir_path = os.fspath(dir_path)
    logger.debug("Log clean up reading dir %s", dir_path)
    try:
        with os.scandir(dir_path) as it:
            entries = [(entry.name, entry.is_dir(follow_symlinks=False)) for entry in it]
    except OSError:
        logger.exception("Log clean up could not open the dir %s", dir_path)
        return 0, 0

    segment_extension = "." + SEGMENT_FILE_EXTENSION
    read = 0
    removed = 0
    for name, is_dir in entries:
        read += 1
        if is_dir:
            sub_read, sub_removed = clean_up_dir(os.path.join(dir_path, name), retention)
            read += sub_read
            removed += sub_removed
        elif os.path.splitext(name)[1] == segment_extension:
            removed += clean_up_file(dir_path, name, retention)

    logger.debug("Finishing cleaning up %s", dir_path)
    return read, removed


class RetentionCleaner:
    """Periodically removes expired segment files in a background thread."""

    def __init__(
        self,
        segments_path: Union[str, os.PathLike],
        retention: Duration,
        check_interval: Duration = RETENTION_CHECK_INTERVAL,
    ) -> None:
        self._segments_path = os.fspath(segments_path)
        self._retention = _to_seconds(retention)
        self._check_interval = _to_seconds(check_interval)
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        """Start checking in the background; calling it again has no effect."""
        if self._thread is not None:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="retention-cleaner", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Stop the background checks and wait for the thread to finish."""
        thread = self._thread
        if thread is None:
            return
        self._stop_event.set()
        thread.join()
        self._thread = None

    def _run(self) -> None:
        while not self._stop_event.wait(self._check_interval):
            logger.info("Start looking for log files to clean up past the retention time")
            if not os.path.isdir(self._segments_path):
                # Likely that cleaning started before the first message arrived
                logger.info("Segment path does not exist yet")
                continue

            started = time.monotonic()
            read, removed = clean_up_dir(self._segments_path, self._retention)
            spent_ms = int((time.monotonic() - started) * 1000)
            spent = f"{spent_ms}ms" if spent_ms else "less than a ms"
            logger.info(
                "Log clean up took %s to visit %d files/folders. Removed %d segment files",
                spent,
                read,
                removed,
            )