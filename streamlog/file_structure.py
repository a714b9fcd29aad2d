"""Listing and merging of the segment files of a topic."""

from __future__ import annotations

import logging
import os
import re
from typing import Iterable, List

from streamlog.models import (
    FILE_PERMISSIONS,
    SEGMENT_FILE_EXTENSION,
    DatalogConfig,
    TopicDataId,
)

logger = logging.getLogger(__name__)

_SEGMENT_ID = re.compile(r"[+-]?[0-9]+")


def _segment_file_names(base_path: str) -> List[str]:
    suffix = "." + SEGMENT_FILE_EXTENSION
    try:
        with os.scandir(base_path) as entries:
            return sorted(entry.name for entry in entries if entry.name.endswith(suffix))
    except FileNotFoundError:
        return []


def read_file_structure(topic: TopicDataId, offset: int, config: DatalogConfig) -> List[str]:
    """Return the segment file names that hold data starting from ``offset``, in order."""
    base_path = config.datalog_path(topic)
    result: List[str] = []
    last_that_can_contain_it = ""

    for filename in _segment_file_names(base_path):
        segment_id = filename[: -len(SEGMENT_FILE_EXTENSION) - 1]
        if not _SEGMENT_ID.fullmatch(segment_id):
            logger.error("Filename %s could not be parsed", filename)
            continue
        if int(segment_id) > offset:
            result.append(filename)
        else:
            last_that_can_contain_it = filename

    if last_that_can_contain_it:
        result.insert(0, last_that_can_contain_it)
    return result


def merge_data_structure(
    file_names: Iterable[str], topic: TopicDataId, offset: int, config: DatalogConfig
) -> int:
    """Create empty placeholders for segment files missing locally.

    Returns the number of files created. Raises ``FileNotFoundError`` when no
    file exists locally and none was created.
    """
    file_names = list(file_names)
    logger.info("Merging %d files for %s", len(file_names), topic)
    local_names = read_file_structure(topic, offset, config)
    local_set = set(local_names)
    base_path = config.datalog_path(topic)

    total = 0
    for name in file_names:
        if name in local_set:
            continue
        fd = os.open(os.path.join(base_path, name), os.O_CREAT | os.O_WRONLY, FILE_PERMISSIONS)
        os.close(fd)
        total += 1

    if total > 0:
        logger.info("%d files merged for %s", total, topic)
    elif local_names:
        logger.info("All files already present for %s", topic)
    else:
        raise FileNotFoundError(f"No file was found for {topic}")
    return total