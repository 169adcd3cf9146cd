"""Listing and merging of the segment files of a topic."""

from __future__ import annotations

import glob
import logging
import os
import re
from typing import Iterable, List, Optional

from streamlog.config import FILE_PERMISSIONS, SEGMENT_FILE_EXTENSION, DatalogConfig
from streamlog.models import TopicDataId

log = logging.getLogger(__name__)

_SEGMENT_ID = re.compile(r"[+-]?\d+", re.ASCII)
_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1


def _parse_segment_id(text: str) -> Optional[int]:
    if not _SEGMENT_ID.fullmatch(text):
        return None
    value = int(text)
    if not _INT64_MIN <= value <= _INT64_MAX:
        return None
    return value


def _segment_file_names(base_path: str) -> List[str]:
    pattern = os.path.join(glob.escape(base_path), f"*.{SEGMENT_FILE_EXTENSION}")
    return sorted(os.path.basename(entry) for entry in glob.glob(pattern))


def read_file_structure(topic: TopicDataId, offset: int, config: DatalogConfig) -> List[str]:
    """Returns the sorted segment file names that may contain data from ``offset`` onwards.

    The first name is the last segment starting at or before ``offset``, when there is one.
    """
    suffix_length = len(SEGMENT_FILE_EXTENSION) + 1
    result: List[str] = []
    last_that_can_contain_it = ""

    for file_name in _segment_file_names(config.datalog_path(topic)):
        segment_id = _parse_segment_id(file_name[:-suffix_length])
        if segment_id is None:
            log.error("Filename %s could not be parsed", file_name)
            continue
        if segment_id > offset:
            result.append(file_name)
        else:
            last_that_can_contain_it = file_name

    if last_that_can_contain_it:
        result.insert(0, last_that_can_contain_it)
    return result


def merge_file_structure(file_names: Iterable[str], topic: TopicDataId, offset: int, config: DatalogConfig) -> None:
    """Creates empty local files for the given segment names that are missing locally.

    Raises FileNotFoundError when neither the given names nor the local files hold anything.
    """
    file_names = list(file_names)
    log.info("Merging %d files for %s", len(file_names), topic)
    local_names = read_file_structure(topic, offset, config)
    local_set = set(local_names)
    base_path = config.datalog_path(topic)

    total = 0
    for name in file_names:
        if name in local_set:
            continue
        descriptor = os.open(os.path.join(base_path, name), os.O_CREAT | os.O_WRONLY, FILE_PERMISSIONS)
        os.close(descriptor)
        total += 1

    if total > 0:
        log.info("%d files merged for %s", total, topic)
    elif local_names:
        log.info("All files already present for %s", topic)
    else:
        raise FileNotFoundError(f"No file was found for {topic}")