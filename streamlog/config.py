"""Datalog configuration and segment file naming."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from streamlog.models import TopicDataId

MIB = 1024 * 1024

SEGMENT_FILE_EXTENSION = "dlog"
INDEX_FILE_EXTENSION = "index"
PRODUCER_OFFSET_FILE_NAME = "producer.offset"

DIRECTORY_PERMISSIONS = 0o755
FILE_PERMISSIONS = 0o644

_SEGMENT_ID_WIDTH = 20


@dataclass(frozen=True)
class DatalogConfig:
    """Settings that drive how segments, indexes and offsets are stored and read.

    Durations are expressed in seconds.
    """

    home_path: str
    segment_buffer_size: int = 8 * MIB
    max_segment_size: int = 1024 * MIB
    max_group_size: int = 2 * MIB
    segment_flush_interval: float = 5.0
    index_file_period_bytes: int = 50 * MIB
    read_ahead_size: int = 8 * MIB
    stream_buffer_size: int = 8 * MIB
    auto_commit_interval: float = 5.0
    log_retention: float | None = None

    def segments_path(self) -> str:
        """Root directory holding the data of every topic."""
        return os.path.join(self.home_path, "data", "datalog")

    def datalog_path(self, topic: TopicDataId) -> str:
        """Directory holding the segment files of a topic, token, range and version."""
        return os.path.join(
            self.segments_path(),
            topic.name,
            str(topic.token),
            str(topic.range_index),
            str(topic.version),
        )


def segment_file_prefix(segment_id: int) -> str:
    """Zero-padded name shared by the segment file and its index file."""
    return f"{segment_id:0{_SEGMENT_ID_WIDTH}d}"


def segment_file_name(segment_id: int) -> str:
    return f"{segment_file_prefix(segment_id)}.{SEGMENT_FILE_EXTENSION}"


def index_file_name(segment_id: int) -> str:
    return f"{segment_file_prefix(segment_id)}.{INDEX_FILE_EXTENSION}"


def segment_id_from_name(file_name: str) -> int:
    """Parses the segment id out of a segment or index file name."""
    prefix = os.path.basename(file_name).split(".", 1)[0]
    if not prefix.isdigit():
        raise ValueError(f"Invalid segment file name: {file_name!r}")
    return int(prefix)