"""Reading of segment files and retention clean up."""

from __future__ import annotations

import glob
import logging
import os
import queue
import threading
import time
from typing import List, Optional, Tuple

from streamlog.config import (
    INDEX_FILE_EXTENSION,
    SEGMENT_FILE_EXTENSION,
    DatalogConfig,
    segment_file_name,
    segment_file_prefix,
    segment_id_from_name,
)
from streamlog.index_file import try_read_index_file
from streamlog.models import ALIGNMENT_FLAG, ALIGNMENT_SIZE, CHUNK_HEADER_SIZE, ChunkHeader, TopicDataId
from streamlog.offset_file import read_producer_offset

log = logging.getLogger(__name__)

RETENTION_CHECK_SECONDS = 5 * 60
STREAM_BUFFER_COUNT = 2


def _align_down(value: int) -> int:
    return value - value % ALIGNMENT_SIZE


def _align_up(value: int) -> int:
    return -(-value // ALIGNMENT_SIZE) * ALIGNMENT_SIZE


def read_next_chunk(buf: bytes) -> Tuple[Optional[ChunkHeader], int]:
    """Returns the next complete chunk header in ``buf`` and the alignment bytes before it.

    The header is None when the chunk is not fully contained in ``buf``.
    """
    alignment = 0
    for byte in buf:
        if byte != ALIGNMENT_FLAG:
            break
        alignment += 1

    rest = buf[alignment:]
    if len(rest) < CHUNK_HEADER_SIZE:
        return None, 0

    header = ChunkHeader.decode(rest)
    if header.body_length + CHUNK_HEADER_SIZE > len(rest):
        return None, 0
    return header, alignment


def read_chunks_until(buf: bytes, start_offset: int, max_records: int) -> Tuple[bytes, bool]:
    """Finds the chunk containing ``start_offset`` and the following ones up to ``max_records``.

    Returns the chunks and True when found; otherwise the trailing incomplete chunk and False.
    """
    while buf:
        header, alignment = read_next_chunk(buf)
        if header is None:
            return buf, False

        if header.start <= start_offset < header.start + header.record_length:
            max_offset = start_offset + max_records - 1
            initial_alignment = alignment
            end = 0
            while True:
                end += alignment + CHUNK_HEADER_SIZE + header.body_length
                try:
                    header, alignment = read_next_chunk(buf[end:])
                except ValueError:
                    break
                if header is None or header.start > max_offset:
                    break
            return buf[initial_alignment:end], True

        buf = buf[alignment + CHUNK_HEADER_SIZE + header.body_length :]
    return b"", False


class Datalog:
    """Reads segment data from the local file system and removes expired segments."""

    def __init__(self, config: DatalogConfig) -> None:
        self._config = config
        self._stream_buffers: "queue.Queue[bytearray]" = queue.Queue()
        for _ in range(STREAM_BUFFER_COUNT):
            self._stream_buffers.put(bytearray(config.stream_buffer_size))
        self._stop = threading.Event()
        self._cleaner: Optional[threading.Thread] = None
        if config.log_retention is not None:
            self._cleaner = threading.Thread(
                target=self._clean_up_loop, args=(config.log_retention,), name="datalog-cleaner", daemon=True
            )
            self._cleaner.start()

    def __enter__(self) -> "Datalog":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        """Stops the background clean up."""
        self._stop.set()
        if self._cleaner is not None:
            self._cleaner.join()
            self._cleaner = None

    def stream_buffer(self) -> bytearray:
        """Blocks until a stream buffer is available; release it after use."""
        return self._stream_buffers.get()

    def release_stream_buffer(self, buf: bytearray) -> None:
        self._stream_buffers.put(buf)

    def segment_file_list(self, topic: TopicDataId, max_offset: int) -> List[int]:
        """Sorted ids of the segment files starting at or before ``max_offset``."""
        base_path = self._config.datalog_path(topic)
        pattern = os.path.join(glob.escape(base_path), f"*.{SEGMENT_FILE_EXTENSION}")
        result: List[int] = []
        for entry in sorted(glob.glob(pattern)):
            try:
                segment_id = segment_id_from_name(entry)
            except ValueError:
                continue
            if segment_id > max_offset:
                break
            result.append(segment_id)
        return result

    def read_file_from(
        self, max_size: int, segment_id: int, start_offset: int, max_records: int, topic: TopicDataId
    ) -> bytes:
        """Returns the chunks of a segment starting with the one containing ``start_offset``.

        At most a stream buffer (or ``max_size``) worth of data is read; returns empty bytes
        when the chunk is not found.
        """
        base_path = self._config.datalog_path(topic)
        file_offset = try_read_index_file(base_path, segment_file_prefix(segment_id), start_offset)
        capacity = _align_down(min(max_size, self._config.stream_buffer_size))
        path = os.path.join(base_path, segment_file_name(segment_id))

        try:
            file = open(path, "rb")
        except OSError:
            log.error("Could not open file %s", path)
            raise

        with file:
            if file_offset > 0:
                file.seek(file_offset)
            remainder = b""
            while True:
                read_size = capacity - _align_up(len(remainder))
                if read_size <= 0:
                    return b""
                data = file.read(read_size)
                buf = remainder + data
                if len(buf) < CHUNK_HEADER_SIZE:
                    return b""
                chunks, complete = read_chunks_until(buf, start_offset, max_records)
                if complete:
                    return chunks
                remainder = chunks
                if not data:
                    return b""

    def read_producer_offset(self, topic: TopicDataId) -> int:
        """The max producer offset stored locally for the topic."""
        return read_producer_offset(self._config.datalog_path(topic))

    def clean_up_dir(self, dir_path: str, retention: float) -> Tuple[int, int]:
        """Removes segment files older than ``retention`` seconds, recursively.

        Returns the number of entries visited and of segment files removed.
        """
        read = removed = 0
        log.debug("Log clean up reading dir %s", dir_path)
        try:
            entries = list(os.scandir(dir_path))
        except OSError:
            log.exception("Log clean up could not open the dir %s", dir_path)
            return read, removed

        for entry in entries:
            read += 1
            if entry.is_dir(follow_symlinks=False):
                sub_read, sub_removed = self.clean_up_dir(entry.path, retention)
                read += sub_read
                removed += sub_removed
                continue
            if os.path.splitext(entry.name)[1] == f".{SEGMENT_FILE_EXTENSION}":
                removed += self._clean_up_file(dir_path, entry, retention)
        return read, removed

    def _clean_up_file(self, dir_path: str, entry: os.DirEntry, retention: float) -> int:
        try:
            modified = entry.stat().st_mtime
        except OSError:
            return 0
        if time.time() - modified < retention:
            return 0

        log.debug("Log clean up removing segment file %s/%s", dir_path, entry.name)
        index_name = entry.name[: -len(SEGMENT_FILE_EXTENSION)] + INDEX_FILE_EXTENSION
        try:
            os.remove(os.path.join(dir_path, index_name))
        except FileNotFoundError:
            pass
        except OSError:
            log.exception("Failed to remove index file %s on %s", index_name, dir_path)

        try:
            os.remove(entry.path)
        except OSError:
            log.exception("Failed to remove segment file %s on %s", entry.name, dir_path)
            return 0
        return 1

    def _clean_up_loop(self, retention: float) -> None:
        while not self._stop.wait(RETENTION_CHECK_SECONDS):
            log.info("Start looking for log files to clean up pass the retention time")
            segments_path = self._config.segments_path()
            if not os.path.isdir(segments_path):
                log.info("Segment path does not exist yet")
                continue
            start = time.monotonic()
            read, removed = self.clean_up_dir(segments_path, retention)
            elapsed_ms = int((time.monotonic() - start) * 1000)
            spent = f"{elapsed_ms}ms" if elapsed_ms else "less than a ms"
            log.info("Log clean up took %s to visit %d files/folders. Removed %d segment files", spent, read, removed)