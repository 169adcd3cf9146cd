"""Appending of chunks to segment files, as a leader or as a replica."""

from __future__ import annotations

import logging
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import BinaryIO, Optional

from streamlog.config import DIRECTORY_PERMISSIONS, FILE_PERMISSIONS, DatalogConfig, segment_file_name
from streamlog.index_file import IndexFileWriter
from streamlog.models import ALIGNMENT_FLAG, ALIGNMENT_SIZE, Replicator, SegmentChunk, TopicDataId, encode_chunk

log = logging.getLogger(__name__)

FLUSH_RESOLUTION = 0.2
_NO_SEGMENT = 2**63 - 1


def alignment_padding(length: int) -> bytes:
    """Alignment flag bytes that bring ``length`` up to a multiple of the alignment size."""
    remainder = length % ALIGNMENT_SIZE
    if remainder == 0:
        return b""
    return bytes([ALIGNMENT_FLAG]) * (ALIGNMENT_SIZE - remainder)


class SegmentWriter:
    """Buffers chunks and writes them to segment files of a topic generation.

    Without ``segment_id`` the writer acts as the leader: it starts a segment at offset 0,
    sends every chunk to the followers and rolls over segments by size. With ``segment_id``
    it acts as a replica and writes to the segments the leader names.
    """

    def __init__(
        self,
        topic: TopicDataId,
        replicator: Optional[Replicator],
        config: DatalogConfig,
        segment_id: Optional[int] = None,
        flush_resolution: Optional[float] = FLUSH_RESOLUTION,
    ) -> None:
        self.topic = topic
        self._config = config
        self._replicator = replicator
        self.base_path = config.datalog_path(topic)
        os.makedirs(self.base_path, mode=DIRECTORY_PERMISSIONS, exist_ok=True)

        self._lock = threading.RLock()
        self._buffer = bytearray()
        self._last_flush: Optional[float] = None
        self._buffered_offset = 0
        self._tail_offset = 0
        self._segment_file: Optional[BinaryIO] = None
        self._segment_length = 0
        self.segment_id = _NO_SEGMENT
        self._closed = False
        self._index_file = IndexFileWriter(self.base_path, config)

        self.is_leader = segment_id is None
        self._sender: Optional[ThreadPoolExecutor] = None
        if self.is_leader:
            log.info("Creating segment writer as leader for %s", topic)
            if replicator is None:
                raise ValueError("A leader segment writer requires a replicator")
            self._sender = ThreadPoolExecutor(max_workers=1, thread_name_prefix="segment-sender")
            self._create_file(0)
        else:
            log.info("Creating segment writer as replica for %s", topic)
            self._create_file(segment_id)

        self._stop = threading.Event()
        self._timer: Optional[threading.Thread] = None
        if flush_resolution:
            self._timer = threading.Thread(
                target=self._flush_timer, args=(flush_resolution,), name="segment-flush-timer", daemon=True
            )
            self._timer.start()

    @property
    def writer_type(self) -> str:
        return "leader" if self.is_leader else "replica"

    @property
    def buffered_bytes(self) -> int:
        """Number of bytes waiting to be flushed."""
        with self._lock:
            return len(self._buffer)

    def __enter__(self) -> "SegmentWriter":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def write(self, item: SegmentChunk) -> None:
        """Appends a chunk; as leader it also replicates it, raising when replication fails."""
        with self._lock:
            if self._closed:
                raise RuntimeError("Segment writer is closed")
            if self.is_leader:
                self._write_as_leader(item)
            else:
                self._write_as_replica(item)

    def flush_if_due(self) -> bool:
        """Flushes when the interval passed or the next group would not fit; returns whether it flushed."""
        with self._lock:
            if self._closed:
                return False
            flushed = self._maybe_flush()
            if flushed and self.is_leader:
                self._maybe_close_segment()
            return flushed

    def close(self) -> None:
        """Flushes pending data and closes the segment and index files."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._stop.set()
        if self._timer is not None:
            self._timer.join()
        with self._lock:
            if self._buffer:
                self._flush("closing writer")
            self._close_file()
            self._index_file.close()
            if self._sender is not None:
                self._sender.shutdown(wait=True)

    def _write_as_leader(self, item: SegmentChunk) -> None:
        if not hasattr(item, "replication"):
            raise TypeError(f"Invalid type for writing as a leader: {item!r}")
        if self._maybe_flush():
            self._maybe_close_segment()

        self._write_to_buffer(item)
        if self._segment_file is None:
            # The segment must exist locally before replicas are told its id
            self._create_file(self._buffered_offset)

        assert self._sender is not None and self._replicator is not None
        future = self._sender.submit(
            self._replicator.send_to_followers, item.replication, self.topic, self.segment_id, item
        )
        if self._maybe_flush():
            self._maybe_close_segment()
        future.result()

    def _write_as_replica(self, item: SegmentChunk) -> None:
        if not hasattr(item, "segment_id"):
            raise TypeError(f"Invalid type for writing as a replica: {item!r}")
        self._maybe_flush()
        if self.segment_id != item.segment_id:
            if self._buffer:
                self._flush("closing as replica")
            self._close_file()
            self._create_file(item.segment_id)
        self._write_to_buffer(item)
        self._maybe_flush()

    def _maybe_flush(self) -> bool:
        if not self._buffer:
            return False
        can_buffer_next_group = len(self._buffer) + self._config.max_group_size < self._config.segment_buffer_size
        elapsed = time.monotonic() - (self._last_flush or 0.0)
        if can_buffer_next_group and elapsed < self._config.segment_flush_interval:
            return False
        self._flush("timer" if can_buffer_next_group else "buffer size")
        return True

    def _create_file(self, segment_id: int) -> None:
        self.segment_id = segment_id
        name = segment_file_name(segment_id)
        log.info("Creating segment file %s on %s (%s)", name, self.base_path, self.writer_type)
        path = os.path.join(self.base_path, name)
        descriptor = os.open(path, os.O_CREAT | os.O_WRONLY | os.O_APPEND, FILE_PERMISSIONS)
        self._segment_file = os.fdopen(descriptor, "ab", buffering=0)

    def _flush(self, reason: str) -> None:
        self._buffer += alignment_padding(len(self._buffer))
        length = len(self._buffer)

        if self._segment_file is None:
            if not self.is_leader:
                raise RuntimeError("Flush should not create file on replicas as the file name will be invalid")
            self._create_file(self._buffered_offset)

        log.debug(
            "Writing %d bytes to segment file %s/%s (reason: %s, offset: %d)",
            length, self.base_path, segment_file_name(self.segment_id), reason, self._tail_offset,
        )
        assert self._segment_file is not None
        self._segment_file.write(bytes(self._buffer))

        self._index_file.append(self.segment_id, self._buffered_offset, self._segment_length, self._tail_offset)
        self._segment_length += length
        self._buffer.clear()
        self._last_flush = time.monotonic()

    def _maybe_close_segment(self) -> None:
        if self._segment_length + self._config.segment_buffer_size > self._config.max_segment_size:
            self._close_file()

    def _close_file(self) -> None:
        previous_id = self.segment_id
        log.debug("Closing segment file %d on %s", previous_id, self.base_path)
        if self._segment_file is not None:
            try:
                self._segment_file.close()
            except OSError:
                log.exception("Segment file %s on %s closed with error", segment_file_name(previous_id), self.base_path)
        self._index_file.close_file(previous_id, self._tail_offset)
        self._segment_file = None
        self.segment_id = _NO_SEGMENT
        self._segment_length = 0

    def _write_to_buffer(self, item: SegmentChunk) -> None:
        if self._last_flush is None or not self._buffer:
            self._last_flush = time.monotonic()
            self._buffered_offset = item.start_offset
        if item.record_length > 0:
            self._tail_offset = item.start_offset + item.record_length - 1
        self._buffer += encode_chunk(item.start_offset, item.record_length, item.data_block)

    def _flush_timer(self, resolution: float) -> None:
        while not self._stop.wait(resolution):
            try:
                self.flush_if_due()
            except Exception:
                log.exception("Segment flush failed on %s", self.base_path)