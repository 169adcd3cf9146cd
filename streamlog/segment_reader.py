"""Sequential reading of the segment files of a topic generation for a consumer group."""

from __future__ import annotations

import glob
import logging
import os
import threading
import time
from dataclasses import replace
from typing import BinaryIO, List, Optional, Tuple

from streamlog.config import (
    DIRECTORY_PERMISSIONS,
    SEGMENT_FILE_EXTENSION,
    DatalogConfig,
    segment_file_name,
    segment_file_prefix,
    segment_id_from_name,
)
from streamlog.datalog import Datalog
from streamlog.index_file import try_read_index_file
from streamlog.models import (
    ALIGNMENT_FLAG,
    ALIGNMENT_SIZE,
    CHUNK_HEADER_SIZE,
    OFFSET_COMPLETED,
    ChunkHeader,
    GenId,
    Offset,
    OffsetCommitType,
    OffsetState,
    ReadItem,
    ReadSegmentChunk,
    ReplicationReader,
    TopicDataId,
    new_empty_chunk,
)

log = logging.getLogger(__name__)

_FULL_SEEK_LOG_INTERVAL = 60.0


class _OffsetMovedAhead(Exception):
    """The committed offset belongs to a different generation than the one being read."""


class SegmentReader:
    """Reads the chunks of a topic generation in order, serving one read request per poll.

    A reader is valid for a single generation and a single consumer group. It reads ahead
    from the segment files and fills gaps in the local files by streaming from replicas.
    """

    def __init__(
        self,
        group: str,
        is_leader: bool,
        replication_reader: Optional[ReplicationReader],
        topic: TopicDataId,
        topic_range_cluster_size: int,
        source_version: GenId,
        initial_offset: int,
        offset_state: OffsetState,
        max_produced_offset: Optional[int],
        datalog: Datalog,
        config: DatalogConfig,
    ) -> None:
        self.group = group
        self.is_leader = is_leader
        self.topic = topic
        self.topic_range_cluster_size = topic_range_cluster_size
        self.source_version = source_version
        self.max_produced_offset = max_produced_offset
        self.base_path = config.datalog_path(topic)
        self._replication_reader = replication_reader
        self._offset_state = offset_state
        self._datalog = datalog
        self._config = config

        self._message_offset = initial_offset
        self._file_name = ""
        self._segment_file: Optional[BinaryIO] = None
        self._file_position = 0
        self._last_chunk_file_position = 0
        self._reading_from_replica = False
        self._last_full_seek: Optional[float] = None

        self._ahead = b""
        self._offset_gap = -1
        self._next_file_name = ""
        self._last_commit: Optional[float] = None
        self._last_origin: Optional[str] = None
        self._close_error: Optional[Exception] = None
        self._stopped_receiving = False
        self._started = False
        self._lock = threading.Lock()

        self._init_read(foreground=True)

    @property
    def message_offset(self) -> int:
        """The offset of the next message expected to be read."""
        return self._message_offset

    def __enter__(self) -> "SegmentReader":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def poll(self, item: ReadItem) -> None:
        """Serves a read request, calling ``item.set_result`` exactly once."""
        with self._lock:
            if self._stopped_receiving:
                item.set_result(self._close_error, None)
                return
            if not self._started:
                self._started = True
                log.info("Start reading for %s", self.topic)
                if not self.is_leader:
                    self._try_init_read()
            self._serve(item)

    def stored_offset_as_completed(self) -> bool:
        """Whether the offset was stored as completed (previous generations only)."""
        return self._message_offset == OFFSET_COMPLETED

    def has_stopped_receiving(self) -> bool:
        """Whether the reader no longer serves read requests."""
        return self._stopped_receiving

    def close(self) -> None:
        """Stops serving requests and closes the current segment file."""
        with self._lock:
            self._stop_receiving()

    def _stop_receiving(self) -> None:
        log.info("Closing segment reader for topic: %s", self.topic)
        self._stopped_receiving = True
        self._close_segment_file()

    def _serve(self, item: ReadItem) -> None:
        origin = item.origin()
        if self._last_origin is not None and self._last_origin != origin:
            if item.commit_only():
                # Wants to commit but it was not the last reader
                item.set_result(RuntimeError("Manual commit was ignored"), None)
                return
            try:
                if self._reset_offset_to_last_committed():
                    self._ahead = b""
            except _OffsetMovedAhead:
                item.set_result(None, new_empty_chunk(self._message_offset))
                self._stop_receiving()
                return
        else:
            self._store_offset(item.commit_only())
            if item.commit_only():
                item.set_result(None, new_empty_chunk(self._message_offset))
                return

        self._last_origin = origin
        remainder = b""
        if self._ahead:
            chunk, remainder = self._consume_read_ahead()
            if chunk is not None:
                item.set_result(None, chunk)
                return

        item.set_result(None, new_empty_chunk(self._message_offset))

        if self._offset_gap >= 0:
            if self._message_offset <= self._offset_gap:
                self._read_gap_from_replica()
                return
            self._seek_after_gap()
            remainder = b""

        if self._segment_file is None:
            # There might have been no data initially
            self._try_init_read()
            if self._segment_file is None:
                self._ahead = remainder
                return

        data = self._read_file(len(remainder))
        if not data:
            self._ahead = remainder
            if not self._next_file_name:
                self._next_file_name, self._offset_gap = self._check_next_file()
            else:
                # The previous file was polled after discovering the next one: safe to switch
                self._swap_segment_file()
            return

        self._ahead = remainder + data

    def _consume_read_ahead(self) -> Tuple[Optional[ReadSegmentChunk], bytes]:
        chunk = self._read_chunk()
        if chunk is not None:
            return chunk, b""
        remainder, self._ahead = self._ahead, b""
        return None, remainder

    def _read_chunk(self) -> Optional[ReadSegmentChunk]:
        """Reads chunks until the one starting at the expected offset, skipping those already served."""
        while True:
            initial_position = self._file_position
            consumed, chunk = self._read_single_chunk()
            if not self._reading_from_replica:
                self._file_position += consumed
            if chunk is None:
                return None
            if not self._reading_from_replica:
                self._last_chunk_file_position = initial_position

            if chunk.start_offset > self._message_offset:
                # Messages are missing locally up to the start of this chunk
                self._offset_gap = chunk.start_offset - 1
                return None
            if chunk.start_offset == self._message_offset:
                self._message_offset = chunk.start_offset + chunk.record_length
                return chunk

    def _read_single_chunk(self) -> Tuple[int, Optional[ReadSegmentChunk]]:
        data = self._ahead
        alignment = 0
        while alignment < len(data) and data[alignment] == ALIGNMENT_FLAG:
            alignment += 1

        rest = data[alignment:]
        self._ahead = rest
        if len(rest) < CHUNK_HEADER_SIZE:
            return alignment, None

        header = ChunkHeader.decode(rest)
        end = CHUNK_HEADER_SIZE + header.body_length
        if len(rest) < end:
            return alignment, None

        self._ahead = rest[end:]
        chunk = ReadSegmentChunk(
            data_block=bytes(rest[CHUNK_HEADER_SIZE:end]),
            start_offset=header.start,
            record_length=header.record_length,
        )
        return alignment + end, chunk

    def _read_gap_from_replica(self) -> None:
        gap = self._offset_gap
        log.debug(
            "Handling file gap in %s/%s with the range [%d, %d]",
            self.base_path, self._file_name, self._message_offset, gap,
        )
        self._reading_from_replica = True
        if self._replication_reader is None:
            raise RuntimeError(
                f"No replication reader found for {self.topic} for file gap in {self.base_path}/{self._file_name}"
            )
        segment_id = segment_id_from_name(self._file_name)
        max_records = gap - self._message_offset + 1
        try:
            data = self._replication_reader.stream_file(segment_id, self.topic, self._message_offset, max_records)
        except Exception:
            log.exception("File %s/%s could not be read from replicas", self.base_path, self._file_name)
            data = b""
        log.debug("Obtained %d bytes from peer for file gap %s/%s", len(data), self.base_path, self._file_name)
        self._ahead = bytes(data)

    def _seek_after_gap(self) -> None:
        self._offset_gap = -1
        self._reading_from_replica = False
        position = self._last_chunk_file_position
        log.info("Seeking position %d of file %s/%s after gap", position, self.base_path, self._file_name)
        if self._segment_file is None:
            return
        try:
            self._segment_file.seek(position)
            self._file_position = position
        except OSError:
            log.exception("Could not seek position in %s in %s", self._file_name, self.base_path)

    def _read_file(self, remainder_length: int) -> bytes:
        assert self._segment_file is not None
        aligned_remainder = -(-remainder_length // ALIGNMENT_SIZE) * ALIGNMENT_SIZE
        size = self._config.read_ahead_size - aligned_remainder
        size -= size % ALIGNMENT_SIZE
        if size <= 0:
            return b""
        try:
            return self._segment_file.read(size) or b""
        except OSError as error:
            log.exception("Unexpected error reading file %s in %s", self._file_name, self.base_path)
            self._close_error = error
            return b""

    def _store_offset(self, manual: bool) -> None:
        commit_type = OffsetCommitType.LOCAL
        value = Offset(
            token=self.topic.token,
            index=self.topic.range_index,
            version=self.topic.version,
            cluster_size=self.topic_range_cluster_size,
            offset=self._message_offset,
            source=self.source_version,
        )

        now = time.monotonic()
        if manual or self._last_commit is None or now - self._last_commit >= self._config.auto_commit_interval:
            self._last_commit = now
            commit_type = OffsetCommitType.ALL
        elif self.max_produced_offset is not None and self._message_offset > self.max_produced_offset:
            if self._message_offset != OFFSET_COMPLETED:
                self._message_offset = OFFSET_COMPLETED
                commit_type = OffsetCommitType.ALL
                value = replace(value, offset=OFFSET_COMPLETED)
                log.debug("Marking message offset as completed for a previous generation %s", self.topic)

        if commit_type is OffsetCommitType.ALL:
            log.debug("Setting offset for %s on all replicas: %d (group %s)", self.topic, value.offset, self.group)
        self._offset_state.set(self.group, self.topic.name, value, commit_type)

    def _reset_offset_to_last_committed(self) -> bool:
        if self._segment_file is None:
            return False
        offset, ranges_match = self._offset_state.get(
            self.group, self.topic.name, self.topic.token, self.topic.range_index, self.topic_range_cluster_size
        )
        if (
            not ranges_match
            or offset is None
            or offset.cluster_size != self.topic_range_cluster_size
            or offset.gen_id() != self.topic.gen_id()
        ):
            raise _OffsetMovedAhead()
        self._close_segment_file()
        self._message_offset = offset.offset
        return True

    def _try_init_read(self) -> None:
        try:
            self._init_read(foreground=False)
        except OSError:
            log.exception("Reader for %s could not be initialized", self.topic)

    def _init_read(self, foreground: bool) -> None:
        file_name, file_offset = self._full_seek(foreground)
        if not file_name:
            return
        path = os.path.join(self.base_path, file_name)
        try:
            file = open(path, "rb")
        except OSError:
            log.error("File %s in %s could not be opened by reader", file_name, self.base_path)
            raise
        self._segment_file = file
        self._file_name = file_name
        self._file_position = file_offset
        self._last_chunk_file_position = file_offset
        if file_offset > 0:
            log.info("Seeking position %d for reading in file %s", file_offset, file_name)
            file.seek(file_offset)
        else:
            log.info("Started reading file %s/%s from position 0", self.base_path, file_name)

    def _full_seek(self, foreground: bool) -> Tuple[str, int]:
        """Finds the last segment starting at or before the expected offset and its indexed position."""
        if not self.is_leader:
            if foreground:
                # Avoid blocking when creating a reader
                return "", 0
            if not self._set_structure_as_follower():
                return "", 0

        now = time.monotonic()
        should_log = self._last_full_seek is None or now - self._last_full_seek > _FULL_SEEK_LOG_INTERVAL
        if should_log:
            log.info("Looking for files inside %s", self.base_path)
            self._last_full_seek = now

        entries = self._datalog.segment_file_list(self.topic, self._message_offset)
        if not entries:
            if should_log:
                log.info("Reader could not find any files in %s", self.base_path)
            return "", 0

        segment_id = entries[-1]
        file_offset = try_read_index_file(self.base_path, segment_file_prefix(segment_id), self._message_offset)
        return segment_file_name(segment_id), file_offset

    def _set_structure_as_follower(self) -> bool:
        os.makedirs(self.base_path, mode=DIRECTORY_PERMISSIONS, exist_ok=True)
        if self._replication_reader is None:
            raise RuntimeError(f"No replication reader found for {self.topic}")
        return self._replication_reader.merge_file_structure()

    def _segment_file_names(self) -> List[str]:
        pattern = os.path.join(glob.escape(self.base_path), f"*.{SEGMENT_FILE_EXTENSION}")
        return sorted(os.path.basename(entry) for entry in glob.glob(pattern))

    def _check_next_file(self) -> Tuple[str, int]:
        """Returns the file after the current one, or the last missing offset of a gap."""
        found_current = False
        next_file_name = ""
        offset_gap = -1
        for file_name in self._segment_file_names():
            if found_current:
                try:
                    segment_id = segment_id_from_name(file_name)
                except ValueError:
                    continue
                if segment_id > self._message_offset:
                    offset_gap = segment_id - 1
                next_file_name = file_name
                break
            if file_name == self._file_name:
                found_current = True

        if offset_gap >= 0:
            return "", offset_gap
        if next_file_name:
            return next_file_name, -1
        if self.max_produced_offset is not None and self._message_offset <= self.max_produced_offset:
            # An expected file was not found
            return "", self.max_produced_offset
        return "", -1

    def _swap_segment_file(self) -> None:
        next_file_name, self._next_file_name = self._next_file_name, ""
        previous = self._segment_file
        try:
            file = open(os.path.join(self.base_path, next_file_name), "rb")
        except OSError:
            log.exception("Next file could not be opened")
            return
        self._segment_file = file
        self._file_name = next_file_name
        self._file_position = 0
        self._last_chunk_file_position = 0
        self._ahead = b""
        if previous is not None:
            try:
                previous.close()
            except OSError:
                log.warning("There was an error when closing file in %s", self.base_path)

    def _close_segment_file(self) -> None:
        if self._segment_file is not None:
            try:
                self._segment_file.close()
            except OSError:
                log.warning("There was an error when closing file in %s", self.base_path)
        self._segment_file = None