"""Index files mapping message offsets to positions in segment files."""

from __future__ import annotations

import logging
import os
import queue
import struct
import threading
import zlib
from dataclasses import dataclass, field
from typing import BinaryIO, Optional

from streamlog.config import INDEX_FILE_EXTENSION, DatalogConfig, index_file_name
from streamlog.offset_file import OffsetFileWriter

log = logging.getLogger(__name__)

_INDEX_ITEM = struct.Struct(">qqI")
INDEX_ITEM_SIZE = _INDEX_ITEM.size
_CHECKED_SIZE = INDEX_ITEM_SIZE - 4


@dataclass(frozen=True)
class IndexOffset:
    """One index entry: a message offset and the segment file position where its chunk is."""

    offset: int
    file_offset: int
    checksum: Optional[int] = field(default=None)

    def __post_init__(self) -> None:
        if self.checksum is None:
            object.__setattr__(self, "checksum", zlib.crc32(self._head()))

    def _head(self) -> bytes:
        return _INDEX_ITEM.pack(self.offset, self.file_offset, 0)[:_CHECKED_SIZE]

    @property
    def valid(self) -> bool:
        return self.checksum == zlib.crc32(self._head())

    def encode(self) -> bytes:
        return _INDEX_ITEM.pack(self.offset, self.file_offset, self.checksum)

    @classmethod
    def decode(cls, data: bytes) -> "IndexOffset":
        if len(data) < INDEX_ITEM_SIZE:
            raise ValueError("Incomplete index entry")
        offset, file_offset, checksum = _INDEX_ITEM.unpack_from(data)
        return cls(offset, file_offset, checksum)


def try_read_index_file(base_path: str, file_prefix: str, message_offset: int) -> int:
    """Returns the highest indexed file offset whose message offset is not above ``message_offset``.

    Returns 0 when there is no usable index.
    """
    path = os.path.join(base_path, f"{file_prefix}.{INDEX_FILE_EXTENSION}")
    try:
        with open(path, "rb") as file:
            data = file.read()
    except OSError:
        log.warning("Could not read index file at %s", path)
        return 0

    file_offset = 0
    for start in range(0, len(data) - INDEX_ITEM_SIZE + 1, INDEX_ITEM_SIZE):
        item = IndexOffset.decode(data[start : start + INDEX_ITEM_SIZE])
        if not item.valid:
            log.warning("Invalid index file checksum on %s (%d)", path, item.checksum)
            break
        if item.offset > message_offset:
            break
        file_offset = item.file_offset
        if item.offset == message_offset:
            break
    return file_offset


@dataclass(frozen=True)
class _IndexFileItem:
    segment_id: int
    tail_offset: int
    offset: int = 0
    file_offset: int = 0
    to_close: bool = False


_STOP = object()


class IndexFileWriter:
    """Writes index entries and the producer offset file on a background thread."""

    def __init__(self, base_path: str, config: DatalogConfig) -> None:
        self._base_path = base_path
        self._threshold = config.index_file_period_bytes
        self._items: "queue.Queue[object]" = queue.Queue()
        self._offset_writer = OffsetFileWriter(base_path)
        self._closed = False
        self._thread = threading.Thread(target=self._write_loop, name="index-file-writer", daemon=True)
        self._thread.start()

    def append(self, segment_id: int, offset: int, file_offset: int, tail_offset: int) -> None:
        """Queues an entry; it is stored once enough bytes passed since the last stored one."""
        self._items.put(_IndexFileItem(segment_id, tail_offset, offset, file_offset))

    def close_file(self, segment_id: int, tail_offset: int) -> None:
        """Queues the closing of the current index file."""
        self._items.put(_IndexFileItem(segment_id, tail_offset, to_close=True))

    def close(self) -> None:
        """Processes the pending items and stops the writer."""
        if self._closed:
            return
        self._closed = True
        self._items.put(_STOP)
        self._thread.join()

    def __enter__(self) -> "IndexFileWriter":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _write_loop(self) -> None:
        file: Optional[BinaryIO] = None
        last_stored_file_offset = 0
        try:
            for item in iter(self._items.get, _STOP):
                assert isinstance(item, _IndexFileItem)
                try:
                    self._offset_writer.write(item.tail_offset)
                except OSError:
                    log.exception("Producer offset file could not be written on path %s", self._base_path)

                if item.to_close:
                    if file is not None:
                        self._close_index(file)
                        file = None
                        last_stored_file_offset = 0
                    continue

                if file is None:
                    name = index_file_name(item.segment_id)
                    try:
                        file = open(os.path.join(self._base_path, name), "ab", buffering=0)
                    except OSError:
                        log.exception("Index file %s could not be created on path %s", name, self._base_path)
                        continue
                    log.debug("Index file created on path %s", self._base_path)

                if item.file_offset - last_stored_file_offset >= self._threshold:
                    try:
                        file.write(IndexOffset(item.offset, item.file_offset).encode())
                        log.debug("Written to %d index file on path %s", item.segment_id, self._base_path)
                    except OSError:
                        log.exception("There was an error writing to the index file on path %s", self._base_path)
                    last_stored_file_offset = item.file_offset
        finally:
            if file is not None:
                self._close_index(file)
            self._offset_writer.close()

    def _close_index(self, file: BinaryIO) -> None:
        try:
            file.close()
            log.debug("Index file closed on path %s", self._base_path)
        except OSError:
            log.exception("Index file closed with error on path %s", self._base_path)