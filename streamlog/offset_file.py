"""Storage of the last known producer offset."""

from __future__ import annotations

import logging
import os
import struct
import zlib

from streamlog.config import PRODUCER_OFFSET_FILE_NAME
from streamlog.models import ChecksumError

log = logging.getLogger(__name__)

_VALUE = struct.Struct(">q")
_CHECKSUM = struct.Struct(">I")

OFFSET_FILE_SIZE = _VALUE.size + _CHECKSUM.size


class OffsetFileWriter:
    """Overwrites a single file with the latest producer offset and its checksum.

    Not thread-safe.
    """

    def __init__(self, base_path: str) -> None:
        self._path = os.path.join(base_path, PRODUCER_OFFSET_FILE_NAME)
        self._file = open(self._path, "wb", buffering=0)

    def write(self, value: int) -> None:
        head = _VALUE.pack(value)
        self._file.seek(0)
        self._file.write(head + _CHECKSUM.pack(zlib.crc32(head)))

    def close(self) -> None:
        if self._file.closed:
            return
        try:
            os.fsync(self._file.fileno())
        except OSError:
            log.warning("Producer offset file %s could not be synced", self._path)
        self._file.close()
        log.debug("Producer offset file closed")

    def __enter__(self) -> "OffsetFileWriter":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def read_producer_offset(base_path: str) -> int:
    """Reads the stored producer offset, validating its checksum."""
    with open(os.path.join(base_path, PRODUCER_OFFSET_FILE_NAME), "rb") as file:
        data = file.read(OFFSET_FILE_SIZE)
    if len(data) < OFFSET_FILE_SIZE:
        raise ValueError(f"Producer offset file at {base_path} is incomplete")
    (value,) = _VALUE.unpack_from(data)
    (stored,) = _CHECKSUM.unpack_from(data, _VALUE.size)
    if stored != zlib.crc32(data[: _VALUE.size]):
        raise ChecksumError(f"Checksum does not match for producer file offset at {base_path}")
    return value