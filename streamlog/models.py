"""Data types shared by the datalog readers and writers."""

from __future__ import annotations

import enum
import struct
import zlib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, Tuple

ALIGNMENT_SIZE = 512
ALIGNMENT_FLAG = 0x80

OFFSET_COMPLETED = 2**63 - 1

_CHUNK_HEADER = struct.Struct(">BIqII")
CHUNK_HEADER_SIZE = _CHUNK_HEADER.size
_CRC_SIZE = 4


class ChecksumError(ValueError):
    """Raised when stored data does not match its checksum."""


@dataclass(frozen=True)
class GenId:
    start: int
    version: int


@dataclass(frozen=True)
class TopicDataId:
    """Identifies the data of a topic for a token, range and generation version."""

    name: str = ""
    token: int = 0
    range_index: int = 0
    version: int = 0

    def gen_id(self) -> GenId:
        return GenId(start=self.token, version=self.version)

    def __str__(self) -> str:
        return f"'{self.name}' {self.token}/{self.range_index} v{self.version}"


@dataclass(frozen=True)
class Offset:
    """A consumer offset for a topic range."""

    token: int
    index: int
    version: int
    cluster_size: int
    offset: int
    source: Optional[GenId] = None

    def gen_id(self) -> GenId:
        return GenId(start=self.token, version=self.version)


class OffsetCommitType(enum.Enum):
    LOCAL = "local"
    ALL = "all"


@dataclass(frozen=True)
class ChunkHeader:
    """The fixed-size header preceding every chunk body in a segment file."""

    flags: int
    body_length: int
    start: int
    record_length: int
    crc: Optional[int] = field(default=None)

    def __post_init__(self) -> None:
        if self.crc is None:
            object.__setattr__(self, "crc", zlib.crc32(self._head()))

    def _head(self) -> bytes:
        return _CHUNK_HEADER.pack(self.flags, self.body_length, self.start, self.record_length, 0)[:-_CRC_SIZE]

    def encode(self) -> bytes:
        return _CHUNK_HEADER.pack(self.flags, self.body_length, self.start, self.record_length, self.crc)

    @classmethod
    def decode(cls, data: bytes) -> "ChunkHeader":
        """Parses and validates a header from the start of ``data``."""
        if len(data) < CHUNK_HEADER_SIZE:
            raise ValueError("Incomplete chunk header")
        flags, body_length, start, record_length, crc = _CHUNK_HEADER.unpack_from(data)
        expected = zlib.crc32(bytes(data[: CHUNK_HEADER_SIZE - _CRC_SIZE]))
        if crc != expected:
            raise ChecksumError("Checksum mismatch")
        if start < 0:
            raise ValueError("Invalid chunk start offset")
        return cls(flags, body_length, start, record_length, crc)


def encode_chunk(start_offset: int, record_length: int, body: bytes) -> bytes:
    """Serializes a header followed by the body."""
    header = ChunkHeader(flags=0, body_length=len(body), start=start_offset, record_length=record_length)
    return header.encode() + bytes(body)


class SegmentChunk(Protocol):
    @property
    def data_block(self) -> bytes: ...

    @property
    def start_offset(self) -> int: ...

    @property
    def record_length(self) -> int: ...


@dataclass(frozen=True)
class ReadSegmentChunk:
    """A chunk body read from a segment."""

    data_block: bytes
    start_offset: int
    record_length: int


def new_empty_chunk(start: int) -> ReadSegmentChunk:
    return ReadSegmentChunk(data_block=b"", start_offset=start, record_length=0)


class ReadItem(ABC):
    """A queued read request; ``set_result`` is called once it is served."""

    @abstractmethod
    def origin(self) -> str:
        """Identifier of the poll source, used to decide whether to rewind to the committed offset."""

    @abstractmethod
    def commit_only(self) -> bool:
        """Whether the request only commits and does not read."""

    @abstractmethod
    def set_result(self, error: Optional[Exception], chunk: Optional[SegmentChunk]) -> None:
        """Receives the outcome of the request."""


class OffsetState(ABC):
    @abstractmethod
    def get(
        self, group: str, topic: str, token: int, range_index: int, cluster_size: int
    ) -> Tuple[Optional[Offset], bool]:
        """Returns the stored offset and whether the ranges match."""

    @abstractmethod
    def set(self, group: str, topic: str, value: Offset, commit_type: OffsetCommitType) -> bool:
        """Stores an offset, locally or on every replica."""


class ReplicationReader(ABC):
    @abstractmethod
    def merge_file_structure(self) -> bool:
        """Merges the file structure from replicas; returns whether it completed."""

    @abstractmethod
    def stream_file(self, segment_id: int, topic: TopicDataId, start_offset: int, max_records: int) -> bytes:
        """Reads at least a chunk of a segment from a replica."""


class Replicator(ABC):
    @abstractmethod
    def send_to_followers(self, replication: Any, topic: TopicDataId, segment_id: int, item: SegmentChunk) -> None:
        """Sends a chunk to the followers, raising when it could not be replicated."""