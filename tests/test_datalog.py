import os
import time

import pytest

from streamlog.config import MIB, DatalogConfig, segment_file_name
from streamlog.datalog import Datalog, read_chunks_until, read_next_chunk
from streamlog.models import ALIGNMENT_FLAG, ALIGNMENT_SIZE, CHUNK_HEADER_SIZE, ChecksumError, encode_chunk
from streamlog.offset_file import OffsetFileWriter

TOPIC_NAME = "abc"


def create_test_chunk(body_length, start, record_length):
    body = bytes(i % 256 for i in range(body_length))
    return encode_chunk(start, record_length, body)


def create_aligned_chunk(body_length, start, record_length):
    chunk = create_test_chunk(body_length, start, record_length)
    rem = len(chunk) % ALIGNMENT_SIZE
    if rem == 0:
        return chunk
    return chunk + bytes([ALIGNMENT_FLAG]) * (ALIGNMENT_SIZE - rem)


@pytest.fixture
def topic():
    from streamlog.models import TopicDataId

    return TopicDataId(name=TOPIC_NAME)


def make_datalog(tmp_path, topic, chunks, stream_buffer_size=4096, segment_id=0):
    config = DatalogConfig(home_path=str(tmp_path), stream_buffer_size=stream_buffer_size)
    base = config.datalog_path(topic)
    os.makedirs(base, exist_ok=True)
    with open(os.path.join(base, segment_file_name(segment_id)), "wb") as file:
        file.write(b"".join(chunks))
    return Datalog(config)


def test_read_chunks_until_returns_single_chunk():
    body_size = 400
    chunk = create_aligned_chunk(body_size, 100, 50)
    obtained, complete = read_chunks_until(chunk, 100, 20)
    assert complete
    assert obtained == chunk[: CHUNK_HEADER_SIZE + body_size]


def test_read_chunks_until_returns_multiple_chunks():
    chunk1 = create_aligned_chunk(480, 100, 50)
    chunks = chunk1 + create_test_chunk(200, 150, 50)
    obtained, complete = read_chunks_until(chunks, 100, 300)
    assert complete
    assert obtained == chunks[: len(chunk1) + CHUNK_HEADER_SIZE + 200]


def test_read_chunks_until_returns_chunk_matching_range():
    chunk1 = create_aligned_chunk(480, 100, 50)
    chunk2 = create_test_chunk(200, 150, 50)
    obtained, complete = read_chunks_until(chunk1 + chunk2, 150, 300)
    assert complete
    assert obtained == chunk2


def test_read_chunks_until_incomplete_header():
    chunk2 = create_test_chunk(200, 100, 50)
    chunks = create_test_chunk(200, 0, 100) + chunk2[: CHUNK_HEADER_SIZE - 2]
    obtained, complete = read_chunks_until(chunks, 100, 300)
    assert not complete
    assert obtained == chunk2[: CHUNK_HEADER_SIZE - 2]


def test_read_chunks_until_incomplete_body():
    chunk2 = create_test_chunk(200, 100, 50)
    chunks = create_test_chunk(200, 0, 100) + chunk2[: CHUNK_HEADER_SIZE + 10]
    obtained, complete = read_chunks_until(chunks, 100, 300)
    assert not complete
    assert obtained == chunk2[: CHUNK_HEADER_SIZE + 10]


def test_read_next_chunk_counts_alignment():
    chunk = create_test_chunk(10, 5, 2)
    header, alignment = read_next_chunk(bytes([ALIGNMENT_FLAG]) * 3 + chunk)
    assert alignment == 3
    assert (header.start, header.record_length, header.body_length) == (5, 2, 10)


def test_read_next_chunk_rejects_corrupted_header():
    chunk = bytearray(create_test_chunk(10, 5, 2))
    chunk[6] ^= 0xFF
    with pytest.raises(ChecksumError):
        read_next_chunk(bytes(chunk))


def test_read_file_from_single_chunk(tmp_path, topic):
    chunks = [create_aligned_chunk(400, 0, 100), create_aligned_chunk(400, 100, 100), create_aligned_chunk(400, 200, 100)]
    with make_datalog(tmp_path, topic, chunks) as d:
        obtained = d.read_file_from(MIB, 0, 100, 20, topic)
    assert obtained == chunks[1][: CHUNK_HEADER_SIZE + 400]


def test_read_file_from_until_max_records(tmp_path, topic):
    chunks = [create_aligned_chunk(400, start, 100) for start in (0, 100, 200, 300)]
    with make_datalog(tmp_path, topic, chunks) as d:
        obtained = d.read_file_from(MIB, 0, 100, 300, topic)
    assert obtained == chunks[1] + chunks[2] + chunks[3][: CHUNK_HEADER_SIZE + 400]


def test_read_file_from_chunks_that_fit_into_buffer(tmp_path, topic):
    chunks = [create_aligned_chunk(3000, 0, 100), create_aligned_chunk(400, 100, 100), create_aligned_chunk(3000, 200, 100)]
    with make_datalog(tmp_path, topic, chunks) as d:
        obtained = d.read_file_from(MIB, 0, 100, 300, topic)
    assert obtained == chunks[1][: CHUNK_HEADER_SIZE + 400]


def test_read_file_from_multiple_reads(tmp_path, topic):
    max_chunk_size = ALIGNMENT_SIZE * 8
    large = max_chunk_size - 1000
    chunks = [create_aligned_chunk(large, 0, 100), create_aligned_chunk(400, 100, 100), create_aligned_chunk(large, 200, 100)]
    with make_datalog(tmp_path, topic, chunks, stream_buffer_size=max_chunk_size) as d:
        obtained = d.read_file_from(MIB, 0, 200, 300, topic)
    assert obtained == chunks[2][: CHUNK_HEADER_SIZE + large]


def test_read_file_from_limited_by_max_size(tmp_path, topic):
    chunks = [create_aligned_chunk(400, 0, 100), create_aligned_chunk(400, 100, 100)]
    with make_datalog(tmp_path, topic, chunks, stream_buffer_size=MIB) as d:
        obtained = d.read_file_from(ALIGNMENT_SIZE, 0, 0, 300, topic)
    assert obtained == chunks[0][: CHUNK_HEADER_SIZE + 400]


def test_read_file_from_empty_file(tmp_path, topic):
    with make_datalog(tmp_path, topic, []) as d:
        assert d.read_file_from(MIB, 0, 0, 10, topic) == b""


def test_read_file_from_missing_file(tmp_path, topic):
    with make_datalog(tmp_path, topic, []) as d:
        with pytest.raises(FileNotFoundError):
            d.read_file_from(MIB, 500, 500, 10, topic)


def test_segment_file_list(tmp_path, topic):
    config = DatalogConfig(home_path=str(tmp_path))
    base = config.datalog_path(topic)
    os.makedirs(base)
    for name in (segment_file_name(0), segment_file_name(50), segment_file_name(120), "invalid.dlog", "00000.index"):
        open(os.path.join(base, name), "wb").close()
    with Datalog(config) as d:
        assert d.segment_file_list(topic, 100) == [0, 50]
        assert d.segment_file_list(topic, 120) == [0, 50, 120]


def test_read_producer_offset(tmp_path, topic):
    config = DatalogConfig(home_path=str(tmp_path))
    base = config.datalog_path(topic)
    os.makedirs(base)
    with OffsetFileWriter(base) as writer:
        writer.write(321)
    with Datalog(config) as d:
        assert d.read_producer_offset(topic) == 321


def test_stream_buffers(tmp_path):
    config = DatalogConfig(home_path=str(tmp_path), stream_buffer_size=1024)
    with Datalog(config) as d:
        first = d.stream_buffer()
        second = d.stream_buffer()
        assert len(first) == 1024
        assert first is not second
        d.release_stream_buffer(first)
        assert d.stream_buffer() is first


def _touch(directory, name):
    open(os.path.join(directory, name), "wb").close()


def test_clean_up_dir_removes_old_files(tmp_path):
    root = str(tmp_path)
    sub_dir = os.path.join(root, "sub_dir")
    os.mkdir(sub_dir)
    for name in ("root_file1.dlog", "root_file1.index", "root_file2.dlog", "root_file2.index"):
        _touch(root, name)
    for name in ("sub_file1.dlog", "sub_file1.index", "sub_file2.dlog"):
        _touch(sub_dir, name)
    old = time.time() - 30 * 24 * 3600
    os.utime(os.path.join(root, "root_file1.dlog"), (old, old))
    os.utime(os.path.join(sub_dir, "sub_file2.dlog"), (old, old))

    with Datalog(DatalogConfig(home_path=root)) as d:
        read, removed = d.clean_up_dir(root, 7 * 24 * 3600)

    assert read == 8
    assert removed == 2
    assert not os.path.exists(os.path.join(root, "root_file1.dlog"))
    assert not os.path.exists(os.path.join(root, "root_file1.index"))
    assert os.path.exists(os.path.join(root, "root_file2.dlog"))
    assert not os.path.exists(os.path.join(sub_dir, "sub_file2.dlog"))


def test_clean_up_missing_dir(tmp_path):
    with Datalog(DatalogConfig(home_path=str(tmp_path))) as d:
        assert d.clean_up_dir(os.path.join(str(tmp_path), "missing"), 1.0) == (0, 0)