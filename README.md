# streamlog

Storage layer for a streaming broker. Topic data is written as segment files
of checksummed chunks, with sparse index files for seeking, a producer offset
file, retention clean up, and an in-memory state of the generations that say
which broker leads each token range.

The package has no third-party dependencies.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## On-disk layout

`DatalogConfig.datalog_path(topic)` places the files of a topic under
`<home_path>/data/datalog/<name>/<token>/<range_index>/<version>/`.

- **Segment files**, `<20-digit segment id>.dlog`, hold chunks. A chunk is a
  21-byte big-endian header (flags, body length, start offset, record length,
  CRC-32 of the preceding header bytes) followed by the body. Every flush is
  padded to a 512-byte boundary with `0x80` alignment bytes, which readers
  skip.
- **Index files**, `<20-digit segment id>.index`, hold 20-byte entries
  (message offset, file offset, CRC-32) so that a reader can seek close to the
  offset it wants.
- **`producer.offset`** holds the last written message offset followed by its
  CRC-32.

## Modules

- `streamlog.config`: `DatalogConfig` (a frozen dataclass; durations are in
  seconds, `log_retention=None` turns clean up off) and the helpers
  `segment_file_prefix`, `segment_file_name`, `index_file_name` and
  `segment_id_from_name`.
- `streamlog.models`: `TopicDataId`, `GenId`, `Offset`, `OffsetCommitType`,
  `ChunkHeader` (with `encode` and `decode`, raising `ChecksumError` on a bad
  CRC), `ReadSegmentChunk`, `encode_chunk`, `new_empty_chunk`, and the abstract
  interfaces `ReadItem`, `OffsetState`, `ReplicationReader` and `Replicator`.
- `streamlog.offset_file`: `OffsetFileWriter` (overwrites the producer offset
  file; a context manager) and `read_producer_offset`, which raises
  `ChecksumError` when the file does not match its checksum.
- `streamlog.index_file`: `IndexOffset`, `try_read_index_file`, which returns
  the highest indexed file position not past a message offset (0 without a
  usable index), and `IndexFileWriter`, which writes index entries and the
  producer offset file on a background thread. An entry is stored only once
  `index_file_period_bytes` have passed since the last stored one.
- `streamlog.file_structure`: `read_file_structure`, the sorted segment names
  that may hold data from an offset on, and `merge_file_structure`, which
  creates empty local files for missing segment names and raises
  `FileNotFoundError` when there is nothing at all.
- `streamlog.datalog`: `Datalog`, which reads the chunks of a segment starting
  at the one that holds a given offset (`read_file_from`), lists segment ids
  (`segment_file_list`), reads the producer offset, lends out stream buffers,
  and removes segment files and their index files older than the retention
  (`clean_up_dir`, and a background check every five minutes when
  `log_retention` is set). Also `read_chunks_until` and `read_next_chunk`.
- `streamlog.segment_writer`: `SegmentWriter` and `alignment_padding`. Without
  a `segment_id` the writer is the leader: it starts at segment 0, hands every
  chunk to `Replicator.send_to_followers` (raising if that raises) and starts a
  new segment when the next buffer would pass `max_segment_size`. With a
  `segment_id` it is a replica and switches to whatever segment id the items
  carry. Buffered data is flushed on size, on `segment_flush_interval` (checked
  by a timer thread every `flush_resolution` seconds, or by calling
  `flush_if_due`) and on `close`.
- `streamlog.segment_reader`: `SegmentReader`, which serves one `ReadItem` per
  `poll` call, reading ahead from the segment files in order, moving on to the
  next segment, streaming missing offset ranges from a `ReplicationReader`,
  committing offsets through `OffsetState`, and rewinding to the committed
  offset when the item's origin changes.
- `streamlog.generation_state`: `Generation`, `GenerationStatus`,
  `GenerationRanges`, `GenerationError`, the abstract `GenerationStore` and
  `GenerationState`, which proposes, accepts, commits and repairs generations,
  answers range membership and projects range indices onto parent generations.

## Example

```python
from streamlog.config import DatalogConfig
from streamlog.datalog import Datalog
from streamlog.models import TopicDataId

config = DatalogConfig(home_path="/var/lib/streamlog")
topic = TopicDataId(name="orders", token=0, range_index=0, version=1)

with Datalog(config) as datalog:
    segments = datalog.segment_file_list(topic, max_offset=1000)
    if segments:
        data = datalog.read_file_from(
            1024 * 1024, segments[-1], start_offset=100, max_records=50, topic=topic
        )
```

## What the package does not do

- It has no network layer: sending chunks to followers, streaming segments
  from replicas, merging file structures from peers and storing consumer
  offsets are done through the `Replicator`, `ReplicationReader` and
  `OffsetState` interfaces, which the caller implements.
- It does not persist generations itself: `GenerationState` keeps them in
  memory and relies on a `GenerationStore` implementation supplied by the
  caller.
- It has no cluster discovery, no HTTP server and no command-line program.