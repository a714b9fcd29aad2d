# streamlog

Storage building blocks for a streaming broker: segment files made of
checksummed chunks, index files that map message offsets to file positions,
a producer offset file, retention clean-up, a reader and a writer for segment
files, and the generation (token range ownership) state used to agree on which
broker leads a range.

The package has no dependencies outside the standard library.

## Install

```
pip install .
pip install ".[test]"   # with the test dependencies
```

## On-disk layout

`DatalogConfig(segments_path=...)` holds the storage settings. The files of a
topic live under `config.datalog_path(topic)`, which is
`<segments_path>/<name>/<token>/<range_index>/<version>` for a `TopicDataId`.

Each segment file is named after the offset of its first message
(`segment_file_name(0)` is `00000000000000000000.dlog`) and holds a sequence
of chunks. A chunk is a 21-byte big-endian header (flags, body length, start
offset, record count, CRC-32 of the preceding header bytes) followed by the
body. Written chunks are padded to 512-byte boundaries with `0x80` bytes, see
`pad_to_alignment` in `streamlog.segment_writer`.

Next to a segment file there may be an index file with the same prefix and the
`.index` extension, made of 20-byte entries (message offset, file offset,
CRC-32), and each topic directory holds a `producer.offset` file with the last
produced offset and its checksum.

```python
from streamlog.models import ChecksumError, encode_chunk, read_chunk_header

data = encode_chunk(b"payload", start=100, record_length=5)
header = read_chunk_header(data)
assert header.start == 100 and header.record_length == 5
assert header.body_length == len(b"payload")
```

`read_chunk_header` raises `ChecksumError` when the checksum does not match,
and `ValueError` for an incomplete header or a negative start offset.

## Modules

- `streamlog.models`: `TopicDataId`, `DatalogConfig`, `ChunkHeader`,
  `ReadSegmentChunk`, `new_empty_chunk`, `encode_chunk`, `read_chunk_header`,
  `segment_file_name`, `segment_id_from_name` and `make_aligned_buffer`.
- `streamlog.offsets`: `OffsetFileWriter` (a context manager) and
  `read_producer_offset`.
- `streamlog.index_file`: `IndexOffset`; `IndexFileWriter`, which writes index
  entries and the producer offset file in a background thread, storing an
  entry only once `index_file_period_bytes` have passed since the last one;
  and `try_read_index_file`, which returns the highest stored file offset for
  a message offset (0 when there is no usable index).
- `streamlog.file_structure`: `read_file_structure` lists, in order, the
  segment files that can hold data from an offset; `merge_data_structure`
  creates empty files for names missing locally, returns how many it created
  and raises `FileNotFoundError` when there are none at all.
- `streamlog.cleaner`: `clean_up_dir` and `clean_up_file` remove segment files
  (and their index files) older than a retention period given in seconds or as
  a `timedelta`; `RetentionCleaner` runs this periodically with `start()` and
  `stop()`.
- `streamlog.datalog`: `read_next_chunk`, `read_chunks_until`, and `Datalog`,
  which pools two stream buffers (`stream_buffer()` /
  `release_stream_buffer()`), serves chunk ranges with `read_file_from()` and
  starts a `RetentionCleaner` when `log_retention` is set.
- `streamlog.segment_writer`: `SegmentWriter`, which buffers chunks, pads and
  flushes them to segment files, rolls over to a new file by size and, as
  leader, hands each item to a replicator.
- `streamlog.segment_reader`: `SegmentReader`, which serves chunks to a
  consumer group in order, follows new segment files, fills gaps through a
  replication reader and stores offsets.
- `streamlog.generation_state`: `Generation`, `GenId`, `GenerationStatus`,
  `GenerationRanges`, `GenerationError` and `GenerationState` to propose,
  accept and commit generations and to project consumer ranges onto parent
  generations.

## Producer offset

```python
import os

from streamlog.models import DatalogConfig, TopicDataId
from streamlog.offsets import OffsetFileWriter, read_producer_offset

config = DatalogConfig(segments_path="/tmp/streamlog")
topic = TopicDataId(name="events")
path = config.datalog_path(topic)
os.makedirs(path, exist_ok=True)

with OffsetFileWriter(path) as writer:
    writer.write(123)
    assert read_producer_offset(topic, config) == 123
```

## Writing and reading segments

`SegmentWriter(topic, replicator, config)` writes as leader, starting with
segment 0; passing `segment_id` makes it a replica that writes to that
segment. Items given to `submit()` expose `data_block`, `start_offset`,
`record_length` and `set_result(error)`; leader items also carry
`replication`, which is passed to `replicator.send_to_followers(replication,
topic, segment_id, item)`, and replica items carry `segment_id`. `close()`
flushes pending data and re-raises any error of the background thread.

`SegmentReader(group, is_leader, replication_reader, topic,
topic_range_cluster_size, source_version, initial_offset, offset_state,
max_produced_offset, config)` reads in a background thread. Items given to
`submit()` expose `origin`, `commit_only` and `set_result(error, chunk)`; each
poll gets either the next `ReadSegmentChunk` or an empty one. `offset_state`
must provide `set(group, topic, offset, commit_type)` and `get(group, topic,
token, range_index, cluster_size)`; a replication reader provides
`merge_file_structure()` and `stream_file(segment_id, topic, start_offset,
max_records, max_size)`.

## Generation state

`GenerationState(local_db, consumer_ranges)` keeps the active generations by
start token and the proposed ones. `local_db` provides
`latest_generations()`, `generation_info(start, version)`,
`generations_by_parent(gen)`, `get_generations_by_token(token, cluster_size)`
and `commit_generation(gen1, gen2)`. Rejected changes raise
`GenerationError`.

## What this package does not do

It is storage and state only. It has no network server or client, no
command-line program, and no cluster discovery or topology handling. Sending
data to followers, streaming missing data from replicas, storing consumer
offsets and persisting generation history are left to the objects passed in
(`replicator`, `replication_reader`, `offset_state`, `local_db`).

## Tests

```
pytest
```