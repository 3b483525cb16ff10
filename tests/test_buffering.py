from __future__ import annotations

import asyncio
from types import SimpleNamespace

import pytest

from specimen_ingest.core.storage import LocalBlobStore, StorageError
from specimen_ingest.uploads.buffering import BufferFlushController
from specimen_ingest.uploads.errors import Unavailable


class FlakyStore(LocalBlobStore):
    """Local store whose part uploads can be made to fail on demand."""

    def __init__(self, base_path):
        super().__init__(base_path)
        self.fail_uploads = False
        self.uploaded: list[tuple[int, int]] = []

    def upload_part(self, key, upload_id, part_number, payload):
        if self.fail_uploads:
            raise StorageError("backend_down")
        self.uploaded.append((part_number, len(payload)))
        return super().upload_part(key, upload_id, part_number, payload)


def _record(store: LocalBlobStore, key: str = "specimens/SPC/object.png") -> SimpleNamespace:
    return SimpleNamespace(
        part_number=1,
        part_etags=[],
        buffered_bytes=0,
        buffered_data=None,
        backend_upload_id=store.create_multipart(key, content_type="image/png"),
        object_key=key,
    )


def test_chunks_below_threshold_are_buffered(tmp_path):
    store = FlakyStore(tmp_path)
    controller = BufferFlushController(store, threshold=10)
    record = _record(store)

    outcome = asyncio.run(controller.append(record, b"12345"))

    assert outcome.flushed is False
    assert record.buffered_bytes == 5
    assert record.buffered_data == b"12345"
    assert store.uploaded == []


def test_reaching_threshold_writes_one_part(tmp_path):
    store = FlakyStore(tmp_path)
    controller = BufferFlushController(store, threshold=10)
    record = _record(store)

    asyncio.run(controller.append(record, b"12345"))
    outcome = asyncio.run(controller.append(record, b"67890"))

    assert outcome.flushed is True
    assert outcome.part_number == 1
    assert store.uploaded == [(1, 10)]
    assert record.part_number == 2
    assert len(record.part_etags) == 1
    assert record.buffered_bytes == 0
    assert record.buffered_data is None


def test_backend_failure_leaves_record_untouched_and_retry_succeeds(tmp_path):
    store = FlakyStore(tmp_path)
    controller = BufferFlushController(store, threshold=4)
    record = _record(store)
    asyncio.run(controller.append(record, b"ab"))
    before = dict(vars(record))

    store.fail_uploads = True
    with pytest.raises(Unavailable):
        asyncio.run(controller.append(record, b"cdef"))
    assert vars(record) == before

    store.fail_uploads = False
    outcome = asyncio.run(controller.append(record, b"cdef"))
    assert outcome.flushed is True
    assert store.uploaded == [(1, 6)]


def test_assembled_object_is_ordered_concatenation(tmp_path):
    store = FlakyStore(tmp_path)
    controller = BufferFlushController(store, threshold=3)
    record = _record(store)
    chunks = [b"ab", b"cd", b"efgh", b"i", b"j"]

    for chunk in chunks:
        asyncio.run(controller.append(record, chunk))
    assert asyncio.run(controller.flush_remainder(record)) is True
    asyncio.run(controller.assemble(record))

    assert store.read_bytes(record.object_key) == b"".join(chunks)
    # Only the final flush may fall below the threshold.
    assert all(size >= 3 for _, size in store.uploaded[:-1])


def test_flush_remainder_without_buffer_is_noop(tmp_path):
    store = FlakyStore(tmp_path)
    controller = BufferFlushController(store, threshold=3)
    record = _record(store)

    assert asyncio.run(controller.flush_remainder(record)) is False
    assert store.uploaded == []


def test_assembly_failure_is_unavailable(tmp_path):
    store = FlakyStore(tmp_path)
    controller = BufferFlushController(store, threshold=3)
    record = _record(store)

    # No parts were written, which the backend refuses to assemble.
    with pytest.raises(Unavailable):
        asyncio.run(controller.assemble(record))


def test_reset_clears_bookkeeping(tmp_path):
    store = FlakyStore(tmp_path)
    controller = BufferFlushController(store, threshold=3)
    record = _record(store)
    asyncio.run(controller.append(record, b"abcd"))
    asyncio.run(controller.append(record, b"e"))

    controller.reset(record)

    assert (record.part_number, record.part_etags, record.buffered_bytes, record.buffered_data) == (1, [], 0, None)


def test_threshold_must_be_positive(tmp_path):
    with pytest.raises(ValueError):
        BufferFlushController(LocalBlobStore(tmp_path), threshold=0)
