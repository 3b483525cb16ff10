from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from specimen_ingest.core.config import get_settings
from specimen_ingest.core.storage import LocalBlobStore, StorageError
from specimen_ingest.db.models import UploadStatus
from specimen_ingest.services.upload_service import UploadService
from specimen_ingest.uploads.errors import Conflict, InvalidState, Unavailable
from tests.conftest import md5_hex, run


class ReadBackOutage(LocalBlobStore):
    """Refuses to stream objects back while ``down`` is set, and part writes while ``parts_down`` is."""

    def __init__(self, base_path):
        super().__init__(base_path)
        self.down = False
        self.parts_down = False

    def upload_part(self, key, upload_id, part_number, payload):
        if self.parts_down:
            raise StorageError("write_timeout")
        return super().upload_part(key, upload_id, part_number, payload)

    def iter_bytes(self, key, *, chunk_size=1024 * 1024):
        if self.down:
            raise StorageError("read_timeout")
        return super().iter_bytes(key, chunk_size=chunk_size)


@pytest.fixture()
def store() -> ReadBackOutage:
    return ReadBackOutage(Path(get_settings().local_storage_base_path))


def _service(session, store) -> UploadService:
    return UploadService(get_settings(), store, session)


def test_concurrent_append_loses_with_conflict(session_factory, specimen, store):
    _, code = specimen

    async def scenario() -> None:
        async with session_factory() as session:
            upload = await _service(session, store).initiate(specimen_ref=code, content_type="image/png", content_hash=md5_hex(b"abcdef"))
            upload_id = upload.id

        async with session_factory() as first_session, session_factory() as second_session:
            first = _service(first_session, store)
            second = _service(second_session, store)
            # Both requests observe the session before either writes. Holding
            # the loaded rows keeps them in each identity map.
            seen_first = await first.get_status(specimen_ref=code, upload_id=upload_id)
            seen_second = await second.get_status(specimen_ref=code, upload_id=upload_id)
            assert seen_first.version == seen_second.version

            await first.append(specimen_ref=code, upload_id=upload_id, part_index=0, chunk=b"abc")
            with pytest.raises(Conflict):
                await second.append(specimen_ref=code, upload_id=upload_id, part_index=0, chunk=b"xyz")

        async with session_factory() as session:
            upload = await _service(session, store).get_status(specimen_ref=code, upload_id=upload_id)
            assert upload.current_part_index == 1
            assert upload.buffered_data == b"abc"

    run(scenario())


def test_read_back_outage_is_retryable(session_factory, specimen, store):
    _, code = specimen
    data = b"verify me later"

    async def scenario() -> str:
        async with session_factory() as session:
            service = _service(session, store)
            upload = await service.initiate(specimen_ref=code, content_type="image/gif", content_hash=md5_hex(data))
            upload_id = upload.id
            await service.append(specimen_ref=code, upload_id=upload_id, part_index=0, chunk=data)

        store.down = True
        async with session_factory() as session:
            with pytest.raises(Unavailable):
                await _service(session, store).complete(specimen_ref=code, upload_id=upload_id)

        async with session_factory() as session:
            upload = await _service(session, store).get_status(specimen_ref=code, upload_id=upload_id)
            assert upload.status == UploadStatus.assembling
            assert upload.total_parts == 1
            with pytest.raises(InvalidState):
                await _service(session, store).append(specimen_ref=code, upload_id=upload_id, part_index=1, chunk=b"late")

        store.down = False
        async with session_factory() as session:
            result = await _service(session, store).complete(specimen_ref=code, upload_id=upload_id)
            assert result.upload.status == UploadStatus.completed
            assert result.image.content_hash == md5_hex(data)
            return result.image.storage_key

    assert store.read_bytes(run(scenario())) == data


def test_list_stale_reports_only_open_sessions(session_factory, specimen, store):
    _, code = specimen

    async def scenario() -> None:
        async with session_factory() as session:
            service = _service(session, store)
            open_upload = await service.initiate(specimen_ref=code, content_type="image/png", content_hash=md5_hex(b"open"))

            future = datetime.now(timezone.utc) + timedelta(hours=1)
            past = datetime.now(timezone.utc) - timedelta(days=365)
            assert [u.id for u in await service.list_stale(older_than=future)] == [open_upload.id]
            assert await service.list_stale(older_than=past) == []

    run(scenario())


def test_backend_failure_during_append_keeps_session_state(session_factory, specimen, store):
    _, code = specimen
    data = b"abc" + b"defghi"

    async def scenario() -> str:
        async with session_factory() as session:
            service = _service(session, store)
            upload = await service.initiate(specimen_ref=code, content_type="image/png", content_hash=md5_hex(data))
            upload_id = upload.id
            await service.append(specimen_ref=code, upload_id=upload_id, part_index=0, chunk=b"abc")

        # Buffered bytes plus this chunk cross the flush threshold.
        store.parts_down = True
        async with session_factory() as session:
            with pytest.raises(Unavailable):
                await _service(session, store).append(specimen_ref=code, upload_id=upload_id, part_index=1, chunk=b"defghi")

        store.parts_down = False
        async with session_factory() as session:
            service = _service(session, store)
            upload = await service.get_status(specimen_ref=code, upload_id=upload_id)
            assert upload.current_part_index == 1
            assert upload.buffered_bytes == 3
            assert upload.buffered_data == b"abc"
            assert upload.part_etags == []

            retried = await service.append(specimen_ref=code, upload_id=upload_id, part_index=1, chunk=b"defghi")
            assert retried.outcome.flushed is True
            assert retried.upload.current_part_index == 2

            result = await service.complete(specimen_ref=code, upload_id=upload_id)
            return result.image.storage_key

    assert store.read_bytes(run(scenario())) == data


def test_append_racing_complete_leaves_session_completable(session_factory, specimen, store):
    _, code = specimen
    data = b"abcxyz"

    async def scenario() -> str:
        async with session_factory() as session:
            service = _service(session, store)
            upload = await service.initiate(specimen_ref=code, content_type="image/png", content_hash=md5_hex(data))
            upload_id = upload.id
            await service.append(specimen_ref=code, upload_id=upload_id, part_index=0, chunk=b"abc")

        async with session_factory() as completing, session_factory() as appending:
            finisher = _service(completing, store)
            # The completing request has read the row before the append lands.
            loaded = await finisher.get_status(specimen_ref=code, upload_id=upload_id)
            assert loaded.current_part_index == 1

            await _service(appending, store).append(specimen_ref=code, upload_id=upload_id, part_index=1, chunk=b"xyz")
            with pytest.raises(Conflict):
                await finisher.complete(specimen_ref=code, upload_id=upload_id)

        async with session_factory() as session:
            service = _service(session, store)
            upload = await service.get_status(specimen_ref=code, upload_id=upload_id)
            assert upload.status == UploadStatus.in_progress
            assert upload.total_parts is None
            assert upload.buffered_data == b"abcxyz"

            result = await service.complete(specimen_ref=code, upload_id=upload_id)
            assert result.upload.status == UploadStatus.completed
            return result.image.storage_key

    assert store.read_bytes(run(scenario())) == data
