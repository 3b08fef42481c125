"""Tests for the UploadManager state machine."""

import os
import threading
from unittest.mock import MagicMock, patch

import pytest

from resumable_file_server.config import DEFAULT_UPLOAD_MAX_AGE, ServerConfig
from resumable_file_server.errors import (
    Conflict,
    ExtensionNotAllowed,
    Gone,
    InsufficientStorage,
    InvalidSize,
    NotFound,
    OffsetMismatch,
    SizeExceeded,
    StorageIO,
)
from resumable_file_server.finalizer import Finalizer
from resumable_file_server.manager import UploadManager
from resumable_file_server.models import UploadStatus
from resumable_file_server.storage import LocalUploadStore


class FakeClock:
    """Settable wall clock."""

    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class BlockingStream:
    """Request body that blocks on its first read until released."""

    def __init__(self, data: bytes):
        self._data = data
        self.reading = threading.Event()
        self.release = threading.Event()

    def read(self, size: int = -1) -> bytes:
        self.reading.set()
        self.release.wait(timeout=5)
        chunk, self._data = self._data[:size], self._data[size:]
        return chunk


def make_config(tmp_path, **overrides) -> ServerConfig:
    settings = {
        "upload_dir": str(tmp_path),
        "port": 0,
        "max_file_size": 1024 * 1024,
        "min_free_space": 0,
        "finalize_grace": 0.05,
        "upload_max_age": 3600,
    }
    settings.update(overrides)
    return ServerConfig(**settings)


class TestCreate:
    """Tests for upload creation."""

    @pytest.fixture
    def store(self, tmp_path) -> LocalUploadStore:
        store = LocalUploadStore(str(tmp_path))
        store.ensure_ready()
        return store

    def test_create_registers_upload(self, tmp_path, store: LocalUploadStore) -> None:
        """Test that a new upload starts at offset 0 with files on disk."""
        manager = UploadManager(make_config(tmp_path), store)
        upload = manager.create(1024, {"filename": "a.bin"})

        assert upload.offset == 0
        assert upload.status == UploadStatus.CREATED
        assert upload.filename == "a.bin"
        assert store.exists(upload.id)
        assert os.path.isfile(store.metadata_path(upload.id))

    @pytest.mark.parametrize("size", [0, -1])
    def test_non_positive_size_rejected(
        self, tmp_path, store: LocalUploadStore, size: int
    ) -> None:
        """Test that zero and negative sizes are invalid."""
        manager = UploadManager(make_config(tmp_path), store)
        with pytest.raises(InvalidSize) as exc_info:
            manager.create(size)
        assert exc_info.value.status_code == 412

    def test_size_over_limit_rejected(self, tmp_path, store: LocalUploadStore) -> None:
        """Test that sizes above max_file_size are invalid."""
        manager = UploadManager(make_config(tmp_path, max_file_size=100), store)
        with pytest.raises(InvalidSize) as exc_info:
            manager.create(101)
        assert exc_info.value.status_code == 413
        assert manager.create(100).size == 100

    def test_low_disk_space_rejected(self, tmp_path, store: LocalUploadStore) -> None:
        """Test that creation is refused below the free-space floor."""
        manager = UploadManager(make_config(tmp_path, min_free_space=1024), store)
        with patch.object(store, "disk_usage", return_value=(4096, 4000, 96)):
            with pytest.raises(InsufficientStorage):
                manager.create(10)
        assert os.listdir(tmp_path) == []

    def test_disk_probe_failure_rejected(self, tmp_path, store: LocalUploadStore) -> None:
        """Test that a failing disk probe counts as no space."""
        manager = UploadManager(make_config(tmp_path), store)
        with patch.object(store, "disk_usage", side_effect=OSError("gone")):
            with pytest.raises(InsufficientStorage):
                manager.create(10)

    def test_extension_allow_list(self, tmp_path, store: LocalUploadStore) -> None:
        """Test that only allowed extensions are accepted when configured."""
        config = make_config(tmp_path, allowed_extensions=(".mp4", ".mov"))
        manager = UploadManager(config, store)

        with pytest.raises(ExtensionNotAllowed):
            manager.create(10, {"filename": "setup.exe"})
        with pytest.raises(ExtensionNotAllowed):
            manager.create(10)
        assert manager.create(10, {"filename": "Clip.MP4"}).size == 10


class TestApplyChunk:
    """Tests for chunk appends."""

    @pytest.fixture
    def store(self, tmp_path) -> LocalUploadStore:
        store = LocalUploadStore(str(tmp_path))
        store.ensure_ready()
        return store

    @pytest.fixture
    def manager(self, tmp_path, store: LocalUploadStore):
        manager = UploadManager(make_config(tmp_path), store)
        yield manager
        manager.finalizer.join(timeout=5)

    def test_two_halves_complete_and_finalize(
        self, tmp_path, manager: UploadManager
    ) -> None:
        """Test the 1024-byte upload in two 512-byte chunks."""
        upload = manager.create(1024, {"filename": "movie.mp4"})

        assert manager.apply_chunk(upload.id, 0, b"a" * 512) == 512
        assert manager.status(upload.id).status == UploadStatus.RECEIVING
        assert manager.apply_chunk(upload.id, 512, b"b" * 512) == 1024
        assert manager.status(upload.id).status == UploadStatus.COMPLETED

        manager.finalizer.join(timeout=5)

        final_path = tmp_path / f"movie--{upload.id}.mp4"
        assert final_path.read_bytes() == b"a" * 512 + b"b" * 512
        assert not (tmp_path / upload.id).exists()
        assert not (tmp_path / f"{upload.id}.json").exists()
        assert manager.status(upload.id).final_name == final_path.name

    def test_stale_offset_rejected(self, manager: UploadManager) -> None:
        """Test that a chunk behind the committed offset is refused."""
        upload = manager.create(100)
        manager.apply_chunk(upload.id, 0, b"x" * 50)

        with pytest.raises(OffsetMismatch) as exc_info:
            manager.apply_chunk(upload.id, 30, b"y" * 50)

        assert exc_info.value.offset == 50
        assert exc_info.value.direction == "behind"
        assert manager.status(upload.id).offset == 50

    def test_offset_ahead_rejected(self, manager: UploadManager) -> None:
        """Test that gaps are never filled."""
        upload = manager.create(100)
        with pytest.raises(OffsetMismatch) as exc_info:
            manager.apply_chunk(upload.id, 10, b"x")
        assert exc_info.value.direction == "ahead"
        assert manager.status(upload.id).offset == 0

    def test_duplicate_delivery_then_resume(self, store, manager: UploadManager) -> None:
        """Test that a replayed chunk is rejected and resuming from the server offset works."""
        upload = manager.create(6)
        manager.apply_chunk(upload.id, 0, b"abc")

        with pytest.raises(OffsetMismatch) as exc_info:
            manager.apply_chunk(upload.id, 0, b"abc")

        resume_at = exc_info.value.offset
        assert manager.apply_chunk(upload.id, resume_at, b"def") == 6
        manager.finalizer.join(timeout=5)
        final = os.path.join(store.root, manager.status(upload.id).final_name)
        with open(final, "rb") as f:
            assert f.read() == b"abcdef"

    def test_chunk_past_size_rejected(self, manager: UploadManager) -> None:
        """Test that a chunk may not run past the declared size."""
        upload = manager.create(10)
        with pytest.raises(SizeExceeded):
            manager.apply_chunk(upload.id, 0, b"x" * 11)
        assert manager.status(upload.id).offset == 0

    def test_unknown_upload(self, manager: UploadManager) -> None:
        """Test that unknown ids raise NotFound."""
        with pytest.raises(NotFound):
            manager.apply_chunk("0" * 32, 0, b"x")

    def test_empty_chunk_is_noop(self, manager: UploadManager) -> None:
        """Test that a zero-length chunk returns the current offset."""
        upload = manager.create(10)
        assert manager.apply_chunk(upload.id, 0, b"") == 0
        assert manager.status(upload.id).status == UploadStatus.CREATED

    def test_offsets_are_monotonic(self, manager: UploadManager) -> None:
        """Test that successful appends only move the offset forward."""
        upload = manager.create(1000)
        seen = [0]
        offset = 0
        for size in (1, 99, 250, 150, 500):
            offset = manager.apply_chunk(upload.id, offset, b"z" * size)
            seen.append(offset)
        assert seen == sorted(seen)
        assert seen[-1] == 1000

    def test_round_trip_concatenation(self, store, manager: UploadManager) -> None:
        """Test that the stored file equals the chunks in order."""
        chunks = [os.urandom(n) for n in (7, 300, 1, 64, 128)]
        total = sum(len(c) for c in chunks)
        upload = manager.create(total, {"filename": "blob.dat"})

        offset = 0
        for chunk in chunks:
            offset = manager.apply_chunk(upload.id, offset, chunk)
        manager.finalizer.join(timeout=5)

        final = os.path.join(store.root, manager.status(upload.id).final_name)
        assert os.path.getsize(final) == total
        with open(final, "rb") as f:
            assert f.read() == b"".join(chunks)

    def test_concurrent_append_conflicts(self, manager: UploadManager) -> None:
        """Test that a second append on the same upload fails while one is in flight."""
        upload = manager.create(8)
        stream = BlockingStream(b"abcd")
        results: list = []

        def first_append() -> None:
            results.append(manager.apply_chunk(upload.id, 0, stream, 4))

        worker = threading.Thread(target=first_append)
        worker.start()
        assert stream.reading.wait(timeout=5)

        with pytest.raises(Conflict):
            manager.apply_chunk(upload.id, 0, b"wxyz")

        stream.release.set()
        worker.join(timeout=5)
        assert results == [4]
        assert manager.status(upload.id).offset == 4

    def test_other_uploads_not_blocked(self, manager: UploadManager) -> None:
        """Test that an in-flight append does not block other uploads."""
        slow = manager.create(4)
        fast = manager.create(4)
        stream = BlockingStream(b"abcd")

        worker = threading.Thread(target=manager.apply_chunk, args=(slow.id, 0, stream, 4))
        worker.start()
        assert stream.reading.wait(timeout=5)

        assert manager.apply_chunk(fast.id, 0, b"wxyz") == 4

        stream.release.set()
        worker.join(timeout=5)

    def test_completion_schedules_finalize_once(self, tmp_path, store) -> None:
        """Test that finalization is scheduled exactly once per upload."""
        finalizer = MagicMock(spec=Finalizer)
        manager = UploadManager(make_config(tmp_path), store, finalizer=finalizer)
        upload = manager.create(4)

        manager.apply_chunk(upload.id, 0, b"ab")
        manager.apply_chunk(upload.id, 2, b"cd")
        assert manager.apply_chunk(upload.id, 4, b"") == 4
        with pytest.raises(SizeExceeded):
            manager.apply_chunk(upload.id, 4, b"e")
        with pytest.raises(OffsetMismatch):
            manager.apply_chunk(upload.id, 2, b"cd")

        finalizer.schedule.assert_called_once()
        assert finalizer.schedule.call_args[0][0].id == upload.id

    def test_failed_commit_keeps_previous_offset(self, store, manager: UploadManager) -> None:
        """Test write-then-commit: a failed commit leaves the offset unchanged."""
        upload = manager.create(10)
        manager.apply_chunk(upload.id, 0, b"12345")

        with patch.object(store, "commit", side_effect=StorageIO("disk full")):
            with pytest.raises(StorageIO):
                manager.apply_chunk(upload.id, 5, b"67890")

        assert manager.status(upload.id).offset == 5
        assert manager.apply_chunk(upload.id, 5, b"abcde") == 10


class TestAbortAndExpire:
    """Tests for abort, expiry and tombstones."""

    @pytest.fixture
    def store(self, tmp_path) -> LocalUploadStore:
        store = LocalUploadStore(str(tmp_path))
        store.ensure_ready()
        return store

    def test_abort_removes_files(self, tmp_path, store) -> None:
        """Test that abort deletes the upload and leaves a tombstone."""
        manager = UploadManager(make_config(tmp_path), store)
        upload = manager.create(10)
        manager.apply_chunk(upload.id, 0, b"abc")

        manager.abort(upload.id)

        assert os.listdir(tmp_path) == []
        assert manager.status(upload.id).status == UploadStatus.ABORTED
        with pytest.raises(Gone):
            manager.apply_chunk(upload.id, 3, b"def")

    def test_abort_is_idempotent(self, tmp_path, store) -> None:
        """Test that aborting a terminal upload is a no-op."""
        manager = UploadManager(make_config(tmp_path), store)
        upload = manager.create(10)
        manager.abort(upload.id)
        manager.abort(upload.id)
        assert manager.status(upload.id).status == UploadStatus.ABORTED

    def test_abort_unknown_upload(self, tmp_path, store) -> None:
        """Test that aborting an unknown id raises NotFound."""
        manager = UploadManager(make_config(tmp_path), store)
        with pytest.raises(NotFound):
            manager.abort("f" * 32)

    def test_abort_completed_is_noop(self, tmp_path, store) -> None:
        """Test that a completed upload cannot be aborted."""
        finalizer = MagicMock(spec=Finalizer)
        manager = UploadManager(make_config(tmp_path), store, finalizer=finalizer)
        upload = manager.create(2)
        manager.apply_chunk(upload.id, 0, b"ok")

        manager.abort(upload.id)

        assert manager.status(upload.id).status == UploadStatus.COMPLETED
        assert store.exists(upload.id)

    def test_expire_stale_uploads(self, tmp_path, store) -> None:
        """Test that idle incomplete uploads expire and completed ones do not."""
        clock = FakeClock()
        finalizer = MagicMock(spec=Finalizer)
        manager = UploadManager(
            make_config(tmp_path, upload_max_age=60), store, finalizer=finalizer, clock=clock
        )
        idle = manager.create(10)

        clock.now += 30
        active = manager.create(10)
        done = manager.create(2)
        manager.apply_chunk(done.id, 0, b"ok")
        clock.now += 45

        assert manager.expire_stale() == [idle.id]
        assert manager.status(idle.id).status == UploadStatus.EXPIRED
        assert not store.exists(idle.id)
        assert manager.status(active.id).status == UploadStatus.CREATED
        assert manager.status(done.id).status == UploadStatus.COMPLETED

    def test_tombstones_are_purged(self, tmp_path, store) -> None:
        """Test that terminal records are forgotten after max age."""
        clock = FakeClock()
        manager = UploadManager(
            make_config(tmp_path, upload_max_age=60), store, clock=clock
        )
        upload = manager.create(10)
        manager.abort(upload.id)

        clock.now += 61
        manager.expire_stale()

        with pytest.raises(NotFound):
            manager.status(upload.id)

    def test_zero_max_age_disables_expiry(self, tmp_path, store) -> None:
        """Test that upload_max_age=0 never expires incomplete uploads."""
        clock = FakeClock()
        manager = UploadManager(
            make_config(tmp_path, upload_max_age=0), store, clock=clock
        )
        upload = manager.create(10)
        manager.apply_chunk(upload.id, 0, b"abc")

        clock.now += 365 * 24 * 60 * 60
        assert manager.expire_stale() == []

        assert manager.status(upload.id).status == UploadStatus.RECEIVING
        assert store.length(upload.id) == 3

    def test_zero_max_age_still_purges_tombstones(self, tmp_path, store) -> None:
        """Test that terminal records are purged after the default age."""
        clock = FakeClock()
        manager = UploadManager(
            make_config(tmp_path, upload_max_age=0), store, clock=clock
        )
        upload = manager.create(10)
        manager.abort(upload.id)

        clock.now += 60
        manager.expire_stale()
        assert manager.status(upload.id).status == UploadStatus.ABORTED

        clock.now += DEFAULT_UPLOAD_MAX_AGE
        manager.expire_stale()
        with pytest.raises(NotFound):
            manager.status(upload.id)

    def test_failed_finalize_marks_upload_gone(self, tmp_path, store) -> None:
        """Test that an upload removed after a failed rename reads as gone."""
        manager = UploadManager(make_config(tmp_path), store)
        upload = manager.create(4, {"filename": "x.bin"})

        with patch.object(store, "finalize", side_effect=StorageIO("rename failed")):
            manager.apply_chunk(upload.id, 0, b"data")
            manager.finalizer.join(timeout=5)

        assert manager.status(upload.id).status == UploadStatus.ABORTED
        assert os.listdir(tmp_path) == []
        with pytest.raises(Gone):
            manager.apply_chunk(upload.id, 4, b"")

    def test_expire_skips_busy_upload(self, tmp_path, store) -> None:
        """Test that an upload with an append in flight is not expired."""
        clock = FakeClock()
        manager = UploadManager(
            make_config(tmp_path, upload_max_age=60), store, clock=clock
        )
        upload = manager.create(4)
        clock.now += 120

        manager._append_locks[upload.id].acquire()
        try:
            assert manager.expire_stale() == []
        finally:
            manager._append_locks[upload.id].release()
        assert manager.expire_stale() == [upload.id]


class TestRecovery:
    """Tests for restart recovery."""

    @pytest.fixture
    def store(self, tmp_path) -> LocalUploadStore:
        store = LocalUploadStore(str(tmp_path))
        store.ensure_ready()
        return store

    def test_recover_resumes_at_committed_offset(self, tmp_path, store) -> None:
        """Test that uncommitted bytes from a crash are discarded."""
        config = make_config(tmp_path)
        first = UploadManager(config, store)
        upload = first.create(10, {"filename": "a.txt"})
        first.apply_chunk(upload.id, 0, b"12345")

        # Simulate a crash after writing but before committing
        with open(store.partial_path(upload.id), "ab") as f:
            f.write(b"678")

        second = UploadManager(config, store)
        assert second.recover() == 1
        recovered = second.status(upload.id)
        assert recovered.offset == 5
        assert recovered.status == UploadStatus.RECEIVING
        assert recovered.metadata == {"filename": "a.txt"}
        assert store.length(upload.id) == 5

        assert second.apply_chunk(upload.id, 5, b"67890") == 10
        second.finalizer.join(timeout=5)
        with open(tmp_path / f"a--{upload.id}.txt", "rb") as f:
            assert f.read() == b"1234567890"

    def test_recover_finalizes_completed_uploads(self, tmp_path, store) -> None:
        """Test that an upload completed before a crash is finalized on restart."""
        config = make_config(tmp_path)
        first = UploadManager(config, store, finalizer=MagicMock(spec=Finalizer))
        upload = first.create(3, {"filename": "c.txt"})
        first.apply_chunk(upload.id, 0, b"abc")

        second = UploadManager(config, store)
        second.recover()
        second.finalizer.join(timeout=5)

        assert (tmp_path / f"c--{upload.id}.txt").read_bytes() == b"abc"
        assert second.status(upload.id).status == UploadStatus.COMPLETED

    def test_recover_drops_orphaned_records(self, tmp_path, store) -> None:
        """Test that a record without its partial file is removed."""
        config = make_config(tmp_path)
        upload = UploadManager(config, store).create(10)
        os.remove(store.partial_path(upload.id))

        second = UploadManager(config, store)
        assert second.recover() == 0
        assert os.listdir(tmp_path) == []
        with pytest.raises(NotFound):
            second.status(upload.id)


class TestReaders:
    """Tests for in-flight status read tracking."""

    def test_wait_for_readers(self, tmp_path) -> None:
        """Test that waiting blocks while a read is in flight."""
        store = LocalUploadStore(str(tmp_path))
        manager = UploadManager(make_config(tmp_path), store)

        with manager.reading("a" * 32):
            assert manager.wait_for_readers("a" * 32, timeout=0.05) is False
            assert manager.wait_for_readers("b" * 32, timeout=0.05) is True
        assert manager.wait_for_readers("a" * 32, timeout=0.05) is True
