"""Tests for the checkpoint store adapter and snapshot packing."""

import os
import tarfile

import httpx
import pytest

from build_relay.blob_store import BlobNotFoundError, BlobStoreError, HttpBlobStore
from build_relay.checkpoint import (
    CheckpointError,
    CheckpointSaveError,
    CheckpointStore,
    pack_snapshot,
    read_marker,
    unpack_snapshot,
)
from build_relay.constants import MARKER_FILENAME
from conftest import FakeBlobService, MemoryBlobStore


@pytest.fixture
def payload(tmp_path):
    path = tmp_path / "build-state.tar.gz"
    path.write_bytes(b"snapshot")
    return path


def adapter(store, sleeps):
    return CheckpointStore(store, attempts=5, delay=10, sleep=sleeps.append)


class TestSave:
    def test_delete_before_put(self, payload):
        """save always deletes the old blob before uploading."""
        store = MemoryBlobStore()
        store.blobs["build-artifact"] = {"old": b"old"}

        adapter(store, []).save("build-artifact", payload, retention_days=1)

        assert store.operations() == ["delete", "put"]
        assert store.blobs["build-artifact"] == {"build-state.tar.gz": b"snapshot"}

    def test_missing_blob_does_not_block_put(self, payload):
        """A not-found delete counts as success."""
        store = MemoryBlobStore()
        sleeps = []

        adapter(store, sleeps).save("build-artifact", payload, retention_days=1)

        assert store.operations() == ["delete", "put"]
        assert sleeps == []

    def test_retention_passed_through(self, payload):
        """Checkpoint and artifact retention differ; the adapter forwards it."""
        store = MemoryBlobStore()
        adapter(store, []).save("build-output", payload, retention_days=7)
        assert ("put", "build-output", 7) in store.calls

    def test_put_always_failing_is_bounded(self, payload):
        """Exactly 5 uploads with the fixed delay between them, then surface."""
        store = MemoryBlobStore()
        store.put_errors = [BlobStoreError("api hiccup")] * 10
        sleeps = []

        with pytest.raises(CheckpointSaveError):
            adapter(store, sleeps).save("build-artifact", payload, retention_days=1)

        assert store.operations() == ["delete", "put"] * 5
        assert sleeps == [10, 10, 10, 10]

    def test_put_recovers(self, payload):
        """Transient upload failures are retried."""
        store = MemoryBlobStore()
        store.put_errors = [BlobStoreError("api hiccup")] * 2
        sleeps = []

        adapter(store, sleeps).save("build-artifact", payload, retention_days=1)

        assert store.operations() == ["delete", "put"] * 3
        assert sleeps == [10, 10]
        assert "build-artifact" in store.blobs

    def test_delete_failure_still_uploads(self, payload):
        """Delete is best effort; a stuck delete still lets the upload try."""
        store = MemoryBlobStore()
        store.delete_errors = [BlobStoreError("unavailable")]

        adapter(store, []).save("build-artifact", payload, retention_days=1)

        assert store.operations() == ["delete", "put"]

    def test_upload_stored_despite_error_is_replaced(self, payload):
        """A PUT that was stored but answered 502 does not block later attempts."""
        service = FakeBlobService()
        service.fail_after_commit = 502
        store = HttpBlobStore(
            "https://blobs.test/api", token="secret", transport=httpx.MockTransport(service)
        )
        sleeps = []

        adapter(store, sleeps).save("build-artifact", payload, retention_days=1)

        methods = [request.method for request in service.requests]
        assert methods == ["DELETE", "PUT", "DELETE", "PUT"]
        assert sleeps == [10]
        assert "build-artifact" in service.blobs

    def test_multiple_files_relative_to_root(self, tmp_path):
        """Final artifacts can be several files under a root."""
        (tmp_path / "dist").mkdir()
        a = tmp_path / "dist" / "a.zip"
        b = tmp_path / "b.zip"
        a.write_bytes(b"a")
        b.write_bytes(b"b")
        store = MemoryBlobStore()

        adapter(store, []).save("build-output", [a, b], retention_days=7, root=tmp_path)

        assert set(store.blobs["build-output"]) == {"dist/a.zip", "b.zip"}


class TestRestore:
    def test_restore_downloads(self, tmp_path, payload):
        store = MemoryBlobStore()
        adapter(store, []).save("build-artifact", payload, retention_days=1)

        handle = adapter(store, []).restore("build-artifact", tmp_path / "dl")
        assert handle.files[0].read_bytes() == b"snapshot"

    def test_missing_is_not_retried(self, tmp_path):
        """Absence is a distinct outcome and is reported at once."""
        store = MemoryBlobStore()
        sleeps = []
        with pytest.raises(BlobNotFoundError):
            adapter(store, sleeps).restore("build-artifact", tmp_path / "dl")
        assert store.operations() == ["get"]
        assert sleeps == []

    def test_transient_failure_retried(self, tmp_path, payload):
        store = MemoryBlobStore()
        adapter(store, []).save("build-artifact", payload, retention_days=1)
        store.get_errors = [BlobStoreError("timeout")]
        sleeps = []

        adapter(store, sleeps).restore("build-artifact", tmp_path / "dl")
        assert sleeps == [10]


class TestSnapshot:
    def test_pack_and_unpack(self, tmp_path):
        """Included paths and the marker come back; mtimes are preserved."""
        work = tmp_path / "work"
        (work / "src" / "obj").mkdir(parents=True)
        obj = work / "src" / "obj" / "main.o"
        obj.write_bytes(b"\x7fELF")
        os.utime(obj, (1_700_000_000, 1_700_000_000))
        (work / "scratch.tmp").write_text("not included")

        archive = pack_snapshot(work, ["src"], "build", tmp_path / "state.tar.gz")

        fresh = tmp_path / "fresh"
        marker = unpack_snapshot(archive, fresh)

        assert marker == "build"
        assert (fresh / "src" / "obj" / "main.o").read_bytes() == b"\x7fELF"
        assert int((fresh / "src" / "obj" / "main.o").stat().st_mtime) == 1_700_000_000
        assert not (fresh / "scratch.tmp").exists()
        assert read_marker(fresh) == "build"

    def test_pack_writes_marker_into_workdir(self, tmp_path):
        """The marker on disk matches the marker in the snapshot."""
        work = tmp_path / "work"
        work.mkdir()
        pack_snapshot(work, [], "package", tmp_path / "state.tar.gz")
        assert read_marker(work) == "package"

    def test_missing_include_is_skipped(self, tmp_path):
        work = tmp_path / "work"
        work.mkdir()
        archive = pack_snapshot(work, ["does-not-exist"], "init", tmp_path / "state.tar.gz")
        with tarfile.open(archive) as tar:
            assert tar.getnames() == [MARKER_FILENAME]

    def test_corrupt_archive(self, tmp_path):
        """Garbage is a checkpoint error, never a silent fresh start."""
        archive = tmp_path / "state.tar.gz"
        archive.write_bytes(b"not a tarball")
        with pytest.raises(CheckpointError):
            unpack_snapshot(archive, tmp_path / "work")

    def test_archive_without_marker(self, tmp_path):
        """A snapshot without a marker cannot say where to resume."""
        (tmp_path / "src").mkdir()
        (tmp_path / "src" / "file.c").write_text("int main;")
        archive = tmp_path / "state.tar.gz"
        with tarfile.open(archive, "w:gz") as tar:
            tar.add(tmp_path / "src", arcname="src")
        with pytest.raises(CheckpointError, match="no build-stage.txt"):
            unpack_snapshot(archive, tmp_path / "work")

    def test_no_marker_on_fresh_workdir(self, tmp_path):
        assert read_marker(tmp_path) is None

    def test_member_outside_workdir_rejected(self, tmp_path):
        """Archive members may not write above the working directory."""
        (tmp_path / "evil.txt").write_text("x")
        (tmp_path / MARKER_FILENAME).write_text("build")
        archive = tmp_path / "state.tar.gz"
        with tarfile.open(archive, "w:gz") as tar:
            tar.add(tmp_path / MARKER_FILENAME, arcname=MARKER_FILENAME)
            tar.add(tmp_path / "evil.txt", arcname="../evil-escaped.txt")

        with pytest.raises(CheckpointError):
            unpack_snapshot(archive, tmp_path / "work")
        assert not (tmp_path / "evil-escaped.txt").exists()
