"""Checkpoint store adapter and snapshot packing.

The adapter gives the best-effort guarantee that one window's final
filesystem state reaches the next window:

- save: delete the current blob (a missing blob is fine), then upload;
  every retried attempt repeats both steps, so an upload that reached the
  store but reported an error does not block the next attempt
- restore: download, distinguishing "no such blob" from other failures

What goes into a snapshot is decided by the caller; the adapter only moves
opaque files.
"""

import logging
import tarfile
import time
from pathlib import Path
from typing import Callable, Optional, Sequence, Union

from build_relay.blob_store import BlobHandle, BlobNotFoundError, BlobStore, BlobStoreError
from build_relay.constants import (
    DEFAULT_RETRY_ATTEMPTS,
    DEFAULT_RETRY_DELAY_SECONDS,
    MARKER_FILENAME,
)
from build_relay.retry import retry_call

logger = logging.getLogger(__name__)


class CheckpointError(Exception):
    """A checkpoint could not be restored into a usable state."""
    pass


class CheckpointSaveError(Exception):
    """Upload failed on every attempt."""
    pass


class CheckpointStore:
    """Delete-then-upload adapter over a BlobStore with bounded retry."""

    def __init__(
        self,
        store: BlobStore,
        attempts: int = DEFAULT_RETRY_ATTEMPTS,
        delay: float = DEFAULT_RETRY_DELAY_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.attempts = attempts
        self.delay = delay
        self._sleep = sleep

    def _retry(self, fn, description, give_up_on=()):
        return retry_call(
            fn,
            attempts=self.attempts,
            delay=self.delay,
            retry_on=(BlobStoreError,),
            give_up_on=give_up_on,
            sleep=self._sleep,
            description=description,
        )

    def _delete(self, name: str) -> None:
        """Remove the current blob. Only a failed upload ends an attempt."""
        try:
            self.store.delete(name)
            logger.info("Deleted previous blob %s", name)
        except BlobNotFoundError:
            logger.debug("No previous blob %s to delete", name)
        except BlobStoreError as e:
            logger.warning("Could not delete blob %s, uploading anyway: %s", name, e)

    def save(
        self,
        name: str,
        payload: Union[Path, Sequence[Path]],
        retention_days: int,
        root: Optional[Path] = None,
    ) -> None:
        """
        Replace blob `name` with `payload`.

        Args:
            name: Blob name
            payload: A file, or several files under `root`
            retention_days: Retention for the new blob
            root: Directory stored names are relative to (default: the
                  single payload file's directory)

        Raises:
            CheckpointSaveError: If every upload attempt failed
        """
        if isinstance(payload, (str, Path)):
            files = [Path(payload)]
        else:
            files = [Path(p) for p in payload]
        if not files:
            raise ValueError("nothing to save")
        if root is None:
            root = files[0].parent

        def attempt():
            self._delete(name)
            self.store.put(name, files, root, retention_days)

        try:
            self._retry(attempt, f"upload {name}")
        except BlobStoreError as e:
            raise CheckpointSaveError(f"failed to upload {name} after {self.attempts} attempts: {e}") from e

        logger.info("Uploaded %s (%d file(s), retention %d days)", name, len(files), retention_days)

    def restore(self, name: str, dest: Path) -> BlobHandle:
        """
        Download blob `name` into `dest`.

        Raises:
            BlobNotFoundError: No such blob; the caller decides what that means
            BlobStoreError: Every download attempt failed
        """
        handle = self._retry(
            lambda: self.store.get(name, Path(dest)),
            f"download {name}",
            give_up_on=(BlobNotFoundError,),
        )
        logger.info("Downloaded %s (%d file(s))", name, len(handle.files))
        return handle


# =============================================================================
# SNAPSHOTS
# =============================================================================

def read_marker(workdir: Path) -> Optional[str]:
    marker_path = Path(workdir) / MARKER_FILENAME
    if not marker_path.exists():
        return None
    return marker_path.read_text(encoding="utf-8")


def pack_snapshot(workdir: Path, include: Sequence[str], marker: str, archive: Path) -> Path:
    """
    Write `marker` into workdir and pack it with the `include` paths.

    Uses tar so file modes, symlinks and mtimes survive; incremental build
    tools rely on mtimes to skip up-to-date objects.
    """
    workdir = Path(workdir)
    (workdir / MARKER_FILENAME).write_text(marker, encoding="utf-8")

    archive = Path(archive)
    archive.parent.mkdir(parents=True, exist_ok=True)
    with tarfile.open(archive, "w:gz", compresslevel=3) as tar:
        for rel in include:
            path = workdir / rel
            if not path.exists():
                logger.warning("Snapshot path missing, skipping: %s", path)
                continue
            tar.add(path, arcname=Path(rel).as_posix())
        tar.add(workdir / MARKER_FILENAME, arcname=MARKER_FILENAME)

    logger.info("Packed snapshot %s (%.1f MB)", archive, archive.stat().st_size / 1e6)
    return archive


def unpack_snapshot(archive: Path, workdir: Path) -> str:
    """
    Extract a snapshot into workdir and return its marker text.

    Raises:
        CheckpointError: If the archive is unreadable or has no marker
    """
    workdir = Path(workdir)
    workdir.mkdir(parents=True, exist_ok=True)
    try:
        with tarfile.open(archive, "r:*") as tar:
            names = tar.getnames()
            if MARKER_FILENAME not in names:
                raise CheckpointError(f"snapshot {archive} has no {MARKER_FILENAME}")
            tar.extractall(workdir, filter="tar")
    except (tarfile.TarError, EOFError, OSError) as e:
        raise CheckpointError(f"snapshot {archive} is corrupt: {e}") from e

    return (workdir / MARKER_FILENAME).read_text(encoding="utf-8")
