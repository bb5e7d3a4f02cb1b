"""Blob store interface and implementations.

A blob is a named set of files with a retention period. Names hold one
current blob; putting a name that already exists is an error, so callers
that want replacement delete first.
"""

import json
import logging
import os
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path, PurePosixPath, PureWindowsPath
from typing import List, Optional, Sequence
from urllib.parse import quote

import httpx

logger = logging.getLogger(__name__)


class BlobStoreError(Exception):
    """Error from blob store operations."""
    pass


class BlobNotFoundError(BlobStoreError):
    """No blob exists under the requested name."""
    pass


@dataclass
class BlobHandle:
    """A downloaded blob: its name and the local files it produced."""
    name: str
    files: List[Path]


def _relative_names(file_paths: Sequence[Path], root: Path) -> List[str]:
    names = []
    for path in file_paths:
        try:
            rel = Path(path).resolve().relative_to(Path(root).resolve())
        except ValueError:
            raise BlobStoreError(f"{path} is not under upload root {root}")
        names.append(rel.as_posix())
    return names


def _download_target(dest: Path, rel: str) -> Path:
    """Local path for a stored file name; names may not leave `dest`."""
    text = str(rel) if rel else ""
    parts = PurePosixPath(text.replace("\\", "/"))
    if not text or parts.is_absolute() or PureWindowsPath(text).drive or ".." in parts.parts:
        raise BlobStoreError(f"unsafe file name in blob listing: {rel!r}")
    return dest.joinpath(*parts.parts)


class BlobStore(ABC):
    """Abstract interface for blob stores."""

    @abstractmethod
    def put(self, name: str, file_paths: Sequence[Path], root: Path, retention_days: int) -> None:
        """
        Upload files as blob `name`.

        Args:
            name: Blob name
            file_paths: Files to upload
            root: Directory the stored file names are relative to
            retention_days: How long the store keeps the blob

        Raises:
            BlobStoreError: On upload failure or if `name` already exists
        """
        pass

    @abstractmethod
    def get(self, name: str, dest: Path) -> BlobHandle:
        """
        Download blob `name` into `dest`.

        Raises:
            BlobNotFoundError: If no such blob exists
            BlobStoreError: On any other failure
        """
        pass

    @abstractmethod
    def delete(self, name: str) -> None:
        """
        Delete blob `name`.

        Raises:
            BlobNotFoundError: If no such blob exists
            BlobStoreError: On any other failure
        """
        pass


class LocalBlobStore(BlobStore):
    """
    Blob store backed by a directory.

    Layout: <root>/<name>/blob.json plus the stored files. Expired blobs
    behave as missing.
    """

    META_FILENAME = "blob.json"

    def __init__(self, root: Path, now=None):
        self.root = Path(root)
        self._now = now or (lambda: datetime.now(timezone.utc))

    def _blob_dir(self, name: str) -> Path:
        if not name or "/" in name or "\\" in name or name in (".", ".."):
            raise BlobStoreError(f"invalid blob name: {name!r}")
        return self.root / name

    def _read_meta(self, name: str) -> dict:
        meta_path = self._blob_dir(name) / self.META_FILENAME
        if not meta_path.exists():
            raise BlobNotFoundError(f"blob not found: {name}")
        try:
            meta = json.loads(meta_path.read_text())
        except (json.JSONDecodeError, OSError) as e:
            raise BlobStoreError(f"unreadable metadata for blob {name}: {e}")

        expires_at = datetime.fromisoformat(meta["expires_at"])
        if expires_at <= self._now():
            raise BlobNotFoundError(f"blob expired: {name}")
        return meta

    def put(self, name: str, file_paths: Sequence[Path], root: Path, retention_days: int) -> None:
        blob_dir = self._blob_dir(name)
        if (blob_dir / self.META_FILENAME).exists():
            raise BlobStoreError(f"blob already exists: {name}")

        rel_names = _relative_names(file_paths, root)
        staging = self.root / f".{name}.partial"
        try:
            if staging.exists():
                shutil.rmtree(staging)
            staging.mkdir(parents=True)
            for path, rel in zip(file_paths, rel_names):
                target = staging / rel
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(path, target)

            created = self._now()
            meta = {
                "name": name,
                "files": rel_names,
                "retention_days": retention_days,
                "created_at": created.isoformat(),
                "expires_at": (created + timedelta(days=retention_days)).isoformat(),
            }
            (staging / self.META_FILENAME).write_text(json.dumps(meta, indent=2))

            if blob_dir.exists():
                shutil.rmtree(blob_dir)
            os.replace(staging, blob_dir)
        except OSError as e:
            raise BlobStoreError(f"failed to store blob {name}: {e}")
        finally:
            if staging.exists():
                shutil.rmtree(staging, ignore_errors=True)

        logger.debug("Stored blob %s (%d files)", name, len(rel_names))

    def get(self, name: str, dest: Path) -> BlobHandle:
        meta = self._read_meta(name)
        blob_dir = self._blob_dir(name)
        dest = Path(dest)
        files = []
        try:
            for rel in meta["files"]:
                target = dest / rel
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(blob_dir / rel, target)
                files.append(target)
        except OSError as e:
            raise BlobStoreError(f"failed to read blob {name}: {e}")
        return BlobHandle(name=name, files=files)

    def delete(self, name: str) -> None:
        blob_dir = self._blob_dir(name)
        if not blob_dir.exists():
            raise BlobNotFoundError(f"blob not found: {name}")
        try:
            shutil.rmtree(blob_dir)
        except OSError as e:
            raise BlobStoreError(f"failed to delete blob {name}: {e}")


class HttpBlobStore(BlobStore):
    """
    Blob store client for a small REST service.

    Endpoints:
        PUT    {base}/blobs/{name}?retention_days=N   multipart "files"
        GET    {base}/blobs/{name}                    -> {"files": [...]}
        GET    {base}/blobs/{name}/files/{path}       -> file bytes
        DELETE {base}/blobs/{name}
    """

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 300.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.Client:
        headers = {}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return httpx.Client(timeout=self.timeout, headers=headers, transport=self._transport)

    def _blob_url(self, name: str) -> str:
        return f"{self.base_url}/blobs/{quote(name, safe='')}"

    @staticmethod
    def _raise_for_status(response: httpx.Response, name: str) -> None:
        if response.status_code == 404:
            raise BlobNotFoundError(f"blob not found: {name}")
        if response.status_code == 409:
            raise BlobStoreError(f"blob already exists: {name}")
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise BlobStoreError(f"API error for blob {name}: {e.response.status_code}")

    def put(self, name: str, file_paths: Sequence[Path], root: Path, retention_days: int) -> None:
        rel_names = _relative_names(file_paths, root)
        handles = []
        try:
            files = []
            for path, rel in zip(file_paths, rel_names):
                fh = open(path, "rb")
                handles.append(fh)
                files.append(("files", (rel, fh, "application/octet-stream")))

            with self._client() as client:
                response = client.put(
                    self._blob_url(name),
                    params={"retention_days": retention_days},
                    files=files,
                )
            self._raise_for_status(response, name)
        except httpx.TimeoutException:
            raise BlobStoreError(f"upload of {name} timed out after {self.timeout}s")
        except httpx.RequestError as e:
            raise BlobStoreError(f"Network error: {e}")
        except OSError as e:
            raise BlobStoreError(f"cannot read upload file: {e}")
        finally:
            for fh in handles:
                fh.close()

    def get(self, name: str, dest: Path) -> BlobHandle:
        dest = Path(dest)
        files = []
        try:
            with self._client() as client:
                response = client.get(self._blob_url(name))
                self._raise_for_status(response, name)
                rel_names = response.json().get("files", [])

                for rel in rel_names:
                    target = _download_target(dest, rel)
                    target.parent.mkdir(parents=True, exist_ok=True)
                    url = f"{self._blob_url(name)}/files/{quote(rel)}"
                    with client.stream("GET", url) as stream:
                        self._raise_for_status(stream, name)
                        with target.open("wb") as out:
                            for chunk in stream.iter_bytes():
                                out.write(chunk)
                    files.append(target)
        except httpx.TimeoutException:
            raise BlobStoreError(f"download of {name} timed out after {self.timeout}s")
        except httpx.RequestError as e:
            raise BlobStoreError(f"Network error: {e}")
        except (ValueError, OSError) as e:
            raise BlobStoreError(f"failed to download blob {name}: {e}")
        return BlobHandle(name=name, files=files)

    def delete(self, name: str) -> None:
        try:
            with self._client() as client:
                response = client.delete(self._blob_url(name))
        except httpx.RequestError as e:
            raise BlobStoreError(f"Network error: {e}")
        self._raise_for_status(response, name)
