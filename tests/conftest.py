"""Shared fixtures: config factory, scripted supervisor, in-memory blob store, fake blob service."""

from pathlib import Path
from typing import Callable, Dict, List, Optional

import httpx
import pytest

from build_relay.blob_store import BlobHandle, BlobNotFoundError, BlobStore, BlobStoreError
from build_relay.config import RelayConfig
from build_relay.phases import Phase
from build_relay.supervisor import ExitOutcome


@pytest.fixture(autouse=True)
def _clean_relay_env(monkeypatch):
    for name in ("RELAY_WINDOW_CAP_MINUTES", "RELAY_STORE_URL", "RELAY_STORE_TOKEN", "GITHUB_OUTPUT"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def make_config(tmp_path):
    def factory(**overrides) -> RelayConfig:
        values = dict(
            workdir=tmp_path / "work",
            phase_commands={Phase.INIT: "fetch", Phase.BUILD: "compile", Phase.PACKAGE: None},
            snapshot_paths=["src", "out"],
            package_source="out",
            settle_seconds=0,
            retry_attempts=5,
            retry_delay_seconds=10,
            store_kind="local",
            store_path=tmp_path / "store",
        )
        values.update(overrides)
        return RelayConfig(**values)

    return factory


class ScriptedSupervisor:
    """
    Stands in for ProcessSupervisor.

    `script` maps a command to a list of handlers, consumed one per run.
    Each handler receives the working directory and returns an ExitOutcome.
    """

    def __init__(self, script: Dict[str, List[Callable[[Path], ExitOutcome]]]):
        self.script = {cmd: list(handlers) for cmd, handlers in script.items()}
        self.calls = []

    def run(self, command, cwd=None, budget=None, env=None) -> ExitOutcome:
        self.calls.append({"command": command, "cwd": Path(cwd), "budget": budget})
        handlers = self.script.get(command)
        if not handlers:
            raise AssertionError(f"unexpected command: {command}")
        return handlers.pop(0)(Path(cwd))

    def commands(self) -> List[str]:
        return [call["command"] for call in self.calls]


def succeed(write: Optional[Dict[str, str]] = None):
    """Handler that writes files (relative to cwd) then succeeds."""
    def handler(cwd: Path) -> ExitOutcome:
        for rel, content in (write or {}).items():
            path = cwd / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content)
        return ExitOutcome.success(1.0)
    return handler


def time_out(write: Optional[Dict[str, str]] = None):
    def handler(cwd: Path) -> ExitOutcome:
        succeed(write)(cwd)
        return ExitOutcome.timed_out(60.0)
    return handler


def fail(code: int = 1):
    def handler(cwd: Path) -> ExitOutcome:
        return ExitOutcome.failure(code, 2.0)
    return handler


class MemoryBlobStore(BlobStore):
    """In-memory blob store that records every call."""

    def __init__(self):
        self.blobs: Dict[str, Dict[str, bytes]] = {}
        self.calls = []
        self.put_errors: List[Exception] = []
        self.delete_errors: List[Exception] = []
        self.get_errors: List[Exception] = []

    def put(self, name, file_paths, root, retention_days):
        self.calls.append(("put", name, retention_days))
        if self.put_errors:
            raise self.put_errors.pop(0)
        if name in self.blobs:
            raise BlobStoreError(f"blob already exists: {name}")
        self.blobs[name] = {
            Path(p).resolve().relative_to(Path(root).resolve()).as_posix(): Path(p).read_bytes()
            for p in file_paths
        }

    def get(self, name, dest):
        self.calls.append(("get", name))
        if self.get_errors:
            raise self.get_errors.pop(0)
        if name not in self.blobs:
            raise BlobNotFoundError(name)
        files = []
        for rel, data in self.blobs[name].items():
            target = Path(dest) / rel
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
            files.append(target)
        return BlobHandle(name=name, files=files)

    def delete(self, name):
        self.calls.append(("delete", name))
        if self.delete_errors:
            raise self.delete_errors.pop(0)
        if name not in self.blobs:
            raise BlobNotFoundError(name)
        del self.blobs[name]

    def operations(self) -> List[str]:
        return [call[0] for call in self.calls]


class FakeBlobService:
    """Minimal in-memory implementation of the REST endpoints."""

    def __init__(self, token="secret"):
        self.token = token
        self.blobs = {}
        self.requests = []
        self.fail_with = None
        # Status returned once after a PUT was stored anyway
        self.fail_after_commit = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_with:
            return httpx.Response(self.fail_with)
        if request.headers.get("Authorization") != f"Bearer {self.token}":
            return httpx.Response(401)

        parts = request.url.path.split("/")
        name = parts[3]
        if request.method == "PUT":
            if name in self.blobs:
                return httpx.Response(409)
            body = request.read()
            self.blobs[name] = {
                "retention_days": request.url.params["retention_days"],
                "body": body,
                "files": {"state.tar.gz": b"checkpoint data"},
            }
            if self.fail_after_commit:
                status, self.fail_after_commit = self.fail_after_commit, None
                return httpx.Response(status)
            return httpx.Response(201)
        if name not in self.blobs:
            return httpx.Response(404)
        if request.method == "DELETE":
            del self.blobs[name]
            return httpx.Response(204)
        if len(parts) > 4:
            return httpx.Response(200, content=self.blobs[name]["files"][parts[5]])
        return httpx.Response(200, json={"files": list(self.blobs[name]["files"])})
