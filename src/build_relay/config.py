"""Configuration loading for the build relay.

A relay file (YAML or JSON) describes the build: working directory, phase
commands, snapshot contents, blob names and window timing. Secrets and a
few per-host overrides come from the environment (and a .env file).
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv

from build_relay.blob_store import BlobStore, HttpBlobStore, LocalBlobStore
from build_relay.constants import (
    DEFAULT_ARTIFACT_NAME,
    DEFAULT_ARTIFACT_RETENTION_DAYS,
    DEFAULT_CHECKPOINT_NAME,
    DEFAULT_CHECKPOINT_RETENTION_DAYS,
    DEFAULT_FALLBACK_MINUTES,
    DEFAULT_FLOOR_MINUTES,
    DEFAULT_GRACE_SECONDS,
    DEFAULT_RETRY_ATTEMPTS,
    DEFAULT_RETRY_DELAY_SECONDS,
    DEFAULT_SETTLE_SECONDS,
    DEFAULT_WINDOW_CAP_MINUTES,
)
from build_relay.phases import Phase

STORE_KINDS = ("local", "http")


class ConfigError(Exception):
    """Raised when the relay file or environment is invalid."""
    pass


@dataclass
class RelayConfig:
    """Everything one window needs to know about the build."""

    workdir: Path
    phase_commands: Dict[Phase, Optional[str]]
    snapshot_paths: List[str] = field(default_factory=list)
    bootstrap: List[str] = field(default_factory=list)
    unbounded_phases: List[Phase] = field(default_factory=lambda: [Phase.INIT])
    package_outputs: List[str] = field(default_factory=list)
    package_source: Optional[str] = None
    checkpoint_name: str = DEFAULT_CHECKPOINT_NAME
    artifact_name: str = DEFAULT_ARTIFACT_NAME
    version: Optional[str] = None
    window_cap_minutes: float = DEFAULT_WINDOW_CAP_MINUTES
    floor_minutes: float = DEFAULT_FLOOR_MINUTES
    fallback_minutes: float = DEFAULT_FALLBACK_MINUTES
    grace_seconds: float = DEFAULT_GRACE_SECONDS
    settle_seconds: float = DEFAULT_SETTLE_SECONDS
    retry_attempts: int = DEFAULT_RETRY_ATTEMPTS
    retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS
    checkpoint_retention_days: int = DEFAULT_CHECKPOINT_RETENTION_DAYS
    artifact_retention_days: int = DEFAULT_ARTIFACT_RETENTION_DAYS
    store_kind: str = "local"
    store_path: Optional[Path] = None
    store_url: Optional[str] = None
    store_token: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)

    def render(self, command: str) -> str:
        """Substitute {version} and {workdir} in a command string."""
        rendered = command.replace("{workdir}", str(self.workdir))
        if self.version is not None:
            rendered = rendered.replace("{version}", self.version)
        return rendered

    def command_for(self, phase: Phase) -> Optional[str]:
        command = self.phase_commands.get(phase)
        return self.render(command) if command else None

    def command_env(self) -> Dict[str, str]:
        merged = dict(os.environ)
        merged.update(self.env)
        return merged

    def create_store(self) -> BlobStore:
        if self.store_kind == "http":
            return HttpBlobStore(self.store_url, token=self.store_token)
        return LocalBlobStore(self.store_path)


def _read_file(path: Path) -> Dict[str, Any]:
    content = path.read_text()
    try:
        if path.suffix in (".yaml", ".yml"):
            data = yaml.safe_load(content)
        elif path.suffix == ".json":
            data = json.loads(content)
        else:
            raise ConfigError(f"Unsupported file type: {path.suffix}. Use .yaml, .yml, or .json")
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise ConfigError(f"Cannot parse {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping at the top level")
    return data


def _number(values: Dict[str, Any], key: str, default, cast, label: str, problems: List[str], raw=None):
    """Read a numeric setting, recording a problem instead of raising."""
    if raw is None:
        raw = values.get(key, default)
    try:
        return cast(raw)
    except (TypeError, ValueError):
        problems.append(f"{label} must be a number, got {raw!r}")
        return cast(default)


def _resolve(base: Path, value: Optional[str]) -> Optional[Path]:
    if value is None:
        return None
    path = Path(os.path.expanduser(str(value)))
    return path if path.is_absolute() else (base / path)


def load_config(path: Path) -> RelayConfig:
    """
    Load and validate a relay file.

    Relative paths are resolved against the file's directory. Environment
    overrides (after loading .env):
        RELAY_WINDOW_CAP_MINUTES, RELAY_STORE_URL, RELAY_STORE_TOKEN

    Raises:
        ConfigError: Listing every problem found
    """
    load_dotenv()

    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Relay file not found: {path}")
    data = _read_file(path)
    base = path.resolve().parent

    problems = []

    phases = data.get("phases") or {}
    phase_commands = {
        Phase.INIT: phases.get("init"),
        Phase.BUILD: phases.get("build"),
        Phase.PACKAGE: phases.get("package"),
    }
    unknown_phases = set(phases) - {"init", "build", "package"}
    if unknown_phases:
        problems.append(f"unknown phases: {', '.join(sorted(unknown_phases))}")
    if not phase_commands[Phase.BUILD]:
        problems.append("phases.build is required")

    package = data.get("package") or {}
    if not phase_commands[Phase.PACKAGE] and not package.get("source"):
        problems.append("either phases.package or package.source is required")
    if phase_commands[Phase.PACKAGE] and not package.get("outputs"):
        problems.append("package.outputs is required when phases.package is set")

    if not data.get("workdir"):
        problems.append("workdir is required")
    if not data.get("snapshot_paths"):
        problems.append("snapshot_paths is required (the paths a resumed window needs)")

    window = data.get("window") or {}
    cap = _number(
        window, "cap_minutes", DEFAULT_WINDOW_CAP_MINUTES, float, "window.cap_minutes", problems,
        raw=os.environ.get("RELAY_WINDOW_CAP_MINUTES") or None,
    )
    floor = _number(window, "floor_minutes", DEFAULT_FLOOR_MINUTES, float, "window.floor_minutes", problems)
    fallback = _number(window, "fallback_minutes", DEFAULT_FALLBACK_MINUTES, float, "window.fallback_minutes", problems)
    grace = _number(window, "grace_seconds", DEFAULT_GRACE_SECONDS, float, "window.grace_seconds", problems)
    settle = _number(window, "settle_seconds", DEFAULT_SETTLE_SECONDS, float, "window.settle_seconds", problems)
    if cap <= 0:
        problems.append("window.cap_minutes must be positive")
    if floor <= 0 or fallback <= 0:
        problems.append("window.floor_minutes and window.fallback_minutes must be positive")
    if floor > cap:
        problems.append("window.floor_minutes cannot exceed window.cap_minutes")

    retry = data.get("retry") or {}
    attempts = _number(retry, "attempts", DEFAULT_RETRY_ATTEMPTS, int, "retry.attempts", problems)
    delay = _number(retry, "delay_seconds", DEFAULT_RETRY_DELAY_SECONDS, float, "retry.delay_seconds", problems)
    if attempts < 1:
        problems.append("retry.attempts must be at least 1")

    retention = data.get("retention") or {}
    checkpoint_days = _number(
        retention, "checkpoint_days", DEFAULT_CHECKPOINT_RETENTION_DAYS, int, "retention.checkpoint_days", problems
    )
    artifact_days = _number(
        retention, "artifact_days", DEFAULT_ARTIFACT_RETENTION_DAYS, int, "retention.artifact_days", problems
    )

    store = data.get("store") or {}
    store_kind = store.get("kind", "local")
    store_url = os.environ.get("RELAY_STORE_URL") or store.get("url")
    if store_kind not in STORE_KINDS:
        problems.append(f"store.kind must be one of {', '.join(STORE_KINDS)}")
    elif store_kind == "http" and not store_url:
        problems.append("store.url (or RELAY_STORE_URL) is required for the http store")
    elif store_kind == "local" and not store.get("path"):
        problems.append("store.path is required for the local store")

    unbounded = []
    for name in data.get("unbounded_phases", ["init"]):
        try:
            unbounded.append(Phase(name))
        except ValueError:
            problems.append(f"unbounded_phases: unknown phase {name!r}")

    version = None
    version_file = _resolve(base, data.get("version_file"))
    if version_file is not None:
        try:
            version = version_file.read_text(encoding="utf-8").strip()
        except OSError as e:
            problems.append(f"cannot read version_file {version_file}: {e}")

    if problems:
        raise ConfigError(
            f"Invalid relay file {path}:\n" + "\n".join(f"  - {p}" for p in problems)
        )

    return RelayConfig(
        workdir=_resolve(base, data["workdir"]),
        phase_commands=phase_commands,
        snapshot_paths=list(data.get("snapshot_paths") or []),
        bootstrap=list(data.get("bootstrap") or []),
        unbounded_phases=unbounded,
        package_outputs=list(package.get("outputs") or []),
        package_source=package.get("source"),
        checkpoint_name=data.get("checkpoint_name", DEFAULT_CHECKPOINT_NAME),
        artifact_name=data.get("artifact_name", DEFAULT_ARTIFACT_NAME),
        version=version,
        window_cap_minutes=cap,
        floor_minutes=floor,
        fallback_minutes=fallback,
        grace_seconds=grace,
        settle_seconds=settle,
        retry_attempts=attempts,
        retry_delay_seconds=delay,
        checkpoint_retention_days=checkpoint_days,
        artifact_retention_days=artifact_days,
        store_kind=store_kind,
        store_path=_resolve(base, store.get("path")),
        store_url=store_url,
        store_token=os.environ.get("RELAY_STORE_TOKEN"),
        env={str(k): str(v) for k, v in (data.get("env") or {}).items()},
    )
