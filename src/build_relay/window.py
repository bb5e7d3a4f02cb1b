"""One execution window of the build relay.

Per window:
    1. Restore the checkpoint (or bootstrap a fresh task)
    2. Read the phase from the restored marker
    3. Run the phase command under the supervisor; on success advance and,
       time permitting, run the next phase
    4. Done: report finished. Otherwise snapshot and upload a checkpoint,
       then report not finished.

The host decides whether to start another window from the reported flag.
"""

import logging
import shutil
import tempfile
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional

from build_relay.blob_store import BlobNotFoundError, BlobStoreError
from build_relay.budget import ExecutionWindow
from build_relay.checkpoint import (
    CheckpointError,
    CheckpointSaveError,
    CheckpointStore,
    pack_snapshot,
    read_marker,
    unpack_snapshot,
)
from build_relay.config import RelayConfig
from build_relay.constants import REPORTS_DIRNAME, SNAPSHOT_FILENAME
from build_relay.phases import MarkerError, Phase, PhaseMachine
from build_relay.reports import report_filename, reports_dir_for, write_window_report
from build_relay.supervisor import ExitOutcome, ProcessSupervisor

logger = logging.getLogger(__name__)

UPLOAD_FAILED = "UPLOAD_FAILED"


@dataclass
class PhaseRun:
    phase: str
    outcome: str
    exit_code: Optional[int] = None
    budget_seconds: Optional[float] = None
    duration_seconds: float = 0.0


@dataclass
class WindowResult:
    finished: bool = False
    resumed: bool = False
    start_phase: Optional[str] = None
    end_phase: Optional[str] = None
    runs: List[PhaseRun] = field(default_factory=list)
    checkpoint_saved: bool = False
    error: Optional[str] = None
    started_at: str = ""
    elapsed_seconds: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)


class WindowDriver:
    """
    Drives the phase machine through one window.

    The steps (`restore`, `run_phase`, `finalize`) are separate so the
    plain loop in `run_window` and the graph in `window_graph` share them.
    """

    def __init__(
        self,
        config: RelayConfig,
        store: CheckpointStore,
        supervisor: ProcessSupervisor,
        window: ExecutionWindow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.store = store
        self.supervisor = supervisor
        self.window = window
        self._sleep = sleep
        self.machine: Optional[PhaseMachine] = None
        self.stopped = False
        self.started = datetime.now(timezone.utc)
        self.result = WindowResult(resumed=window.resumed, started_at=self.started.isoformat())
        self._report_name = report_filename(self.started)

    @property
    def workdir(self) -> Path:
        return self.config.workdir

    # --- Restore ---

    def restore(self) -> Phase:
        """
        Bring workdir to the last checkpoint and load the phase.

        Raises:
            CheckpointError: Resuming was requested but no usable
                checkpoint exists. Starting over silently would waste the
                remaining budget of the whole pipeline.
        """
        self.workdir.mkdir(parents=True, exist_ok=True)

        if self.window.resumed:
            marker = self._restore_checkpoint()
        else:
            self._bootstrap()
            marker = read_marker(self.workdir)

        try:
            self.machine = PhaseMachine.from_marker(marker)
        except MarkerError as e:
            raise CheckpointError(f"unusable phase marker: {e}") from e

        phase = self.machine.current_phase()
        self.result.start_phase = phase.value
        self.result.end_phase = phase.value
        if marker is None:
            logger.info("Starting from %s stage", phase.value)
        else:
            logger.info("Resuming from stage: %s", phase.value)
        return phase

    def _restore_checkpoint(self) -> str:
        name = self.config.checkpoint_name
        logger.info("Downloading previous checkpoint %s...", name)
        with tempfile.TemporaryDirectory(prefix="relay-restore-") as tmp:
            try:
                handle = self.store.restore(name, Path(tmp))
            except BlobNotFoundError as e:
                raise CheckpointError(f"resuming but checkpoint {name} does not exist") from e
            except BlobStoreError as e:
                raise CheckpointError(f"could not download checkpoint {name}: {e}") from e

            archives = [f for f in handle.files if f.name == SNAPSHOT_FILENAME]
            if not archives:
                raise CheckpointError(f"checkpoint {name} has no {SNAPSHOT_FILENAME}")
            return unpack_snapshot(archives[0], self.workdir)

    def _bootstrap(self) -> None:
        """Fresh task setup. Failures are logged; the init phase surfaces real problems."""
        if not self.config.bootstrap:
            return
        logger.info("Initializing build environment...")
        for command in self.config.bootstrap:
            outcome = self.supervisor.run(
                self.config.render(command),
                cwd=self.workdir,
                budget=None,
                env=self.config.command_env(),
            )
            if not outcome.succeeded:
                logger.warning("Bootstrap command ended %s: %s", outcome.describe(), command)

    # --- Phases ---

    def should_continue(self) -> bool:
        return not self.stopped and not self.machine.is_terminal()

    def run_phase(self) -> PhaseRun:
        """Run the current phase once; advance the machine only on success."""
        phase = self.machine.current_phase()
        budget = None if phase in self.config.unbounded_phases else self.window.budget()
        logger.info("=== Stage: %s ===", phase.value)

        if phase == Phase.PACKAGE:
            outcome = self._run_package(budget)
        else:
            command = self.config.command_for(phase)
            if command is None:
                logger.info("No command configured for %s, nothing to run", phase.value)
                outcome = ExitOutcome.success()
            else:
                outcome = self.supervisor.run(
                    command, cwd=self.workdir, budget=budget, env=self.config.command_env()
                )

        run = PhaseRun(
            phase=phase.value,
            outcome=outcome.status,
            exit_code=outcome.exit_code,
            budget_seconds=budget,
            duration_seconds=outcome.duration_seconds,
        )
        self.result.runs.append(run)

        if outcome.succeeded:
            new_phase = self.machine.advance(phase)
            logger.info("✓ %s completed successfully, next stage: %s", phase.value, new_phase.value)
        elif outcome.is_timeout:
            logger.info("⏱️ %s timed out - will resume in next window", phase.value)
            self.stopped = True
        elif run.outcome == UPLOAD_FAILED:
            logger.info("✗ %s output could not be uploaded - will retry in next window", phase.value)
            self.stopped = True
        else:
            logger.info("✗ %s failed with code %s - will retry in next window", phase.value, run.exit_code)
            self.stopped = True

        self.result.end_phase = self.machine.current_phase().value
        return run

    def _run_package(self, budget: Optional[float]) -> ExitOutcome:
        """
        Produce and upload the final artifact.

        The phase counts as done only once the upload succeeded, so a lost
        upload is retried by the next window instead of being skipped.
        """
        started = time.monotonic()
        command = self.config.command_for(Phase.PACKAGE)
        if command is not None:
            outcome = self.supervisor.run(
                command, cwd=self.workdir, budget=budget, env=self.config.command_env()
            )
            if not outcome.succeeded:
                return outcome
            files = self._package_outputs()
            if not files:
                logger.error("Package command produced no files matching %s", self.config.package_outputs)
                return ExitOutcome.failure(1, time.monotonic() - started)
        else:
            source = self.workdir / self.config.package_source
            if not source.is_dir():
                logger.error("Package source %s does not exist", source)
                return ExitOutcome.failure(1, time.monotonic() - started)
            files = [self._archive_package_source()]

        try:
            self.store.save(
                self.config.artifact_name,
                files,
                retention_days=self.config.artifact_retention_days,
                root=self.workdir,
            )
        except CheckpointSaveError as e:
            logger.error("Final artifact upload failed: %s", e)
            return ExitOutcome(UPLOAD_FAILED, None, time.monotonic() - started)

        logger.info("Successfully uploaded final artifact")
        return ExitOutcome.success(time.monotonic() - started)

    def _package_outputs(self) -> List[Path]:
        files = set()
        for pattern in self.config.package_outputs:
            files.update(p for p in self.workdir.glob(pattern) if p.is_file())
        return sorted(files)

    def _archive_package_source(self) -> Path:
        source = self.workdir / self.config.package_source
        stem = self.config.artifact_name
        if self.config.version:
            stem = f"{stem}-{self.config.version}"
        logger.info("Creating archive of %s...", source)
        archive = shutil.make_archive(
            str(self.workdir / stem),
            "zip",
            root_dir=source.parent,
            base_dir=source.name,
        )
        return Path(archive)

    # --- Finalize ---

    def record_error(self, error: BaseException) -> None:
        self.result.error = f"{type(error).__name__}: {error}"
        self.stopped = True

    def finalize(self) -> WindowResult:
        """Report finished, or snapshot and upload the checkpoint."""
        if self.machine.is_terminal():
            self.result.finished = True
            self._write_report()
            logger.info("Build complete")
            return self.result

        logger.info("Build incomplete, creating checkpoint...")
        self._write_report()
        if self.config.settle_seconds > 0:
            self._sleep(self.config.settle_seconds)

        marker = self.machine.marker()
        include = list(self.config.snapshot_paths)
        if REPORTS_DIRNAME not in include:
            include.append(REPORTS_DIRNAME)
        archive = pack_snapshot(self.workdir, include, marker, self.workdir / SNAPSHOT_FILENAME)

        try:
            self.store.save(
                self.config.checkpoint_name,
                archive,
                retention_days=self.config.checkpoint_retention_days,
            )
            self.result.checkpoint_saved = True
            logger.info("Successfully uploaded checkpoint")
        except CheckpointSaveError as e:
            logger.error("Checkpoint upload failed, progress of this window may be lost: %s", e)
        finally:
            archive.unlink(missing_ok=True)

        self._write_report()
        return self.result

    def _write_report(self) -> None:
        self.result.elapsed_seconds = self.window.elapsed()
        write_window_report(self.result.to_dict(), reports_dir_for(self.workdir), self._report_name)


def create_driver(
    config: RelayConfig,
    from_checkpoint: bool,
    store: Optional[CheckpointStore] = None,
    supervisor: Optional[ProcessSupervisor] = None,
    window: Optional[ExecutionWindow] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> WindowDriver:
    if window is None:
        window = ExecutionWindow(
            cap_seconds=config.window_cap_minutes * 60,
            floor_seconds=config.floor_minutes * 60,
            fallback_seconds=config.fallback_minutes * 60,
        )
    window.resumed = from_checkpoint
    if store is None:
        store = CheckpointStore(
            config.create_store(),
            attempts=config.retry_attempts,
            delay=config.retry_delay_seconds,
            sleep=sleep,
        )
    if supervisor is None:
        supervisor = ProcessSupervisor(grace_seconds=config.grace_seconds)
    return WindowDriver(config, store, supervisor, window, sleep=sleep)


def run_window(
    config: RelayConfig,
    finished: bool,
    from_checkpoint: bool,
    store: Optional[CheckpointStore] = None,
    supervisor: Optional[ProcessSupervisor] = None,
    window: Optional[ExecutionWindow] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> WindowResult:
    """
    Run one window.

    Args:
        config: Relay configuration
        finished: The previous window reported the build finished
        from_checkpoint: Restore the checkpoint before doing anything else
        store, supervisor, window, sleep: Collaborators (built from config
            when omitted)

    Returns:
        WindowResult; `finished` is the flag reported to the host

    Raises:
        CheckpointError: Resuming failed; nothing was run
        SpawnError: A phase command could not be started. This and any
            other error raised while running a phase re-raise only after
            a checkpoint was attempted.
    """
    if finished:
        logger.info("Previous window finished the build, nothing to do")
        return WindowResult(finished=True)

    driver = create_driver(config, from_checkpoint, store, supervisor, window, sleep)
    driver.restore()

    try:
        while driver.should_continue():
            driver.run_phase()
    except Exception as e:
        logger.error("Phase stopped on an error: %s", e)
        driver.record_error(e)
        driver.finalize()
        raise

    return driver.finalize()
