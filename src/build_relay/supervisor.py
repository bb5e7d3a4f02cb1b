"""Timeout-bounded process supervisor.

Runs one external command until it exits or its budget expires. On expiry
the whole process tree is stopped in two steps: graceful termination, a
grace interval, then forced termination of whatever is still alive. The
supervisor never returns while descendants of its command are still
running.

Output of the child is inherited, not captured, so build progress is
visible in the window log even if the host kills the window outright.
"""

import logging
import os

import subprocess
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple, Union

import psutil

from build_relay.constants import DEFAULT_GRACE_SECONDS

logger = logging.getLogger(__name__)

SUCCESS = "SUCCESS"
FAILED = "FAILED"
TIMED_OUT = "TIMED_OUT"

GRACEFUL = "graceful"
FORCED = "forced"

Command = Union[str, Sequence[str]]


@dataclass(frozen=True)
class ExitOutcome:
    """Result of one supervised run: SUCCESS, FAILED(exit_code) or TIMED_OUT."""

    status: str
    exit_code: Optional[int] = None
    duration_seconds: float = 0.0

    @classmethod
    def success(cls, duration_seconds: float = 0.0) -> "ExitOutcome":
        return cls(SUCCESS, 0, duration_seconds)

    @classmethod
    def failure(cls, exit_code: int, duration_seconds: float = 0.0) -> "ExitOutcome":
        return cls(FAILED, exit_code, duration_seconds)

    @classmethod
    def timed_out(cls, duration_seconds: float = 0.0) -> "ExitOutcome":
        return cls(TIMED_OUT, None, duration_seconds)

    @property
    def succeeded(self) -> bool:
        return self.status == SUCCESS

    @property
    def is_timeout(self) -> bool:
        return self.status == TIMED_OUT

    def describe(self) -> str:
        if self.status == FAILED:
            return f"{self.status}({self.exit_code})"
        return self.status


class SpawnError(Exception):
    """The command could not be started at all."""
    pass


def prepare_command(command: Command) -> Tuple[Union[str, List[str]], bool]:
    """
    Return (args, shell) for Popen.

    A string is a command line for the platform shell, so `npm` resolves to
    `npm.cmd` on Windows and `&&` or redirects work everywhere. A sequence
    is an argv list run directly.
    """
    if isinstance(command, str):
        return command.strip(), True
    return [str(part) for part in command], False


def _is_alive(proc: psutil.Process) -> bool:
    try:
        return proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return False


class ProcessTree:
    """
    A supervised command and all of its descendants.

    Members are the root, its recursive children, and (on POSIX) every
    process still in the command's session group, which catches children
    that were reparented after their parent died. Members seen once are
    remembered so they can still be signalled after the tree breaks apart.
    """

    def __init__(self, root_pid: Optional[int], group_id: Optional[int] = None):
        self.group_id = group_id
        self._known: Dict[int, psutil.Process] = {}
        self._root: Optional[psutil.Process] = None
        if root_pid is not None:
            try:
                self._root = psutil.Process(root_pid)
            except psutil.NoSuchProcess:
                self._root = None

    def members(self) -> List[psutil.Process]:
        found: Dict[int, psutil.Process] = {}
        roots = list(self._known.values())
        if self._root is not None:
            roots.insert(0, self._root)

        for proc in roots:
            if not _is_alive(proc):
                continue
            found[proc.pid] = proc
            try:
                for child in proc.children(recursive=True):
                    found[child.pid] = child
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue

        if self.group_id is not None and hasattr(os, "getpgid"):
            for proc in psutil.process_iter():
                try:
                    if proc.pid != os.getpid() and os.getpgid(proc.pid) == self.group_id:
                        found[proc.pid] = proc
                except (OSError, psutil.Error):
                    continue

        self._known.update(found)
        return [proc for proc in self._known.values() if _is_alive(proc)]

    def terminate(self, mode: str) -> List[psutil.Process]:
        """Signal every live member. `mode` is GRACEFUL or FORCED."""
        if mode not in (GRACEFUL, FORCED):
            raise ValueError(f"unknown termination mode: {mode}")

        procs = self.members()
        for proc in procs:
            try:
                if mode == GRACEFUL:
                    proc.terminate()
                else:
                    proc.kill()
            except psutil.NoSuchProcess:
                pass
            except psutil.AccessDenied:
                logger.warning("Access denied signalling pid %s", proc.pid)
        return procs

    @staticmethod
    def wait(procs: List[psutil.Process], timeout: float, poll_interval: float = 0.1) -> List[psutil.Process]:
        """Wait up to `timeout` seconds for `procs` to exit; return survivors."""
        deadline = time.monotonic() + timeout
        alive = [proc for proc in procs if _is_alive(proc)]
        while alive and time.monotonic() < deadline:
            time.sleep(poll_interval)
            alive = [proc for proc in alive if _is_alive(proc)]
        return alive


class ProcessSupervisor:
    """Runs external commands under a time budget."""

    def __init__(self, grace_seconds: float = DEFAULT_GRACE_SECONDS, kill_wait_seconds: float = 10.0):
        self.grace_seconds = grace_seconds
        self.kill_wait_seconds = kill_wait_seconds

    def run(
        self,
        command: Command,
        cwd: Optional[Union[str, os.PathLike]] = None,
        budget: Optional[float] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> ExitOutcome:
        """
        Run `command` to completion or until `budget` seconds elapse.

        Args:
            command: Shell command line, or argv list run without a shell
            cwd: Working directory for the command
            budget: Seconds allowed; None runs unbounded
            env: Full environment for the child (default: inherit)

        Returns:
            ExitOutcome. A timeout is an outcome, not an exception.

        Raises:
            SpawnError: If the command (or the shell for a command line)
                cannot be started. A command line naming a missing
                program ends FAILED with the shell's exit code.
        """
        args, shell = prepare_command(command)
        if not args:
            raise SpawnError("empty command")

        logger.info("Running: %s", args if shell else " ".join(args))
        if budget is None:
            logger.info("Budget: unbounded")
        else:
            logger.info("Budget: %.0f minutes (%.2f hours)", budget / 60, budget / 3600)

        popen_kwargs = {
            "cwd": os.fspath(cwd) if cwd is not None else None,
            "env": env,
            "stdin": subprocess.DEVNULL,
            "shell": shell,
        }
        # Own process group so the tree can be found and signalled as a unit
        if os.name == "nt":
            popen_kwargs["creationflags"] = getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0)
        else:
            popen_kwargs["start_new_session"] = True

        try:
            proc = subprocess.Popen(args, **popen_kwargs)
        except OSError as e:
            program = args.split()[0] if shell else args[0]
            raise SpawnError(f"failed to start {program}: {e}") from e

        group_id = proc.pid if os.name != "nt" else None
        start = time.monotonic()
        try:
            try:
                code = proc.wait(timeout=budget)
            except subprocess.TimeoutExpired:
                # Exit wins over the timer if both happened
                code = proc.poll()
                if code is None:
                    logger.warning(
                        "Timeout reached after %.0f minutes, stopping process tree of pid %s",
                        budget / 60, proc.pid,
                    )
                    self._stop_tree(ProcessTree(proc.pid, group_id))
                    proc.wait()
                    return ExitOutcome.timed_out(time.monotonic() - start)
        except BaseException:
            self._stop_tree(ProcessTree(proc.pid, group_id))
            proc.wait()
            raise

        duration = time.monotonic() - start

        # Descendants the command left behind (daemons, detached workers)
        leftovers = ProcessTree(None, group_id)
        if leftovers.members():
            logger.warning("Command exited but left processes behind, stopping them")
            self._stop_tree(leftovers)

        if code == 0:
            logger.info("Process exited with code 0 after %.0fs", duration)
            return ExitOutcome.success(duration)
        logger.info("Process exited with code %s after %.0fs", code, duration)
        return ExitOutcome.failure(code, duration)

    def _stop_tree(self, tree: ProcessTree) -> None:
        """Graceful termination, grace interval, then forced termination."""
        procs = tree.terminate(GRACEFUL)
        logger.info("Sent graceful termination to %d process(es)", len(procs))
        alive = tree.wait(procs, self.grace_seconds)

        # Pick up anything spawned during the grace interval
        alive = list({proc.pid: proc for proc in alive + tree.members()}.values())
        if not alive:
            logger.info("Process tree exited within grace interval")
            return

        logger.warning("Force killing %d remaining process(es)", len(alive))
        tree.terminate(FORCED)
        survivors = tree.wait(alive, self.kill_wait_seconds)
        if survivors:
            logger.error(
                "Processes still alive after forced termination: %s",
                ", ".join(str(proc.pid) for proc in survivors),
            )
        else:
            logger.info("Process tree forcefully terminated")
