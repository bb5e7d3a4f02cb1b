"""Phase state machine for the build relay.

The phase is the durable cursor of build progress. It only ever moves
forward, one step per verified success:

    init -> build -> package -> done

The machine itself does no file I/O. The marker text is produced and parsed
here but written and read only by the checkpoint layer, so the marker and
the filesystem state it describes always travel in the same snapshot.
"""

from enum import Enum
from typing import Optional, Tuple


class Phase(str, Enum):
    INIT = "init"
    BUILD = "build"
    PACKAGE = "package"
    DONE = "done"


PHASE_ORDER = (Phase.INIT, Phase.BUILD, Phase.PACKAGE, Phase.DONE)


class PhaseTransitionError(Exception):
    """Raised when a transition would skip, repeat, or regress a phase."""
    pass


class MarkerError(Exception):
    """Raised when a persisted marker does not name a known phase."""
    pass


def next_phase(phase: Phase) -> Phase:
    """Return the phase that follows `phase`. `done` has no successor."""
    if phase == Phase.DONE:
        raise PhaseTransitionError("done is terminal and has no next phase")
    return PHASE_ORDER[PHASE_ORDER.index(phase) + 1]


def is_terminal(phase: Phase) -> bool:
    return phase == Phase.DONE


def format_marker(phase: Phase, continuation: Optional[str] = None) -> str:
    """
    Render the marker record.

    First line is the phase token. Anything after it is free-form
    continuation data owned by whoever advanced the phase.
    """
    if continuation:
        return f"{phase.value}\n{continuation.rstrip()}\n"
    return phase.value


def parse_marker(text: str) -> Tuple[Phase, Optional[str]]:
    """Parse marker text into (phase, continuation)."""
    stripped = text.strip()
    if not stripped:
        raise MarkerError("marker is empty")

    token, _, rest = stripped.partition("\n")
    token = token.strip()
    try:
        phase = Phase(token)
    except ValueError:
        raise MarkerError(f"unknown phase in marker: {token!r}")

    continuation = rest.strip() or None
    return phase, continuation


class PhaseMachine:
    """
    Holds the current phase for one window.

    Constructed from the restored marker (or nothing, on the first window).
    `advance` is called exactly once per successful phase command; failures
    and timeouts never touch it.
    """

    def __init__(self, phase: Optional[Phase] = None, continuation: Optional[str] = None):
        self._phase = phase if phase is not None else Phase.INIT
        self.continuation = continuation
        self.transitions = 0

    @classmethod
    def from_marker(cls, text: Optional[str]) -> "PhaseMachine":
        if text is None:
            return cls()
        phase, continuation = parse_marker(text)
        return cls(phase, continuation)

    def current_phase(self) -> Phase:
        return self._phase

    def is_terminal(self, phase: Optional[Phase] = None) -> bool:
        return is_terminal(self._phase if phase is None else phase)

    def advance(self, from_phase: Phase, continuation: Optional[str] = None) -> Phase:
        """
        Move from `from_phase` to the next phase.

        `from_phase` must equal the current phase. Passing it explicitly
        turns a stale caller (one that ran a phase the machine has already
        left) into an error instead of a silent skip.
        """
        if from_phase != self._phase:
            raise PhaseTransitionError(
                f"cannot advance from {from_phase.value}: current phase is {self._phase.value}"
            )
        self._phase = next_phase(from_phase)
        self.continuation = continuation
        self.transitions += 1
        return self._phase

    def marker(self) -> str:
        return format_marker(self._phase, self.continuation)
