"""Default tunables for the build relay."""

# Internal cap per window. Must stay below the host's hard cap so the
# checkpoint upload still fits after a timed-out phase is stopped.
DEFAULT_WINDOW_CAP_MINUTES = 300.0

# Clamp for a phase budget that is positive but too short to be useful
DEFAULT_FLOOR_MINUTES = 20.0

# Budget used when the window is already past its cap
DEFAULT_FALLBACK_MINUTES = 15.0

# Time between graceful and forced termination of a timed-out process tree
DEFAULT_GRACE_SECONDS = 30.0

# Pause before packing the snapshot so killed tools release their files
DEFAULT_SETTLE_SECONDS = 5.0

DEFAULT_RETRY_ATTEMPTS = 5
DEFAULT_RETRY_DELAY_SECONDS = 10.0

DEFAULT_CHECKPOINT_RETENTION_DAYS = 1
DEFAULT_ARTIFACT_RETENTION_DAYS = 7

DEFAULT_CHECKPOINT_NAME = "build-artifact"
DEFAULT_ARTIFACT_NAME = "build-output"

MARKER_FILENAME = "build-stage.txt"
SNAPSHOT_FILENAME = "build-state.tar.gz"
REPORTS_DIRNAME = "relay-reports"
