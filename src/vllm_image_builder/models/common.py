"""Common enums and types used across models."""

from enum import Enum


class Backend(str, Enum):
    """Image build backends."""

    BUILDAH = "buildah"
    DOCKER = "docker"

    @property
    def requires_daemon(self) -> bool:
        """True if the backend needs a long-lived daemon before building."""
        return self is Backend.DOCKER


class DaemonStatus(str, Enum):
    """Lifecycle of a container-build daemon."""

    NOT_STARTED = "not_started"
    STARTING = "starting"
    READY = "ready"
    FAILED = "failed"


class BuildStatus(str, Enum):
    """Status of a single build attempt."""

    SUCCESS = "success"
    FAILED = "failed"
    RETRYABLE_FAILURE = "retryable_failure"


class ExitSignal(str, Enum):
    """Classified cause of a non-zero backend termination."""

    OOM_KILLED = "oom_killed"
    TOOL_ERROR = "tool_error"
    UNKNOWN = "unknown"


class BuildFailureReason(str, Enum):
    """Why a build attempt did not produce an image."""

    OOM_KILLED = "oom_killed"
    TOOL_ERROR = "tool_error"
    UNKNOWN = "unknown"
    POSTCONDITION_VIOLATION = "postcondition_violation"
    MISSING_BUILD_INPUT = "missing_build_input"


class PushStatus(str, Enum):
    """Result of the push step."""

    SKIPPED = "skipped"
    PUSHED = "pushed"
    FAILED = "failed"


class PushFailureCause(str, Enum):
    """Underlying cause of a failed push."""

    AUTHENTICATION = "authentication"
    CONNECTIVITY = "connectivity"
    UNKNOWN = "unknown"


class PipelineState(str, Enum):
    """States of the build orchestrator."""

    PROBING = "probing"
    SELECTING_BACKEND = "selecting_backend"
    PREPARING_DAEMON = "preparing_daemon"
    BUILDING = "building"
    PUSHING = "pushing"
    DONE = "done"
    ABORTED = "aborted"


class AbortReason(str, Enum):
    """Classified reason for an aborted pipeline."""

    NO_BACKEND_AVAILABLE = "no_backend_available"
    DAEMON_STARTUP_TIMEOUT = "daemon_startup_timeout"
    OOM_KILLED = "oom_killed"
    BUILD_FAILED = "build_failed"
    CANCELLED = "cancelled"


class BuildProfile(str, Enum):
    """Preset build policies, one per legacy script variant."""

    STANDARD = "standard"
    PRIVILEGED = "privileged"
    QUICK = "quick"
    OPTIMIZED = "optimized"


class InvalidStateTransitionError(Exception):
    """Raised when an invalid state transition is attempted."""

    pass
