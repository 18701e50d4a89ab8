"""Classification of backend exit codes."""

from vllm_image_builder.models.common import BuildFailureReason, BuildStatus, ExitSignal

# 128 + SIGKILL: the kernel OOM killer (or a cgroup memory limit) killed the step
OOM_EXIT_CODE = 137

# Container runtime / tool infrastructure failures
#   125: the runtime or build tool itself failed
#   126: command found but not executable
#   127: command not found
TOOL_ERROR_EXIT_CODES: frozenset[int] = frozenset({125, 126, 127})


def classify_exit_code(exit_code: int | None) -> ExitSignal:
    """Map a non-zero backend exit code to an ExitSignal.

    A missing code (the tool failed without reporting one) is UNKNOWN.
    """
    if exit_code is None:
        return ExitSignal.UNKNOWN
    if exit_code == OOM_EXIT_CODE:
        return ExitSignal.OOM_KILLED
    if exit_code in TOOL_ERROR_EXIT_CODES:
        return ExitSignal.TOOL_ERROR
    return ExitSignal.UNKNOWN


def status_for_signal(signal: ExitSignal) -> BuildStatus:
    """Infrastructure faults may succeed elsewhere; the rest are plain failures."""
    if signal == ExitSignal.TOOL_ERROR:
        return BuildStatus.RETRYABLE_FAILURE
    return BuildStatus.FAILED


def reason_for_signal(signal: ExitSignal) -> BuildFailureReason:
    return {
        ExitSignal.OOM_KILLED: BuildFailureReason.OOM_KILLED,
        ExitSignal.TOOL_ERROR: BuildFailureReason.TOOL_ERROR,
        ExitSignal.UNKNOWN: BuildFailureReason.UNKNOWN,
    }[signal]
