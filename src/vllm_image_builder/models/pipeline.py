"""Models describing a full orchestrator run."""

from pydantic import BaseModel, Field

from vllm_image_builder.models.build import BuildOutcome, BuildRequest, CapabilitySnapshot, PushOutcome
from vllm_image_builder.models.common import (
    AbortReason,
    Backend,
    DaemonStatus,
    PipelineState,
    PushStatus,
)

EXIT_OK = 0
EXIT_ABORTED = 1
EXIT_INVALID_INPUT = 2
EXIT_PUSH_FAILED = 3
EXIT_CANCELLED = 130


class BuildAttempt(BaseModel):
    """One pass through backend preparation and build."""

    backend: Backend
    daemon_status: DaemonStatus | None = None
    daemon_error: str | None = None
    outcome: BuildOutcome | None = None


class PipelineResult(BaseModel):
    """Final report of an orchestrator run.

    ``last_state`` is the last working state reached before the run ended,
    so an abort can be reported as "aborted while preparing daemon".
    """

    request: BuildRequest
    final_state: PipelineState
    last_state: PipelineState
    abort_reason: AbortReason | None = None
    message: str | None = None
    snapshot: CapabilitySnapshot | None = None
    attempts: list[BuildAttempt] = Field(default_factory=list)
    build_outcome: BuildOutcome | None = None
    push_outcome: PushOutcome | None = None
    state_history: list[PipelineState] = Field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def built(self) -> bool:
        return self.build_outcome is not None and self.build_outcome.succeeded

    @property
    def partial(self) -> bool:
        """Built but the push failed."""
        return (
            self.final_state == PipelineState.DONE
            and self.push_outcome is not None
            and self.push_outcome.status == PushStatus.FAILED
        )

    @property
    def backend_used(self) -> Backend | None:
        if self.build_outcome is None:
            return None
        return self.build_outcome.backend

    @property
    def exit_code(self) -> int:
        """Process exit code for this result."""
        if self.final_state == PipelineState.ABORTED:
            if self.abort_reason == AbortReason.CANCELLED:
                return EXIT_CANCELLED
            return EXIT_ABORTED
        if self.partial:
            return EXIT_PUSH_FAILED
        return EXIT_OK
