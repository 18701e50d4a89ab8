"""BuildOrchestrator: the end-to-end build pipeline with backend fallback."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TYPE_CHECKING

from opentelemetry.trace import Span

from vllm_image_builder.core.config import Settings, get_settings
from vllm_image_builder.core.telemetry import get_tracer
from vllm_image_builder.models.build import BuildOutcome, BuildRequest, CapabilitySnapshot, PushOutcome
from vllm_image_builder.models.common import (
    AbortReason,
    Backend,
    BuildFailureReason,
    InvalidStateTransitionError,
    PipelineState,
)
from vllm_image_builder.models.pipeline import BuildAttempt, PipelineResult
from vllm_image_builder.services.backend_selector import (
    NoBackendAvailable,
    select_backend,
    selection_warning,
)
from vllm_image_builder.services.build_executor import BuildExecutor
from vllm_image_builder.services.buildah_builder import BuildahBuilder
from vllm_image_builder.services.capability_probe import CapabilityProbe
from vllm_image_builder.services.daemon_lifecycle import DaemonLifecycleManager
from vllm_image_builder.services.docker_builder import DockerBuilder
from vllm_image_builder.services.push_manager import PushManager

if TYPE_CHECKING:
    from vllm_image_builder.services.builder_base import ImageBuilder

logger = logging.getLogger(__name__)

# Initial attempt plus one fallback
MAX_BUILD_ATTEMPTS = 2

# Failures that would repeat on any backend
NO_FALLBACK_REASONS = frozenset(
    {BuildFailureReason.OOM_KILLED, BuildFailureReason.MISSING_BUILD_INPUT}
)

# Valid state transitions as a mapping from current state to allowed target states.
# Every working state may abort, which also covers operator cancellation.
VALID_TRANSITIONS: dict[PipelineState, set[PipelineState]] = {
    PipelineState.PROBING: {PipelineState.SELECTING_BACKEND, PipelineState.ABORTED},
    PipelineState.SELECTING_BACKEND: {
        PipelineState.PREPARING_DAEMON,
        PipelineState.BUILDING,
        PipelineState.ABORTED,
    },
    PipelineState.PREPARING_DAEMON: {
        PipelineState.BUILDING,
        PipelineState.SELECTING_BACKEND,
        PipelineState.ABORTED,
    },
    PipelineState.BUILDING: {
        PipelineState.SELECTING_BACKEND,
        PipelineState.PUSHING,
        PipelineState.ABORTED,
    },
    PipelineState.PUSHING: {PipelineState.DONE, PipelineState.ABORTED},
    PipelineState.DONE: set(),  # Terminal
    PipelineState.ABORTED: set(),  # Terminal
}

BuilderFactory = Callable[[Backend, CapabilitySnapshot], "ImageBuilder"]


class _PipelineRun:
    """Mutable bookkeeping for one orchestrator run."""

    def __init__(self, request: BuildRequest, span: Span) -> None:
        self.request = request
        self.span = span
        self.started = time.monotonic()
        self.state = PipelineState.PROBING
        self.last_state = PipelineState.PROBING
        self.history: list[PipelineState] = [PipelineState.PROBING]
        self.snapshot: CapabilitySnapshot | None = None
        self.attempts: list[BuildAttempt] = []
        self.excluded: set[Backend] = set()
        self.build_outcome: BuildOutcome | None = None
        self.push_outcome: PushOutcome | None = None

    @property
    def is_terminal(self) -> bool:
        return not VALID_TRANSITIONS[self.state]

    def transition(self, target: PipelineState) -> None:
        """Move the pipeline to ``target``.

        Raises:
            InvalidStateTransitionError: If the transition is not allowed
        """
        if target not in VALID_TRANSITIONS[self.state]:
            raise InvalidStateTransitionError(
                f"Invalid pipeline transition: {self.state.value} -> {target.value}"
            )
        logger.info(f"Pipeline state: {self.state.value} -> {target.value}")
        self.span.add_event(
            "state_transition", {"from": self.state.value, "to": target.value}
        )
        self.last_state = self.state
        self.state = target
        self.history.append(target)

    def finish(
        self, abort_reason: AbortReason | None = None, message: str | None = None
    ) -> PipelineResult:
        result = PipelineResult(
            request=self.request,
            final_state=self.state,
            last_state=self.last_state,
            abort_reason=abort_reason,
            message=message,
            snapshot=self.snapshot,
            attempts=self.attempts,
            build_outcome=self.build_outcome,
            push_outcome=self.push_outcome,
            state_history=self.history,
            duration_seconds=time.monotonic() - self.started,
        )
        self.span.set_attribute("pipeline.final_state", self.state.value)
        if abort_reason is not None:
            self.span.set_attribute("pipeline.abort_reason", abort_reason.value)
            logger.error(
                f"Build aborted while {self.last_state.value}: {abort_reason.value}"
                + (f" ({message})" if message else "")
            )
        return result


class BuildOrchestrator:
    """Runs probe, selection, daemon preparation, build and push.

    Build failures fall back to the other backend at most once. The failed
    backend is excluded and selection re-runs, so an operator override only
    applies to the first attempt. An OOM kill never falls back since the
    other backend would hit the same memory ceiling.

    Example:
        ```python
        orchestrator = BuildOrchestrator()
        result = orchestrator.run(request)
        sys.exit(result.exit_code)
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        probe: CapabilityProbe | None = None,
        executor: BuildExecutor | None = None,
        push_manager: PushManager | None = None,
        daemon_manager: DaemonLifecycleManager | None = None,
        builder_factory: BuilderFactory | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            settings: Application settings (uses default if not provided)
            probe: Capability probe
            executor: Build executor
            push_manager: Push manager
            daemon_manager: Daemon manager, created from the snapshot if not provided
            builder_factory: Creates the concrete builder for a backend
        """
        self.settings = settings or get_settings()
        self.probe = probe or CapabilityProbe(self.settings)
        self.executor = executor or BuildExecutor()
        self.push_manager = push_manager or PushManager(self.settings)
        self.daemon_manager = daemon_manager
        self.builder_factory = builder_factory or self._default_builder
        self.tracer = get_tracer(__name__)

    def _default_builder(self, backend: Backend, snapshot: CapabilitySnapshot) -> ImageBuilder:
        if backend == Backend.BUILDAH:
            return BuildahBuilder(self.settings, snapshot)
        return DockerBuilder(self.settings)

    def _get_daemon_manager(self, snapshot: CapabilitySnapshot) -> DaemonLifecycleManager:
        if self.daemon_manager is None:
            self.daemon_manager = DaemonLifecycleManager(
                self.settings, running_in_container=snapshot.running_in_container
            )
        return self.daemon_manager

    def run(self, request: BuildRequest) -> PipelineResult:
        """Run the pipeline for ``request`` and report how it ended."""
        with self.tracer.start_as_current_span("build_pipeline") as span:
            span.set_attribute("image.reference", request.image.full)
            run = _PipelineRun(request, span)
            builders: dict[Backend, ImageBuilder] = {}
            try:
                return self._run(run, builders)
            except KeyboardInterrupt:
                logger.warning("Build cancelled by operator")
                if not run.is_terminal:
                    run.transition(PipelineState.ABORTED)
                return run.finish(AbortReason.CANCELLED, "interrupted")
            finally:
                for builder in builders.values():
                    builder.close()
                if self.daemon_manager is not None:
                    self.daemon_manager.release()

    def _run(self, run: _PipelineRun, builders: dict[Backend, ImageBuilder]) -> PipelineResult:
        request = run.request
        snapshot = self.probe.probe()
        run.snapshot = snapshot
        run.transition(PipelineState.SELECTING_BACKEND)

        while True:
            choice = select_backend(snapshot, request.backend_override, run.excluded)
            if isinstance(choice, NoBackendAvailable):
                run.transition(PipelineState.ABORTED)
                return run.finish(AbortReason.NO_BACKEND_AVAILABLE, choice.reason)

            backend = choice
            logger.info(f"Selected backend: {backend.value}")
            warning = selection_warning(snapshot, backend)
            if warning:
                logger.warning(warning)

            attempt = BuildAttempt(backend=backend)
            run.attempts.append(attempt)

            if backend.requires_daemon:
                run.transition(PipelineState.PREPARING_DAEMON)
                daemon_state = self._get_daemon_manager(snapshot).ensure_ready(
                    self.settings.daemon_startup_timeout_seconds
                )
                attempt.daemon_status = daemon_state.status
                attempt.daemon_error = daemon_state.error_message
                if not daemon_state.is_ready:
                    run.excluded.add(backend)
                    can_fall_back = self._can_fall_back(run, snapshot)
                    if self.settings.fallback_on_daemon_failure and can_fall_back:
                        logger.warning("Daemon did not become ready, falling back")
                        run.transition(PipelineState.SELECTING_BACKEND)
                        continue
                    run.transition(PipelineState.ABORTED)
                    return run.finish(AbortReason.DAEMON_STARTUP_TIMEOUT, daemon_state.error_message)

            run.transition(PipelineState.BUILDING)
            builder = builders.get(backend)
            if builder is None:
                builder = self.builder_factory(backend, snapshot)
                builders[backend] = builder

            with self.tracer.start_as_current_span("build_attempt") as attempt_span:
                attempt_span.set_attribute("build.backend", backend.value)
                attempt_span.set_attribute("build.attempt", len(run.attempts))
                outcome = self.executor.execute(builder, request)
                attempt_span.set_attribute("build.status", outcome.status.value)
            attempt.outcome = outcome
            run.build_outcome = outcome

            if outcome.succeeded:
                break

            run.excluded.add(backend)
            if outcome.reason in NO_FALLBACK_REASONS:
                run.transition(PipelineState.ABORTED)
                abort_reason = (
                    AbortReason.OOM_KILLED
                    if outcome.reason == BuildFailureReason.OOM_KILLED
                    else AbortReason.BUILD_FAILED
                )
                return run.finish(abort_reason, outcome.message)

            if not self._can_fall_back(run, snapshot):
                run.transition(PipelineState.ABORTED)
                return run.finish(AbortReason.BUILD_FAILED, outcome.message)

            logger.warning(f"Build failed on {backend.value}, falling back to another backend")
            run.transition(PipelineState.SELECTING_BACKEND)

        run.transition(PipelineState.PUSHING)
        run.push_outcome = self.push_manager.push(builders[run.build_outcome.backend], request.image)
        run.transition(PipelineState.DONE)
        logger.info(
            f"Build finished: {request.image.full} via {run.build_outcome.backend.value}, "
            f"push {run.push_outcome.status.value}"
        )
        return run.finish()

    def _can_fall_back(self, run: _PipelineRun, snapshot: CapabilitySnapshot) -> bool:
        """True if the attempt budget allows one more backend and one is left."""
        if len(run.attempts) >= MAX_BUILD_ATTEMPTS:
            return False
        alternate = select_backend(snapshot, run.request.backend_override, run.excluded)
        return not isinstance(alternate, NoBackendAvailable)
