"""BuildExecutor: runs one build on one backend and classifies the result."""

import logging
import time

from vllm_image_builder.models.build import BuildOutcome, BuildRequest
from vllm_image_builder.models.common import BuildFailureReason, BuildStatus, ExitSignal
from vllm_image_builder.services.builder_base import ImageBuilder
from vllm_image_builder.services.exit_codes import (
    classify_exit_code,
    reason_for_signal,
    status_for_signal,
)

logger = logging.getLogger(__name__)


class BuildExecutor:
    """Executes a build request on a concrete backend.

    The executor never raises for a failed build; every termination is
    turned into a BuildOutcome. It imposes no timeout of its own.
    KeyboardInterrupt is the one exception that passes through, after the
    backend has stopped its build.

    A build only counts as a success once the image can be found in the
    backend's local storage under the requested reference.
    """

    def execute(self, builder: ImageBuilder, request: BuildRequest) -> BuildOutcome:
        """Build ``request.image`` with ``builder``."""
        started = time.monotonic()
        image_reference = request.image.full

        missing = self._missing_inputs(request)
        if missing:
            message = f"Build input not found: {', '.join(missing)}"
            logger.error(message)
            return BuildOutcome(
                backend=builder.backend,
                status=BuildStatus.FAILED,
                reason=BuildFailureReason.MISSING_BUILD_INPUT,
                message=message,
            )

        if not builder.probe_available():
            message = f"{builder.backend.value} is not usable in this environment"
            logger.error(message)
            return BuildOutcome(
                backend=builder.backend,
                status=BuildStatus.RETRYABLE_FAILURE,
                reason=BuildFailureReason.TOOL_ERROR,
                exit_signal=ExitSignal.TOOL_ERROR,
                message=message,
            )

        plan = builder.plan_limits(request.resource_limits)
        for note in plan.degraded:
            logger.warning(f"Resource limit degraded on {builder.backend.value}: {note}")

        invocation = builder.build(request, plan)
        elapsed = time.monotonic() - started

        if not invocation.succeeded:
            if invocation.infrastructure_error:
                signal = ExitSignal.TOOL_ERROR
            else:
                signal = classify_exit_code(invocation.exit_code)
            status = status_for_signal(signal)
            logger.error(
                f"Build on {builder.backend.value} failed: {signal.value} "
                f"(exit code {invocation.exit_code})"
            )
            return BuildOutcome(
                backend=builder.backend,
                status=status,
                reason=reason_for_signal(signal),
                exit_signal=signal,
                exit_code=invocation.exit_code,
                message=invocation.message,
                degraded_limits=plan.degraded,
                log_tail=invocation.log_tail,
                duration_seconds=elapsed,
            )

        if not builder.image_exists(image_reference):
            message = f"{builder.backend.value} reported success but {image_reference} is not in local storage"
            logger.error(message)
            return BuildOutcome(
                backend=builder.backend,
                status=BuildStatus.FAILED,
                reason=BuildFailureReason.POSTCONDITION_VIOLATION,
                exit_code=invocation.exit_code,
                message=message,
                degraded_limits=plan.degraded,
                log_tail=invocation.log_tail,
                duration_seconds=elapsed,
            )

        logger.info(f"Built {image_reference} with {builder.backend.value} in {elapsed:.1f}s")
        return BuildOutcome(
            backend=builder.backend,
            status=BuildStatus.SUCCESS,
            image_reference=image_reference,
            exit_code=0,
            degraded_limits=plan.degraded,
            log_tail=invocation.log_tail,
            duration_seconds=elapsed,
        )

    def _missing_inputs(self, request: BuildRequest) -> list[str]:
        missing = []
        if not request.dockerfile_path.is_file():
            missing.append(f"Dockerfile {request.dockerfile_path}")
        if not request.context_path.is_dir():
            missing.append(f"build context {request.context_path}")
        return missing
