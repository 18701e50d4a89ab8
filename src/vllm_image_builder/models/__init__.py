"""Pydantic models for build requests, outcomes and state."""

from vllm_image_builder.models.build import (
    BuildOutcome,
    BuildRequest,
    CapabilitySnapshot,
    ImageReference,
    PushOutcome,
    ResourceLimits,
)
from vllm_image_builder.models.common import (
    AbortReason,
    Backend,
    BuildFailureReason,
    BuildProfile,
    BuildStatus,
    DaemonStatus,
    ExitSignal,
    InvalidStateTransitionError,
    PipelineState,
    PushFailureCause,
    PushStatus,
)
from vllm_image_builder.models.daemon import DaemonState
from vllm_image_builder.models.pipeline import BuildAttempt, PipelineResult

__all__ = [
    "AbortReason",
    "Backend",
    "BuildAttempt",
    "BuildFailureReason",
    "BuildOutcome",
    "BuildProfile",
    "BuildRequest",
    "BuildStatus",
    "CapabilitySnapshot",
    "DaemonState",
    "DaemonStatus",
    "ExitSignal",
    "ImageReference",
    "InvalidStateTransitionError",
    "PipelineResult",
    "PipelineState",
    "PushFailureCause",
    "PushOutcome",
    "PushStatus",
    "ResourceLimits",
]
