"""Tests for build pipeline models."""

from pathlib import Path

import pytest
from pydantic import ValidationError

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
    BuildStatus,
    DaemonStatus,
    InvalidStateTransitionError,
    PipelineState,
    PushFailureCause,
    PushStatus,
)
from vllm_image_builder.models.daemon import DaemonState
from vllm_image_builder.models.pipeline import (
    EXIT_ABORTED,
    EXIT_CANCELLED,
    EXIT_OK,
    EXIT_PUSH_FAILED,
    PipelineResult,
)


class TestImageReference:
    """Tests for ImageReference."""

    def test_full_reference_with_prefix(self):
        """Test that a trailing slash on the prefix is normalized away."""
        ref = ImageReference(registry_prefix="docker.io/acme/", name="vllm-universal", tag="jais2-latest")
        assert ref.registry_prefix == "docker.io/acme"
        assert ref.repository == "docker.io/acme/vllm-universal"
        assert ref.full == "docker.io/acme/vllm-universal:jais2-latest"
        assert str(ref) == ref.full

    def test_full_reference_without_prefix(self):
        """Test a local-only reference."""
        ref = ImageReference(name="vllm-universal")
        assert ref.full == "vllm-universal:latest"

    @pytest.mark.parametrize("name", ["", "UPPER", "bad name", "-leading"])
    def test_invalid_name_rejected(self, name: str):
        """Test that malformed names fail validation."""
        with pytest.raises(ValidationError):
            ImageReference(name=name)

    def test_invalid_tag_rejected(self):
        """Test that a tag with illegal characters fails validation."""
        with pytest.raises(ValidationError):
            ImageReference(name="vllm", tag="bad:tag")

    def test_prefix_with_whitespace_rejected(self):
        """Test that whitespace inside the prefix fails validation."""
        with pytest.raises(ValidationError):
            ImageReference(registry_prefix="docker.io/ac me", name="vllm")

    def test_is_immutable(self):
        """Test that references cannot be modified after creation."""
        ref = ImageReference(name="vllm")
        with pytest.raises(ValidationError):
            ref.tag = "other"


class TestResourceLimits:
    """Tests for ResourceLimits."""

    def test_unconstrained_by_default(self):
        assert ResourceLimits().is_unconstrained

    def test_memory_normalized_to_lowercase(self):
        limits = ResourceLimits(memory="4G")
        assert limits.memory == "4g"
        assert not limits.is_unconstrained

    @pytest.mark.parametrize("memory", ["lots", "4 g", "-1g", "4t"])
    def test_invalid_memory_rejected(self, memory: str):
        with pytest.raises(ValidationError):
            ResourceLimits(memory=memory)

    def test_cpu_count_must_be_positive(self):
        with pytest.raises(ValidationError):
            ResourceLimits(cpu_count=0)


class TestBuildRequest:
    """Tests for BuildRequest."""

    def test_defaults(self):
        """Test that optional fields default to an unconstrained standard build."""
        request = BuildRequest(
            dockerfile_path=Path("Dockerfile"),
            context_path=Path("."),
            image=ImageReference(name="vllm"),
        )
        assert request.resource_limits.is_unconstrained
        assert request.backend_override is None
        assert request.build_args == {}

    def test_is_read_only(self):
        request = BuildRequest(
            dockerfile_path=Path("Dockerfile"),
            context_path=Path("."),
            image=ImageReference(name="vllm"),
        )
        with pytest.raises(ValidationError):
            request.no_cache = True


class TestCapabilitySnapshot:
    """Tests for CapabilitySnapshot."""

    def test_snapshot_is_immutable(self):
        snapshot = CapabilitySnapshot(
            has_daemonless_builder=True,
            has_daemon_builder=False,
            running_in_container=True,
            has_user_namespace=True,
        )
        with pytest.raises(ValidationError):
            snapshot.has_daemon_builder = True
        assert snapshot.probed_at.tzinfo is not None


class TestDaemonState:
    """Tests for the daemon lifecycle state."""

    def test_valid_lifecycle(self):
        """Test NotStarted -> Starting -> Ready."""
        state = DaemonState()
        state.transition(DaemonStatus.STARTING)
        state.transition(DaemonStatus.READY)
        assert state.is_ready
        assert state.is_terminal
        assert state.history == [DaemonStatus.NOT_STARTED, DaemonStatus.STARTING, DaemonStatus.READY]

    def test_failed_records_error(self):
        state = DaemonState()
        state.transition(DaemonStatus.STARTING)
        state.transition(DaemonStatus.FAILED, error_message="timed out")
        assert state.error_message == "timed out"
        assert state.is_terminal
        assert not state.is_ready

    def test_cannot_skip_starting(self):
        with pytest.raises(InvalidStateTransitionError):
            DaemonState().transition(DaemonStatus.READY)

    @pytest.mark.parametrize("terminal", [DaemonStatus.READY, DaemonStatus.FAILED])
    def test_terminal_states_reject_transitions(self, terminal: DaemonStatus):
        """Test that a finished attempt cannot be restarted."""
        state = DaemonState()
        state.transition(DaemonStatus.STARTING)
        state.transition(terminal)
        with pytest.raises(InvalidStateTransitionError):
            state.transition(DaemonStatus.STARTING)


class TestPushOutcome:
    """Tests for PushOutcome constructors."""

    def test_skipped(self):
        outcome = PushOutcome.skipped("NoRegistryConfigured")
        assert outcome.status == PushStatus.SKIPPED
        assert outcome.cause is None

    def test_failed_keeps_cause(self):
        outcome = PushOutcome.failed(PushFailureCause.AUTHENTICATION, "unauthorized", "r/x:1")
        assert outcome.status == PushStatus.FAILED
        assert outcome.cause == PushFailureCause.AUTHENTICATION


class TestPipelineResult:
    """Tests for PipelineResult exit codes."""

    def _result(self, **kwargs) -> PipelineResult:
        request = BuildRequest(
            dockerfile_path=Path("Dockerfile"),
            context_path=Path("."),
            image=ImageReference(name="vllm"),
        )
        values = {
            "request": request,
            "final_state": PipelineState.DONE,
            "last_state": PipelineState.PUSHING,
        }
        values.update(kwargs)
        return PipelineResult(**values)

    def _built(self) -> BuildOutcome:
        return BuildOutcome(
            backend=Backend.BUILDAH,
            status=BuildStatus.SUCCESS,
            image_reference="vllm:latest",
        )

    def test_done_and_pushed_is_success(self):
        result = self._result(build_outcome=self._built(), push_outcome=PushOutcome.pushed("vllm:latest"))
        assert result.exit_code == EXIT_OK
        assert result.built
        assert result.backend_used == Backend.BUILDAH

    def test_done_and_skipped_is_success(self):
        result = self._result(build_outcome=self._built(), push_outcome=PushOutcome.skipped("local"))
        assert result.exit_code == EXIT_OK
        assert not result.partial

    def test_push_failure_is_partial_success(self):
        result = self._result(
            build_outcome=self._built(),
            push_outcome=PushOutcome.failed(PushFailureCause.CONNECTIVITY, "refused"),
        )
        assert result.partial
        assert result.built
        assert result.exit_code == EXIT_PUSH_FAILED

    def test_aborted(self):
        result = self._result(
            final_state=PipelineState.ABORTED,
            last_state=PipelineState.SELECTING_BACKEND,
            abort_reason=AbortReason.NO_BACKEND_AVAILABLE,
        )
        assert result.exit_code == EXIT_ABORTED
        assert result.backend_used is None

    def test_cancelled(self):
        result = self._result(
            final_state=PipelineState.ABORTED,
            last_state=PipelineState.BUILDING,
            abort_reason=AbortReason.CANCELLED,
        )
        assert result.exit_code == EXIT_CANCELLED
