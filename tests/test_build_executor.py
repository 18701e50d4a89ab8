"""Tests for BuildExecutor and exit-code classification."""

import pytest

from vllm_image_builder.models.build import ResourceLimits
from vllm_image_builder.models.common import (
    Backend,
    BuildFailureReason,
    BuildStatus,
    ExitSignal,
)
from vllm_image_builder.services.build_executor import BuildExecutor
from vllm_image_builder.services.builder_base import BuildInvocation
from vllm_image_builder.services.exit_codes import classify_exit_code, status_for_signal


@pytest.fixture
def executor() -> BuildExecutor:
    return BuildExecutor()


class TestExitCodeClassification:
    """Tests for exit-code classification."""

    @pytest.mark.parametrize(
        ("code", "signal"),
        [
            (137, ExitSignal.OOM_KILLED),
            (125, ExitSignal.TOOL_ERROR),
            (126, ExitSignal.TOOL_ERROR),
            (127, ExitSignal.TOOL_ERROR),
            (1, ExitSignal.UNKNOWN),
            (2, ExitSignal.UNKNOWN),
            (143, ExitSignal.UNKNOWN),
            (None, ExitSignal.UNKNOWN),
        ],
    )
    def test_classify(self, code, signal):
        assert classify_exit_code(code) == signal

    def test_only_tool_errors_are_retryable(self):
        assert status_for_signal(ExitSignal.TOOL_ERROR) == BuildStatus.RETRYABLE_FAILURE
        assert status_for_signal(ExitSignal.OOM_KILLED) == BuildStatus.FAILED
        assert status_for_signal(ExitSignal.UNKNOWN) == BuildStatus.FAILED


class TestExecute:
    """Tests for BuildExecutor.execute."""

    def test_success(self, executor: BuildExecutor, fake_builder, make_request):
        builder = fake_builder(Backend.BUILDAH)
        request = make_request()

        outcome = executor.execute(builder, request)

        assert outcome.status == BuildStatus.SUCCESS
        assert outcome.image_reference == "vllm-universal:latest"
        assert outcome.backend == Backend.BUILDAH
        assert outcome.reason is None

    def test_oom_sentinel_always_classifies_as_oom(self, executor: BuildExecutor, fake_builder, make_request):
        """Test that 137 is OOMKilled regardless of the build output."""
        builder = fake_builder(
            Backend.DOCKER,
            invocation=BuildInvocation(
                exit_code=137,
                message="tool error: command not found",
                log_tail=["exit code: 127"],
            ),
        )

        outcome = executor.execute(builder, make_request())

        assert outcome.status == BuildStatus.FAILED
        assert outcome.exit_signal == ExitSignal.OOM_KILLED
        assert outcome.reason == BuildFailureReason.OOM_KILLED
        assert outcome.exit_code == 137

    def test_tool_error_is_retryable(self, executor: BuildExecutor, fake_builder, make_request):
        builder = fake_builder(Backend.BUILDAH, invocation=BuildInvocation(exit_code=125))

        outcome = executor.execute(builder, make_request())

        assert outcome.status == BuildStatus.RETRYABLE_FAILURE
        assert outcome.reason == BuildFailureReason.TOOL_ERROR

    def test_infrastructure_error_without_code_is_tool_error(
        self, executor: BuildExecutor, fake_builder, make_request
    ):
        builder = fake_builder(
            Backend.DOCKER,
            invocation=BuildInvocation(exit_code=None, message="API error", infrastructure_error=True),
        )

        outcome = executor.execute(builder, make_request())

        assert outcome.exit_signal == ExitSignal.TOOL_ERROR
        assert outcome.status == BuildStatus.RETRYABLE_FAILURE

    def test_unknown_keeps_raw_code(self, executor: BuildExecutor, fake_builder, make_request):
        builder = fake_builder(
            Backend.BUILDAH,
            invocation=BuildInvocation(exit_code=2, log_tail=["pip: error"]),
        )

        outcome = executor.execute(builder, make_request())

        assert outcome.status == BuildStatus.FAILED
        assert outcome.exit_signal == ExitSignal.UNKNOWN
        assert outcome.exit_code == 2
        assert outcome.log_tail == ["pip: error"]

    def test_postcondition_violation(self, executor: BuildExecutor, fake_builder, make_request):
        """Test that a reported success with no image in storage is a failure."""
        builder = fake_builder(Backend.DOCKER, exists=False)

        outcome = executor.execute(builder, make_request())

        assert outcome.status == BuildStatus.FAILED
        assert outcome.reason == BuildFailureReason.POSTCONDITION_VIOLATION
        assert outcome.image_reference is None

    def test_missing_dockerfile(self, executor: BuildExecutor, fake_builder, make_request, build_context):
        builder = fake_builder(Backend.BUILDAH)
        request = make_request(dockerfile_path=build_context / "Dockerfile.missing")

        outcome = executor.execute(builder, request)

        assert outcome.reason == BuildFailureReason.MISSING_BUILD_INPUT
        assert "Dockerfile.missing" in outcome.message
        assert builder.built == []

    def test_missing_context(self, executor: BuildExecutor, fake_builder, make_request, tmp_path):
        builder = fake_builder(Backend.BUILDAH)
        request = make_request(context_path=tmp_path / "nowhere")

        outcome = executor.execute(builder, request)

        assert outcome.reason == BuildFailureReason.MISSING_BUILD_INPUT
        assert builder.built == []


class TestLimitDegradation:
    """Tests for resource limits a backend cannot express."""

    def test_degraded_limit_does_not_fail_build(self, executor: BuildExecutor, fake_builder, make_request):
        builder = fake_builder(
            Backend.BUILDAH,
            degraded=["cpu_count: buildah has no --cpuset-cpus/--jobs, limit dropped"],
        )
        request = make_request(resource_limits=ResourceLimits(memory="4g", cpu_count=2))

        outcome = executor.execute(builder, request)

        assert outcome.status == BuildStatus.SUCCESS
        assert outcome.degraded_limits == ["cpu_count: buildah has no --cpuset-cpus/--jobs, limit dropped"]
        assert builder.plans[0].memory == "4g"

    def test_memory_limit_round_trip(self, executor: BuildExecutor, fake_builder, make_request):
        """Test that a 4g build that succeeds leaves the image queryable."""
        builder = fake_builder(Backend.DOCKER)
        request = make_request(resource_limits=ResourceLimits(memory="4g"))

        outcome = executor.execute(builder, request)

        assert outcome.succeeded
        assert builder.image_exists(request.image.full) is True

    def test_unusable_backend_is_retryable(self, executor: BuildExecutor, fake_builder, make_request):
        """Test that a backend failing its availability check never starts a build."""
        builder = fake_builder(Backend.BUILDAH, available=False)

        outcome = executor.execute(builder, make_request())

        assert outcome.status == BuildStatus.RETRYABLE_FAILURE
        assert outcome.reason == BuildFailureReason.TOOL_ERROR
        assert builder.built == []
