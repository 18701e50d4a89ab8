"""Shared fixtures for vllm-image-builder tests."""

from pathlib import Path

import pytest

from vllm_image_builder.core.config import Settings
from vllm_image_builder.models.build import (
    BuildRequest,
    CapabilitySnapshot,
    ImageReference,
    PushOutcome,
    ResourceLimits,
)
from vllm_image_builder.models.common import Backend
from vllm_image_builder.services.builder_base import BuildInvocation, ImageBuilder, LimitPlan


class FakeBuilder(ImageBuilder):
    """In-memory ImageBuilder with scripted results."""

    def __init__(
        self,
        backend: Backend,
        invocation: BuildInvocation | None = None,
        exists: bool = True,
        push_outcome: PushOutcome | None = None,
        degraded: list[str] | None = None,
        interrupt: bool = False,
        available: bool = True,
    ) -> None:
        self.backend = backend
        self.available = available
        self.invocation = invocation or BuildInvocation(exit_code=0)
        self.exists = exists
        self.push_outcome = push_outcome
        self.degraded = degraded or []
        self.interrupt = interrupt
        self.built: list[BuildRequest] = []
        self.plans: list[LimitPlan] = []
        self.pushed: list[str] = []
        self.images: set[str] = set()
        self.closed = False

    def probe_available(self) -> bool:
        return self.available

    def plan_limits(self, limits: ResourceLimits) -> LimitPlan:
        return LimitPlan(
            memory=limits.memory,
            cpu_count=limits.cpu_count,
            degraded=list(self.degraded),
        )

    def build(self, request: BuildRequest, plan: LimitPlan) -> BuildInvocation:
        self.built.append(request)
        self.plans.append(plan)
        if self.interrupt:
            raise KeyboardInterrupt
        if self.invocation.succeeded and self.exists:
            self.images.add(request.image.full)
        return self.invocation

    def image_exists(self, image_reference: str) -> bool:
        return image_reference in self.images

    def push(self, image_reference: str) -> PushOutcome:
        self.pushed.append(image_reference)
        return self.push_outcome or PushOutcome.pushed(image_reference)

    def close(self) -> None:
        self.closed = True


class FakeClock:
    """Clock that advances only when slept on."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Create test settings pointing at temporary paths."""
    return Settings(
        docker_socket_path=tmp_path / "docker.sock",
        docker_data_root=tmp_path / "docker-data",
        docker_exec_root=tmp_path / "docker-exec",
        dockerd_log_path=tmp_path / "dockerd.log",
        buildah_cache_dir=tmp_path / "buildah-cache",
        container_marker_files=[tmp_path / ".dockerenv"],
        daemon_startup_timeout_seconds=5.0,
        daemon_poll_interval_seconds=1.0,
        push_remote=None,
        registry_username=None,
        registry_password=None,
        daemon_autostart=None,
        daemon_use_sudo=False,
    )


@pytest.fixture
def build_context(tmp_path: Path) -> Path:
    """Create a build context containing a Dockerfile."""
    context = tmp_path / "context"
    context.mkdir()
    (context / "Dockerfile").write_text("FROM python:3.12-slim\n")
    return context


@pytest.fixture
def make_request(build_context: Path):
    """Factory for BuildRequests against the temporary build context."""

    def _make(**overrides) -> BuildRequest:
        values = {
            "dockerfile_path": build_context / "Dockerfile",
            "context_path": build_context,
            "image": ImageReference(name="vllm-universal", tag="latest"),
        }
        values.update(overrides)
        return BuildRequest(**values)

    return _make


@pytest.fixture
def make_snapshot():
    """Factory for CapabilitySnapshots."""

    def _make(
        buildah: bool = False,
        docker: bool = False,
        container: bool = False,
        userns: bool = False,
    ) -> CapabilitySnapshot:
        return CapabilitySnapshot(
            has_daemonless_builder=buildah,
            has_daemon_builder=docker,
            running_in_container=container,
            has_user_namespace=userns,
        )

    return _make


@pytest.fixture
def fake_builder() -> type[FakeBuilder]:
    """Factory for in-memory builders with scripted results."""
    return FakeBuilder


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()
