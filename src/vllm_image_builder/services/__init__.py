"""Service layer: probing, selection, daemon lifecycle, build and push."""

from vllm_image_builder.services.backend_selector import (
    NoBackendAvailable,
    select_backend,
    selection_warning,
)
from vllm_image_builder.services.build_executor import BuildExecutor
from vllm_image_builder.services.buildah_builder import BuildahBuilder
from vllm_image_builder.services.builder_base import BuildInvocation, ImageBuilder, LimitPlan
from vllm_image_builder.services.capability_probe import CapabilityProbe
from vllm_image_builder.services.daemon_lifecycle import (
    Clock,
    DaemonLifecycleManager,
    DockerdLauncher,
    SystemClock,
)
from vllm_image_builder.services.docker_builder import DockerBuilder
from vllm_image_builder.services.orchestrator import BuildOrchestrator
from vllm_image_builder.services.profiles import apply_profile
from vllm_image_builder.services.push_manager import PushManager, RegistryPolicy

__all__ = [
    "BuildExecutor",
    "BuildInvocation",
    "BuildOrchestrator",
    "BuildahBuilder",
    "CapabilityProbe",
    "Clock",
    "DaemonLifecycleManager",
    "DockerBuilder",
    "DockerdLauncher",
    "ImageBuilder",
    "LimitPlan",
    "NoBackendAvailable",
    "PushManager",
    "RegistryPolicy",
    "SystemClock",
    "apply_profile",
    "select_backend",
    "selection_warning",
]
