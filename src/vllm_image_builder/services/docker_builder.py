"""Docker daemon build backend using the Docker SDK."""

from __future__ import annotations

import logging
import os
import re
from typing import TYPE_CHECKING, Any

import docker
from docker.errors import APIError, DockerException, ImageNotFound
from docker.utils import parse_bytes

from vllm_image_builder.core.config import Settings, get_settings
from vllm_image_builder.models.build import PushOutcome
from vllm_image_builder.models.common import Backend, PushFailureCause
from vllm_image_builder.services.builder_base import (
    BuildInvocation,
    ImageBuilder,
    LimitPlan,
    LogTail,
    classify_push_error,
)

if TYPE_CHECKING:
    from vllm_image_builder.models.build import BuildRequest, ResourceLimits

logger = logging.getLogger(__name__)

# "The command '/bin/sh -c ...' returned a non-zero code: 137" (classic builder)
# "process \"/bin/sh -c ...\" did not complete successfully: exit code: 137" (BuildKit)
EXIT_CODE_PATTERN = re.compile(r"(?:non-zero code|exit code):\s*(\d+)")

DEFAULT_BUILD_ARGS = {"BUILDKIT_INLINE_CACHE": "1"}


def parse_exit_code(message: str | None) -> int | None:
    """Extract the failing step's exit code from a build error message."""
    if not message:
        return None
    match = EXIT_CODE_PATTERN.search(message)
    return int(match.group(1)) if match else None


class DockerBuilder(ImageBuilder):
    """Builds and pushes images through a Docker daemon.

    Talks to the daemon on ``settings.docker_socket_path`` through the
    low-level build stream so the failing step's exit code can be recovered.

    Example:
        ```python
        builder = DockerBuilder()
        plan = builder.plan_limits(request.resource_limits)
        invocation = builder.build(request, plan)
        if invocation.succeeded:
            builder.push(request.image.full)
        ```
    """

    backend = Backend.DOCKER

    def __init__(self, settings: Settings | None = None) -> None:
        """Initialize the builder with a lazily created Docker client.

        Args:
            settings: Application settings (uses default if not provided)
        """
        self.settings = settings or get_settings()
        self._docker_client: docker.DockerClient | None = None
        self._daemon_info: dict[str, Any] | None = None
        self._registry_logged_in: bool = False

    # -------------------------------------------------------------------------
    # Lazy Initialization Properties
    # -------------------------------------------------------------------------

    @property
    def docker_client(self) -> docker.DockerClient:
        """Get the Docker client, initializing if needed.

        No client timeout: builds are long-running and may be silent for minutes.
        """
        if self._docker_client is None:
            self._docker_client = docker.DockerClient(
                base_url=f"unix://{self.settings.docker_socket_path}",
                timeout=None,
            )
        return self._docker_client

    def _get_daemon_info(self) -> dict[str, Any]:
        if self._daemon_info is None:
            try:
                self._daemon_info = self.docker_client.info()
            except (DockerException, OSError) as e:
                logger.warning(f"Could not query Docker daemon info: {e}")
                self._daemon_info = {}
        return self._daemon_info

    # -------------------------------------------------------------------------
    # Backend contract
    # -------------------------------------------------------------------------

    def probe_available(self) -> bool:
        try:
            return bool(self.docker_client.ping())
        except (DockerException, OSError) as e:
            logger.debug(f"Docker daemon not reachable: {e}")
            return False

    def plan_limits(self, limits: ResourceLimits) -> LimitPlan:
        plan = LimitPlan()
        if limits.is_unconstrained:
            return plan

        info = self._get_daemon_info()

        if limits.memory is not None:
            if info.get("MemoryLimit", True) is False:
                plan.degraded.append("memory: daemon has no memory cgroup support, limit dropped")
            else:
                try:
                    plan.memory_bytes = parse_bytes(limits.memory)
                    plan.memory = limits.memory
                except DockerException:
                    plan.degraded.append(f"memory: cannot parse {limits.memory!r}, limit dropped")

        if limits.cpu_count is not None:
            if info.get("CpuSet", True) is False:
                plan.degraded.append("cpu_count: daemon has no cpuset support, limit dropped")
            else:
                host_cpus = info.get("NCPU") or os.cpu_count()
                count = limits.cpu_count
                if host_cpus and count > host_cpus:
                    plan.degraded.append(f"cpu_count: capped from {count} to {host_cpus} host CPUs")
                    count = host_cpus
                plan.cpu_count = count

        return plan

    def _container_limits(self, plan: LimitPlan) -> dict[str, Any] | None:
        limits: dict[str, Any] = {}
        if plan.memory_bytes is not None:
            limits["memory"] = plan.memory_bytes
        if plan.cpu_count is not None:
            limits["cpusetcpus"] = "0" if plan.cpu_count == 1 else f"0-{plan.cpu_count - 1}"
        return limits or None

    def build(self, request: BuildRequest, plan: LimitPlan) -> BuildInvocation:
        image_tag = request.image.full
        build_kwargs: dict[str, Any] = {
            "path": str(request.context_path),
            "dockerfile": str(request.dockerfile_path.absolute()),
            "tag": image_tag,
            "rm": True,
            "forcerm": True,
            "nocache": request.no_cache,
            "decode": True,
            "buildargs": {**DEFAULT_BUILD_ARGS, **request.build_args},
            "container_limits": self._container_limits(plan),
        }
        if request.squash:
            build_kwargs["squash"] = True
        if request.platform:
            build_kwargs["platform"] = request.platform

        logger.info(f"Building with Docker: {image_tag}")
        tail = LogTail()
        try:
            for chunk in self.docker_client.api.build(**build_kwargs):
                if "stream" in chunk:
                    tail.add(chunk["stream"])
                    for line in chunk["stream"].splitlines():
                        if line.strip():
                            logger.info(f"[docker] {line.rstrip()}")
                if "error" in chunk or "errorDetail" in chunk:
                    detail = chunk.get("errorDetail") or {}
                    message = detail.get("message") or chunk.get("error")
                    exit_code = detail.get("code") or parse_exit_code(message)
                    tail.add(message or "")
                    logger.error(f"Docker build failed: {message}")
                    return BuildInvocation(
                        exit_code=exit_code,
                        message=message,
                        log_tail=tail.lines(),
                    )
        except KeyboardInterrupt:
            # Dropping the connection makes the daemon cancel the build
            logger.warning("Build interrupted, closing Docker connection")
            self.close()
            raise
        except APIError as e:
            logger.error(f"Docker API error during build: {e}")
            return BuildInvocation(
                exit_code=None,
                message=str(e),
                log_tail=tail.lines(),
                infrastructure_error=True,
            )
        except (DockerException, OSError) as e:
            logger.error(f"Docker build failed to run: {e}")
            return BuildInvocation(
                exit_code=None,
                message=str(e),
                log_tail=tail.lines(),
                infrastructure_error=True,
            )

        logger.info(f"Docker build completed: {image_tag}")
        return BuildInvocation(exit_code=0, log_tail=tail.lines())

    def image_exists(self, image_reference: str) -> bool:
        """Verify that an image actually exists in the daemon's store."""
        try:
            self.docker_client.images.get(image_reference)
            return True
        except ImageNotFound:
            return False
        except (DockerException, OSError) as e:
            logger.warning(f"Error checking image {image_reference}: {e}")
            return False

    # -------------------------------------------------------------------------
    # Registry Operations
    # -------------------------------------------------------------------------

    def _registry_host(self, image_reference: str) -> str | None:
        first = image_reference.split("/", 1)[0]
        if "/" in image_reference and ("." in first or ":" in first or first == "localhost"):
            return first
        return None

    def login_to_registry(self, image_reference: str) -> bool:
        """Authenticate with the registry using configured credentials.

        Returns:
            True if login succeeded or no credentials are configured,
            False if login failed.
        """
        if self._registry_logged_in:
            return True

        if not self.settings.registry_username or not self.settings.registry_password:
            logger.debug("No registry credentials configured, relying on existing auth")
            return True

        registry = self._registry_host(image_reference)
        try:
            self.docker_client.login(
                username=self.settings.registry_username,
                password=self.settings.registry_password,
                registry=registry,
            )
            self._registry_logged_in = True
            logger.info(f"Logged in to registry: {registry or 'docker.io'}")
            return True
        except (DockerException, OSError) as e:
            logger.warning(f"Failed to login to registry {registry or 'docker.io'}: {e}")
            return False

    def push(self, image_reference: str) -> PushOutcome:
        if not self.login_to_registry(image_reference):
            return PushOutcome.failed(
                PushFailureCause.AUTHENTICATION,
                "registry login failed",
                image_reference,
            )

        try:
            logger.info(f"Pushing image: {image_reference}")
            push_output = self.docker_client.images.push(image_reference, stream=True, decode=True)

            for line in push_output:
                if "error" in line:
                    message = line.get("errorDetail", {}).get("message") or line["error"]
                    logger.warning(f"Push failed: {message}")
                    return PushOutcome.failed(classify_push_error(message), message, image_reference)
                if "status" in line:
                    logger.debug(f"Push: {line.get('status', '')} {line.get('progress', '')}")

            logger.info(f"Successfully pushed: {image_reference}")
            return PushOutcome.pushed(image_reference)

        except ImageNotFound:
            logger.warning(f"Cannot push: image not found locally: {image_reference}")
            return PushOutcome.failed(
                PushFailureCause.UNKNOWN, "image not found locally", image_reference
            )
        except (DockerException, OSError) as e:
            logger.warning(f"Failed to push image {image_reference}: {e}")
            return PushOutcome.failed(classify_push_error(str(e)), str(e), image_reference)

    def close(self) -> None:
        if self._docker_client is not None:
            try:
                self._docker_client.close()
            except (DockerException, OSError) as e:
                logger.debug(f"Error closing Docker client: {e}")
            self._docker_client = None
