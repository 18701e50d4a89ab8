"""CapabilityProbe for inspecting which build tooling this environment offers."""

import logging
import os
import shutil
import subprocess

from vllm_image_builder.core.config import Settings, get_settings
from vllm_image_builder.models.build import CapabilitySnapshot

logger = logging.getLogger(__name__)

CONTAINER_ENV_VARS = ("KUBERNETES_SERVICE_HOST",)


class CapabilityProbe:
    """Inspects the host or container for build tools and privilege level.

    Every check is a cheap "is this executable present" or "does this
    primitive succeed" test with its own timeout. Checks never raise: an
    unavailable capability is recorded as False.

    Example:
        ```python
        snapshot = CapabilityProbe().probe()
        if snapshot.has_user_namespace and snapshot.has_daemonless_builder:
            ...
        ```
    """

    def __init__(self, settings: Settings | None = None) -> None:
        """Initialize the probe.

        Args:
            settings: Application settings (uses default if not provided)
        """
        self.settings = settings or get_settings()

    def probe(self) -> CapabilitySnapshot:
        """Take a single point-in-time snapshot of build capabilities."""
        has_buildah = self._has_daemonless_builder()
        has_docker = self._has_daemon_builder()
        in_container = self._running_in_container()
        has_userns = self._has_user_namespace()

        tool_versions: dict[str, str] = {}
        if has_buildah:
            version = self._tool_version(["buildah", "--version"])
            if version:
                tool_versions["buildah"] = version
        if shutil.which("docker"):
            version = self._tool_version(["docker", "--version"])
            if version:
                tool_versions["docker"] = version

        snapshot = CapabilitySnapshot(
            has_daemonless_builder=has_buildah,
            has_daemon_builder=has_docker,
            running_in_container=in_container,
            has_user_namespace=has_userns,
            tool_versions=tool_versions,
        )
        logger.info(
            "Environment: buildah=%s docker=%s container=%s userns=%s",
            snapshot.has_daemonless_builder,
            snapshot.has_daemon_builder,
            snapshot.running_in_container,
            snapshot.has_user_namespace,
        )
        return snapshot

    def _has_daemonless_builder(self) -> bool:
        return shutil.which("buildah") is not None

    def _has_daemon_builder(self) -> bool:
        """A daemon builder counts if it is installed or already listening."""
        if shutil.which("dockerd") or shutil.which("docker"):
            return True
        try:
            return self.settings.docker_socket_path.exists()
        except OSError:
            return False

    def _running_in_container(self) -> bool:
        for marker in self.settings.container_marker_files:
            try:
                if marker.exists():
                    return True
            except OSError:
                continue
        return any(os.environ.get(var) for var in CONTAINER_ENV_VARS)

    def _has_user_namespace(self) -> bool:
        """Try to create a user namespace."""
        if not shutil.which("unshare"):
            return False
        return self._check_command(["unshare", "--user", "true"])

    def _check_command(self, args: list[str]) -> bool:
        try:
            result = subprocess.run(
                args,
                capture_output=True,
                timeout=self.settings.probe_timeout_seconds,
                check=False,
            )
        except subprocess.TimeoutExpired:
            logger.debug(f"Probe timed out: {' '.join(args)}")
            return False
        except OSError as e:
            logger.debug(f"Probe failed to run {args[0]}: {e}")
            return False
        return result.returncode == 0

    def _tool_version(self, args: list[str]) -> str | None:
        try:
            result = subprocess.run(
                args,
                capture_output=True,
                encoding="utf-8",
                errors="replace",
                timeout=self.settings.probe_timeout_seconds,
                check=False,
            )
        except (subprocess.TimeoutExpired, OSError):
            return None
        if result.returncode != 0:
            return None
        lines = result.stdout.strip().splitlines()
        return lines[0] if lines else None
