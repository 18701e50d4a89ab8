"""Daemonless build backend driving the buildah CLI."""

from __future__ import annotations

import logging
import os
import subprocess
from typing import TYPE_CHECKING

from vllm_image_builder.core.config import Settings, get_settings
from vllm_image_builder.models.build import PushOutcome
from vllm_image_builder.models.common import Backend, PushFailureCause
from vllm_image_builder.services.builder_base import (
    BuildInvocation,
    ImageBuilder,
    LimitPlan,
    LogTail,
    classify_push_error,
    terminate_process,
)
from vllm_image_builder.services.exit_codes import OOM_EXIT_CODE

if TYPE_CHECKING:
    from vllm_image_builder.models.build import BuildRequest, CapabilitySnapshot, ResourceLimits

logger = logging.getLogger(__name__)

BUILDAH = "buildah"
COMMAND_NOT_FOUND_EXIT_CODE = 127
PUSH_TIMEOUT_SECONDS = 3600
INSPECT_TIMEOUT_SECONDS = 30


class BuildahBuilder(ImageBuilder):
    """Builds images with ``buildah bud`` and pushes them with ``buildah push``.

    Resource limits map to ``--memory``, ``--cpuset-cpus`` and ``--jobs``.
    Older buildah releases lack some of these flags; ``bud --help`` is
    consulted once and any limit without a matching flag is dropped.
    """

    backend = Backend.BUILDAH

    def __init__(
        self,
        settings: Settings | None = None,
        snapshot: CapabilitySnapshot | None = None,
    ) -> None:
        """Initialize the builder.

        Args:
            settings: Application settings (uses default if not provided)
            snapshot: Capability snapshot, used to choose isolation flags
        """
        self.settings = settings or get_settings()
        self.snapshot = snapshot
        self._supported_flags: frozenset[str] | None = None

    def _run(self, args: list[str], timeout: float) -> subprocess.CompletedProcess:
        return subprocess.run(
            args,
            capture_output=True,
            encoding="utf-8",
            errors="replace",
            timeout=timeout,
            check=False,
            env=self._build_env(),
        )

    def _build_env(self) -> dict[str, str]:
        env = os.environ.copy()
        env["BUILDAH_ISOLATION"] = self.settings.buildah_isolation
        env["BUILDAH_FORMAT"] = "docker"
        env["STORAGE_DRIVER"] = self.settings.buildah_storage_driver
        env["BUILDAH_LAYERS_CACHE_DIR"] = str(self.settings.buildah_cache_dir)
        return env

    @property
    def supported_flags(self) -> frozenset[str]:
        """Long options listed by ``buildah bud --help`` (cached)."""
        if self._supported_flags is None:
            flags: set[str] = set()
            try:
                result = self._run(
                    [BUILDAH, "bud", "--help"], timeout=self.settings.probe_timeout_seconds
                )
                for token in result.stdout.replace(",", " ").split():
                    if token.startswith("--"):
                        flags.add(token.split("=", 1)[0])
            except (subprocess.TimeoutExpired, OSError) as e:
                logger.warning(f"Could not read buildah flags: {e}")
            self._supported_flags = frozenset(flags)
        return self._supported_flags

    # -------------------------------------------------------------------------
    # Backend contract
    # -------------------------------------------------------------------------

    def probe_available(self) -> bool:
        try:
            result = self._run([BUILDAH, "--version"], timeout=self.settings.probe_timeout_seconds)
        except (subprocess.TimeoutExpired, OSError):
            return False
        return result.returncode == 0

    def plan_limits(self, limits: ResourceLimits) -> LimitPlan:
        plan = LimitPlan()
        if limits.is_unconstrained:
            return plan

        flags = self.supported_flags

        if limits.memory is not None:
            if "--memory" in flags:
                plan.memory = limits.memory
            else:
                plan.degraded.append("memory: buildah has no --memory flag, limit dropped")

        if limits.cpu_count is not None:
            if "--cpuset-cpus" in flags or "--jobs" in flags:
                count = limits.cpu_count
                host_cpus = os.cpu_count()
                if host_cpus and count > host_cpus:
                    plan.degraded.append(f"cpu_count: capped from {count} to {host_cpus} host CPUs")
                    count = host_cpus
                plan.cpu_count = count
                if "--cpuset-cpus" not in flags:
                    plan.degraded.append("cpu_count: no --cpuset-cpus flag, only --jobs applied")
            else:
                plan.degraded.append("cpu_count: buildah has no --cpuset-cpus/--jobs, limit dropped")

        return plan

    def build_command(self, request: BuildRequest, plan: LimitPlan) -> list[str]:
        """Assemble the ``buildah bud`` command line."""
        cmd = [
            BUILDAH,
            "bud",
            "--format=docker",
            f"--tls-verify={'false' if self.settings.registry_insecure else 'true'}",
            f"--storage-driver={self.settings.buildah_storage_driver}",
            f"--file={request.dockerfile_path}",
            f"--tag={request.image.full}",
        ]
        if self.snapshot is not None and self.snapshot.running_in_container and self.snapshot.has_user_namespace:
            cmd.extend(["--userns=host", "--isolation=chroot"])
        if request.no_cache:
            cmd.append("--no-cache")
        if request.squash:
            cmd.append("--squash")
        if request.platform:
            cmd.append(f"--platform={request.platform}")
        for key, value in request.build_args.items():
            cmd.append(f"--build-arg={key}={value}")

        flags = self.supported_flags
        if plan.memory is not None:
            cmd.append(f"--memory={plan.memory}")
        if plan.cpu_count is not None:
            if "--cpuset-cpus" in flags:
                cpuset = "0" if plan.cpu_count == 1 else f"0-{plan.cpu_count - 1}"
                cmd.append(f"--cpuset-cpus={cpuset}")
            if "--jobs" in flags:
                cmd.append(f"--jobs={plan.cpu_count}")

        cmd.append(str(request.context_path))
        return cmd

    def build(self, request: BuildRequest, plan: LimitPlan) -> BuildInvocation:
        cmd = self.build_command(request, plan)
        logger.info(f"Building with buildah: {request.image.full}")
        logger.debug(f"Command: {' '.join(cmd)}")

        tail = LogTail()
        try:
            process = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                encoding="utf-8",
                errors="replace",
                env=self._build_env(),
            )
        except FileNotFoundError as e:
            logger.error(f"buildah not found: {e}")
            return BuildInvocation(
                exit_code=COMMAND_NOT_FOUND_EXIT_CODE,
                message=str(e),
                infrastructure_error=True,
            )
        except OSError as e:
            logger.error(f"Failed to start buildah: {e}")
            return BuildInvocation(exit_code=None, message=str(e), infrastructure_error=True)

        try:
            for line in process.stdout or []:
                tail.add(line)
                if line.strip():
                    logger.info(f"[buildah] {line.rstrip()}")
            exit_code = process.wait()
        except KeyboardInterrupt:
            logger.warning("Build interrupted, stopping buildah")
            terminate_process(process, self.settings.build_kill_grace_seconds)
            raise
        except Exception as e:
            logger.error(f"Lost buildah output: {e}")
            terminate_process(process, self.settings.build_kill_grace_seconds)
            return BuildInvocation(
                exit_code=None,
                message=f"Failed to read buildah output: {e}",
                log_tail=tail.lines(),
                infrastructure_error=True,
            )

        if exit_code == 0:
            logger.info(f"buildah build completed: {request.image.full}")
            return BuildInvocation(exit_code=0, log_tail=tail.lines())

        # Popen reports death by signal as -N
        if exit_code < 0:
            exit_code = 128 - exit_code
        message = f"buildah bud exited with code {exit_code}"
        if exit_code == OOM_EXIT_CODE:
            message += " (killed, likely out of memory)"
        logger.error(message)
        return BuildInvocation(exit_code=exit_code, message=message, log_tail=tail.lines())

    def image_exists(self, image_reference: str) -> bool:
        try:
            result = self._run(
                [BUILDAH, "inspect", "--type", "image", image_reference],
                timeout=INSPECT_TIMEOUT_SECONDS,
            )
        except (subprocess.TimeoutExpired, OSError) as e:
            logger.warning(f"Error checking image {image_reference}: {e}")
            return False
        return result.returncode == 0

    def push(self, image_reference: str) -> PushOutcome:
        cmd = [
            BUILDAH,
            "push",
            f"--tls-verify={'false' if self.settings.registry_insecure else 'true'}",
        ]
        if self.settings.registry_username and self.settings.registry_password:
            cmd.append(f"--creds={self.settings.registry_username}:{self.settings.registry_password}")
        cmd.extend([image_reference, f"docker://{image_reference}"])

        logger.info(f"Pushing image: {image_reference}")
        try:
            result = self._run(cmd, timeout=PUSH_TIMEOUT_SECONDS)
        except subprocess.TimeoutExpired:
            logger.warning(f"Push timed out: {image_reference}")
            return PushOutcome.failed(PushFailureCause.CONNECTIVITY, "push timed out", image_reference)
        except OSError as e:
            logger.warning(f"Failed to run buildah push: {e}")
            return PushOutcome.failed(PushFailureCause.UNKNOWN, str(e), image_reference)

        if result.returncode != 0:
            message = (result.stderr or result.stdout or "").strip() or (
                f"buildah push exited with code {result.returncode}"
            )
            logger.warning(f"Push failed: {message}")
            return PushOutcome.failed(classify_push_error(message), message, image_reference)

        logger.info(f"Successfully pushed: {image_reference}")
        return PushOutcome.pushed(image_reference)
