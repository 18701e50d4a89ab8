"""Abstract base class for all image build backends.

All backends (buildah, Docker) implement this interface so the executor,
push manager and orchestrator never deal with tool specifics.
"""

from __future__ import annotations

import logging
import subprocess
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from vllm_image_builder.models.common import PushFailureCause

if TYPE_CHECKING:
    from vllm_image_builder.models.build import BuildRequest, PushOutcome, ResourceLimits
    from vllm_image_builder.models.common import Backend

logger = logging.getLogger(__name__)

LOG_TAIL_LINES = 50

AUTH_ERROR_MARKERS = (
    "unauthorized",
    "authentication required",
    "access denied",
    "requested access to the resource is denied",
    "incorrect username or password",
    "no basic auth credentials",
    "forbidden",
)
CONNECTIVITY_ERROR_MARKERS = (
    "connection refused",
    "connection reset",
    "no such host",
    "i/o timeout",
    "timed out",
    "timeout",
    "network is unreachable",
    "temporary failure in name resolution",
    "tls handshake",
    "dial tcp",
)


@dataclass
class LimitPlan:
    """Backend-specific translation of the requested resource limits.

    Attributes:
        memory: Memory limit as given by the operator, if applied
        memory_bytes: The same limit in bytes, if applied
        cpu_count: CPU count to constrain the build to, if applied
        degraded: Human-readable notes for every limit that was dropped or capped
    """

    memory: str | None = None
    memory_bytes: int | None = None
    cpu_count: int | None = None
    degraded: list[str] = field(default_factory=list)


@dataclass
class BuildInvocation:
    """Raw termination of a backend build, before classification."""

    exit_code: int | None
    message: str | None = None
    log_tail: list[str] = field(default_factory=list)
    infrastructure_error: bool = False

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.infrastructure_error


class LogTail:
    """Keeps the last few lines of build output for diagnostics."""

    def __init__(self, maxlen: int = LOG_TAIL_LINES) -> None:
        self._lines: deque[str] = deque(maxlen=maxlen)

    def add(self, text: str) -> None:
        for line in text.splitlines():
            if line.strip():
                self._lines.append(line.rstrip())

    def lines(self) -> list[str]:
        return list(self._lines)


class ImageBuilder(ABC):
    """Contract implemented by every concrete build backend."""

    backend: Backend

    @abstractmethod
    def probe_available(self) -> bool:
        """Return True if the backend can be used right now."""
        ...

    @abstractmethod
    def plan_limits(self, limits: ResourceLimits) -> LimitPlan:
        """Translate resource limits, dropping any the backend cannot express."""
        ...

    @abstractmethod
    def build(self, request: BuildRequest, plan: LimitPlan) -> BuildInvocation:
        """Build ``request.image`` from the Dockerfile and context.

        Blocks for the full build. On KeyboardInterrupt the backend must stop
        its build before re-raising.
        """
        ...

    @abstractmethod
    def push(self, image_reference: str) -> PushOutcome:
        """Upload a locally built image. At most one attempt."""
        ...

    @abstractmethod
    def image_exists(self, image_reference: str) -> bool:
        """Return True if the image is available in local storage."""
        ...

    def close(self) -> None:
        """Release client resources. Idempotent."""
        return None


def classify_push_error(message: str | None) -> PushFailureCause:
    """Best-effort mapping of a registry error message to a failure cause."""
    if not message:
        return PushFailureCause.UNKNOWN
    text = message.lower()
    if any(marker in text for marker in AUTH_ERROR_MARKERS):
        return PushFailureCause.AUTHENTICATION
    if any(marker in text for marker in CONNECTIVITY_ERROR_MARKERS):
        return PushFailureCause.CONNECTIVITY
    return PushFailureCause.UNKNOWN


def terminate_process(process: subprocess.Popen, grace_seconds: float) -> None:
    """Terminate ``process``, killing it if it outlives the grace period."""
    if process.poll() is not None:
        return
    logger.info(f"Terminating process {process.pid}")
    try:
        process.terminate()
        process.wait(timeout=grace_seconds)
    except subprocess.TimeoutExpired:
        logger.warning(f"Process {process.pid} ignored SIGTERM, killing it")
        process.kill()
        process.wait()
    except ProcessLookupError:
        logger.debug(f"Process {process.pid} already exited")
