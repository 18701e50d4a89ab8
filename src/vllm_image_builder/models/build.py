"""Build-related models for the build orchestrator."""

import re
from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator

from vllm_image_builder.models.common import (
    Backend,
    BuildFailureReason,
    BuildProfile,
    BuildStatus,
    ExitSignal,
    PushFailureCause,
    PushStatus,
)

_NAME_COMPONENT = r"[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*"
IMAGE_NAME_PATTERN = re.compile(rf"^{_NAME_COMPONENT}(?:/{_NAME_COMPONENT})*$")
TAG_PATTERN = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")
MEMORY_PATTERN = re.compile(r"^\d+(?:\.\d+)?(?:[bkmg]b?)?$", re.IGNORECASE)


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class ImageReference(BaseModel):
    """A structured image reference: ``[registry_prefix/]name:tag``.

    Example:
        ```python
        ref = ImageReference(registry_prefix="docker.io/acme/", name="vllm-universal", tag="jais2-latest")
        ref.full  # "docker.io/acme/vllm-universal:jais2-latest"
        ```
    """

    model_config = ConfigDict(frozen=True)

    registry_prefix: str = ""
    name: str
    tag: str = "latest"

    @field_validator("registry_prefix")
    @classmethod
    def _normalize_prefix(cls, value: str) -> str:
        value = value.strip()
        if any(ch.isspace() for ch in value):
            raise ValueError("registry prefix must not contain whitespace")
        return value.rstrip("/")

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        if not IMAGE_NAME_PATTERN.match(value):
            raise ValueError(f"invalid image name: {value!r}")
        return value

    @field_validator("tag")
    @classmethod
    def _validate_tag(cls, value: str) -> str:
        if not TAG_PATTERN.match(value):
            raise ValueError(f"invalid image tag: {value!r}")
        return value

    @property
    def repository(self) -> str:
        """Repository path without the tag."""
        if self.registry_prefix:
            return f"{self.registry_prefix}/{self.name}"
        return self.name

    @property
    def full(self) -> str:
        """Fully qualified reference including the tag."""
        return f"{self.repository}:{self.tag}"

    def __str__(self) -> str:
        return self.full


class ResourceLimits(BaseModel):
    """Resource limits applied to a build.

    Unset fields mean "unconstrained".
    """

    model_config = ConfigDict(frozen=True)

    memory: str | None = None
    cpu_count: int | None = Field(default=None, ge=1)

    @field_validator("memory")
    @classmethod
    def _validate_memory(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        if not MEMORY_PATTERN.match(value):
            raise ValueError(f"invalid memory limit: {value!r} (expected e.g. 512m, 4g)")
        return value.lower()

    @property
    def is_unconstrained(self) -> bool:
        """True if no limit is requested."""
        return self.memory is None and self.cpu_count is None


class BuildRequest(BaseModel):
    """Input to the build pipeline, read-only once constructed."""

    model_config = ConfigDict(frozen=True)

    dockerfile_path: Path
    context_path: Path
    image: ImageReference
    resource_limits: ResourceLimits = Field(default_factory=ResourceLimits)
    backend_override: Backend | None = None
    profile: BuildProfile = BuildProfile.STANDARD
    no_cache: bool = False
    squash: bool = False
    platform: str | None = None
    build_args: dict[str, str] = Field(default_factory=dict)


class CapabilitySnapshot(BaseModel):
    """Point-in-time view of the build tooling available in this environment."""

    model_config = ConfigDict(frozen=True)

    has_daemonless_builder: bool
    has_daemon_builder: bool
    running_in_container: bool
    has_user_namespace: bool
    tool_versions: dict[str, str] = Field(default_factory=dict)
    probed_at: datetime = Field(default_factory=utcnow)


class BuildOutcome(BaseModel):
    """Result of a single build attempt on one backend."""

    model_config = ConfigDict(frozen=True)

    backend: Backend
    status: BuildStatus
    image_reference: str | None = None
    reason: BuildFailureReason | None = None
    exit_signal: ExitSignal | None = None
    exit_code: int | None = None
    message: str | None = None
    degraded_limits: list[str] = Field(default_factory=list)
    log_tail: list[str] = Field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        """True if the image was built and verified."""
        return self.status == BuildStatus.SUCCESS


class PushOutcome(BaseModel):
    """Result of the push step."""

    model_config = ConfigDict(frozen=True)

    status: PushStatus
    image_reference: str | None = None
    reason: str | None = None
    cause: PushFailureCause | None = None

    @classmethod
    def skipped(cls, reason: str, image_reference: str | None = None) -> "PushOutcome":
        return cls(status=PushStatus.SKIPPED, reason=reason, image_reference=image_reference)

    @classmethod
    def pushed(cls, image_reference: str) -> "PushOutcome":
        return cls(status=PushStatus.PUSHED, image_reference=image_reference)

    @classmethod
    def failed(
        cls, cause: PushFailureCause, reason: str, image_reference: str | None = None
    ) -> "PushOutcome":
        return cls(
            status=PushStatus.FAILED,
            cause=cause,
            reason=reason,
            image_reference=image_reference,
        )
