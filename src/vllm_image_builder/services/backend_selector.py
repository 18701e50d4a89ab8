"""BackendSelector: pure mapping from capabilities to a build backend."""

from dataclasses import dataclass

from vllm_image_builder.models.build import CapabilitySnapshot
from vllm_image_builder.models.common import Backend


@dataclass(frozen=True)
class NoBackendAvailable:
    """Selection result when every backend is missing or excluded."""

    reason: str = "no build backend available"


def select_backend(
    snapshot: CapabilitySnapshot,
    override: Backend | None = None,
    excluded: frozenset[Backend] | set[Backend] = frozenset(),
) -> Backend | NoBackendAvailable:
    """Choose a build backend.

    Policy, in priority order:
        1. An override that is not excluded wins.
        2. With user-namespace support and buildah present, use buildah;
           it needs no long-lived privileged process.
        3. Otherwise use the Docker daemon if it is available.
        4. Otherwise fall back to buildah even without user namespaces
           (see ``selection_warning``).
        5. Otherwise nothing is available.

    The function is pure: identical arguments always give the same answer.
    """
    if override is not None and override not in excluded:
        return override

    buildah_ok = snapshot.has_daemonless_builder and Backend.BUILDAH not in excluded
    docker_ok = snapshot.has_daemon_builder and Backend.DOCKER not in excluded

    if snapshot.has_user_namespace and buildah_ok:
        return Backend.BUILDAH
    if docker_ok:
        return Backend.DOCKER
    if buildah_ok:
        return Backend.BUILDAH

    if excluded:
        tried = ", ".join(sorted(b.value for b in excluded))
        return NoBackendAvailable(reason=f"no build backend left to try (excluded: {tried})")
    return NoBackendAvailable()


def selection_warning(snapshot: CapabilitySnapshot, backend: Backend) -> str | None:
    """Return a warning if ``backend`` is likely to fail in this environment."""
    if backend == Backend.BUILDAH and not snapshot.has_daemonless_builder:
        return "buildah forced but not found on PATH"
    if backend == Backend.BUILDAH and not snapshot.has_user_namespace:
        return "buildah selected without user namespace support; the build may fail"
    if backend == Backend.DOCKER and not snapshot.has_daemon_builder:
        return "docker forced but no daemon builder was detected"
    return None
