"""Build profiles: preset policies applied to a BuildRequest."""

import logging
import os
from typing import Any

from vllm_image_builder.models.build import BuildRequest, ResourceLimits
from vllm_image_builder.models.common import Backend, BuildProfile

logger = logging.getLogger(__name__)

OPTIMIZED_MEMORY = "4g"


def profile_defaults(profile: BuildProfile) -> dict[str, Any]:
    """Field defaults a profile contributes to a request."""
    if profile == BuildProfile.PRIVILEGED:
        return {"backend_override": Backend.BUILDAH, "squash": True, "no_cache": True}
    if profile == BuildProfile.QUICK:
        return {"squash": False, "no_cache": False}
    if profile == BuildProfile.OPTIMIZED:
        return {
            "memory": OPTIMIZED_MEMORY,
            "cpu_count": os.cpu_count() or 1,
            "no_cache": True,
        }
    return {}


def apply_profile(request: BuildRequest, explicit: set[str] | None = None) -> BuildRequest:
    """Return ``request`` with its profile's defaults filled in.

    Fields named in ``explicit`` were set by the operator and are left alone.
    Resource limits are filled per field, so ``--cpus 2`` with the
    optimized profile still gets the profile's memory limit.
    """
    explicit = explicit or set()
    defaults = profile_defaults(request.profile)
    if not defaults:
        return request

    updates: dict[str, Any] = {}
    for name in ("backend_override", "squash", "no_cache"):
        if name in defaults and name not in explicit:
            updates[name] = defaults[name]

    limits: dict[str, Any] = {}
    if "memory" in defaults and "memory" not in explicit and request.resource_limits.memory is None:
        limits["memory"] = defaults["memory"]
    if "cpu_count" in defaults and "cpu_count" not in explicit and request.resource_limits.cpu_count is None:
        limits["cpu_count"] = defaults["cpu_count"]
    if limits:
        updates["resource_limits"] = ResourceLimits(
            **{**request.resource_limits.model_dump(), **limits}
        )

    if updates:
        logger.info(f"Profile {request.profile.value} applied: {sorted(updates)}")
    return request.model_copy(update=updates)
