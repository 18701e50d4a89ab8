"""PushManager: decides whether an image goes to a registry and pushes it."""

import logging

from vllm_image_builder.core.config import Settings, get_settings
from vllm_image_builder.models.build import ImageReference, PushOutcome
from vllm_image_builder.services.builder_base import ImageBuilder

logger = logging.getLogger(__name__)

NO_REGISTRY_CONFIGURED = "NoRegistryConfigured"


class RegistryPolicy:
    """Decides whether an image reference designates a remote registry.

    An explicit ``push_remote`` setting always wins. Otherwise a reference
    is remote when it has a registry prefix whose first path component is
    not a local alias such as ``localhost``. ``localhost:5000`` counts as a
    registry since something is listening there.
    """

    def __init__(
        self,
        explicit_remote: bool | None = None,
        local_aliases: list[str] | None = None,
    ) -> None:
        self.explicit_remote = explicit_remote
        self.local_aliases = {alias.lower() for alias in (local_aliases or ["localhost", "local"])}

    @classmethod
    def from_settings(cls, settings: Settings) -> "RegistryPolicy":
        return cls(
            explicit_remote=settings.push_remote,
            local_aliases=settings.local_registry_aliases,
        )

    def is_remote(self, image: ImageReference) -> bool:
        if self.explicit_remote is not None:
            return self.explicit_remote
        if not image.registry_prefix:
            return False
        first = image.registry_prefix.split("/", 1)[0].lower()
        return first not in self.local_aliases


class PushManager:
    """Pushes built images to their registry, at most once per call."""

    def __init__(self, settings: Settings | None = None, policy: RegistryPolicy | None = None) -> None:
        self.settings = settings or get_settings()
        self.policy = policy or RegistryPolicy.from_settings(self.settings)

    def push(self, builder: ImageBuilder, image: ImageReference) -> PushOutcome:
        """Push ``image`` with ``builder`` if it names a remote registry."""
        if not self.policy.is_remote(image):
            logger.info(f"Skipping push of {image.full}: no registry configured")
            return PushOutcome.skipped(NO_REGISTRY_CONFIGURED, image.full)

        logger.info(f"Pushing {image.full} with {builder.backend.value}")
        outcome = builder.push(image.full)
        if outcome.cause is not None:
            logger.warning(f"Push of {image.full} failed ({outcome.cause.value}): {outcome.reason}")
        return outcome
