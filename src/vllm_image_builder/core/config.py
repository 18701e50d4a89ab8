"""Application configuration using Pydantic Settings."""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Builder settings loaded from environment variables.

    Every field can be set with a ``VLLM_BUILD_`` prefixed variable, e.g.
    ``VLLM_BUILD_REGISTRY_PREFIX=ghcr.io/acme``. Command-line flags take
    precedence over these values.
    """

    model_config = SettingsConfigDict(
        env_prefix="VLLM_BUILD_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Application
    debug: bool = False
    environment: Literal["development", "staging", "production"] = "development"
    log_level: str = "INFO"

    # Image defaults
    registry_prefix: str = ""  # e.g. "docker.io/acme/", "ghcr.io/org", "localhost:5000"
    image_name: str = "vllm-universal"
    tag: str = "latest"
    dockerfile: Path = Path("Dockerfile")
    context_dir: Path = Path(".")

    # Default resource limits (unset = unconstrained)
    memory_limit: str | None = None  # e.g. "4g"
    cpu_count: int | None = None

    # Container Registry
    registry_username: str | None = None
    registry_password: str | None = None
    registry_insecure: bool = False  # Skip TLS verification (for local registries)
    push_remote: bool | None = None  # Explicit "is remote" flag, None = infer from prefix
    local_registry_aliases: list[str] = ["localhost", "local"]

    # Docker daemon
    docker_socket_path: Path = Path("/var/run/docker.sock")
    docker_data_root: Path = Path("/var/lib/docker")
    docker_exec_root: Path = Path("/var/run/docker")
    dockerd_log_path: Path = Path("/tmp/dockerd.log")
    dockerd_tcp_host: str | None = None  # e.g. "tcp://127.0.0.1:2375"
    daemon_autostart: bool | None = None  # None = only when running in a container
    daemon_use_sudo: bool | None = None  # None = when not root and sudo is available
    daemon_startup_timeout_seconds: float = 30.0
    daemon_poll_interval_seconds: float = 1.0
    daemon_stop_grace_seconds: float = 5.0

    # Buildah
    buildah_storage_driver: str = "overlay"
    buildah_isolation: str = "chroot"
    buildah_cache_dir: Path = Path("/tmp/buildah-cache")

    # Capability probe
    probe_timeout_seconds: float = 5.0
    container_marker_files: list[Path] = [Path("/.dockerenv"), Path("/run/.containerenv")]

    # Orchestration
    fallback_on_daemon_failure: bool = True
    build_kill_grace_seconds: float = 10.0

    # OpenTelemetry
    otel_enabled: bool = False
    otel_service_name: str = "vllm-image-builder"
    otel_exporter_endpoint: str = "http://localhost:4317"

    def ensure_runtime_dirs(self) -> None:
        """Create local directories the builders write to."""
        self.buildah_cache_dir.mkdir(parents=True, exist_ok=True)
        self.dockerd_log_path.parent.mkdir(parents=True, exist_ok=True)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
