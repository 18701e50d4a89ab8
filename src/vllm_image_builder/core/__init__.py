"""Core modules for configuration and telemetry."""

from vllm_image_builder.core.config import Settings, get_settings
from vllm_image_builder.core.telemetry import get_tracer, setup_telemetry

__all__ = ["Settings", "get_settings", "get_tracer", "setup_telemetry"]
