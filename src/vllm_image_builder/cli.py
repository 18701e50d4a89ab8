"""Command-line interface for building and pushing vLLM images."""

from __future__ import annotations

import json
import logging
import signal
from pathlib import Path

import typer
from pydantic import ValidationError

from vllm_image_builder.core.config import Settings, get_settings
from vllm_image_builder.core.telemetry import setup_telemetry
from vllm_image_builder.models.build import BuildRequest, ImageReference, ResourceLimits
from vllm_image_builder.models.common import Backend, BuildProfile
from vllm_image_builder.models.pipeline import EXIT_INVALID_INPUT, PipelineResult
from vllm_image_builder.services.backend_selector import (
    NoBackendAvailable,
    select_backend,
    selection_warning,
)
from vllm_image_builder.services.capability_probe import CapabilityProbe
from vllm_image_builder.services.orchestrator import BuildOrchestrator
from vllm_image_builder.services.profiles import apply_profile

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

app = typer.Typer(
    help="Build and push vLLM inference-server images with buildah or Docker",
    no_args_is_help=True,
)


def _configure_logging(settings: Settings, verbose: bool) -> None:
    level = logging.DEBUG if verbose else getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)


def _parse_build_args(values: list[str] | None) -> dict[str, str]:
    build_args: dict[str, str] = {}
    for item in values or []:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"expected KEY=VALUE, got {item!r}", param_hint="--build-arg")
        build_args[key] = value
    return build_args


def _raise_keyboard_interrupt(signum: int, frame: object) -> None:
    raise KeyboardInterrupt


def _print_summary(result: PipelineResult) -> None:
    request = result.request
    typer.echo(f"Image:   {request.image.full}")
    if result.snapshot is not None:
        snap = result.snapshot
        typer.echo(
            f"Probe:   buildah={snap.has_daemonless_builder} docker={snap.has_daemon_builder} "
            f"container={snap.running_in_container} userns={snap.has_user_namespace}"
        )
    for index, attempt in enumerate(result.attempts, start=1):
        line = f"Attempt {index}: {attempt.backend.value}"
        if attempt.daemon_status is not None:
            line += f", daemon {attempt.daemon_status.value}"
        if attempt.outcome is not None:
            line += f", build {attempt.outcome.status.value}"
            if attempt.outcome.reason is not None:
                line += f" ({attempt.outcome.reason.value})"
        typer.echo(line)
        if attempt.outcome is not None:
            for note in attempt.outcome.degraded_limits:
                typer.echo(f"  degraded: {note}")

    if result.abort_reason is not None:
        typer.echo(
            f"Result:  ABORTED while {result.last_state.value}: {result.abort_reason.value}",
            err=True,
        )
        if result.message:
            typer.echo(f"         {result.message}", err=True)
        if result.build_outcome is not None and result.build_outcome.log_tail:
            typer.echo("Last build output:", err=True)
            for line in result.build_outcome.log_tail[-10:]:
                typer.echo(f"  {line}", err=True)
        return

    push = result.push_outcome
    if push is not None and result.partial:
        typer.echo(f"Result:  BUILT but push failed ({push.cause.value if push.cause else 'unknown'})")
        if push.reason:
            typer.echo(f"         {push.reason}")
    elif push is not None:
        detail = f" ({push.reason})" if push.reason else ""
        typer.echo(f"Result:  DONE, push {push.status.value}{detail}")
    typer.echo(f"Time:    {result.duration_seconds:.1f}s")


@app.command("build")
def build_command(
    registry: str | None = typer.Option(
        None,
        "--registry",
        "-r",
        help="Registry prefix, e.g. docker.io/acme or localhost:5000. Empty for a local-only image.",
    ),
    name: str | None = typer.Option(None, "--name", "-n", help="Image name."),
    tag: str | None = typer.Option(None, "--tag", "-t", help="Image tag."),
    dockerfile: Path | None = typer.Option(None, "--file", "-f", help="Path to the Dockerfile."),
    context: Path | None = typer.Option(None, "--context", help="Build context directory."),
    memory: str | None = typer.Option(None, "--memory", "-m", help="Memory limit, e.g. 4g."),
    cpus: int | None = typer.Option(None, "--cpus", "-c", min=1, help="Number of CPUs for the build."),
    backend: Backend | None = typer.Option(
        None, "--backend", case_sensitive=False, help="Force a build backend."
    ),
    profile: BuildProfile = typer.Option(
        BuildProfile.STANDARD, "--profile", case_sensitive=False, help="Preset build policy."
    ),
    no_cache: bool | None = typer.Option(
        None, "--no-cache/--cache", help="Disable the layer cache.", show_default=False
    ),
    squash: bool | None = typer.Option(
        None, "--squash/--no-squash", help="Squash new layers into one.", show_default=False
    ),
    platform: str | None = typer.Option(None, "--platform", help="Target platform, e.g. linux/amd64."),
    build_arg: list[str] | None = typer.Option(
        None, "--build-arg", help="Build argument KEY=VALUE. Repeat to add more."
    ),
    daemon_timeout: float | None = typer.Option(
        None, "--daemon-timeout", min=1, help="Seconds to wait for the Docker daemon."
    ),
    json_output: bool = typer.Option(False, "--json", help="Print the full result as JSON."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Build an image, falling back to the other backend on failure, then push it."""
    settings = get_settings()
    if daemon_timeout is not None:
        settings = settings.model_copy(update={"daemon_startup_timeout_seconds": daemon_timeout})
    _configure_logging(settings, verbose)
    setup_telemetry(settings)
    settings.ensure_runtime_dirs()

    memory = memory if memory is not None else settings.memory_limit
    cpus = cpus if cpus is not None else settings.cpu_count
    explicit: set[str] = set()
    if backend is not None:
        explicit.add("backend_override")
    if no_cache is not None:
        explicit.add("no_cache")
    if squash is not None:
        explicit.add("squash")
    if memory is not None:
        explicit.add("memory")
    if cpus is not None:
        explicit.add("cpu_count")

    try:
        request = BuildRequest(
            dockerfile_path=dockerfile or settings.dockerfile,
            context_path=context or settings.context_dir,
            image=ImageReference(
                registry_prefix=registry if registry is not None else settings.registry_prefix,
                name=name or settings.image_name,
                tag=tag or settings.tag,
            ),
            resource_limits=ResourceLimits(memory=memory, cpu_count=cpus),
            backend_override=backend,
            profile=profile,
            no_cache=bool(no_cache),
            squash=bool(squash),
            platform=platform,
            build_args=_parse_build_args(build_arg),
        )
    except ValidationError as e:
        typer.echo(f"Invalid build request:\n{e}", err=True)
        raise typer.Exit(code=EXIT_INVALID_INPUT) from e
    request = apply_profile(request, explicit)

    previous_handler = signal.signal(signal.SIGTERM, _raise_keyboard_interrupt)
    try:
        result = BuildOrchestrator(settings).run(request)
    finally:
        signal.signal(signal.SIGTERM, previous_handler)

    if json_output:
        typer.echo(result.model_dump_json(indent=2))
    else:
        _print_summary(result)
    raise typer.Exit(code=result.exit_code)


@app.command("probe")
def probe_command(
    backend: Backend | None = typer.Option(
        None, "--backend", case_sensitive=False, help="Show what a forced backend would do."
    ),
    json_output: bool = typer.Option(False, "--json", help="Print the snapshot as JSON."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Show the detected build capabilities and the backend that would be chosen."""
    settings = get_settings()
    _configure_logging(settings, verbose)

    snapshot = CapabilityProbe(settings).probe()
    choice = select_backend(snapshot, backend)
    selected = None if isinstance(choice, NoBackendAvailable) else choice
    warning = selection_warning(snapshot, selected) if selected is not None else None

    if json_output:
        payload = {
            "snapshot": snapshot.model_dump(mode="json"),
            "selected_backend": selected.value if selected is not None else None,
            "warning": warning,
        }
        typer.echo(json.dumps(payload, indent=2))
        if selected is None:
            raise typer.Exit(code=1)
        return

    typer.echo(f"Daemonless builder (buildah): {snapshot.has_daemonless_builder}")
    typer.echo(f"Daemon builder (docker):      {snapshot.has_daemon_builder}")
    typer.echo(f"Running in container:         {snapshot.running_in_container}")
    typer.echo(f"User namespaces:              {snapshot.has_user_namespace}")
    for tool, version in sorted(snapshot.tool_versions.items()):
        typer.echo(f"{tool}: {version}")

    if isinstance(choice, NoBackendAvailable):
        typer.echo(f"Selected backend: none ({choice.reason})", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Selected backend: {choice.value}")
    if warning:
        typer.echo(f"Warning: {warning}", err=True)


def main() -> None:
    app()


if __name__ == "__main__":  # pragma: no cover
    main()
