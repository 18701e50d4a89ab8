"""DaemonLifecycleManager for bringing a Docker daemon to a ready state."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import time
from pathlib import Path
from typing import Protocol

import docker
from docker.errors import DockerException

from vllm_image_builder.core.config import Settings, get_settings
from vllm_image_builder.models.common import DaemonStatus
from vllm_image_builder.models.daemon import DaemonState
from vllm_image_builder.services.builder_base import terminate_process

logger = logging.getLogger(__name__)

HANDSHAKE_TIMEOUT_SECONDS = 2


class Clock(Protocol):
    """Time source used for readiness polling."""

    def monotonic(self) -> float: ...

    def sleep(self, seconds: float) -> None: ...


class SystemClock:
    """Wall-clock implementation of Clock."""

    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        time.sleep(seconds)


class DockerdLauncher:
    """Spawns ``dockerd`` and checks whether a daemon answers on a socket."""

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()

    def _use_sudo(self) -> bool:
        if self.settings.daemon_use_sudo is not None:
            return self.settings.daemon_use_sudo
        return os.geteuid() != 0 and shutil.which("sudo") is not None

    def command(self, data_dir: Path, socket_path: Path) -> list[str]:
        """Build the dockerd command line for an unprivileged, network-less daemon."""
        cmd = ["dockerd", f"--host=unix://{socket_path}"]
        if self.settings.dockerd_tcp_host:
            cmd.append(f"--host={self.settings.dockerd_tcp_host}")
        cmd.extend(
            [
                "--storage-driver=overlay2",
                f"--exec-root={self.settings.docker_exec_root}",
                f"--data-root={data_dir}",
                "--iptables=false",
                "--ip-masq=false",
                "--bridge=none",
                "--userland-proxy=false",
                "--live-restore",
                "--log-level=warn",
            ]
        )
        if self._use_sudo():
            cmd = ["sudo", "-n", *cmd]
        return cmd

    def launch(self, data_dir: Path, socket_path: Path) -> subprocess.Popen:
        """Start dockerd detached from our session with output to the log file.

        Raises:
            OSError: If the process cannot be spawned
        """
        cmd = self.command(data_dir, socket_path)
        log_path = self.settings.dockerd_log_path
        log_path.parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"Launching Docker daemon: {' '.join(cmd)}")
        with open(log_path, "ab") as log_file:
            return subprocess.Popen(
                cmd,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                start_new_session=True,
            )

    def is_reachable(self, socket_path: Path) -> bool:
        """Return True if a daemon completes a version handshake on the socket."""
        try:
            client = docker.DockerClient(
                base_url=f"unix://{socket_path}", timeout=HANDSHAKE_TIMEOUT_SECONDS
            )
        except (DockerException, OSError):
            return False
        try:
            client.version()
            return True
        except (DockerException, OSError) as e:
            logger.debug(f"Daemon handshake failed: {e}")
            return False
        finally:
            client.close()


class DaemonLifecycleManager:
    """Ensures a Docker daemon is reachable, starting one if allowed.

    Readiness is decided in two phases: the control socket must exist and
    a version handshake must succeed. Polling is bounded, so ``ensure_ready``
    returns a FAILED state no later than one poll interval past the timeout.
    A failed start is never retried here; the orchestrator decides whether
    to fall back to another backend. A daemon that failed to start is sent
    SIGTERM without waiting; ``release`` reaps it once the caller is done.

    Example:
        ```python
        manager = DaemonLifecycleManager(running_in_container=True)
        state = manager.ensure_ready(timeout=30)
        if not state.is_ready:
            print(state.error_message)
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        launcher: DockerdLauncher | None = None,
        clock: Clock | None = None,
        running_in_container: bool = False,
    ) -> None:
        """Initialize the manager.

        Args:
            settings: Application settings (uses default if not provided)
            launcher: Process launcher (tests inject a fake)
            clock: Time source (tests inject a fake)
            running_in_container: Whether autostart is allowed by default
        """
        self.settings = settings or get_settings()
        self.launcher = launcher or DockerdLauncher(self.settings)
        self.clock = clock or SystemClock()
        self.running_in_container = running_in_container
        self._process: subprocess.Popen | None = None
        self._stopping: list[subprocess.Popen] = []
        self._ready_state: DaemonState | None = None

    @property
    def socket_path(self) -> Path:
        return self.settings.docker_socket_path

    def _autostart_allowed(self) -> bool:
        if self.settings.daemon_autostart is not None:
            return self.settings.daemon_autostart
        return self.running_in_container

    def ensure_ready(self, timeout: float | None = None) -> DaemonState:
        """Bring the daemon to READY or FAILED within ``timeout`` seconds."""
        if self._ready_state is not None:
            return self._ready_state

        if timeout is None:
            timeout = self.settings.daemon_startup_timeout_seconds
        state = DaemonState(socket_path=self.socket_path)
        started = self.clock.monotonic()
        state.transition(DaemonStatus.STARTING)
        logger.info(f"Daemon state: {DaemonStatus.NOT_STARTED.value} -> {DaemonStatus.STARTING.value}")

        if self.socket_path.exists() and self.launcher.is_reachable(self.socket_path):
            logger.info(f"Docker daemon already running on {self.socket_path}")
            return self._mark_ready(state, started)

        if not self._autostart_allowed():
            return self._mark_failed(
                state,
                started,
                f"Docker daemon not reachable on {self.socket_path} and autostart is disabled",
            )

        try:
            self._process = self.launcher.launch(self.settings.docker_data_root, self.socket_path)
        except OSError as e:
            return self._mark_failed(state, started, f"Failed to launch dockerd: {e}")
        state.pid = self._process.pid
        state.launched = True

        deadline = started + timeout
        while True:
            exit_code = self._process.poll()
            if exit_code is not None:
                return self._mark_failed(
                    state,
                    started,
                    f"dockerd exited with code {exit_code}, see {self.settings.dockerd_log_path}",
                )
            if self.socket_path.exists() and self.launcher.is_reachable(self.socket_path):
                return self._mark_ready(state, started)
            if self.clock.monotonic() >= deadline:
                break
            self.clock.sleep(self.settings.daemon_poll_interval_seconds)

        return self._mark_failed(
            state,
            started,
            f"Docker daemon not ready after {timeout:.0f}s, see {self.settings.dockerd_log_path}",
        )

    def _mark_ready(self, state: DaemonState, started: float) -> DaemonState:
        state.elapsed_seconds = self.clock.monotonic() - started
        state.transition(DaemonStatus.READY)
        logger.info(f"Daemon state: starting -> ready ({state.elapsed_seconds:.1f}s)")
        self._ready_state = state
        return state

    def _mark_failed(self, state: DaemonState, started: float, message: str) -> DaemonState:
        state.elapsed_seconds = self.clock.monotonic() - started
        state.transition(DaemonStatus.FAILED, error_message=message)
        logger.error(f"Daemon state: starting -> failed: {message}")
        self._signal_stop()
        return state

    def _signal_stop(self) -> None:
        """Send SIGTERM to the launched daemon and return without waiting."""
        process = self._process
        if process is None:
            return
        self._process = None
        self._stopping.append(process)
        if process.poll() is not None:
            return
        logger.info(f"Stopping dockerd (pid {process.pid})")
        try:
            process.terminate()
        except ProcessLookupError:
            logger.debug(f"Process {process.pid} already exited")

    def release(self) -> None:
        """Reap daemons whose start failed. A ready daemon keeps running."""
        while self._stopping:
            terminate_process(self._stopping.pop(), self.settings.daemon_stop_grace_seconds)

    def shutdown(self) -> None:
        """Stop every daemon this manager launched, including a ready one."""
        self.release()
        if self._process is None:
            return
        terminate_process(self._process, self.settings.daemon_stop_grace_seconds)
        self._process = None
        self._ready_state = None
