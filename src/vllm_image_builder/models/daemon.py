"""Daemon lifecycle state."""

from pathlib import Path

from pydantic import BaseModel, Field

from vllm_image_builder.models.common import DaemonStatus, InvalidStateTransitionError

# Valid state transitions as a mapping from current state to allowed target states
VALID_TRANSITIONS: dict[DaemonStatus, set[DaemonStatus]] = {
    DaemonStatus.NOT_STARTED: {DaemonStatus.STARTING},
    DaemonStatus.STARTING: {DaemonStatus.READY, DaemonStatus.FAILED},
    DaemonStatus.READY: set(),  # Terminal
    DaemonStatus.FAILED: set(),  # Terminal
}


class DaemonState(BaseModel):
    """Mutable state of one daemon start attempt.

    Owned by a single DaemonLifecycleManager invocation. Once READY or
    FAILED the state is terminal; a new attempt needs a fresh DaemonState.

    Attributes:
        status: Current lifecycle status
        socket_path: Control socket the daemon listens on
        pid: PID of the daemon we spawned, None if it was already running
        launched: True if this attempt spawned the daemon process
        error_message: Details when FAILED
        elapsed_seconds: Time spent waiting for readiness
    """

    status: DaemonStatus = DaemonStatus.NOT_STARTED
    socket_path: Path | None = None
    pid: int | None = None
    launched: bool = False
    error_message: str | None = None
    elapsed_seconds: float = 0.0
    history: list[DaemonStatus] = Field(default_factory=lambda: [DaemonStatus.NOT_STARTED])

    @property
    def is_terminal(self) -> bool:
        return not VALID_TRANSITIONS[self.status]

    @property
    def is_ready(self) -> bool:
        return self.status == DaemonStatus.READY

    def transition(self, target: DaemonStatus, error_message: str | None = None) -> None:
        """Move to ``target``, enforcing the lifecycle.

        Raises:
            InvalidStateTransitionError: If the transition is not allowed
        """
        if target not in VALID_TRANSITIONS[self.status]:
            raise InvalidStateTransitionError(
                f"Invalid daemon transition: {self.status.value} -> {target.value}"
            )
        self.status = target
        self.history.append(target)
        if error_message is not None:
            self.error_message = error_message
