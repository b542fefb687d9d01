"""Data models for the team orchestrator.

Roles and team templates are immutable configuration records. Instances are
frozen too: every change produces a new record through ``dataclasses.replace``.
"""

import os
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any

MIN_DISPLAY_HEIGHT = 80
MAX_DISPLAY_HEIGHT = 600
DEFAULT_DISPLAY_HEIGHT = 300


class InstanceStatus(str, Enum):
    """Lifecycle state of an orchestrated session."""

    STARTING = "starting"
    ACTIVE = "active"
    TERMINATED = "terminated"

    def can_transition_to(self, other: "InstanceStatus") -> bool:
        """Return True if moving from this state to ``other`` is allowed.

        The lifecycle is monotonic: starting -> active -> terminated, and a
        starting session may be terminated before it ever becomes active.
        """
        return other in _ALLOWED_TRANSITIONS[self]


_ALLOWED_TRANSITIONS = {
    InstanceStatus.STARTING: {InstanceStatus.ACTIVE, InstanceStatus.TERMINATED},
    InstanceStatus.ACTIVE: {InstanceStatus.TERMINATED},
    InstanceStatus.TERMINATED: set(),
}


class ConfirmationKey(str, Enum):
    """Single-key answers to the CLI's permission prompts."""

    YES = "1"
    YES_DONT_ASK_AGAIN = "2"
    NO = "3"


@dataclass(frozen=True)
class Role:
    """A behavioral profile assignable to an instance.

    Roles differ only in data. ``allowed_tools`` is advisory and is never
    enforced by the orchestrator.
    """

    id: str
    name: str
    description: str
    color: str
    icon: str
    allowed_tools: tuple[str, ...]
    prompt: str

    @property
    def display_name(self) -> str:
        return f"{self.icon} {self.name}".strip()

    def to_dict(self, include_prompt: bool = False) -> dict[str, Any]:
        data = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "color": self.color,
            "icon": self.icon,
            "allowed_tools": list(self.allowed_tools),
        }
        if include_prompt:
            data["prompt"] = self.prompt
        return data


@dataclass(frozen=True)
class TeamTemplate:
    """Ordered list of role ids created together as a batch."""

    id: str
    name: str
    description: str
    roles: tuple[str, ...]
    icon: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "roles": list(self.roles),
            "icon": self.icon,
        }


@dataclass(frozen=True)
class ProcessHandle:
    """Opaque reference to a process owned by the process service."""

    handle_id: str
    name: str = ""


@dataclass(frozen=True)
class Instance:
    """One orchestrated session, bound to at most one process handle.

    Attributes:
        id: Unique id, derived from the role id and a timestamp/counter pair.
        name: Display label (role icon and role name).
        role_id: Key into the role registry.
        role: Snapshot of the role the instance was created against.
        status: Current lifecycle state.
        created_at: Creation time (UTC).
        handle: Process handle, or None for a degraded instance.
        show_history: Whether the output buffer is displayed and polled.
        history_buffer: Last normalized output snapshot.
        display_height: Preferred output panel height, 80-600.
        terminated_at: Time the instance entered ``terminated``.
    """

    id: str
    name: str
    role_id: str
    role: Role
    status: InstanceStatus
    created_at: datetime
    handle: ProcessHandle | None = None
    show_history: bool = True
    history_buffer: str = ""
    display_height: int = DEFAULT_DISPLAY_HEIGHT
    terminated_at: datetime | None = None

    def __post_init__(self):
        if not MIN_DISPLAY_HEIGHT <= self.display_height <= MAX_DISPLAY_HEIGHT:
            raise ValueError(
                f"display_height must be within [{MIN_DISPLAY_HEIGHT}, {MAX_DISPLAY_HEIGHT}], "
                f"got {self.display_height}"
            )

    @property
    def is_active(self) -> bool:
        return self.status == InstanceStatus.ACTIVE

    @property
    def is_degraded(self) -> bool:
        """True for an instance running without a process handle."""
        return self.handle is None

    def evolve(self, **changes: Any) -> "Instance":
        """Return a copy of this record with ``changes`` applied."""
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "role_id": self.role_id,
            "role": self.role.to_dict(),
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "handle_id": self.handle.handle_id if self.handle else None,
            "degraded": self.is_degraded,
            "show_history": self.show_history,
            "history_buffer": self.history_buffer,
            "display_height": self.display_height,
            "terminated_at": self.terminated_at.isoformat() if self.terminated_at else None,
        }


@dataclass
class ChoreographyTimings:
    """Delays (seconds) used to drive sessions that give no readiness signal.

    The values are empirically tuned for the Claude CLI.

    Attributes:
        launch_grace: Wait after issuing the launch command.
        focus_settle: Wait after focusing the session.
        instruction_settle: Wait between typing the role prompt and submitting it.
            Sized for the longest prompt, not the shortest.
        submit_delay: Wait between text and submit for interactive messages.
        team_spawn_interval: Wait after each member of a team is created.
        termination_grace: How long a terminated record stays visible.
        history_poll_interval: Period of the history poller.
        initial_history_delay: First history fetch after creation.
    """

    launch_grace: float = 5.0
    focus_settle: float = 2.0
    instruction_settle: float = 3.0
    submit_delay: float = 0.05
    team_spawn_interval: float = 0.5
    termination_grace: float = 1.0
    history_poll_interval: float = 2.0
    initial_history_delay: float = 3.0


class OrchestratorConfig:
    """Configuration for the team orchestrator."""

    def __init__(
        self,
        server_host: str = "localhost",
        server_port: int = 8010,
        log_dir: str = "/tmp/team_orchestrator_logs",
        log_level: str = "INFO",
        launch_command: str = "claude",
        working_directory: str | None = None,
        roles_file: str | None = None,
        teams_file: str | None = None,
        timings: ChoreographyTimings | None = None,
    ):
        self.server_host = server_host
        self.server_port = server_port
        self.log_dir = log_dir
        self.log_level = log_level
        self.launch_command = launch_command
        self.working_directory = working_directory
        self.roles_file = roles_file
        self.teams_file = teams_file
        self.timings = timings or ChoreographyTimings()

    @classmethod
    def from_env(cls) -> "OrchestratorConfig":
        """Build a configuration from ``TEAM_ORCHESTRATOR_*`` environment variables."""
        return cls(
            server_host=os.getenv("TEAM_ORCHESTRATOR_HOST", "localhost"),
            server_port=int(os.getenv("TEAM_ORCHESTRATOR_PORT", "8010")),
            log_dir=os.getenv("TEAM_ORCHESTRATOR_LOG_DIR", "/tmp/team_orchestrator_logs"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            launch_command=os.getenv("TEAM_ORCHESTRATOR_LAUNCH_COMMAND", "claude"),
            working_directory=os.getenv("TEAM_ORCHESTRATOR_WORKDIR") or None,
            roles_file=os.getenv("TEAM_ORCHESTRATOR_ROLES_FILE") or None,
            teams_file=os.getenv("TEAM_ORCHESTRATOR_TEAMS_FILE") or None,
        )

    def to_dict(self) -> dict[str, Any]:
        """Return a plain dict representation suitable for consumers."""
        return {
            "server_host": self.server_host,
            "server_port": self.server_port,
            "log_dir": self.log_dir,
            "log_level": self.log_level,
            "launch_command": self.launch_command,
            "working_directory": self.working_directory,
            "roles_file": self.roles_file,
            "teams_file": self.teams_file,
            "timings": asdict(self.timings),
        }


@dataclass
class ChoreographyResult:
    """Outcome of one startup choreography run."""

    completed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    aborted: bool = False

    @property
    def succeeded(self) -> bool:
        return not self.failed and not self.aborted
