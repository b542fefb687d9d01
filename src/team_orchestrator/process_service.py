"""Process service backing orchestrated sessions.

The orchestrator only talks to the abstract :class:`ProcessService`. The
tmux implementation gives every instance its own detached session so the
interactive CLI keeps running and can be attached to from a terminal.
"""

import logging
import shutil
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

import libtmux

from .models import ProcessHandle

logger = logging.getLogger(__name__)

SESSION_PREFIX = "team-"


@dataclass
class ProcessConfig:
    """Parameters for creating a process."""

    name: str
    command: str | None = None
    cwd: str | None = None
    env: dict[str, str] = field(default_factory=dict)


class ProcessService(ABC):
    """Contract for the external service that owns interactive processes.

    Every method may suspend and may raise; callers decide how failures are
    absorbed.
    """

    def is_available(self) -> bool:
        return True

    @abstractmethod
    async def create_process(self, config: ProcessConfig) -> ProcessHandle: ...

    @abstractmethod
    async def create_persistent_process(
        self, cwd: str | None = None, env: dict[str, str] | None = None
    ) -> ProcessHandle: ...

    @abstractmethod
    async def run_command(self, command: str, target: ProcessHandle) -> None: ...

    @abstractmethod
    async def focus(self, handle: ProcessHandle) -> None: ...

    @abstractmethod
    async def get_handle(self, handle_id: str) -> ProcessHandle | None: ...

    @abstractmethod
    async def send_input(self, handle: ProcessHandle, text: str, submit: bool) -> None: ...

    @abstractmethod
    async def read_output(self, handle: ProcessHandle) -> str: ...

    @abstractmethod
    async def kill(self, handle: ProcessHandle) -> None: ...


class TmuxProcessService(ProcessService):
    """Process service that runs each process in its own tmux session."""

    def __init__(self, server: libtmux.Server | None = None, width: int = 160, height: int = 50):
        """Initialize the tmux process service.

        Args:
            server: libtmux server to use (a default server is created if omitted)
            width: Pane width for new sessions
            height: Pane height for new sessions
        """
        self.tmux_server = server or libtmux.Server()
        self.width = width
        self.height = height
        self.sessions: dict[str, libtmux.Session] = {}
        self.handles: dict[str, ProcessHandle] = {}

    def is_available(self) -> bool:
        return shutil.which("tmux") is not None

    async def create_process(self, config: ProcessConfig) -> ProcessHandle:
        handle = self._new_session(config.name, config.cwd, config.env)
        if config.command:
            await self.run_command(config.command, handle)
        return handle

    async def create_persistent_process(
        self, cwd: str | None = None, env: dict[str, str] | None = None
    ) -> ProcessHandle:
        return self._new_session("persistent", cwd, env or {})

    def _new_session(self, name: str, cwd: str | None, env: dict[str, str]) -> ProcessHandle:
        handle_id = f"{SESSION_PREFIX}{uuid.uuid4().hex[:8]}"
        kwargs = {
            "session_name": handle_id,
            "window_name": name[:32] or "shell",
            "x": self.width,
            "y": self.height,
        }
        if cwd:
            kwargs["start_directory"] = cwd
        if env:
            kwargs["environment"] = env

        try:
            session = self.tmux_server.new_session(**kwargs)
        except Exception as e:
            logger.error(f"Failed to create tmux session {handle_id}: {e}")
            raise

        handle = ProcessHandle(handle_id=handle_id, name=name)
        self.sessions[handle_id] = session
        self.handles[handle_id] = handle
        logger.debug(f"Created tmux session {handle_id} ({name})", extra={"handle_id": handle_id})
        return handle

    def _pane(self, handle: ProcessHandle):
        session = self.sessions.get(handle.handle_id)
        if session is None:
            raise RuntimeError(f"No tmux session found for handle {handle.handle_id}")
        return session.windows[0].panes[0]

    async def run_command(self, command: str, target: ProcessHandle) -> None:
        self._pane(target).send_keys(command, enter=True)
        logger.debug(f"Started '{command}' in {target.handle_id}")

    async def focus(self, handle: ProcessHandle) -> None:
        pane = self._pane(handle)
        pane.window.cmd("select-window")
        pane.cmd("select-pane")
        # Only meaningful when a client is attached to the tmux server
        if self.tmux_server.attached_sessions:
            self.tmux_server.cmd("switch-client", "-t", handle.handle_id)

    async def get_handle(self, handle_id: str) -> ProcessHandle | None:
        return self.handles.get(handle_id)

    async def send_input(self, handle: ProcessHandle, text: str, submit: bool) -> None:
        pane = self._pane(handle)
        if text:
            pane.send_keys(text, enter=False, literal=True)
        if submit:
            pane.send_keys("Enter", enter=False, literal=False)

    async def read_output(self, handle: ProcessHandle) -> str:
        # -S - starts the capture at the beginning of the scrollback history
        return "\n".join(self._pane(handle).cmd("capture-pane", "-p", "-S", "-").stdout)

    async def kill(self, handle: ProcessHandle) -> None:
        session = self.sessions.pop(handle.handle_id, None)
        self.handles.pop(handle.handle_id, None)
        if session is None:
            logger.warning(f"Kill requested for unknown tmux session {handle.handle_id}")
            return
        self.tmux_server.cmd("kill-session", "-t", handle.handle_id)
        logger.info(f"Killed tmux session: {handle.handle_id}")

    def cleanup_orphaned_sessions(self) -> int:
        """Kill ``team-*`` sessions left over from previous runs.

        Returns:
            Number of sessions killed
        """
        killed = 0
        try:
            for session in list(self.tmux_server.sessions):
                name = session.session_name or ""
                if name.startswith(SESSION_PREFIX) and name not in self.sessions:
                    self.tmux_server.cmd("kill-session", "-t", name)
                    killed += 1
        except Exception as e:
            logger.warning(f"Failed to cleanup orphaned tmux sessions: {e}")
            return killed

        if killed:
            logger.info(f"Cleaned up {killed} orphaned tmux sessions from previous runs")
        return killed
