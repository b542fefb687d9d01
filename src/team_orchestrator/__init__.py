"""Team orchestrator: role-specialized Claude CLI sessions driven through tmux."""

__version__ = "0.1.0"

from .instance_manager import AllocationError, InstanceManager, InstanceNotFoundError
from .logging_manager import LoggingManager, get_log_stream_handler
from .models import (
    ChoreographyTimings,
    ConfirmationKey,
    Instance,
    InstanceStatus,
    OrchestratorConfig,
    Role,
    TeamTemplate,
)
from .registry import RoleNotFoundError, TemplateNotFoundError, load_registries

__all__ = [
    "AllocationError",
    "ChoreographyTimings",
    "ConfirmationKey",
    "Instance",
    "InstanceManager",
    "InstanceNotFoundError",
    "InstanceStatus",
    "LoggingManager",
    "OrchestratorConfig",
    "Role",
    "RoleNotFoundError",
    "TeamTemplate",
    "TemplateNotFoundError",
    "get_log_stream_handler",
    "load_registries",
]
