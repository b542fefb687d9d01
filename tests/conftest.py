"""Shared fixtures for team orchestrator tests."""

from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from team_orchestrator.models import (
    ChoreographyTimings,
    Instance,
    InstanceStatus,
    ProcessHandle,
    Role,
    TeamTemplate,
)
from team_orchestrator.process_service import ProcessService
from team_orchestrator.registry import RoleRegistry, TeamTemplateRegistry


def _role(role_id: str, name: str, icon: str) -> Role:
    return Role(
        id=role_id,
        name=name,
        description=f"{name} role",
        color="#2563eb",
        icon=icon,
        allowed_tools=("Read", "Write"),
        prompt=f"You are the {name}. Wait for instructions.",
    )


@pytest.fixture
def roles():
    """Small role registry used across tests."""
    return RoleRegistry(
        [
            _role("cto", "CTO Agent", "👨‍💼"),
            _role("builder", "Builder", "🔨"),
            _role("reviewer", "Reviewer", "👀"),
        ]
    )


@pytest.fixture
def templates():
    return TeamTemplateRegistry(
        [
            TeamTemplate(
                id="pair",
                name="Pair",
                description="Builder and reviewer",
                roles=("builder", "reviewer"),
            ),
            TeamTemplate(
                id="trio",
                name="Trio",
                description="CTO, builder and reviewer",
                roles=("cto", "builder", "reviewer"),
            ),
            TeamTemplate(
                id="broken",
                name="Broken",
                description="References a role that does not exist",
                roles=("builder", "ghost", "reviewer"),
            ),
        ]
    )


@pytest.fixture
def fast_timings():
    """Choreography timings shrunk so background work finishes quickly."""
    return ChoreographyTimings(
        launch_grace=0.01,
        focus_settle=0.01,
        instruction_settle=0.01,
        submit_delay=0.0,
        team_spawn_interval=0.0,
        termination_grace=0.01,
        history_poll_interval=0.01,
        initial_history_delay=0.01,
    )


@pytest.fixture
def mock_process_service():
    """Process service double handing out sequential handles."""
    service = MagicMock(spec=ProcessService)
    service.is_available.return_value = True
    counter = {"count": 0}

    def allocate(cwd=None, env=None):
        counter["count"] += 1
        return ProcessHandle(handle_id=f"team-{counter['count']:08d}", name="persistent")

    service.create_persistent_process = AsyncMock(side_effect=allocate)
    service.create_process = AsyncMock()
    service.run_command = AsyncMock()
    service.focus = AsyncMock()
    service.get_handle = AsyncMock(
        side_effect=lambda handle_id: ProcessHandle(handle_id=handle_id, name="persistent")
    )
    service.send_input = AsyncMock()
    service.read_output = AsyncMock(return_value="")
    service.kill = AsyncMock()
    return service


@pytest.fixture
def instance_factory(roles):
    """Build Instance records without going through the manager."""

    def make(
        instance_id: str = "builder_1",
        role_id: str = "builder",
        status: InstanceStatus = InstanceStatus.ACTIVE,
        handle: ProcessHandle | None = ProcessHandle(handle_id="team-00000001"),
        **changes,
    ) -> Instance:
        role = roles.lookup(role_id)
        return Instance(
            id=instance_id,
            name=role.display_name,
            role_id=role_id,
            role=role,
            status=status,
            created_at=datetime(2025, 1, 1, tzinfo=UTC),
            handle=handle,
            **changes,
        )

    return make
