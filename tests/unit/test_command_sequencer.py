"""Unit tests for command_sequencer.py - Startup choreography timing."""

from unittest.mock import call, patch

import pytest

from team_orchestrator.command_sequencer import CommandSequencer
from team_orchestrator.models import ChoreographyTimings, ProcessHandle


class SimulatedClock:
    """Stands in for asyncio.sleep and records what happened when."""

    def __init__(self):
        self.now = 0.0
        self.events = []

    async def sleep(self, delay):
        self.now += delay

    def recorder(self, name):
        def record(*args):
            self.events.append((self.now, name, args))

        return record


@pytest.fixture
def clock():
    clock = SimulatedClock()
    with patch("team_orchestrator.command_sequencer.asyncio.sleep", new=clock.sleep):
        yield clock


@pytest.fixture
def handle():
    return ProcessHandle(handle_id="team-00000001", name="persistent")


@pytest.fixture
def recording_service(mock_process_service, clock):
    mock_process_service.run_command.side_effect = clock.recorder("run_command")
    mock_process_service.focus.side_effect = clock.recorder("focus")
    mock_process_service.send_input.side_effect = clock.recorder("send_input")
    return mock_process_service


class TestRunStartup:
    """Launch -> focus -> type prompt -> submit."""

    @pytest.mark.asyncio
    async def test_builder_choreography_timeline(self, recording_service, clock, handle, roles):
        builder = roles.lookup("builder")
        sequencer = CommandSequencer(recording_service)

        result = await sequencer.run_startup(handle, builder)

        assert clock.events == [
            (0.0, "run_command", ("claude", handle)),
            (5.0, "focus", (handle,)),
            (7.0, "send_input", (handle, builder.prompt, False)),
            (10.0, "send_input", (handle, "", True)),
        ]
        assert result.completed == ["launch", "focus", "send_prompt", "submit"]
        assert result.succeeded

    @pytest.mark.asyncio
    async def test_custom_launch_command_and_timings(
        self, recording_service, clock, handle, roles
    ):
        timings = ChoreographyTimings(launch_grace=1.0, focus_settle=0.5, instruction_settle=0.25)
        sequencer = CommandSequencer(recording_service, timings, launch_command="claude --resume")

        await sequencer.run_startup(handle, roles.lookup("reviewer"))

        assert [(at, name) for at, name, _ in clock.events] == [
            (0.0, "run_command"),
            (1.0, "focus"),
            (1.5, "send_input"),
            (1.75, "send_input"),
        ]
        assert clock.events[0][2] == ("claude --resume", handle)

    @pytest.mark.asyncio
    async def test_failed_step_does_not_stop_later_steps(
        self, recording_service, clock, handle, roles
    ):
        recording_service.focus.side_effect = RuntimeError("pane gone")
        sequencer = CommandSequencer(recording_service)

        result = await sequencer.run_startup(handle, roles.lookup("builder"))

        assert result.failed == ["focus"]
        assert result.completed == ["launch", "send_prompt", "submit"]
        assert not result.succeeded
        assert recording_service.send_input.await_count == 2
        # Failures do not shift the schedule
        assert clock.now == 10.0

    @pytest.mark.asyncio
    async def test_stops_when_instance_no_longer_active(
        self, recording_service, clock, handle, roles
    ):
        checks = iter([True, False])
        sequencer = CommandSequencer(recording_service)

        result = await sequencer.run_startup(
            handle, roles.lookup("builder"), is_alive=lambda: next(checks)
        )

        assert result.aborted
        assert result.completed == ["launch"]
        recording_service.focus.assert_not_awaited()
        recording_service.send_input.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_not_alive_before_launch(self, recording_service, clock, handle, roles):
        sequencer = CommandSequencer(recording_service)

        result = await sequencer.run_startup(handle, roles.lookup("cto"), is_alive=lambda: False)

        assert result.aborted
        assert result.completed == []
        recording_service.run_command.assert_not_awaited()


class TestInteractiveMessages:
    @pytest.mark.asyncio
    async def test_send_interactive_message(self, mock_process_service, clock, handle):
        sequencer = CommandSequencer(mock_process_service)

        assert await sequencer.send_interactive_message(handle, "run the tests")

        assert mock_process_service.send_input.await_args_list == [
            call(handle, "run the tests", False),
            call(handle, "", True),
        ]
        assert clock.now == pytest.approx(0.05)

    @pytest.mark.asyncio
    async def test_send_interactive_message_failure(self, mock_process_service, clock, handle):
        mock_process_service.send_input.side_effect = RuntimeError("session closed")
        sequencer = CommandSequencer(mock_process_service)

        assert await sequencer.send_interactive_message(handle, "hello") is False

    @pytest.mark.asyncio
    async def test_send_confirmation_key(self, mock_process_service, clock, handle):
        sequencer = CommandSequencer(mock_process_service)

        assert await sequencer.send_confirmation_key(handle, "2")

        mock_process_service.focus.assert_awaited_once_with(handle)
        assert mock_process_service.send_input.await_args_list == [
            call(handle, "2", False),
            call(handle, "", True),
        ]

    @pytest.mark.asyncio
    async def test_send_confirmation_key_focus_failure(self, mock_process_service, clock, handle):
        mock_process_service.focus.side_effect = RuntimeError("no pane")
        sequencer = CommandSequencer(mock_process_service)

        assert await sequencer.send_confirmation_key(handle, "1") is False
        mock_process_service.send_input.assert_not_awaited()
