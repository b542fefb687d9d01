"""Unit tests for logging_manager.py."""

import asyncio
import json
import logging
from unittest.mock import AsyncMock

import pytest

from team_orchestrator.logging_manager import (
    LoggingManager,
    LogStreamHandler,
    get_log_stream_handler,
)


@pytest.fixture
def logging_manager(tmp_path):
    return LoggingManager(log_dir=tmp_path / "logs", log_level="DEBUG")


class TestWebSocketBroadcasting:
    """Real-time log streaming via WebSocket."""

    @pytest.mark.asyncio
    async def test_broadcast_log_to_connected_clients(self):
        handler = LogStreamHandler(log_type="system_log")
        mock_ws1 = AsyncMock()
        mock_ws2 = AsyncMock()
        handler.add_client(mock_ws1)
        handler.add_client(mock_ws2)

        log_entry = {"timestamp": "2025-01-01T00:00:00", "level": "INFO", "message": "hi"}
        await handler._broadcast(log_entry)

        expected_message = {"type": "system_log", "data": log_entry}
        mock_ws1.send_json.assert_awaited_once_with(expected_message)
        mock_ws2.send_json.assert_awaited_once_with(expected_message)

    @pytest.mark.asyncio
    async def test_broadcast_removes_disconnected_clients(self):
        handler = LogStreamHandler()
        connected = AsyncMock()
        disconnected = AsyncMock()
        disconnected.send_json.side_effect = Exception("Connection closed")
        handler.add_client(connected)
        handler.add_client(disconnected)

        await handler._broadcast({"level": "INFO", "message": "test"})

        assert handler.clients == {connected}

    def test_emit_without_event_loop(self):
        handler = LogStreamHandler()
        handler.add_client(AsyncMock())
        record = logging.LogRecord("team_orchestrator", logging.INFO, __file__, 1, "msg", None, None)

        # No running loop: nothing to schedule, and no error
        handler.emit(record)

    @pytest.mark.asyncio
    async def test_emit_schedules_broadcast_with_extras(self):
        handler = LogStreamHandler()
        handler.setFormatter(logging.Formatter("%(message)s"))
        client = AsyncMock()
        handler.add_client(client)
        record = logging.LogRecord(
            "team_orchestrator.instance_manager", logging.INFO, __file__, 1, "created", None, None
        )
        record.instance_id = "builder_1"

        handler.emit(record)
        await asyncio.sleep(0)

        sent = client.send_json.await_args.args[0]
        assert sent["type"] == "system_log"
        assert sent["data"]["message"] == "created"
        assert sent["data"]["instance_id"] == "builder_1"

    def test_remove_client(self):
        handler = LogStreamHandler()
        client = AsyncMock()
        handler.add_client(client)
        handler.remove_client(client)
        handler.remove_client(client)

        assert handler.clients == set()

    def test_global_handler_is_singleton(self):
        assert get_log_stream_handler() is get_log_stream_handler()


class TestLoggingManagerSetup:
    def test_creates_directories(self, logging_manager, tmp_path):
        assert (tmp_path / "logs" / "instances").is_dir()
        assert (tmp_path / "logs" / "audit").is_dir()

    def test_package_logger_handlers(self, logging_manager):
        logger = logging.getLogger("team_orchestrator")

        assert logger.propagate is False
        assert get_log_stream_handler() in logger.handlers
        assert len(logger.handlers) == 3

    def test_module_loggers_propagate(self, logging_manager):
        module_logger = logging.getLogger("team_orchestrator.instance_manager")
        assert module_logger.propagate is True
        assert module_logger.handlers == []

    def test_orchestrator_log_is_json_with_extras(self, logging_manager, tmp_path):
        logging.getLogger("team_orchestrator.instance_manager").info(
            "Creating instance", extra={"instance_id": "builder_1"}
        )

        line = (tmp_path / "logs" / "orchestrator.log").read_text().strip().splitlines()[-1]
        entry = json.loads(line)
        assert entry["message"] == "Creating instance"
        assert entry["instance_id"] == "builder_1"
        assert entry["level"] == "INFO"


class TestAuditLog:
    def test_audit_events_round_trip(self, logging_manager):
        logging_manager.log_audit_event(
            event_type="instance_create",
            instance_id="builder_1",
            details={"role": "builder"},
        )
        logging_manager.log_audit_event(event_type="team_create", details={"template_id": "pair"})

        events = logging_manager.read_audit_events()

        assert [event["event_type"] for event in events] == ["instance_create", "team_create"]
        assert events[0]["instance_id"] == "builder_1"
        assert events[0]["details"] == {"role": "builder"}
        assert events[1]["instance_id"] is None

    def test_read_audit_events_limit(self, logging_manager):
        for i in range(5):
            logging_manager.log_audit_event(event_type="instance_create", instance_id=f"i{i}")

        events = logging_manager.read_audit_events(limit=2)

        assert [event["instance_id"] for event in events] == ["i3", "i4"]

    def test_malformed_lines_skipped(self, logging_manager):
        logging_manager.log_audit_event(event_type="instance_create")
        with logging_manager.audit_file.open("a") as f:
            f.write("not json\n")

        assert len(logging_manager.read_audit_events()) == 1

    def test_audit_file_naming(self, logging_manager):
        assert logging_manager.audit_file.name.startswith("audit_")
        assert logging_manager.audit_file.suffix == ".jsonl"


class TestInstanceLogs:
    def test_instance_logger_writes_metadata_and_log(self, logging_manager, tmp_path):
        instance_logger = logging_manager.get_instance_logger("builder_1", "🔨 Builder")
        instance_logger.info("Instance active")

        instance_dir = tmp_path / "logs" / "instances" / "builder_1"
        metadata = json.loads((instance_dir / "metadata.json").read_text())
        assert metadata["instance_id"] == "builder_1"
        assert metadata["instance_name"] == "🔨 Builder"

        lines = logging_manager.get_instance_logs("builder_1")
        assert any("Instance active" in line for line in lines)

    def test_instance_logger_is_cached(self, logging_manager):
        first = logging_manager.get_instance_logger("builder_1")
        assert logging_manager.get_instance_logger("builder_1") is first

    def test_adapter_injects_instance_context(self, logging_manager):
        adapter = logging_manager.get_instance_logger("builder_1", "Builder")

        _, kwargs = adapter.process("msg", {"extra": {"step": "focus"}})

        assert kwargs["extra"] == {
            "step": "focus",
            "instance_id": "builder_1",
            "instance_name": "Builder",
        }

    def test_process_output_log(self, logging_manager):
        logging_manager.log_process_output("builder_1", "> claude\nReady")

        lines = logging_manager.get_instance_logs("builder_1", log_type="output")

        assert "Ready\n" in lines
        assert any(line.startswith("=" * 80) for line in lines)

    def test_tail(self, logging_manager):
        instance_logger = logging_manager.get_instance_logger("builder_1")
        for i in range(10):
            instance_logger.info(f"line {i}")

        lines = logging_manager.get_instance_logs("builder_1", tail=3)

        assert len(lines) == 3
        assert "line 9" in lines[-1]

    def test_unknown_instance_has_no_logs(self, logging_manager):
        assert logging_manager.get_instance_logs("nope") == []

    def test_release_keeps_files(self, logging_manager, tmp_path):
        instance_logger = logging_manager.get_instance_logger("builder_1")
        instance_logger.info("before release")

        logging_manager.release_instance_logger("builder_1")

        assert instance_logger.logger.handlers == []
        assert logging_manager.get_instance_logs("builder_1")

    def test_cleanup_instance_logs(self, logging_manager, tmp_path):
        logging_manager.get_instance_logger("builder_1").info("bye")

        logging_manager.cleanup_instance_logs("builder_1")

        assert not (tmp_path / "logs" / "instances" / "builder_1").exists()
