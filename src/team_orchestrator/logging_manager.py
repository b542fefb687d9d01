"""Structured logging manager for the team orchestrator.

Provides per-instance logging, an audit trail, and real-time log streaming to
WebSocket clients.
"""

import asyncio
import json
import logging
import logging.handlers
import shutil
from datetime import datetime
from pathlib import Path
from typing import Any

from fastapi import WebSocket

ROOT_LOGGER_NAME = "team_orchestrator"

# Attributes every LogRecord carries; anything else was passed through ``extra``
_RECORD_ATTRIBUTES = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "message",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "thread",
        "threadName",
        "exc_info",
        "exc_text",
        "stack_info",
        "asctime",
        "taskName",
        "extras",
    }
)


def record_extras(record: logging.LogRecord) -> dict[str, Any]:
    """Collect the ``extra`` fields of a record as JSON-safe values."""
    extras = {}
    for key, value in record.__dict__.items():
        if key in _RECORD_ATTRIBUTES:
            continue
        try:
            json.dumps(value)
            extras[key] = value
        except (TypeError, ValueError):
            extras[key] = str(value)
    return extras


class LogStreamHandler(logging.Handler):
    """Logging handler that broadcasts records to WebSocket clients."""

    _instance = None

    def __init__(self, log_type: str = "system_log"):
        super().__init__()
        self.log_type = log_type
        self.clients: set[WebSocket] = set()

    @classmethod
    def get_instance(cls):
        """Get singleton instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def add_client(self, websocket: WebSocket):
        self.clients.add(websocket)

    def remove_client(self, websocket: WebSocket):
        self.clients.discard(websocket)

    def emit(self, record: logging.LogRecord):
        try:
            log_entry = {
                "timestamp": datetime.fromtimestamp(record.created).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "message": self.format(record),
                "module": record.module,
                "function": record.funcName,
                "line": record.lineno,
            }
            log_entry.update(record_extras(record))

            if self.clients:
                try:
                    loop = asyncio.get_running_loop()
                except RuntimeError:
                    # Logged from outside the event loop; nothing to broadcast on
                    return
                loop.create_task(self._broadcast(log_entry))
        except Exception:
            self.handleError(record)

    async def _broadcast(self, log_entry: dict[str, Any]):
        dead_clients = set()

        for client in list(self.clients):
            try:
                await client.send_json({"type": self.log_type, "data": log_entry})
            except Exception:
                dead_clients.add(client)

        for client in dead_clients:
            self.clients.discard(client)


def get_log_stream_handler() -> LogStreamHandler:
    """Get the global log stream handler instance."""
    return LogStreamHandler.get_instance()


class InstanceLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that adds instance context to all log messages."""

    def process(self, msg, kwargs):
        extra = kwargs.get("extra", {})
        extra.update(self.extra)
        kwargs["extra"] = extra
        return msg, kwargs


class _JsonExtraFilter(logging.Filter):
    """Renders extra fields as a JSON fragment for the file formatter."""

    def filter(self, record):
        extras = record_extras(record)
        if extras:
            record.extras = ", " + ", ".join(f'"{k}": {json.dumps(v)}' for k, v in extras.items())
        else:
            record.extras = ""
        return True


class _JsonLineFormatter(logging.Formatter):
    """One JSON object per line, including extra fields."""

    def format(self, record):
        log_obj = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "event": record.getMessage(),
            "logger": record.name,
        }
        log_obj.update(record_extras(record))
        return json.dumps(log_obj)


class LoggingManager:
    """Manages structured logging for the orchestrator and its instances."""

    def __init__(self, log_dir: str | Path = "/tmp/team_orchestrator_logs", log_level: str = "INFO"):
        """Initialize logging manager.

        Args:
            log_dir: Base directory for all logs
            log_level: Default log level
        """
        self.log_dir = Path(log_dir)
        self.log_level = getattr(logging, log_level.upper())

        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.instances_dir = self.log_dir / "instances"
        self.instances_dir.mkdir(exist_ok=True)
        self.audit_dir = self.log_dir / "audit"
        self.audit_dir.mkdir(exist_ok=True)

        self._instance_loggers: dict[str, InstanceLoggerAdapter] = {}

        self._setup_orchestrator_logger()
        self._setup_audit_logger()

        # Module loggers created at import time must defer to the package logger
        for name in list(logging.Logger.manager.loggerDict.keys()):
            if name.startswith(f"{ROOT_LOGGER_NAME}."):
                child_logger = logging.getLogger(name)
                if isinstance(child_logger, logging.Logger):
                    child_logger.setLevel(logging.NOTSET)
                    child_logger.propagate = True
                    child_logger.handlers.clear()

    def _setup_orchestrator_logger(self):
        """Setup package logger with console, JSON file and WebSocket handlers."""
        logger = logging.getLogger(ROOT_LOGGER_NAME)
        logger.setLevel(logging.DEBUG)
        logger.propagate = False
        logger.handlers.clear()

        console_handler = logging.StreamHandler()
        console_handler.setLevel(self.log_level)
        console_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        logger.addHandler(console_handler)

        file_handler = logging.handlers.RotatingFileHandler(
            self.log_dir / "orchestrator.log",
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5,
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.addFilter(_JsonExtraFilter())
        file_handler.setFormatter(
            logging.Formatter(
                '{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", '
                '"message": "%(message)s", "module": "%(module)s", "function": "%(funcName)s", '
                '"line": %(lineno)d%(extras)s}',
                datefmt="%Y-%m-%dT%H:%M:%S",
            )
        )
        logger.addHandler(file_handler)

        stream_handler = get_log_stream_handler()
        stream_handler.setLevel(self.log_level)
        stream_handler.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(stream_handler)

        self.orchestrator_logger = logger

    def _setup_audit_logger(self):
        """Setup audit trail logger (JSON Lines, daily rotation)."""
        logger = logging.getLogger(f"{ROOT_LOGGER_NAME}.audit")
        logger.setLevel(logging.INFO)
        logger.propagate = False
        logger.handlers.clear()

        self.audit_file = self.audit_dir / f"audit_{datetime.now().strftime('%Y%m%d')}.jsonl"
        file_handler = logging.handlers.TimedRotatingFileHandler(
            self.audit_file,
            when="midnight",
            interval=1,
            backupCount=30,
        )
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(_JsonLineFormatter())
        logger.addHandler(file_handler)

        self.audit_logger = logger

    def get_instance_logger(
        self, instance_id: str, instance_name: str | None = None
    ) -> InstanceLoggerAdapter:
        """Get or create a logger for a specific instance.

        Args:
            instance_id: Unique instance identifier
            instance_name: Human-readable instance name

        Returns:
            Logger adapter with instance context
        """
        if instance_id in self._instance_loggers:
            return self._instance_loggers[instance_id]

        instance_dir = self.instances_dir / instance_id
        instance_dir.mkdir(parents=True, exist_ok=True)

        logger = logging.getLogger(f"instance.{instance_id}")
        logger.setLevel(logging.DEBUG)
        logger.propagate = False
        logger.handlers.clear()

        lifecycle_handler = logging.handlers.RotatingFileHandler(
            instance_dir / "instance.log",
            maxBytes=5 * 1024 * 1024,  # 5MB
            backupCount=3,
        )
        lifecycle_handler.setLevel(logging.DEBUG)
        lifecycle_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        logger.addHandler(lifecycle_handler)

        metadata = {
            "instance_id": instance_id,
            "instance_name": instance_name,
            "created_at": datetime.now().isoformat(),
            "log_directory": str(instance_dir),
        }
        (instance_dir / "metadata.json").write_text(json.dumps(metadata, indent=2))

        adapter = InstanceLoggerAdapter(
            logger, {"instance_id": instance_id, "instance_name": instance_name}
        )
        self._instance_loggers[instance_id] = adapter
        return adapter

    def log_audit_event(
        self,
        event_type: str,
        instance_id: str | None = None,
        details: dict[str, Any] | None = None,
        **kwargs,
    ):
        """Log an audit event.

        Args:
            event_type: Type of event (instance_create, instance_terminate, ...)
            instance_id: Related instance ID if applicable
            details: Additional event details
            **kwargs: Additional fields to include
        """
        extra = {
            "event_type": event_type,
            "instance_id": instance_id,
            "details": details or {},
        }
        extra.update(kwargs)
        self.audit_logger.info(event_type, extra=extra)

    def read_audit_events(self, limit: int = 100) -> list[dict[str, Any]]:
        """Return the most recent audit events from today's audit file."""
        if not self.audit_file.exists():
            return []

        events = []
        with self.audit_file.open("r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    events.append(json.loads(line))
                except json.JSONDecodeError:
                    self.orchestrator_logger.warning(f"Skipping malformed audit line: {line[:80]}")
        return events[-limit:] if limit else events

    def log_process_output(self, instance_id: str, output: str):
        """Append a raw output snapshot to the instance's output log.

        Args:
            instance_id: Instance ID
            output: Raw process output
        """
        instance_dir = self.instances_dir / instance_id
        instance_dir.mkdir(parents=True, exist_ok=True)

        with (instance_dir / "output.log").open("a") as f:
            f.write(f"\n{'=' * 80}\n")
            f.write(f"[{datetime.now().isoformat()}]\n")
            f.write(f"{'=' * 80}\n")
            f.write(output)
            f.write("\n")

    def get_instance_logs(
        self, instance_id: str, log_type: str = "instance", tail: int = 100
    ) -> list[str]:
        """Retrieve logs for an instance.

        Args:
            instance_id: Instance ID
            log_type: Type of log (instance, output)
            tail: Number of recent lines to return

        Returns:
            List of log lines
        """
        log_files = {
            "instance": "instance.log",
            "output": "output.log",
        }

        log_file = self.instances_dir / instance_id / log_files.get(log_type, "instance.log")
        if not log_file.exists():
            return []

        try:
            with log_file.open("r") as f:
                lines = f.readlines()
                return lines[-tail:] if tail else lines
        except OSError as e:
            self.orchestrator_logger.error(f"Failed to read logs for {instance_id}: {e}")
            return []

    def release_instance_logger(self, instance_id: str):
        """Close the file handlers of an instance logger, keeping its files."""
        adapter = self._instance_loggers.pop(instance_id, None)
        if adapter is None:
            return
        for handler in list(adapter.logger.handlers):
            handler.close()
            adapter.logger.removeHandler(handler)

    def cleanup_instance_logs(self, instance_id: str):
        """Remove logs for a terminated instance."""
        self.release_instance_logger(instance_id)
        instance_dir = self.instances_dir / instance_id
        if instance_dir.exists():
            try:
                shutil.rmtree(instance_dir)
                self.orchestrator_logger.info(f"Cleaned up logs for instance {instance_id}")
            except OSError as e:
                self.orchestrator_logger.error(f"Failed to cleanup logs for {instance_id}: {e}")
