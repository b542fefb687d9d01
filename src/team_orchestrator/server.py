"""HTTP/WebSocket control surface for the team orchestrator."""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import UTC, datetime

import uvicorn
from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from . import __version__
from .instance_manager import AllocationError, InstanceManager
from .logging_manager import LoggingManager, get_log_stream_handler
from .models import ConfirmationKey, OrchestratorConfig
from .process_service import ProcessService, TmuxProcessService

logger = logging.getLogger(__name__)


class CreateInstanceRequest(BaseModel):
    role_id: str


class CreateTeamRequest(BaseModel):
    template_id: str


class ResizeRequest(BaseModel):
    height: int


class MessageRequest(BaseModel):
    text: str


class ConfirmRequest(BaseModel):
    key: str = Field(description="1 = yes, 2 = yes and don't ask again, 3 = no")


class OrchestratorServer:
    """FastAPI server exposing team and instance operations."""

    def __init__(
        self,
        config: OrchestratorConfig,
        process_service: ProcessService | None = None,
        logging_manager: LoggingManager | None = None,
        instance_manager: InstanceManager | None = None,
    ):
        """Initialize the orchestrator server.

        Args:
            config: Configuration for the orchestrator
            process_service: Process service (tmux by default)
            logging_manager: Logging manager (built from ``config`` by default)
            instance_manager: Instance manager (built from ``config`` by default)
        """
        self.config = config
        self.logging_manager = logging_manager or LoggingManager(
            log_dir=config.log_dir, log_level=config.log_level
        )
        self.process_service = process_service or TmuxProcessService()
        self.instance_manager = instance_manager or InstanceManager.from_config(
            config,
            process_service=self.process_service,
            logging_manager=self.logging_manager,
        )

        self.app = FastAPI(
            title="Team Orchestrator",
            description="Spawns and drives role-specialized Claude CLI sessions",
            version=__version__,
            lifespan=self._lifespan,
        )
        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

        self._setup_routes()
        logger.info("Team Orchestrator Server initialized")

    @asynccontextmanager
    async def _lifespan(self, app: FastAPI):
        self._cleanup_orphaned_sessions()
        yield
        await self.instance_manager.shutdown()

    def _cleanup_orphaned_sessions(self):
        """Kill tmux sessions left behind by a previous server run."""
        if isinstance(self.process_service, TmuxProcessService) and self.process_service.is_available():
            self.process_service.cleanup_orphaned_sessions()

    def _setup_routes(self):
        """Setup FastAPI routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint with server info."""
            return {
                "name": "Team Orchestrator",
                "version": __version__,
                "active_instances": len(self.instance_manager.active_instances()),
                "server_time": datetime.now(UTC).isoformat(),
            }

        @self.app.get("/health")
        async def health():
            status = self.instance_manager.get_instance_status()
            return {
                "status": "healthy",
                "process_service_available": status["process_service_available"],
                "total_instances": status["total_instances"],
                "active_instances": status["active_instances"],
            }

        @self.app.get("/roles")
        async def list_roles():
            return {"roles": [role.to_dict() for role in self.instance_manager.roles.list_all()]}

        @self.app.get("/teams")
        async def list_teams():
            return {
                "teams": [
                    template.to_dict() for template in self.instance_manager.templates.list_all()
                ]
            }

        @self.app.get("/instances")
        async def list_instances():
            """List all instances with per-status counts."""
            return self.instance_manager.get_instance_status()

        @self.app.get("/instances/{instance_id}")
        async def get_instance(instance_id: str):
            try:
                return self.instance_manager.get_instance(instance_id).to_dict()
            except ValueError as e:
                raise HTTPException(status_code=404, detail=str(e)) from e

        @self.app.post("/instances")
        async def create_instance(request: CreateInstanceRequest):
            """Create one instance for a role."""
            try:
                instance = await self.instance_manager.create_instance(request.role_id)
            except AllocationError as e:
                raise HTTPException(status_code=502, detail=str(e)) from e
            except ValueError as e:
                raise HTTPException(status_code=404, detail=str(e)) from e
            return instance.to_dict()

        @self.app.post("/teams")
        async def create_team(request: CreateTeamRequest):
            """Create every role of a team template."""
            try:
                instances = await self.instance_manager.create_team(request.template_id)
            except ValueError as e:
                raise HTTPException(status_code=404, detail=str(e)) from e
            return {
                "template_id": request.template_id,
                "instances": [instance.to_dict() for instance in instances],
            }

        @self.app.delete("/instances/{instance_id}")
        async def terminate_instance(instance_id: str):
            try:
                instance = await self.instance_manager.terminate_instance(instance_id)
            except ValueError as e:
                raise HTTPException(status_code=404, detail=str(e)) from e
            return instance.to_dict()

        @self.app.delete("/instances")
        async def terminate_all():
            terminated = await self.instance_manager.terminate_all()
            return {"terminated": terminated, "count": len(terminated)}

        @self.app.post("/instances/{instance_id}/resize")
        async def resize_instance(instance_id: str, request: ResizeRequest):
            try:
                height = self.instance_manager.resize(instance_id, request.height)
            except ValueError as e:
                raise HTTPException(status_code=404, detail=str(e)) from e
            return {"instance_id": instance_id, "display_height": height}

        @self.app.post("/instances/{instance_id}/history/toggle")
        async def toggle_history(instance_id: str):
            try:
                instance = await self.instance_manager.toggle_history(instance_id)
            except ValueError as e:
                raise HTTPException(status_code=404, detail=str(e)) from e
            return instance.to_dict()

        @self.app.post("/instances/{instance_id}/focus")
        async def focus_instance(instance_id: str):
            try:
                focused = await self.instance_manager.focus_instance(instance_id)
            except ValueError as e:
                raise HTTPException(status_code=404, detail=str(e)) from e
            return {"instance_id": instance_id, "focused": focused}

        @self.app.post("/instances/{instance_id}/messages")
        async def send_message(instance_id: str, request: MessageRequest):
            """Type a message into the instance and submit it."""
            try:
                delivered = await self.instance_manager.send_message(instance_id, request.text)
            except ValueError as e:
                raise HTTPException(status_code=404, detail=str(e)) from e
            return {"instance_id": instance_id, "delivered": delivered}

        @self.app.post("/instances/{instance_id}/confirm")
        async def send_confirmation(instance_id: str, request: ConfirmRequest):
            """Answer a permission prompt in the instance."""
            try:
                key = ConfirmationKey(request.key)
            except ValueError:
                raise HTTPException(
                    status_code=400,
                    detail=f"Invalid confirmation key {request.key!r}, expected 1, 2 or 3",
                ) from None
            try:
                delivered = await self.instance_manager.send_confirmation(instance_id, key)
            except ValueError as e:
                raise HTTPException(status_code=404, detail=str(e)) from e
            return {"instance_id": instance_id, "key": key.value, "delivered": delivered}

        @self.app.get("/instances/{instance_id}/logs")
        async def get_instance_logs(instance_id: str, log_type: str = "instance", tail: int = 100):
            """Get lifecycle or output logs for an instance.

            Logs outlive the instance record, so removed instances can still be read.
            """
            if log_type not in ("instance", "output"):
                raise HTTPException(status_code=400, detail=f"Unknown log type: {log_type}")
            lines = self.logging_manager.get_instance_logs(instance_id, log_type=log_type, tail=tail)
            return {"instance_id": instance_id, "log_type": log_type, "lines": lines}

        @self.app.get("/logs/audit")
        async def get_audit_logs(limit: int = 100):
            events = self.logging_manager.read_audit_events(limit=limit)
            return {"events": events, "count": len(events)}

        @self.app.websocket("/ws/logs")
        async def logs_websocket(websocket: WebSocket):
            """Stream system logs; recent audit events are replayed on connect."""
            await websocket.accept()
            logger.info("WebSocket client connected to /ws/logs")

            log_handler = get_log_stream_handler()
            log_handler.add_client(websocket)

            try:
                for event in self.logging_manager.read_audit_events(limit=100):
                    await websocket.send_json({"type": "audit_log", "data": event})

                while True:
                    try:
                        message = await asyncio.wait_for(websocket.receive_text(), timeout=30.0)
                    except TimeoutError:
                        await websocket.send_json({"type": "ping"})
                        continue
                    if message == "ping":
                        await websocket.send_json({"type": "pong"})

            except WebSocketDisconnect:
                logger.info("WebSocket client disconnected from /ws/logs")
            except Exception as e:
                logger.error(f"WebSocket error in /ws/logs: {e}")
            finally:
                log_handler.remove_client(websocket)

    async def start_server(self):
        """Start the HTTP server."""
        logger.info(
            f"Starting Team Orchestrator Server on {self.config.server_host}:{self.config.server_port}"
        )
        config = uvicorn.Config(
            self.app,
            host=self.config.server_host,
            port=self.config.server_port,
            log_level=self.config.log_level.lower(),
        )
        server = uvicorn.Server(config)
        await server.serve()


async def main():
    """Main entry point for the server."""
    config = OrchestratorConfig.from_env()
    server = OrchestratorServer(config)
    await server.start_server()


def run():
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
