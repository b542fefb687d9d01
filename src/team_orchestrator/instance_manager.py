"""Instance Manager for the team orchestrator.

Owns the instance lifecycle (starting -> active -> terminated -> removed),
team batch creation, and the user-facing operations on running sessions.
Startup choreography and history polling run as background tasks on the
same event loop.
"""

import asyncio
import itertools
import logging
import time
from collections.abc import Coroutine
from datetime import UTC, datetime
from typing import Any

from .command_sequencer import CommandSequencer
from .history_poller import HistoryPoller
from .instance_store import InstanceNotFoundError, InstanceStore
from .models import (
    ConfirmationKey,
    Instance,
    InstanceStatus,
    OrchestratorConfig,
    ProcessHandle,
)
from .process_service import ProcessService
from .registry import (
    RoleNotFoundError,
    RoleRegistry,
    TeamTemplateRegistry,
    load_registries,
)
from .resize_controller import ResizeController

logger = logging.getLogger(__name__)

ROLE_ENV_VAR = "CLAUDE_ROLE"
INSTANCE_ENV_VAR = "CLAUDE_INSTANCE_ID"

__all__ = [
    "AllocationError",
    "InstanceManager",
    "InstanceNotFoundError",
]


class AllocationError(RuntimeError):
    """Raised when the process service fails while allocating a process.

    The instance record has already been removed when this is raised.
    """

    def __init__(self, role_id: str, cause: Exception):
        super().__init__(f"Failed to allocate a process for role {role_id}: {cause}")
        self.role_id = role_id
        self.cause = cause


class InstanceManager:
    """Creates, drives and terminates role-tagged CLI sessions."""

    def __init__(
        self,
        roles: RoleRegistry,
        templates: TeamTemplateRegistry,
        process_service: ProcessService | None = None,
        config: OrchestratorConfig | None = None,
        logging_manager=None,
        store: InstanceStore | None = None,
    ):
        """Initialize the instance manager.

        Args:
            roles: Role registry
            templates: Team template registry
            process_service: Backing process service; None runs every instance degraded
            config: Orchestrator configuration (timings, launch command, working dir)
            logging_manager: Optional LoggingManager for instance logs and audit events
            store: Instance store to use (a fresh one by default)
        """
        self.roles = roles
        self.templates = templates
        self.process_service = process_service
        self.config = config or OrchestratorConfig()
        self.timings = self.config.timings
        self.logging_manager = logging_manager
        self.store = store or InstanceStore()
        self.resize_controller = ResizeController(self.store)

        self.sequencer: CommandSequencer | None = None
        self.history_poller: HistoryPoller | None = None
        if process_service is not None:
            self.sequencer = CommandSequencer(
                process_service, self.timings, launch_command=self.config.launch_command
            )
            self.history_poller = HistoryPoller(
                self.store,
                process_service,
                interval=self.timings.history_poll_interval,
                logging_manager=logging_manager,
            )

        self._id_counter = itertools.count(1)
        self._background_tasks: set[asyncio.Task] = set()

        # NOTE: the history poller needs a running loop; it starts with the first instance

    @classmethod
    def from_config(
        cls,
        config: OrchestratorConfig,
        process_service: ProcessService | None = None,
        logging_manager=None,
    ) -> "InstanceManager":
        """Build a manager with registries loaded from the configured files."""
        roles, templates = load_registries(config.roles_file, config.teams_file)
        return cls(
            roles,
            templates,
            process_service=process_service,
            config=config,
            logging_manager=logging_manager,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def create_instance(self, role_id: str) -> Instance:
        """Create an instance for a role and start its choreography.

        Args:
            role_id: Role registry key

        Returns:
            The instance record, normally in ``active`` state

        Raises:
            RoleNotFoundError: If the role id is unknown (nothing is created)
            AllocationError: If the process service failed (the record is removed)
        """
        role = self.roles.lookup(role_id)

        instance = Instance(
            id=self._new_instance_id(role_id),
            name=role.display_name,
            role_id=role_id,
            role=role,
            status=InstanceStatus.STARTING,
            created_at=datetime.now(UTC),
        )
        self.store.add(instance)
        logger.info(
            f"Creating instance {instance.id} with role {role.name}",
            extra={"instance_id": instance.id, "role": role_id},
        )
        self._audit("instance_create", instance.id, {"role": role_id, "name": instance.name})

        handle: ProcessHandle | None = None
        if self._service_available():
            try:
                handle = await self.process_service.create_persistent_process(
                    cwd=self.config.working_directory,
                    env={ROLE_ENV_VAR: role_id, INSTANCE_ENV_VAR: instance.id},
                )
            except Exception as e:
                self.store.remove(instance.id)
                logger.error(
                    f"Failed to create process for instance {instance.id}: {e}",
                    extra={"instance_id": instance.id, "role": role_id},
                    exc_info=True,
                )
                self._audit("instance_allocation_failed", instance.id, {"error": str(e)})
                raise AllocationError(role_id, e) from e
        else:
            logger.warning(
                f"Process service not available, creating instance {instance.id} without a process",
                extra={"instance_id": instance.id},
            )

        activated = self.store.transition(
            instance.id, InstanceStatus.STARTING, InstanceStatus.ACTIVE, handle=handle
        )
        if activated is None:
            # Terminated while the allocation was suspended
            logger.info(
                f"Instance {instance.id} was terminated during allocation",
                extra={"instance_id": instance.id},
            )
            if handle is not None:
                await self._kill_handle(instance.id, handle)
            return self.store.get(instance.id) or instance

        self._instance_log(activated, "Instance active" + (" (degraded)" if handle is None else ""))
        self._audit("instance_active", activated.id, {"degraded": handle is None})

        if handle is not None:
            self._ensure_history_polling()
            self._spawn_background(self._run_choreography(activated))
            self._spawn_background(self._initial_history_fetch(activated.id))

        return activated

    async def create_team(self, template_id: str) -> list[Instance]:
        """Create every role of a team template, one at a time.

        Members are created in template order with ``team_spawn_interval``
        between creation calls. A member that fails is logged and skipped.

        Returns:
            The instances that were created, in template order

        Raises:
            TemplateNotFoundError: If the template id is unknown
        """
        template = self.templates.lookup(template_id)
        logger.info(
            f"Creating team {template.name} ({len(template.roles)} roles)",
            extra={"template_id": template_id},
        )

        created: list[Instance] = []
        failed: list[str] = []
        for role_id in template.roles:
            try:
                created.append(await self.create_instance(role_id))
            except (RoleNotFoundError, AllocationError) as e:
                failed.append(role_id)
                logger.error(
                    f"Failed to create {role_id} for team {template_id}: {e}",
                    extra={"template_id": template_id, "role": role_id},
                )
            await asyncio.sleep(self.timings.team_spawn_interval)

        self._audit(
            "team_create",
            None,
            {
                "template_id": template_id,
                "instances": [inst.id for inst in created],
                "failed_roles": failed,
            },
        )
        return created

    async def terminate_instance(self, instance_id: str) -> Instance:
        """Terminate an instance and schedule its removal.

        The record turns ``terminated`` at once and is removed from the store
        after ``termination_grace`` seconds. Killing the process is best-effort.

        Raises:
            InstanceNotFoundError: If the instance is not in the store
        """
        instance = self.store.get(instance_id)
        if instance is None:
            raise InstanceNotFoundError(instance_id)
        if instance.status == InstanceStatus.TERMINATED:
            return instance

        terminated = self.store.update(
            instance_id, status=InstanceStatus.TERMINATED, terminated_at=datetime.now(UTC)
        )
        self._spawn_background(self._remove_after_grace(instance_id))

        if instance.handle is not None and self.process_service is not None:
            await self._kill_handle(instance_id, instance.handle)

        uptime = (terminated.terminated_at - terminated.created_at).total_seconds()
        self._instance_log(terminated, f"Instance terminated after {uptime:.1f}s")
        self._audit(
            "instance_terminate",
            instance_id,
            {"name": instance.name, "uptime_seconds": uptime, "had_process": instance.handle is not None},
        )
        logger.info(f"Terminated instance {instance_id}", extra={"instance_id": instance_id})
        return terminated

    async def terminate_all(self) -> list[str]:
        """Terminate every active instance.

        Returns:
            Ids of the instances that were terminated
        """
        terminated = []
        for instance in self.store.filter(lambda inst: inst.is_active):
            try:
                await self.terminate_instance(instance.id)
                terminated.append(instance.id)
            except InstanceNotFoundError:
                logger.debug(f"Instance {instance.id} disappeared before termination")
        return terminated

    # ------------------------------------------------------------------
    # Operations on running instances
    # ------------------------------------------------------------------

    def resize(self, instance_id: str, height: int) -> int:
        """Set the display height of an instance, clamped to [80, 600]."""
        return self.resize_controller.resize(instance_id, height)

    async def toggle_history(self, instance_id: str) -> Instance:
        """Show or hide an instance's output history.

        Showing it triggers an immediate refresh. Instances without a process
        have no history and are returned unchanged.
        """
        instance = self.get_instance(instance_id)
        if instance.handle is None:
            return instance

        if instance.show_history:
            return self.store.update(instance_id, show_history=False)

        self.store.update(instance_id, show_history=True)
        if self.history_poller:
            await self.history_poller.refresh(instance_id)
        return self.get_instance(instance_id)

    async def focus_instance(self, instance_id: str) -> bool:
        """Bring an instance's process to the foreground."""
        instance = self.get_instance(instance_id)
        handle = await self._live_handle(instance)
        if handle is None:
            return False
        try:
            await self.process_service.focus(handle)
            return True
        except Exception as e:
            logger.error(
                f"Failed to focus instance {instance_id}: {e}",
                extra={"instance_id": instance_id},
            )
            return False

    async def send_message(self, instance_id: str, text: str) -> bool:
        """Type a message into an instance's CLI and submit it.

        Blank messages are ignored.

        Returns:
            True if the message was delivered
        """
        message = (text or "").strip()
        if not message:
            return False

        instance = self.get_instance(instance_id)
        handle = await self._live_handle(instance)
        if handle is None:
            return False

        try:
            await self.process_service.focus(handle)
        except Exception as e:
            logger.error(
                f"Failed to focus instance {instance_id} before sending: {e}",
                extra={"instance_id": instance_id},
            )
            return False

        delivered = await self.sequencer.send_interactive_message(handle, message)
        if delivered:
            self._instance_log(instance, f"Message sent ({len(message)} chars)")
        return delivered

    async def send_confirmation(self, instance_id: str, key: str | ConfirmationKey) -> bool:
        """Answer a CLI prompt with 1 (yes), 2 (yes, don't ask again) or 3 (no).

        Raises:
            ValueError: If ``key`` is not a confirmation key
        """
        confirmation = ConfirmationKey(key)
        instance = self.get_instance(instance_id)
        handle = await self._live_handle(instance)
        if handle is None:
            return False

        delivered = await self.sequencer.send_confirmation_key(handle, confirmation.value)
        if delivered:
            self._instance_log(instance, f"Confirmation '{confirmation.value}' sent")
        return delivered

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_instance(self, instance_id: str) -> Instance:
        instance = self.store.get(instance_id)
        if instance is None:
            raise InstanceNotFoundError(instance_id)
        return instance

    def list_instances(self) -> list[Instance]:
        return self.store.snapshot()

    def active_instances(self) -> list[Instance]:
        return self.store.filter(lambda inst: inst.is_active)

    def get_instance_status(self) -> dict[str, Any]:
        """Summary of all instances and per-status counts."""
        instances = self.store.snapshot()
        counts = {status.value: 0 for status in InstanceStatus}
        for instance in instances:
            counts[instance.status.value] += 1
        return {
            "instances": {inst.id: inst.to_dict() for inst in instances},
            "total_instances": len(instances),
            "status_counts": counts,
            "active_instances": counts[InstanceStatus.ACTIVE.value],
            "process_service_available": self._service_available(),
        }

    # ------------------------------------------------------------------
    # Background work
    # ------------------------------------------------------------------

    async def wait_for_background(self) -> None:
        """Wait until every pending background task has finished."""
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        """Stop history polling and cancel pending background tasks."""
        if self.history_poller:
            await self.history_poller.stop()
        tasks = list(self._background_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Instance manager shut down")

    def _spawn_background(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    def _ensure_history_polling(self) -> None:
        if self.history_poller and not self.history_poller.running:
            self.history_poller.start()

    async def _run_choreography(self, instance: Instance) -> None:
        def is_alive() -> bool:
            current = self.store.get(instance.id)
            return current is not None and current.is_active

        result = await self.sequencer.run_startup(instance.handle, instance.role, is_alive)
        if result.aborted:
            self._instance_log(instance, "Startup choreography stopped: instance no longer active")
        elif result.failed:
            self._instance_log(
                instance,
                f"Startup choreography finished with failed steps: {', '.join(result.failed)}",
                level=logging.WARNING,
            )
        else:
            self._instance_log(instance, "Role prompt delivered")

    async def _initial_history_fetch(self, instance_id: str) -> None:
        await asyncio.sleep(self.timings.initial_history_delay)
        if self.history_poller:
            await self.history_poller.refresh(instance_id)

    async def _remove_after_grace(self, instance_id: str) -> None:
        await asyncio.sleep(self.timings.termination_grace)
        removed = self.store.remove(instance_id)
        if removed is None:
            return
        if self.logging_manager:
            self.logging_manager.release_instance_logger(instance_id)
        self._audit("instance_removed", instance_id, {"name": removed.name})
        logger.debug(f"Removed instance {instance_id}", extra={"instance_id": instance_id})

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _service_available(self) -> bool:
        return self.process_service is not None and self.process_service.is_available()

    def _new_instance_id(self, role_id: str) -> str:
        return f"{role_id}_{time.time_ns() // 1_000_000}_{next(self._id_counter)}"

    async def _live_handle(self, instance: Instance) -> ProcessHandle | None:
        """Resolve the instance's handle against the process service."""
        if instance.handle is None or self.process_service is None:
            logger.warning(
                f"Instance {instance.id} has no process",
                extra={"instance_id": instance.id},
            )
            return None
        try:
            handle = await self.process_service.get_handle(instance.handle.handle_id)
        except Exception as e:
            logger.error(
                f"Failed to look up process for instance {instance.id}: {e}",
                extra={"instance_id": instance.id},
            )
            return None
        if handle is None:
            logger.warning(
                f"Process {instance.handle.handle_id} for instance {instance.id} no longer exists",
                extra={"instance_id": instance.id},
            )
        return handle

    async def _kill_handle(self, instance_id: str, handle: ProcessHandle) -> None:
        try:
            await self.process_service.kill(handle)
        except Exception as e:
            logger.error(
                f"Failed to kill process {handle.handle_id} for instance {instance_id}: {e}",
                extra={"instance_id": instance_id},
            )

    def _instance_log(self, instance: Instance, message: str, level: int = logging.INFO) -> None:
        if self.logging_manager:
            self.logging_manager.get_instance_logger(instance.id, instance.name).log(level, message)

    def _audit(self, event_type: str, instance_id: str | None, details: dict[str, Any]) -> None:
        if self.logging_manager:
            self.logging_manager.log_audit_event(
                event_type=event_type, instance_id=instance_id, details=details
            )
