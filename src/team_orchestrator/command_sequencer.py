"""Timed input choreography for interactive CLI sessions.

The target CLI gives no readiness signal, so startup is driven by fixed
delays (see :class:`ChoreographyTimings`):

    launch -> launch_grace -> focus -> focus_settle -> type prompt (no submit)
           -> instruction_settle -> submit (empty input + Enter)

Each step is attempted even when an earlier one failed. Before every step
that follows a suspension the caller-supplied liveness check is consulted,
so a session terminated mid-choreography is left alone.
"""

import asyncio
import logging
from collections.abc import Callable

from .models import ChoreographyResult, ChoreographyTimings, ProcessHandle, Role
from .process_service import ProcessService

logger = logging.getLogger(__name__)

STEP_LAUNCH = "launch"
STEP_FOCUS = "focus"
STEP_SEND_PROMPT = "send_prompt"
STEP_SUBMIT = "submit"


class CommandSequencer:
    """Delivers launch commands, role prompts and follow-up messages."""

    def __init__(
        self,
        process_service: ProcessService,
        timings: ChoreographyTimings | None = None,
        launch_command: str = "claude",
    ):
        self.process_service = process_service
        self.timings = timings or ChoreographyTimings()
        self.launch_command = launch_command

    async def run_startup(
        self,
        handle: ProcessHandle,
        role: Role,
        is_alive: Callable[[], bool] | None = None,
    ) -> ChoreographyResult:
        """Launch the CLI in ``handle`` and deliver the role prompt.

        Args:
            handle: Freshly allocated process handle
            role: Role snapshot whose prompt is delivered
            is_alive: Returns False once the owning instance is no longer active

        Returns:
            Which steps completed, which failed, and whether the run was aborted
        """
        result = ChoreographyResult()
        alive = is_alive or (lambda: True)
        service = self.process_service

        steps = [
            (STEP_LAUNCH, 0.0, lambda: service.run_command(self.launch_command, handle)),
            (STEP_FOCUS, self.timings.launch_grace, lambda: service.focus(handle)),
            (
                STEP_SEND_PROMPT,
                self.timings.focus_settle,
                lambda: service.send_input(handle, role.prompt, False),
            ),
            (
                STEP_SUBMIT,
                self.timings.instruction_settle,
                lambda: service.send_input(handle, "", True),
            ),
        ]

        for step, delay, action in steps:
            if delay:
                await asyncio.sleep(delay)
            if not alive():
                logger.info(
                    f"Instance for {handle.handle_id} is no longer active, stopping before {step}",
                    extra={"handle_id": handle.handle_id, "step": step},
                )
                result.aborted = True
                return result
            try:
                await action()
                result.completed.append(step)
                logger.debug(f"Choreography step {step} done for {role.name}")
            except Exception as e:
                result.failed.append(step)
                logger.error(
                    f"Choreography step {step} failed for {role.name}: {e}",
                    extra={"handle_id": handle.handle_id, "role": role.id, "step": step},
                )

        if result.failed:
            logger.warning(
                f"Role prompt for {role.name} delivered with failed steps: {', '.join(result.failed)}"
            )
        else:
            logger.info(f"Completed role prompt for {role.name}", extra={"role": role.id})
        return result

    async def send_interactive_message(self, handle: ProcessHandle, text: str) -> bool:
        """Type ``text`` then submit it after a short pause.

        Used once the CLI is known to be running, hence the short delay.

        Returns:
            True if both inputs were delivered
        """
        try:
            await self.process_service.send_input(handle, text, False)
            await asyncio.sleep(self.timings.submit_delay)
            await self.process_service.send_input(handle, "", True)
            return True
        except Exception as e:
            logger.error(
                f"Failed to send message to {handle.handle_id}: {e}",
                extra={"handle_id": handle.handle_id},
            )
            return False

    async def send_confirmation_key(self, handle: ProcessHandle, key: str) -> bool:
        """Answer a CLI prompt with a single key followed by Enter.

        Returns:
            True if focus and both inputs were delivered
        """
        try:
            await self.process_service.focus(handle)
            await self.process_service.send_input(handle, key, False)
            await asyncio.sleep(self.timings.submit_delay)
            await self.process_service.send_input(handle, "", True)
            return True
        except Exception as e:
            logger.error(
                f"Failed to focus {handle.handle_id} and send '{key}' keystroke: {e}",
                extra={"handle_id": handle.handle_id, "key": key},
            )
            return False
