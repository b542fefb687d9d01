"""Periodic refresh of instance output buffers."""

import asyncio
import logging
import re

from .instance_store import InstanceStore
from .models import Instance
from .process_service import ProcessService

logger = logging.getLogger(__name__)

_WHITESPACE_RUN = re.compile(r"\s+")


def normalize_output(text: str) -> str:
    """Collapse whitespace runs to a single space and trim the ends."""
    return _WHITESPACE_RUN.sub(" ", text or "").strip()


def _wants_history(instance: Instance | None) -> bool:
    return (
        instance is not None
        and instance.is_active
        and instance.show_history
        and instance.handle is not None
    )


class HistoryPoller:
    """Background timer that refreshes ``history_buffer`` for visible instances.

    Only the ``history_buffer`` field is ever written. A read failure for one
    instance is logged and leaves that buffer stale; the other instances and
    the timer carry on.
    """

    def __init__(
        self,
        store: InstanceStore,
        process_service: ProcessService,
        interval: float = 2.0,
        logging_manager=None,
    ):
        self.store = store
        self.process_service = process_service
        self.interval = interval
        self.logging_manager = logging_manager
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the polling task (requires a running event loop)."""
        if self.running:
            return
        self._task = asyncio.create_task(self._poll_loop())
        logger.info(f"History polling started (interval={self.interval}s)")

    async def stop(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            logger.info("History polling stopped")
        self._task = None

    async def _poll_loop(self):
        while True:
            try:
                await asyncio.sleep(self.interval)
                await self.poll_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in history poll loop: {e}", exc_info=True)

    async def poll_once(self) -> int:
        """Refresh every active instance that shows its history.

        Returns:
            Number of buffers refreshed
        """
        refreshed = 0
        for instance in self.store.filter(_wants_history):
            if await self.refresh(instance.id):
                refreshed += 1
        return refreshed

    async def refresh(self, instance_id: str) -> bool:
        """Read and store the current output snapshot for one instance.

        Returns:
            True if the buffer was updated
        """
        instance = self.store.get(instance_id)
        if not _wants_history(instance):
            return False

        try:
            raw = await self.process_service.read_output(instance.handle)
        except Exception as e:
            logger.error(
                f"Failed to update terminal history for {instance_id}: {e}",
                extra={"instance_id": instance_id},
            )
            return False

        # The record may have changed while the read was suspended
        current = self.store.get(instance_id)
        if not _wants_history(current):
            return False

        buffer = normalize_output(raw)
        if buffer != current.history_buffer:
            self.store.update(instance_id, history_buffer=buffer)
            if self.logging_manager:
                self.logging_manager.log_process_output(instance_id, raw)
        return True
