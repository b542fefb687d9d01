"""Display height bookkeeping for instance output panels."""

from .instance_store import InstanceNotFoundError, InstanceStore
from .models import MAX_DISPLAY_HEIGHT, MIN_DISPLAY_HEIGHT


def clamp_display_height(height: int) -> int:
    return max(MIN_DISPLAY_HEIGHT, min(MAX_DISPLAY_HEIGHT, int(height)))


class ResizeController:
    """Clamps and stores the per-instance display height."""

    def __init__(self, store: InstanceStore):
        self.store = store

    def resize(self, instance_id: str, requested_height: int) -> int:
        """Store the clamped height for an instance.

        Returns:
            The height actually stored

        Raises:
            InstanceNotFoundError: If the instance is not in the store
        """
        height = clamp_display_height(requested_height)
        if self.store.update(instance_id, display_height=height) is None:
            raise InstanceNotFoundError(instance_id)
        return height
