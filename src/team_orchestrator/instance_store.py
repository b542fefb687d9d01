"""In-memory store of instance records.

Records are frozen and every mutation rebinds a fresh mapping, so a callback
holding a snapshot keeps a consistent view while other callbacks interleave.
No locking is needed: all writers run on the same event loop.
"""

from collections.abc import Callable
from typing import Any

from .models import Instance, InstanceStatus


class InstanceNotFoundError(ValueError):
    """Raised when an instance id is not in the store."""

    def __init__(self, instance_id: str):
        super().__init__(f"Instance {instance_id} not found")
        self.instance_id = instance_id


class InstanceStore:
    """Keyed collection of :class:`Instance` records with copy-on-write updates."""

    def __init__(self):
        self._instances: dict[str, Instance] = {}

    def add(self, instance: Instance) -> Instance:
        if instance.id in self._instances:
            raise ValueError(f"Instance {instance.id} already exists")
        self._instances = {**self._instances, instance.id: instance}
        return instance

    def get(self, instance_id: str) -> Instance | None:
        return self._instances.get(instance_id)

    def replace(self, instance: Instance) -> Instance:
        """Swap in a whole new record for an existing id."""
        if instance.id not in self._instances:
            raise ValueError(f"Instance {instance.id} not found")
        self._instances = {**self._instances, instance.id: instance}
        return instance

    def update(self, instance_id: str, **changes: Any) -> Instance | None:
        """Apply field changes to a record.

        Returns:
            The new record, or None if the id is not in the store
        """
        current = self._instances.get(instance_id)
        if current is None:
            return None
        if "status" in changes and changes["status"] != current.status:
            if not current.status.can_transition_to(changes["status"]):
                raise ValueError(
                    f"Illegal status transition for {instance_id}: "
                    f"{current.status.value} -> {InstanceStatus(changes['status']).value}"
                )
        return self.replace(current.evolve(**changes))

    def transition(
        self,
        instance_id: str,
        expected: InstanceStatus,
        new_status: InstanceStatus,
        **changes: Any,
    ) -> Instance | None:
        """Compare-and-set on status.

        Returns:
            The new record, or None if the record is gone or not in ``expected``
        """
        current = self._instances.get(instance_id)
        if current is None or current.status != expected:
            return None
        if not expected.can_transition_to(new_status):
            raise ValueError(
                f"Illegal status transition: {expected.value} -> {new_status.value}"
            )
        return self.replace(current.evolve(status=new_status, **changes))

    def remove(self, instance_id: str) -> Instance | None:
        removed = self._instances.get(instance_id)
        if removed is not None:
            self._instances = {
                iid: inst for iid, inst in self._instances.items() if iid != instance_id
            }
        return removed

    def snapshot(self) -> list[Instance]:
        """All records in insertion order."""
        return list(self._instances.values())

    def filter(self, predicate: Callable[[Instance], bool]) -> list[Instance]:
        return [inst for inst in self._instances.values() if predicate(inst)]

    def __len__(self) -> int:
        return len(self._instances)

    def __contains__(self, instance_id: object) -> bool:
        return instance_id in self._instances
