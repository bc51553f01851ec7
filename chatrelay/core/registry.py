"""Read-only catalogue of providers per task type.

Architectural role:
    Holds, per `TaskType`, the ordered `ProviderDescriptor` list the fallback
    orchestrator walks. Built once at startup and passed by reference; there is
    no module-level registry.

Ordering rules:
    - Registration order is sorted by `priority` (lower first, stable for ties).
    - A duplicate id within one task keeps the first registration.
    - `get_order` moves a registered preferred provider to the front and keeps
      every other provider in registered order.

Concurrency:
    Storage is a `MappingProxyType` over tuples, so reads need no locking.
"""

import logging
from types import MappingProxyType
from typing import Iterable, Mapping, Optional

from chatrelay.core.types import ProviderDescriptor, TaskType


logger = logging.getLogger(__name__)


class ProviderRegistry:

    def __init__(self, entries: Mapping[TaskType, Iterable[ProviderDescriptor]]):
        catalogue = {}

        for task_type, descriptors in entries.items():
            task_type = TaskType(task_type)
            unique = {}
            for descriptor in descriptors:
                if descriptor.id in unique:
                    logger.warning(
                        "Duplicate provider id %r for task %s ignored",
                        descriptor.id,
                        task_type.value,
                    )
                    continue
                unique[descriptor.id] = descriptor

            catalogue[task_type] = tuple(
                sorted(unique.values(), key=lambda descriptor: descriptor.priority)
            )

        self._catalogue = MappingProxyType(catalogue)

    def task_types(self) -> tuple:
        return tuple(self._catalogue)

    def providers(self, task_type: TaskType) -> tuple:
        """Registered providers for a task in fixed priority order."""
        return self._catalogue.get(TaskType(task_type), ())

    def has(self, task_type: TaskType, provider_id: Optional[str]) -> bool:
        return self.get(task_type, provider_id) is not None

    def get(self, task_type: TaskType, provider_id: Optional[str]) -> Optional[ProviderDescriptor]:
        for descriptor in self.providers(task_type):
            if descriptor.id == provider_id:
                return descriptor
        return None

    def get_order(self, task_type: TaskType, preferred_id: Optional[str] = None) -> tuple:
        """Fallback order for one request.

        Args:
            task_type: Task family.
            preferred_id: Provider to try first; ignored when not registered
                for this task.

        Returns:
            Tuple of unique descriptors, preferred first when applicable.
        """
        registered = self.providers(task_type)
        preferred = self.get(task_type, preferred_id)
        if preferred is None:
            return registered
        return (preferred,) + tuple(
            descriptor for descriptor in registered if descriptor.id != preferred.id
        )
