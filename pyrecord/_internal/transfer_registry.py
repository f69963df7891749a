"""Registry of resource types that are moved, not copied, across a port."""

from __future__ import annotations

import asyncio
import io
import logging
from typing import Any

logger = logging.getLogger(__name__)

_DEFAULT_TRANSFERABLES: tuple[type, ...] = (
    io.IOBase,
    asyncio.StreamReader,
    asyncio.StreamWriter,
)


class TransferableRegistry:
    """Singleton registry of transferable resource types.

    Values whose type (or a base class) is registered are shipped beside a
    ``replay`` message instead of inside it, and replaced by a transfer marker
    in the operation record. Registration occurs during setup; lookups happen
    on the recording hot path.
    """

    _instance: TransferableRegistry | None = None

    def __init__(self) -> None:
        self._types: list[type] = list(_DEFAULT_TRANSFERABLES)

    @classmethod
    def get_instance(cls) -> TransferableRegistry:
        """Return the singleton instance, creating it if necessary."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def register(self, resource_type: type) -> None:
        """Treat instances of *resource_type* as transferable."""
        if resource_type in self._types:
            logger.debug("Transferable type %s already registered", resource_type.__name__)
            return
        self._types.append(resource_type)
        logger.debug("Registered transferable type: %s", resource_type.__name__)

    def unregister(self, resource_type: type) -> None:
        if resource_type in self._types:
            self._types.remove(resource_type)

    def is_transferable(self, value: Any) -> bool:
        return isinstance(value, tuple(self._types))

    def clear(self) -> None:
        """Restore the default transferable types (useful for tests)."""
        self._types = list(_DEFAULT_TRANSFERABLES)
