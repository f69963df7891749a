"""Identifier allocation and identifier → object bookkeeping.

Every context owns one IdentityRegistry. On the recording side it only hands
out identifiers; on the replay side it is also the Reference Map that binds
those identifiers to live objects as results materialize.
"""

from __future__ import annotations

import itertools
import logging
from typing import Any

logger = logging.getLogger(__name__)

ROOT_ID = "root"

RESULT_PREFIX = "obj"
CALLBACK_ARG_PREFIX = "cb"
CHANNEL_PREFIX = "channel"


class IdentityRegistry:
    """Identifier generator plus an identifier → object map.

    Identifiers are never reused: the counter only moves forward, so an
    identifier that was discarded cannot come back while a stale reference
    to it is still in flight.
    """

    def __init__(self, root: Any = None, namespace: str = "") -> None:
        # Peers allocate independently; a per-context namespace keeps their
        # identifiers apart in shared reference-count tables.
        self.namespace = namespace
        self._counter = itertools.count()
        self._objects: dict[str, Any] = {}
        self._ids_by_identity: dict[int, str] = {}
        self._root: Any = None
        if root is not None:
            self.set_root(root)

    def allocate(self, prefix: str = RESULT_PREFIX) -> str:
        if self.namespace:
            return f"{prefix}_{self.namespace}-{next(self._counter)}"
        return f"{prefix}_{next(self._counter)}"

    @property
    def root(self) -> Any:
        return self._root

    def set_root(self, root: Any) -> None:
        """Reset the map and pre-bind *root* under the root identifier."""
        self._objects.clear()
        self._ids_by_identity.clear()
        self._root = root
        if root is not None:
            self.bind(ROOT_ID, root)

    def bind(self, object_id: str, obj: Any) -> None:
        previous = self._objects.get(object_id)
        if previous is not None:
            self._ids_by_identity.pop(id(previous), None)
        self._objects[object_id] = obj
        # First identifier wins for reverse lookups.
        self._ids_by_identity.setdefault(id(obj), object_id)

    def lookup(self, object_id: str) -> Any:
        """Return the object bound to *object_id*; raise KeyError if unbound."""
        return self._objects[object_id]

    def get(self, object_id: str, default: Any = None) -> Any:
        return self._objects.get(object_id, default)

    def find(self, obj: Any) -> str | None:
        """Return the identifier *obj* is bound under, by identity."""
        object_id = self._ids_by_identity.get(id(obj))
        if object_id is not None and self._objects.get(object_id) is obj:
            return object_id
        return None

    def discard(self, object_id: str) -> None:
        if object_id == ROOT_ID:
            return
        obj = self._objects.pop(object_id, None)
        if obj is None:
            return
        if self._ids_by_identity.get(id(obj)) == object_id:
            del self._ids_by_identity[id(obj)]
            # Another identifier may still be bound to the same object.
            for other_id, other in self._objects.items():
                if other is obj:
                    self._ids_by_identity[id(obj)] = other_id
                    break
        logger.debug("Discarded %s from registry", object_id)

    def clear(self) -> None:
        self.set_root(self._root)

    def __contains__(self, object_id: object) -> bool:
        return object_id in self._objects

    def __len__(self) -> int:
        return len(self._objects)
