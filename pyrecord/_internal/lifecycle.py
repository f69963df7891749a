"""Reference counting for identifiers that cross a context boundary.

Each Recorder owns one ReferenceCounter. Local changes are mirrored to the
peer as ``refcount`` messages; changes received from the peer are applied
with :meth:`ReferenceCounter.apply_remote` and never echoed back. Both tables
converge as long as the port delivers in order.
"""

from __future__ import annotations

import logging
import weakref
from typing import TYPE_CHECKING, Any, Callable

from .operations import RefCountMessage

if TYPE_CHECKING:
    from ..interfaces import MessagePort

logger = logging.getLogger(__name__)

ReleaseHook = Callable[[str], None]


class ReferenceCounter:
    """Identifier → count table with release hooks run when a count hits zero."""

    def __init__(self, port: MessagePort | None = None) -> None:
        self._counts: dict[str, int] = {}
        self._release_hooks: list[ReleaseHook] = []
        self.port = port

    def add_release_hook(self, hook: ReleaseHook) -> None:
        self._release_hooks.append(hook)

    def count(self, object_id: str) -> int:
        return self._counts.get(object_id, 0)

    def __contains__(self, object_id: object) -> bool:
        return object_id in self._counts

    def __len__(self) -> int:
        return len(self._counts)

    def acquire(self, object_id: str) -> int:
        new_count = self._update(object_id, 1)
        self._mirror(object_id, 1)
        return new_count

    def release(self, object_id: str) -> int:
        new_count = self._update(object_id, -1)
        self._mirror(object_id, -1)
        return new_count

    def apply_remote(self, object_id: str, delta: int) -> int:
        """Apply a delta mirrored by the peer."""
        return self._update(object_id, delta)

    def clear(self) -> None:
        self._counts.clear()

    def _update(self, object_id: str, delta: int) -> int:
        current = self._counts.get(object_id, 0)
        new_count = current + delta

        if new_count < 0:
            logger.warning(
                "Reference count for %s would become negative (%d). Setting to 0.",
                object_id, new_count,
            )
            new_count = 0

        if new_count == 0:
            self._counts.pop(object_id, None)
            self._run_release_hooks(object_id)
        else:
            self._counts[object_id] = new_count
        return new_count

    def _run_release_hooks(self, object_id: str) -> None:
        for hook in self._release_hooks:
            try:
                hook(object_id)
            except Exception:
                logger.exception("Release hook failed for %s", object_id)

    def _mirror(self, object_id: str, delta: int) -> None:
        if self.port is None:
            return
        message = RefCountMessage(type="refcount", object_id=object_id, delta=delta)
        try:
            self.port.post(message)
        except Exception as exc:
            # Finalizers call release(); an exception here must not escape into GC.
            logger.error(f"Failed to mirror refcount for {object_id}: {exc}")


class Lease:
    """One handle's claim on an identifier.

    The lease is shared by the holder and, when enabled, a ``weakref.finalize``
    registered on the handle. Whichever calls :meth:`release` first wins; the
    other call is a no-op, so explicit disposal and collection never both
    decrement.
    """

    __slots__ = ("counter", "object_id", "released", "_finalizer", "_releaser")

    def __init__(
        self,
        counter: ReferenceCounter,
        object_id: str,
        releaser: ReleaseHook | None = None,
    ) -> None:
        self.counter = counter
        self.object_id = object_id
        self.released = False
        self._finalizer: weakref.finalize | None = None
        # Called instead of counter.release when given.
        self._releaser = releaser
        counter.acquire(object_id)

    def watch(self, handle: Any) -> None:
        """Release automatically once *handle* is garbage collected."""
        self._finalizer = weakref.finalize(handle, self.release)
        self._finalizer.atexit = False

    def release(self) -> None:
        if self.released:
            return
        self.released = True
        if self._finalizer is not None:
            self._finalizer.detach()
        logger.debug("Releasing lease on %s", self.object_id)
        if self._releaser is not None:
            self._releaser(self.object_id)
        else:
            self.counter.release(self.object_id)
