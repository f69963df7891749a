"""Remote object handle returned by evaluation.

When ``evaluate`` reaches a value that cannot travel as plain data, the peer
answers with a reference instead. RemoteObjectHandle wraps that reference:
it keeps the peer's object alive through a lease and fetches individual
properties lazily with ``proxyGet`` round trips.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .lifecycle import Lease
    from .recorder import Recorder

REMOTE_OBJECT_KEY = "__remote_object__"


class RemoteObjectHandle:
    """Handle to an object in a remote context.

    Attributes:
        object_id: Identifier of the object in the peer's registry.
        type_name: The type name of the remote object (for debugging/logging).
    """

    __slots__ = ("object_id", "type_name", "_recorder", "_lease", "__weakref__")

    def __init__(self, object_id: str, type_name: str, recorder: Recorder | None = None) -> None:
        self.object_id = object_id
        self.type_name = type_name
        self._recorder = recorder
        self._lease: Lease | None = None
        if recorder is not None:
            self._lease = recorder.lease(self, object_id)

    async def get(self, property: str, timeout: float | None = None) -> Any:
        """Read one property of the remote object."""
        if self._recorder is None:
            raise RuntimeError(f"{self!r} is not attached to a recorder")
        return await self._recorder.proxy_get(self.object_id, property, timeout=timeout)

    def dispose(self) -> None:
        if self._lease is not None:
            self._lease.release()

    def __enter__(self) -> RemoteObjectHandle:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.dispose()

    def __repr__(self) -> str:
        return f"<RemoteObject id={self.object_id} type={self.type_name}>"


def remote_reference(object_id: str, obj: Any) -> dict[str, dict[str, str]]:
    """Payload sent in place of a value that cannot be copied across."""
    return {REMOTE_OBJECT_KEY: {"object_id": object_id, "type_name": type(obj).__name__}}


def is_remote_reference(value: Any) -> bool:
    if not isinstance(value, dict) or len(value) != 1 or REMOTE_OBJECT_KEY not in value:
        return False
    inner = value[REMOTE_OBJECT_KEY]
    return isinstance(inner, dict) and isinstance(inner.get("object_id"), str)
