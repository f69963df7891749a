"""Recording stand-ins.

A StandIn represents an object that lives (or will live) in another context.
Operating on it appends an operation record to its Recorder and hands back a
fresh StandIn for the not-yet-existing result; nothing is executed locally.

Every public attribute name belongs to the remote object, so the handle
itself exposes no public methods. Attribute access, attribute assignment,
item access and calls record the four operations::

    button = root.document.createElement("button")   # read, read, invoke
    button.textContent = "Click me"                    # write
    player.dispose()                                   # read, invoke

The explicit forms live at module level (``read``, ``write``, ``invoke``,
``instantiate``) together with ``dispose``, which gives up the handle's
reference. ``with handle:`` disposes on exit as well.

Names that start with an underscore are never recorded through the sugar so
generic Python machinery (copy, pickle, inspect, asyncio) probing for dunder
hooks sees an ordinary object. Use ``read(handle, "_name")`` to record such
a read explicitly.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from .operations import OperationRecord

if TYPE_CHECKING:
    from .lifecycle import Lease
    from .recorder import Recorder

logger = logging.getLogger(__name__)


class StandIn:
    """Chainable placeholder for a remote object."""

    __slots__ = ("_recorder", "_target_id", "_parent_id", "_name", "_lease", "__weakref__")

    # Not iterable: iter() raises TypeError instead of recording reads.
    __iter__ = None

    def __init__(
        self,
        recorder: Recorder,
        target_id: str,
        *,
        parent_id: str | None = None,
        name: str | None = None,
        lease: Lease | None = None,
    ) -> None:
        object.__setattr__(self, "_recorder", recorder)
        object.__setattr__(self, "_target_id", target_id)
        object.__setattr__(self, "_parent_id", parent_id)
        object.__setattr__(self, "_name", name)
        object.__setattr__(self, "_lease", lease)

    # -- the four operations ---------------------------------------------

    def _read(self, property: str) -> StandIn:
        recorder = self._recorder
        result_id = recorder.allocate_id()
        recorder.record(OperationRecord(
            kind="read",
            target_id=self._target_id,
            property=str(property),
            result_id=result_id,
        ))
        return recorder.new_stand_in(
            result_id,
            parent_id=self._target_id,
            name=str(property),
            leased=recorder.recording_enabled,
        )

    def _write(self, property: str, value: Any) -> bool:
        recorder = self._recorder
        if recorder.recording_enabled:
            recorder.record(OperationRecord(
                kind="write",
                target_id=self._target_id,
                property=str(property),
                value=recorder.serialize(value),
            ))
        # Never touches anything locally; a write always "succeeds".
        return True

    def _invoke(self, *args: Any, **kwargs: Any) -> StandIn:
        recorder = self._recorder
        result_id = recorder.allocate_id()
        if recorder.recording_enabled:
            recorder.record(OperationRecord(
                kind="invoke",
                target_id=self._target_id,
                receiver_id=self._parent_id,
                args=[recorder.serialize(arg) for arg in args],
                kwargs={key: recorder.serialize(value) for key, value in kwargs.items()},
                result_id=result_id,
            ))
        return recorder.new_stand_in(result_id, leased=recorder.recording_enabled)

    def _instantiate(self, *args: Any, **kwargs: Any) -> StandIn:
        recorder = self._recorder
        result_id = recorder.allocate_id()
        if recorder.recording_enabled:
            recorder.record(OperationRecord(
                kind="instantiate",
                target_id=self._target_id,
                args=[recorder.serialize(arg) for arg in args],
                kwargs={key: recorder.serialize(value) for key, value in kwargs.items()},
                constructed_name=self._name or "Anonymous",
                result_id=result_id,
            ))
        return recorder.new_stand_in(result_id, leased=recorder.recording_enabled)

    # -- lifecycle ---------------------------------------------------------

    def _dispose(self) -> None:
        lease = self._lease
        if lease is not None:
            lease.release()

    def __enter__(self) -> StandIn:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self._dispose()

    # -- sugar -------------------------------------------------------------

    def __getattr__(self, name: str) -> StandIn:
        # Only reached for names that are not slots or methods.
        if name.startswith("_"):
            raise AttributeError(name)
        return self._read(name)

    def __setattr__(self, name: str, value: Any) -> None:
        if name.startswith("_"):
            raise AttributeError(f"Cannot record write to reserved name {name!r}")
        self._write(name, value)

    def __getitem__(self, key: str) -> StandIn:
        if not isinstance(key, str):
            raise TypeError(f"StandIn keys must be str, not {type(key).__name__}")
        return self._read(key)

    def __setitem__(self, key: str, value: Any) -> None:
        if not isinstance(key, str):
            raise TypeError(f"StandIn keys must be str, not {type(key).__name__}")
        self._write(key, value)

    def __call__(self, *args: Any, **kwargs: Any) -> StandIn:
        return self._invoke(*args, **kwargs)

    def __repr__(self) -> str:
        return f"<StandIn id={self._target_id}>"


def _require_stand_in(handle: Any) -> StandIn:
    if not isinstance(handle, StandIn):
        raise TypeError(f"Expected a StandIn, got {type(handle).__name__}")
    return handle


def read(handle: StandIn, property: str, /) -> StandIn:
    """Record a member read on *handle* and return a stand-in for the result."""
    return _require_stand_in(handle)._read(property)


def write(handle: StandIn, property: str, value: Any, /) -> bool:
    """Record a member write on *handle*. Always returns True."""
    return _require_stand_in(handle)._write(property, value)


def invoke(handle: StandIn, /, *args: Any, **kwargs: Any) -> StandIn:
    """Record a call of *handle* and return a stand-in for the result."""
    return _require_stand_in(handle)._invoke(*args, **kwargs)


def instantiate(handle: StandIn, /, *args: Any, **kwargs: Any) -> StandIn:
    """Record a construction through *handle* and return a stand-in for the new object."""
    return _require_stand_in(handle)._instantiate(*args, **kwargs)


def dispose(handle: Any) -> None:
    """Give up *handle*'s reference to its remote object.

    Accepts stand-ins and anything else with a ``dispose()`` method, such as
    RemoteObjectHandle.
    """
    if isinstance(handle, StandIn):
        handle._dispose()
    else:
        handle.dispose()


def identifier_of(obj: Any) -> str | None:
    """Return the identifier a StandIn stands for, or None for anything else."""
    if isinstance(obj, StandIn):
        return obj._target_id
    return None
