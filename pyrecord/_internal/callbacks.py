"""
Callback Bridge.

Lets a function recorded on one side be called from the other side while it
keeps executing on its home event loop, with its closure state intact.

Originating side: the first time a function value is serialized it gets a
sub-channel identifier. The function is kept alive in ``active`` until the
peer gives up its last reference to that channel, and repeated uses of the
identical function reuse the channel.

Peer side: a channel marker resolves to a :class:`RemoteCallable`. Calling it
posts a ``call`` message; the originating side rebuilds the arguments as
stand-ins rooted in the peer's identifiers, so anything the callback does to
them is recorded and flushed back like any other operation.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import weakref
from collections.abc import Hashable
from typing import TYPE_CHECKING, Any, Callable

from .identity import CHANNEL_PREFIX
from .operations import (
    REF_KEY,
    CallMessage,
    RegisterCallbackMessage,
    is_ref_marker,
)

if TYPE_CHECKING:
    from .recorder import Recorder

logger = logging.getLogger(__name__)


def _function_key(func: Callable[..., Any]) -> Hashable:
    # Bound methods are rebuilt on every attribute access; key them by the
    # instance and underlying function so obj.method reuses one channel.
    if inspect.ismethod(func):
        return (id(func.__self__), id(func.__func__))
    return id(func)


class RemoteCallable:
    """Local callable standing for a function that lives in the peer context.

    Calling it is fire-and-forget. Use :meth:`call_with_response` to wait for
    the function's return value.
    """

    __slots__ = ("channel_id", "name", "_recorder", "__weakref__")

    def __init__(self, recorder: Recorder, channel_id: str, name: str = "<remote>") -> None:
        self._recorder = recorder
        self.channel_id = channel_id
        self.name = name

    def __call__(self, *args: Any, **kwargs: Any) -> None:
        self._recorder.post_call(self.channel_id, args, kwargs)

    async def call_with_response(self, *args: Any, timeout: float | None = None, **kwargs: Any) -> Any:
        future = self._recorder.post_call(self.channel_id, args, kwargs, want_response=True)
        return await self._recorder.wait_response(future, timeout)

    def __repr__(self) -> str:
        return f"<RemoteCallable {self.name} channel={self.channel_id}>"


class CallbackBridge:
    """Both halves of the callback protocol for one Recorder."""

    def __init__(self, recorder: Recorder) -> None:
        self._recorder = recorder
        # Originating side
        self.active: dict[str, Callable[..., Any]] = {}
        self._channels_by_key: dict[Hashable, str] = {}
        self._keys_by_channel: dict[str, Hashable] = {}
        self._pending_registrations: list[RegisterCallbackMessage] = []
        # Peer side
        self.registered: dict[str, str] = {}
        self._remote_callables: weakref.WeakValueDictionary[str, RemoteCallable] = weakref.WeakValueDictionary()
        self._background: set[asyncio.Task[Any]] = set()

    # -- originating side --------------------------------------------------

    def channel_for(self, func: Callable[..., Any]) -> str:
        """Return the sub-channel for *func*, creating it on first use."""
        key = _function_key(func)
        channel_id = self._channels_by_key.get(key)
        if channel_id is not None:
            return channel_id

        channel_id = self._recorder.registry.allocate(CHANNEL_PREFIX)
        name = getattr(func, "__name__", type(func).__name__)
        self.active[channel_id] = func
        self._channels_by_key[key] = channel_id
        self._keys_by_channel[channel_id] = key
        self._pending_registrations.append(
            RegisterCallbackMessage(type="registerCallback", channel_id=channel_id, name=name)
        )
        # This reference belongs to the peer's registration of the channel.
        self._recorder.counter.acquire(channel_id)
        logger.debug("Created callback channel %s for %s", channel_id, name)
        return channel_id

    def take_registrations(self) -> list[RegisterCallbackMessage]:
        registrations = self._pending_registrations
        self._pending_registrations = []
        return registrations

    def local_function(self, channel_id: str) -> Callable[..., Any]:
        """Resolve a channel created by this side (direct replay in one context)."""
        try:
            return self.active[channel_id]
        except KeyError:
            raise LookupError(f"Callback channel {channel_id} not found") from None

    def retire(self, channel_id: str) -> None:
        """Drop the channel and the strong reference to its function."""
        func = self.active.pop(channel_id, None)
        key = self._keys_by_channel.pop(channel_id, None)
        if key is not None:
            self._channels_by_key.pop(key, None)
        self.registered.pop(channel_id, None)
        if func is not None:
            logger.debug("Retired callback channel %s", channel_id)

    def handle_call(self, message: CallMessage) -> None:
        channel_id = message["channel_id"]
        call_id = message.get("call_id")
        func = self.active.get(channel_id)
        if func is None:
            logger.warning(f"Callback channel {channel_id} not found")
            if call_id is not None:
                self._recorder.respond(call_id, error=f"Callback channel {channel_id} not found")
            return

        try:
            args = [self._import_value(arg) for arg in message["args"]]
            kwargs = {key: self._import_value(value) for key, value in (message.get("kwargs") or {}).items()}
            result = func(*args, **kwargs)
        except Exception as exc:
            self._report_failure(channel_id, call_id, exc)
            return

        if inspect.isawaitable(result):
            task = asyncio.ensure_future(self._finish_async(channel_id, call_id, result))
            self._background.add(task)
            task.add_done_callback(self._background.discard)
            return
        if call_id is not None:
            self._recorder.respond(call_id, result=result)

    async def _finish_async(self, channel_id: str, call_id: int | None, awaitable: Any) -> None:
        try:
            result = await awaitable
        except Exception as exc:
            self._report_failure(channel_id, call_id, exc)
            return
        if call_id is not None:
            self._recorder.respond(call_id, result=result)

    def _report_failure(self, channel_id: str, call_id: int | None, exc: Exception) -> None:
        if call_id is not None:
            logger.debug("Callback %s raised, answering with error", channel_id, exc_info=True)
            self._recorder.respond(call_id, error=f"{type(exc).__name__}: {exc}")
        elif self._recorder.onerror is not None:
            try:
                self._recorder.onerror(exc)
            except Exception:
                logger.exception("onerror handler failed")
        else:
            logger.exception("Callback %s raised", channel_id, exc_info=exc)

    def _import_value(self, value: Any) -> Any:
        if is_ref_marker(value):
            return self._recorder.new_stand_in(value[REF_KEY])
        if isinstance(value, list):
            return [self._import_value(item) for item in value]
        if isinstance(value, dict):
            return {k: self._import_value(v) for k, v in value.items()}
        return value

    # -- peer side ---------------------------------------------------------

    def register_remote(self, channel_id: str, name: str) -> None:
        self.registered[channel_id] = name

    def resolve(self, channel_id: str) -> RemoteCallable:
        """Return the RemoteCallable for a channel announced by the peer."""
        remote = self._remote_callables.get(channel_id)
        if remote is not None:
            return remote

        name = self.registered.get(channel_id)
        if name is None:
            logger.warning(f"Callback channel {channel_id} was never registered")
            return RemoteCallable(self._recorder, channel_id)

        remote = RemoteCallable(self._recorder, channel_id, name)
        self._remote_callables[channel_id] = remote
        # Once nothing on this side can call it, hand the peer's reference back.
        finalizer = weakref.finalize(remote, self._release_remote, channel_id)
        finalizer.atexit = False
        return remote

    def _release_remote(self, channel_id: str) -> None:
        if self.registered.pop(channel_id, None) is None:
            return
        self._recorder.counter.release(channel_id)

    def clear(self) -> None:
        self.active.clear()
        self._channels_by_key.clear()
        self._keys_by_channel.clear()
        self._pending_registrations.clear()
        self.registered.clear()
        self._remote_callables.clear()
