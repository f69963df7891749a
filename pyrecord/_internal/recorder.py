"""
Recorder: operation log, flush scheduling and message dispatch.

This module contains:
- Recorder (owns the log, the identity registry, the reference counts and the
  callback bridge for one context)
- TransportUnavailableError / RemoteError
- create_recorded_object

A Recorder runs in one of two modes, chosen at flush time:

* direct: no port, a replay target is set; the log is replayed locally.
* cross-context: a port is attached; the log is sent to the peer Recorder,
  which replays it against its own target.

Flushes are scheduled with ``loop.call_soon`` so every operation recorded in
one turn of the event loop travels as a single batch.
"""

from __future__ import annotations

import asyncio
import contextlib
import copy
import inspect
import itertools
import logging
import uuid
from collections.abc import Iterator, Mapping
from typing import TYPE_CHECKING, Any, Callable

from .callbacks import CallbackBridge, RemoteCallable
from .identity import CALLBACK_ARG_PREFIX, RESULT_PREFIX, ROOT_ID, IdentityRegistry
from .lifecycle import Lease, ReferenceCounter
from .operations import (
    PRIMITIVE_TYPES,
    CallMessage,
    EvaluateMessage,
    OperationRecord,
    ProxyGetMessage,
    ReplayMessage,
    ReplayResult,
    ResponseMessage,
    channel_marker,
    debugprint,
    is_plain_data,
    ref_marker,
    transfer_marker,
    unserializable_marker,
    validate_message,
)
from .remote_handle import REMOTE_OBJECT_KEY, RemoteObjectHandle, is_remote_reference, remote_reference
from .replay import ReplayEngine, read_member
from .stand_in import StandIn
from .transfer_registry import TransferableRegistry

if TYPE_CHECKING:
    from ..config import RecorderConfig
    from ..interfaces import MessagePort

logger = logging.getLogger(__name__)

ErrorHandler = Callable[[BaseException], Any]


class TransportUnavailableError(RuntimeError):
    """An operation needs a port but the Recorder has none."""


class RemoteError(RuntimeError):
    """The peer answered a request with an error."""


class Recorder:
    """Records operations on stand-ins and replays them, locally or on a peer."""

    def __init__(
        self,
        port: MessagePort | None = None,
        target: Any = None,
        *,
        auto_replay: bool = True,
        use_finalization: bool = True,
        onerror: ErrorHandler | None = None,
        namespace: str | None = None,
    ) -> None:
        self.id = namespace if namespace is not None else uuid.uuid4().hex[:8]
        self.recordings: list[OperationRecord] = []
        self.recording_enabled = True
        self.auto_replay = auto_replay
        self.use_finalization = use_finalization
        self.onerror = onerror
        self.pending_transfers: list[Any] = []
        self._deferred_releases: list[str] = []
        self.last_results: list[ReplayResult] = []

        self.registry = IdentityRegistry(namespace=self.id)
        self.registry.set_root(target)
        self.counter = ReferenceCounter()
        self.counter.add_release_hook(self._on_released)
        self.bridge = CallbackBridge(self)
        self.engine = ReplayEngine(self.registry, resolve_channel=self._resolve_channel)

        self._flush_handle: asyncio.Handle | None = None
        self._call_ids = itertools.count()
        self.pending: dict[int, asyncio.Future[Any]] = {}
        self._root: StandIn | None = None

        self.port: MessagePort | None = None
        if port is not None:
            self.attach(port)

    @classmethod
    def from_config(
        cls,
        config: RecorderConfig,
        port: MessagePort | None = None,
        target: Any = None,
    ) -> Recorder:
        if config.get("debug"):
            logging.getLogger("pyrecord").setLevel(logging.DEBUG)
        return cls(
            port,
            target,
            auto_replay=config.get("auto_replay", True),
            use_finalization=config.get("use_finalization", True),
            onerror=config.get("onerror"),
        )

    # ------------------------------------------------------------------
    # Control surface
    # ------------------------------------------------------------------

    @property
    def root(self) -> StandIn:
        """The stand-in for the peer's (or the local target's) root object."""
        if self._root is None:
            self._root = StandIn(self, ROOT_ID)
        return self._root

    @property
    def target(self) -> Any:
        return self.registry.root

    def attach(self, port: MessagePort) -> None:
        """Connect to a peer through *port* and start receiving messages."""
        self.port = port
        self.counter.port = port
        port.start(self._handle_message)

    def record(self, operation: OperationRecord) -> None:
        if not self.recording_enabled:
            return
        self.recordings.append(operation)
        debugprint("recorded", operation)
        if self.auto_replay and (self.port is not None or self.registry.root is not None):
            self._schedule_flush()

    def get_recordings(self) -> list[OperationRecord]:
        """Snapshot of the current log."""
        return copy.deepcopy(self.recordings)

    def clear(self) -> None:
        self.recordings = []
        self.pending_transfers = []
        self._drain_releases()

    def pause(self) -> None:
        self.recording_enabled = False

    def resume(self) -> None:
        self.recording_enabled = True

    @contextlib.contextmanager
    def paused(self) -> Iterator[None]:
        """Suspend recording for the duration of a ``with`` block."""
        previous = self.recording_enabled
        self.recording_enabled = False
        try:
            yield
        finally:
            self.recording_enabled = previous

    def set_target(self, target: Any) -> None:
        """Set the object incoming and local logs are replayed against.

        Identifiers bound against a previous target are forgotten.
        """
        self.registry.set_root(target)

    def replay(self, target: Any) -> list[ReplayResult]:
        """Replay and empty the current log against *target*.

        A *target* other than the current one becomes the replay target, as
        with :meth:`set_target`.
        """
        if self._flush_handle is not None:
            self._flush_handle.cancel()
            self._flush_handle = None
        if target is not self.registry.root:
            self.set_target(target)
        records, transfers = self._take_log()
        try:
            return self._replay_locally(records, transfers)
        finally:
            self._drain_releases()

    def flush(self) -> None:
        """Deliver the log now instead of waiting for the scheduled flush."""
        if self._flush_handle is not None:
            self._flush_handle.cancel()
            self._flush_handle = None
        if self.port is None and self.registry.root is None:
            return
        try:
            if self.port is not None:
                self._send_recordings()
            else:
                records, transfers = self._take_log()
                if records:
                    self._replay_locally(records, transfers)
        finally:
            self._drain_releases()

    def dispose(self) -> None:
        """Close the port and forget every identifier, channel and pending request."""
        if self._flush_handle is not None:
            self._flush_handle.cancel()
            self._flush_handle = None
        for future in self.pending.values():
            if not future.done():
                future.cancel()
        self.pending.clear()
        self._deferred_releases.clear()
        self.counter.clear()
        self.bridge.clear()
        self.registry.clear()
        if self.port is not None:
            self.port.close()
            self.port = None
            self.counter.port = None

    def __enter__(self) -> Recorder:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.dispose()

    # ------------------------------------------------------------------
    # Hooks used by StandIn
    # ------------------------------------------------------------------

    def allocate_id(self) -> str:
        return self.registry.allocate(RESULT_PREFIX)

    def lease(self, handle: Any, object_id: str) -> Lease:
        lease = Lease(self.counter, object_id, releaser=self._release)
        if self.use_finalization:
            lease.watch(handle)
        return lease

    def _release(self, object_id: str) -> None:
        # Records still waiting to be flushed may name this identifier; the
        # peer must see them before the reference goes away.
        if self.recordings:
            self._deferred_releases.append(object_id)
        else:
            self.counter.release(object_id)

    def _drain_releases(self) -> None:
        released, self._deferred_releases = self._deferred_releases, []
        for object_id in released:
            self.counter.release(object_id)

    def new_stand_in(
        self,
        object_id: str,
        *,
        parent_id: str | None = None,
        name: str | None = None,
        leased: bool = True,
    ) -> StandIn:
        stand_in = StandIn(self, object_id, parent_id=parent_id, name=name)
        # Unrecorded results never reach the peer, so they hold no reference there.
        if leased:
            object.__setattr__(stand_in, "_lease", self.lease(stand_in, object_id))
        return stand_in

    def serialize(self, value: Any) -> Any:
        """Turn a value into something an operation record can carry."""
        if isinstance(value, StandIn):
            return ref_marker(value._target_id)
        if isinstance(value, RemoteObjectHandle):
            return ref_marker(value.object_id)
        if isinstance(value, PRIMITIVE_TYPES):
            return value
        if TransferableRegistry.get_instance().is_transferable(value):
            if self.port is not None and not getattr(self.port, "supports_transfer", True):
                raise TypeError(
                    f"{type(value).__name__} is transferable but {type(self.port).__name__} cannot move resources"
                )
            self.pending_transfers.append(value)
            return transfer_marker()
        if isinstance(value, list):
            return [self.serialize(item) for item in value]
        if isinstance(value, tuple):
            return tuple(self.serialize(item) for item in value)
        if isinstance(value, dict):
            return {k: self.serialize(v) for k, v in value.items()}
        if callable(value) and not isinstance(value, type):
            return channel_marker(self.bridge.channel_for(value))
        return value

    # ------------------------------------------------------------------
    # Flushing
    # ------------------------------------------------------------------

    def _schedule_flush(self) -> None:
        if self._flush_handle is not None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop: the log waits for flush() or replay().
            return
        self._flush_handle = loop.call_soon(self._scheduled_flush)

    def _scheduled_flush(self) -> None:
        self._flush_handle = None
        self.flush()

    def _take_log(self) -> tuple[list[OperationRecord], list[Any]]:
        records, self.recordings = self.recordings, []
        transfers, self.pending_transfers = self.pending_transfers, []
        return records, transfers

    def _send_recordings(self) -> None:
        assert self.port is not None
        registrations = self.bridge.take_registrations()
        records, transfers = self._take_log()
        try:
            for registration in registrations:
                self.port.post(registration)
            if not records:
                return
            logger.debug("Sending %d operation(s) to peer", len(records))
            self.port.post(ReplayMessage(type="replay", operations=records), transfers)
        except Exception as exc:
            logger.error(f"Error sending {len(records)} operation(s) to peer: {exc}")
            if self.onerror is not None:
                self.onerror(exc)

    def _replay_locally(self, records: list[OperationRecord], transfers: list[Any]) -> list[ReplayResult]:
        self.bridge.take_registrations()
        resolve = self.engine.resolve_channel
        used_channels: list[str] = []

        def resolve_local(channel_id: str) -> Any:
            used_channels.append(channel_id)
            return self.bridge.local_function(channel_id)

        self.engine.resolve_channel = resolve_local
        try:
            return self._run_replay(records, transfers)
        finally:
            self.engine.resolve_channel = resolve
            # The function now lives in the target itself; the channel is done.
            for channel_id in dict.fromkeys(used_channels):
                if channel_id in self.counter:
                    self.counter.release(channel_id)

    def _run_replay(self, records: list[OperationRecord], transfers: list[Any]) -> list[ReplayResult]:
        results = self.engine.replay(records, transfers)
        self.last_results = results
        # Results nobody holds a handle to any more are not kept alive.
        for object_id in self.engine.bound:
            if object_id not in self.counter:
                self.registry.discard(object_id)
        return results

    # ------------------------------------------------------------------
    # Identifier release and channel resolution
    # ------------------------------------------------------------------

    def _on_released(self, object_id: str) -> None:
        self.registry.discard(object_id)
        self.bridge.retire(object_id)

    def _resolve_channel(self, channel_id: str) -> Any:
        if self.port is None:
            return self._resolve_channel_locally(channel_id)
        return self.bridge.resolve(channel_id)

    def _resolve_channel_locally(self, channel_id: str) -> Any:
        return self.bridge.local_function(channel_id)

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def evaluate(self, value: Any, timeout: float | None = None) -> Any:
        """Fetch the real value behind a reference from the replaying context.

        *value* may be a StandIn, a dict or list of StandIns, or a
        zero-argument function (sync or async) returning any of those.
        Returns an awaitable. Raises TransportUnavailableError immediately
        when no port is attached.
        """
        if self.port is None:
            raise TransportUnavailableError("Cannot evaluate: no MessagePort configured")
        if not isinstance(value, (StandIn, RemoteObjectHandle, Mapping, list, tuple)) and not callable(value):
            raise TypeError(f"Cannot evaluate {type(value).__name__}: expected a stand-in reference")
        return self._evaluate(value, timeout)

    async def _evaluate(self, value: Any, timeout: float | None) -> Any:
        if isinstance(value, StandIn):
            return await self._request_value(value._target_id, timeout)
        if isinstance(value, RemoteObjectHandle):
            return await self._request_value(value.object_id, timeout)
        if isinstance(value, Mapping):
            keys = list(value.keys())
            values = await asyncio.gather(*(self._evaluate(value[k], timeout) for k in keys))
            return dict(zip(keys, values))
        if isinstance(value, (list, tuple)):
            values = await asyncio.gather(*(self._evaluate(item, timeout) for item in value))
            return type(value)(values)
        if callable(value):
            produced = value()
            if inspect.isawaitable(produced):
                produced = await produced
            return await self._evaluate(produced, timeout)
        return value

    async def _request_value(self, object_id: str, timeout: float | None) -> Any:
        # Operations recorded before this call must reach the peer first.
        self.flush()
        call_id, future = self._new_request()
        self._post(EvaluateMessage(type="evaluate", object_id=object_id, call_id=call_id))
        return await self.wait_response(future, timeout)

    async def proxy_get(self, object_id: str, property: str, timeout: float | None = None) -> Any:
        if self.port is None:
            raise TransportUnavailableError("Cannot read remote property: no MessagePort configured")
        self.flush()
        call_id, future = self._new_request()
        self._post(ProxyGetMessage(type="proxyGet", object_id=object_id, property=property, call_id=call_id))
        return await self.wait_response(future, timeout)

    def _new_request(self) -> tuple[int, asyncio.Future[Any]]:
        loop = asyncio.get_running_loop()
        future: asyncio.Future[Any] = loop.create_future()
        call_id = next(self._call_ids)
        self.pending[call_id] = future
        # Resolved, failed, cancelled or timed out: the entry goes either way.
        future.add_done_callback(lambda _: self.pending.pop(call_id, None))
        return call_id, future

    async def wait_response(self, future: asyncio.Future[Any], timeout: float | None) -> Any:
        if timeout is None:
            return await future
        return await asyncio.wait_for(future, timeout)

    def _post(self, message: Any, transfer: list[Any] | None = None) -> None:
        if self.port is None:
            raise TransportUnavailableError("No MessagePort configured")
        self.port.post(message, transfer or [])

    # ------------------------------------------------------------------
    # Callbacks (peer side)
    # ------------------------------------------------------------------

    def post_call(
        self,
        channel_id: str,
        args: tuple[Any, ...],
        kwargs: dict[str, Any],
        *,
        want_response: bool = False,
    ) -> asyncio.Future[Any] | None:
        """Send a ``call`` for a RemoteCallable."""
        if self.port is None:
            raise TransportUnavailableError(f"Cannot call remote function on {channel_id}: no MessagePort configured")
        call_id, future = self._new_request() if want_response else (None, None)
        message = CallMessage(
            type="call",
            channel_id=channel_id,
            args=[self._export_value(arg) for arg in args],
            kwargs={key: self._export_value(value) for key, value in kwargs.items()},
            call_id=call_id,
        )
        try:
            self.port.post(message)
        except Exception as exc:
            logger.error(f"Error sending callback args: {exc}")
            if future is not None:
                future.set_exception(RuntimeError(str(exc)))
            elif self.onerror is not None:
                self.onerror(exc)
        return future

    def _export_value(self, value: Any) -> Any:
        """Serialize a callback argument produced in the replaying context."""
        if isinstance(value, PRIMITIVE_TYPES):
            return value
        if isinstance(value, RemoteCallable):
            return unserializable_marker(value)
        object_id = self.registry.find(value)
        if object_id is not None:
            return ref_marker(object_id)
        if isinstance(value, list):
            return [self._export_value(item) for item in value]
        if isinstance(value, tuple):
            return [self._export_value(item) for item in value]
        if isinstance(value, dict) and all(isinstance(k, str) for k in value):
            return {k: self._export_value(v) for k, v in value.items()}
        # Anything else is handed over by reference so the callback can drive it.
        object_id = self.registry.allocate(CALLBACK_ARG_PREFIX)
        self.registry.bind(object_id, value)
        return ref_marker(object_id)

    # ------------------------------------------------------------------
    # Responses
    # ------------------------------------------------------------------

    def respond(self, call_id: int, result: Any = None, error: str | None = None) -> None:
        if self.port is None:
            logger.warning("Dropping response %s: no MessagePort configured", call_id)
            return
        if error is None:
            result = self._response_payload(result)
        try:
            self.port.post(ResponseMessage(type="response", call_id=call_id, result=result, error=error))
        except (TypeError, ValueError) as serialize_exc:
            logger.error("Response serialization failed for call_id=%s: %s", call_id, serialize_exc)
            self.port.post(ResponseMessage(
                type="response",
                call_id=call_id,
                result=None,
                error=f"Response serialization failed: {serialize_exc}",
            ))

    def _response_payload(self, value: Any) -> Any:
        if isinstance(value, StandIn):
            # Stand-ins rooted in the peer cannot be forwarded back to it.
            return unserializable_marker(value)
        if is_plain_data(value):
            return value
        object_id = self.registry.find(value)
        if object_id is None:
            object_id = self.registry.allocate(RESULT_PREFIX)
            self.registry.bind(object_id, value)
        return remote_reference(object_id, value)

    def _resolve_response(self, message: ResponseMessage) -> None:
        future = self.pending.pop(message["call_id"], None)
        if future is None:
            logger.debug("Response for unknown call_id %s", message["call_id"])
            return
        if future.done():
            return
        if message.get("error"):
            future.set_exception(RemoteError(message["error"]))
            return
        result = message.get("result")
        if is_remote_reference(result):
            inner = result[REMOTE_OBJECT_KEY]
            result = RemoteObjectHandle(inner["object_id"], inner.get("type_name", "object"), self)
        future.set_result(result)

    # ------------------------------------------------------------------
    # Incoming messages
    # ------------------------------------------------------------------

    def _handle_message(self, data: Any, transfer: list[Any]) -> None:
        problem = validate_message(data)
        if problem is not None:
            logger.warning(f"Invalid message received: {problem}")
            return
        debugprint("received", data)

        message_type = data["type"]
        if message_type == "replay":
            self._handle_replay(data, transfer)
        elif message_type == "refcount":
            self.counter.apply_remote(data["object_id"], data["delta"])
        elif message_type == "registerCallback":
            self.bridge.register_remote(data["channel_id"], data.get("name") or "<remote>")
        elif message_type == "evaluate":
            self._handle_evaluate(data)
        elif message_type == "proxyGet":
            self._handle_proxy_get(data)
        elif message_type == "call":
            self.bridge.handle_call(data)
        elif message_type == "response":
            self._resolve_response(data)

    def _handle_replay(self, data: ReplayMessage, transfer: list[Any]) -> None:
        if self.registry.root is None:
            logger.warning("Received %d operation(s) but no replay target is set", len(data["operations"]))
            return
        try:
            results = self._run_replay(data["operations"], transfer)
        except Exception as exc:
            if self.onerror is not None:
                self.onerror(exc)
            else:
                logger.exception("Error during replay")
            return
        failures = [r for r in results if r["error"] is not None]
        if failures and self.onerror is not None:
            for failure in failures:
                self.onerror(RuntimeError(f"Operation {failure['index']} ({failure['kind']}) failed: {failure['error']}"))

    def _handle_evaluate(self, data: EvaluateMessage) -> None:
        object_id = data["object_id"]
        if self.registry.root is None:
            self.respond(data["call_id"], error="No replay context available")
            return
        if object_id not in self.registry:
            self.respond(data["call_id"], error=f"Object {object_id} not found")
            return
        self.respond(data["call_id"], result=self.registry.lookup(object_id))

    def _handle_proxy_get(self, data: ProxyGetMessage) -> None:
        object_id = data["object_id"]
        if self.registry.root is None:
            self.respond(data["call_id"], error="No replay context available")
            return
        if object_id not in self.registry:
            self.respond(data["call_id"], error=f"Object {object_id} not found")
            return
        try:
            value = read_member(self.registry.lookup(object_id), data["property"])
        except Exception as exc:
            self.respond(data["call_id"], error=f"{type(exc).__name__}: {exc}")
            return
        self.respond(data["call_id"], result=value)


def create_recorded_object(recorder: Recorder) -> StandIn:
    """Return the root stand-in of *recorder*."""
    return recorder.root
