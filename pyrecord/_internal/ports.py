"""
Asynchronous message ports.

This module contains:
- LoopbackPort / create_channel: two connected ports on one event loop
- TransportPort: a MessagePort backed by a blocking Transport plus
  receive/send threads that hand work back to the event loop
"""

from __future__ import annotations

import asyncio
import copy
import logging
import queue
import threading
from collections import deque
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

from .operations import debugprint

if TYPE_CHECKING:
    from ..interfaces import MessageHandler
    from .transports import Transport

logger = logging.getLogger(__name__)


def _dispatch(handler: MessageHandler, message: Any, transfer: list[Any]) -> None:
    try:
        handler(message, transfer)
    except Exception:
        # A handler failure must not take the event loop or the port down.
        logger.exception("Message handler failed")


class LoopbackPort:
    """In-process port whose peer is another LoopbackPort on the same loop.

    Messages are deep-copied on post so the receiver never aliases the
    sender's data; transferred resources are passed through as-is.
    Delivery is scheduled with ``call_soon_threadsafe`` so posting from a
    finalizer on another thread is safe.
    """

    supports_transfer = True

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop
        self._peer: LoopbackPort | None = None
        self._handler: MessageHandler | None = None
        self._backlog: deque[tuple[Any, list[Any]]] = deque()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None or self._loop.is_closed():
            self._loop = asyncio.get_running_loop()
        return self._loop

    def post(self, message: Any, transfer: Sequence[Any] = ()) -> None:
        if self._closed:
            raise RuntimeError("Port closed")
        peer = self._peer
        if peer is None or peer._closed:
            logger.debug("Dropping message for closed peer: %s", message.get("type") if isinstance(message, dict) else message)
            return
        debugprint("post", message)
        payload = copy.deepcopy(message)
        peer._get_loop().call_soon_threadsafe(peer._deliver, payload, list(transfer))

    def start(self, handler: MessageHandler) -> None:
        self._handler = handler
        loop = self._get_loop()
        while self._backlog:
            message, transfer = self._backlog.popleft()
            loop.call_soon(_dispatch, handler, message, transfer)

    def close(self) -> None:
        self._closed = True
        self._handler = None
        self._backlog.clear()

    def _deliver(self, message: Any, transfer: list[Any]) -> None:
        if self._closed:
            return
        if self._handler is None:
            self._backlog.append((message, transfer))
            return
        _dispatch(self._handler, message, transfer)


def create_channel(loop: asyncio.AbstractEventLoop | None = None) -> tuple[LoopbackPort, LoopbackPort]:
    """Return two entangled ports, like the two ends of a message channel."""
    if loop is None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
    port1 = LoopbackPort(loop)
    port2 = LoopbackPort(loop)
    port1._peer = port2
    port2._peer = port1
    return port1, port2


class TransportPort:
    """MessagePort over a blocking :class:`Transport`.

    A receive thread reads envelopes and schedules the handler on the event
    loop; a send thread drains an outbox so ``post`` never blocks the loop.
    """

    def __init__(self, transport: Transport, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._transport = transport
        self._loop = loop
        self._handler: MessageHandler | None = None
        self.outbox: queue.Queue[dict[str, Any] | None] = queue.Queue()
        self._stopping = False
        self._threads: list[threading.Thread] = []

    @property
    def supports_transfer(self) -> bool:
        return self._transport.supports_transfer

    def post(self, message: Any, transfer: Sequence[Any] = ()) -> None:
        if self._stopping:
            raise RuntimeError("Port closed")
        if transfer and not self._transport.supports_transfer:
            raise TypeError(
                f"{type(self._transport).__name__} cannot move resources; "
                f"{len(transfer)} transferable(s) attached to {message.get('type')!r}"
            )
        debugprint("post", message)
        self.outbox.put({"message": message, "transfer": list(transfer)})

    def start(self, handler: MessageHandler) -> None:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        self._handler = handler
        self._threads = [
            threading.Thread(target=self._recv_thread, daemon=True),
            threading.Thread(target=self._send_thread, daemon=True),
        ]
        for t in self._threads:
            t.start()

    def close(self) -> None:
        """Signal intent to stop. Suppresses connection errors from here on."""
        if self._stopping:
            return
        self._stopping = True
        self.outbox.put(None)
        self._transport.close()

    def _recv_thread(self) -> None:
        while True:
            try:
                item = self._transport.recv()
            except Exception as exc:
                if self._stopping:
                    logger.debug(f"Port shutting down ({exc})")
                else:
                    logger.error(f"Port recv failed: {exc}")
                break

            if item is None:
                logger.debug("Transport reached end of stream")
                break

            if not isinstance(item, dict) or "message" not in item:
                logger.warning("Dropping malformed envelope: %r", item)
                continue

            loop = self._loop
            handler = self._handler
            if loop is None or handler is None or loop.is_closed():
                logger.warning("Cannot deliver message - event loop unavailable")
                break
            try:
                loop.call_soon_threadsafe(_dispatch, handler, item["message"], list(item.get("transfer") or []))
            except RuntimeError as e:
                logger.warning(f"Loop closed while delivering message: {e}")
                break

    def _send_thread(self) -> None:
        while True:
            envelope = self.outbox.get()
            if envelope is None:
                break
            try:
                self._transport.send(envelope)
            except Exception as exc:
                if self._stopping:
                    logger.debug(f"Port shutting down, dropped send ({exc})")
                    break
                # Don't raise, just log, so thread stays alive
                logger.error(f"Port send failed: {exc}")
