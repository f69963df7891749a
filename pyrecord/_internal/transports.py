"""
Blocking Transport Layer.

This module contains:
- Transport Protocol
- QueueTransport
- ConnectionTransport
- JSONSocketTransport

Transports move opaque envelopes between two endpoints with blocking
``send``/``recv``. :class:`pyrecord._internal.ports.TransportPort` turns any
of them into an asynchronous MessagePort.
"""

from __future__ import annotations

import base64
import contextlib
import json
import logging
import queue
import socket
import struct
import threading
from typing import (
    TYPE_CHECKING,
    Any,
    Protocol,
    runtime_checkable,
)

if TYPE_CHECKING:
    import multiprocessing as typehint_mp
    from multiprocessing.connection import Connection

logger = logging.getLogger(__name__)

MAX_MESSAGE_BYTES = 100 * 1024 * 1024


@runtime_checkable
class Transport(Protocol):
    """Protocol for blocking transport mechanisms.

    Implementations must provide thread-safe send/recv operations. ``recv``
    returns ``None`` when the peer has closed the stream.
    """

    #: Whether resources passed beside a message can cross this transport.
    supports_transfer: bool

    def send(self, obj: Any) -> None:
        """Send an object to the remote endpoint."""
        ...

    def recv(self) -> Any:
        """Receive an object from the remote endpoint. Blocks until available."""
        ...

    def close(self) -> None:
        """Close the transport. Further send/recv calls may fail."""
        ...


class QueueTransport:
    """Transport over a pair of queues.

    With ``queue.Queue`` both ends live in one process and transferred
    resources are handed over by reference. With ``multiprocessing.Queue``
    everything is pickled, so only picklable resources may be transferred.
    """

    supports_transfer = True

    def __init__(
        self,
        send_queue: queue.Queue[Any] | typehint_mp.Queue[Any],  # type: ignore
        recv_queue: queue.Queue[Any] | typehint_mp.Queue[Any],  # type: ignore
    ) -> None:
        self._send_queue = send_queue
        self._recv_queue = recv_queue
        self._closed = False

    def send(self, obj: Any) -> None:
        if self._closed:
            raise RuntimeError("Transport closed")
        self._send_queue.put(obj)

    def recv(self) -> Any:
        return self._recv_queue.get()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        # Wake both readers: ours and the peer's.
        with contextlib.suppress(Exception):
            self._recv_queue.put(None)
        with contextlib.suppress(Exception):
            self._send_queue.put(None)


def create_queue_transport_pair() -> tuple[QueueTransport, QueueTransport]:
    """Return two in-process transports wired to each other."""
    a_to_b: queue.Queue[Any] = queue.Queue()
    b_to_a: queue.Queue[Any] = queue.Queue()
    return QueueTransport(a_to_b, b_to_a), QueueTransport(b_to_a, a_to_b)


class ConnectionTransport:
    """Transport using multiprocessing.connection.Connection (pipes or Unix sockets)."""

    supports_transfer = True

    def __init__(self, conn: Connection) -> None:
        self._conn = conn
        self._lock = threading.Lock()

    def send(self, obj: Any) -> None:
        with self._lock:
            self._conn.send(obj)

    def recv(self) -> Any:
        try:
            return self._conn.recv()
        except EOFError:
            return None

    def close(self) -> None:
        with contextlib.suppress(Exception):
            self._conn.close()


class JSONSocketTransport:
    """Transport using raw sockets + length-prefixed JSON (pickle-safe).

    Operation logs only hold primitives and marker dicts, so JSON is enough.
    Resources cannot be moved through a byte stream, so transfers are
    rejected.
    """

    supports_transfer = False

    def __init__(self, sock: socket.socket) -> None:
        self._sock = sock
        self._lock = threading.Lock()
        self._recv_lock = threading.Lock()

    def send(self, obj: Any) -> None:
        """Serialize to JSON with length prefix."""
        try:
            data = json.dumps(obj, default=self._json_default).encode("utf-8")
        except TypeError as e:
            type_name = type(obj).__name__
            logger.error(
                "Cannot serialize message:\n"
                "  Type: %s\n"
                "  Error: %s\n"
                "  Resolution: only primitives, containers and markers can cross a JSON transport",
                type_name,
                e,
            )
            raise TypeError(f"Cannot JSON-serialize {type_name}: {e}") from e

        msg = struct.pack(">I", len(data)) + data
        with self._lock:
            self._sock.sendall(msg)

    def recv(self) -> Any:
        """Receive a length-prefixed JSON message; None once the peer has closed."""
        with self._recv_lock:
            raw_len = self._recvall(4)
            if not raw_len:
                return None
            if len(raw_len) < 4:
                raise ConnectionError("Socket closed or incomplete length header")
            msg_len = struct.unpack(">I", raw_len)[0]
            if msg_len > MAX_MESSAGE_BYTES:
                raise ValueError(f"Message too large: {msg_len} bytes")
            data = self._recvall(msg_len)
            if len(data) < msg_len:
                raise ConnectionError(f"Incomplete message: got {len(data)}/{msg_len} bytes")
            return json.loads(data.decode("utf-8"), object_hook=self._json_object_hook)

    def _recvall(self, n: int) -> bytes:
        """Receive exactly n bytes from the socket."""
        chunks = []
        remaining = n
        while remaining > 0:
            chunk = self._sock.recv(min(remaining, 65536))
            if not chunk:
                break
            chunks.append(chunk)
            remaining -= len(chunk)
        return b"".join(chunks)

    def close(self) -> None:
        """Close the underlying socket."""
        with contextlib.suppress(Exception):
            self._sock.shutdown(socket.SHUT_RDWR)
        with contextlib.suppress(Exception):
            self._sock.close()

    def _json_default(self, obj: Any) -> Any:
        if isinstance(obj, bytes):
            return {"__pyrecord_bytes__": True, "data": base64.b64encode(obj).decode("ascii")}

        # Fail loudly for everything else
        raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")

    def _json_object_hook(self, dct: dict[str, Any]) -> Any:
        if dct.get("__pyrecord_bytes__"):
            return base64.b64decode(dct["data"])
        return dct
