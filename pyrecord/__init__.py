"""
pyrecord - Record operations on stand-in objects and replay them elsewhere.

pyrecord lets code drive an object graph it cannot touch directly. Every
property read, property write, call and construction on a stand-in is
recorded instead of executed; the log is then replayed against the real
objects, either in the same process or in a peer context connected through
a message port. Functions passed along stay callable from the other side and
keep running where they were defined.

Key Features:
    - Chainable stand-ins, plus explicit read/write/invoke/instantiate functions
    - Deterministic replay with per-operation error reporting
    - Cross-context transport with callbacks, evaluation and lazy remote objects
    - Distributed reference counting with explicit disposal and GC fallback

Basic Usage:
    >>> import asyncio
    >>> import pyrecord
    >>> async def main():
    ...     worker_port, page_port = pyrecord.create_channel()
    ...     page = pyrecord.Recorder(page_port, target=document)
    ...     worker = pyrecord.Recorder(worker_port)
    ...     button = worker.root.createElement("button")
    ...     button.textContent = "Click me"
    ...     text = await worker.evaluate(button.textContent)
    >>> asyncio.run(main())
"""

from ._internal.callbacks import RemoteCallable
from ._internal.lifecycle import Lease, ReferenceCounter
from ._internal.ports import LoopbackPort, TransportPort, create_channel
from ._internal.recorder import Recorder, RemoteError, TransportUnavailableError, create_recorded_object
from ._internal.remote_handle import RemoteObjectHandle
from ._internal.replay import ReplayEngine, UnresolvedReferenceError
from ._internal.stand_in import StandIn, dispose, identifier_of, instantiate, invoke, read, write
from ._internal.transfer_registry import TransferableRegistry
from .config import RecorderConfig

__version__ = "0.1.0"

__all__ = [
    "Recorder",
    "RecorderConfig",
    "StandIn",
    "RemoteCallable",
    "RemoteObjectHandle",
    "ReplayEngine",
    "ReferenceCounter",
    "Lease",
    "LoopbackPort",
    "TransportPort",
    "TransferableRegistry",
    "TransportUnavailableError",
    "RemoteError",
    "UnresolvedReferenceError",
    "create_channel",
    "create_recorded_object",
    "identifier_of",
    "read",
    "write",
    "invoke",
    "instantiate",
    "dispose",
    "register_transferable",
]


def register_transferable(cls: type) -> None:
    """Register a type whose instances travel beside messages instead of being copied."""
    TransferableRegistry.get_instance().register(cls)
