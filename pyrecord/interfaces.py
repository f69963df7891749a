"""Public protocols for pyrecord message ports.

These interfaces define the contract between the Recorder and the things it
talks to. They use structural typing so ports can be implemented
without inheriting from concrete base classes.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import Any, Protocol, runtime_checkable

MessageHandler = Callable[[Any, Sequence[Any]], None]


@runtime_checkable
class MessagePort(Protocol):
    """One end of a duplex, ordered, asynchronous message channel."""

    def post(self, message: Any, transfer: Sequence[Any] = ()) -> None:
        """Queue *message* for the peer.

        *transfer* lists resources that travel beside the message and are
        handed to the peer's handler untouched (moved, not copied).
        """
        ...

    def start(self, handler: MessageHandler) -> None:
        """Begin delivering incoming messages to ``handler(message, transfer)``.

        Handlers are always invoked on the event loop the port belongs to.
        """
        ...

    def close(self) -> None:
        """Stop delivery. Further posts are dropped or raise."""
        ...

