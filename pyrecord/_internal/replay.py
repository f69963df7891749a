"""Deterministic re-application of an operation log against a real object graph.

The engine executes records strictly in log order. Results are bound into
the Reference Map (an :class:`IdentityRegistry`) under the identifier chosen
at recording time so later records can address them. A failing record is
reported in the result list and does not stop the batch.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping, MutableMapping, Sequence
from typing import Any, Callable

from .identity import ROOT_ID, IdentityRegistry
from .operations import (
    CHANNEL_KEY,
    REF_KEY,
    OperationRecord,
    ReplayResult,
    is_channel_marker,
    is_ref_marker,
    is_transfer_marker,
)

logger = logging.getLogger(__name__)

ChannelResolver = Callable[[str], Any]


class UnresolvedReferenceError(LookupError):
    """An identifier could not be resolved to a live object during replay."""


def count_transfer_markers(value: Any) -> int:
    if is_transfer_marker(value):
        return 1
    if isinstance(value, (list, tuple)):
        return sum(count_transfer_markers(item) for item in value)
    if isinstance(value, dict):
        return sum(count_transfer_markers(item) for item in value.values())
    return 0


def read_member(obj: Any, name: str) -> Any:
    if isinstance(obj, Mapping):
        return obj[name]
    return getattr(obj, name)


def write_member(obj: Any, name: str, value: Any) -> None:
    if isinstance(obj, MutableMapping):
        obj[name] = value
    else:
        setattr(obj, name, value)


class ReplayEngine:
    """Executes operation records against the root bound in *registry*."""

    def __init__(
        self,
        registry: IdentityRegistry,
        resolve_channel: ChannelResolver | None = None,
    ) -> None:
        self.registry = registry
        self.resolve_channel = resolve_channel
        # Per-batch state
        self._none_results: set[str] = set()
        self._failed: set[str] = set()
        self._transfers: Iterator[Any] = iter(())
        self.bound: list[str] = []

    def replay(self, records: Sequence[OperationRecord], transfers: Sequence[Any] = ()) -> list[ReplayResult]:
        """Execute *records* in order; return one ReplayResult per record.

        ``bound`` afterwards lists the identifiers this batch bound.
        """
        self._none_results = set()
        self._failed = set()
        self.bound = []

        results: list[ReplayResult] = []
        offset = 0
        for index, record in enumerate(records):
            kind = record.get("kind", "<missing>") if isinstance(record, Mapping) else "<invalid>"
            # Each record owns a fixed slice of the transfers, so a failure
            # part-way through one record cannot shift the next record's.
            needed = count_transfer_markers(record)
            self._transfers = iter(transfers[offset:offset + needed])
            offset += needed
            try:
                value = self._replay_operation(record)
                results.append(ReplayResult(index=index, kind=kind, value=value, error=None))
            except Exception as exc:
                result_id = record.get("result_id") if isinstance(record, Mapping) else None
                if result_id:
                    self._failed.add(result_id)
                logger.error("Error replaying operation %d (%s): %s", index, kind, exc)
                logger.debug("Failed operation: %r", record, exc_info=True)
                results.append(ReplayResult(index=index, kind=kind, value=None, error=f"{type(exc).__name__}: {exc}"))
        return results

    # -- resolution -------------------------------------------------------

    def _resolve_target(self, object_id: str | None) -> Any:
        if object_id is None:
            return self.registry.root
        if object_id in self.registry:
            return self.registry.lookup(object_id)
        if object_id in self._failed:
            raise UnresolvedReferenceError(f"{object_id} is unavailable: the operation producing it failed")
        if object_id in self._none_results:
            raise UnresolvedReferenceError(f"{object_id} is None")
        logger.debug("Unknown target %s, falling back to root", object_id)
        return self.registry.root

    def _resolve_ref(self, object_id: str) -> Any:
        if object_id == ROOT_ID:
            return self.registry.root
        if object_id in self.registry:
            return self.registry.lookup(object_id)
        if object_id in self._none_results:
            return None
        if object_id in self._failed:
            raise UnresolvedReferenceError(f"Argument {object_id} is unavailable: the operation producing it failed")
        raise UnresolvedReferenceError(f"Argument references unknown object {object_id}")

    def resolve_value(self, value: Any) -> Any:
        """Replace markers inside *value* with the objects they stand for."""
        if is_ref_marker(value):
            return self._resolve_ref(value[REF_KEY])
        if is_channel_marker(value):
            if self.resolve_channel is None:
                raise UnresolvedReferenceError(f"No callback bridge to resolve {value[CHANNEL_KEY]}")
            return self.resolve_channel(value[CHANNEL_KEY])
        if is_transfer_marker(value):
            try:
                return next(self._transfers)
            except StopIteration:
                raise UnresolvedReferenceError("Transfer marker without a transferred resource") from None
        if isinstance(value, list):
            return [self.resolve_value(item) for item in value]
        if isinstance(value, tuple):
            return tuple(self.resolve_value(item) for item in value)
        if isinstance(value, dict):
            return {k: self.resolve_value(v) for k, v in value.items()}
        return value

    def _bind(self, result_id: str | None, result: Any) -> None:
        if not result_id:
            return
        if result is None:
            self._none_results.add(result_id)
            return
        self.registry.bind(result_id, result)
        self.bound.append(result_id)

    def _call_arguments(self, record: OperationRecord) -> tuple[list[Any], dict[str, Any]]:
        args = record.get("args")
        kwargs = record.get("kwargs")
        if args is None:
            args = []
        if kwargs is None:
            kwargs = {}
        if not isinstance(args, (list, tuple)):
            raise TypeError(f"Operation args must be a list, got {type(args).__name__}")
        if not isinstance(kwargs, Mapping) or not all(isinstance(key, str) for key in kwargs):
            raise TypeError(f"Operation kwargs must be a dict with str keys, got {type(kwargs).__name__}")
        return self.resolve_value(list(args)), self.resolve_value(dict(kwargs))

    # -- execution --------------------------------------------------------

    def _replay_operation(self, record: OperationRecord) -> Any:
        if not isinstance(record, Mapping):
            raise TypeError(f"Operation record must be a mapping, got {type(record).__name__}")
        kind = record.get("kind")
        result_id = record.get("result_id")

        if kind == "read":
            obj = self._resolve_target(record.get("target_id"))
            result = read_member(obj, record["property"])
            self._bind(result_id, result)
            return result

        if kind == "write":
            obj = self._resolve_target(record.get("target_id"))
            write_member(obj, record["property"], self.resolve_value(record.get("value")))
            return True

        if kind == "invoke":
            func = self._resolve_target(record.get("target_id"))
            receiver_id = record.get("receiver_id")
            if receiver_id is not None:
                # Attribute access already bound the method; the receiver only
                # has to exist.
                self._resolve_target(receiver_id)
            args, kwargs = self._call_arguments(record)
            result = func(*args, **kwargs)
            self._bind(result_id, result)
            return result

        if kind == "instantiate":
            constructor = self._resolve_target(record.get("target_id"))
            if not isinstance(constructor, type) and not callable(constructor):
                raise TypeError(f"{record.get('constructed_name', 'Anonymous')} is not a constructor")
            args, kwargs = self._call_arguments(record)
            result = constructor(*args, **kwargs)
            self._bind(result_id, result)
            return result

        # Fail loud on unknown kinds; the batch continues with the next record.
        raise ValueError(
            f"Unknown operation kind: {kind!r}. "
            f"Valid kinds are: 'read', 'write', 'invoke', 'instantiate'."
        )
